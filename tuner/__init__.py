"""tuner: serial parameter sweeps for a long-running paper-trading engine.

Run the engine under each variant, read what it persisted, keep the score,
put the config back the way it was.
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.3.0"
