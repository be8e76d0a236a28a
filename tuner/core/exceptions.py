"""tuner.core.exceptions

Errors are part of the interface.

Only precondition and restore failures are meant to reach the operator.
Everything that goes wrong inside a single run is data, not an exception.
"""

from __future__ import annotations

from pathlib import Path


class TunerError(Exception):
    """Base exception for tuner."""


class ConfigError(TunerError):
    """Harness configuration is missing, invalid, or inconsistent."""


class PreconditionError(TunerError):
    """A sweep cannot start. Raised before any mutation."""


class ResultsStoreError(TunerError):
    """Results database failures: schema, IO, or column definitions."""


class RestoreError(TunerError):
    """The engine configuration could not be reinstated.

    The live config may be left in a mutated state. The backup path is the
    operator's way back.
    """

    def __init__(self, path: Path, backup_path: Path, reason: str = "") -> None:
        self.path = path
        self.backup_path = backup_path
        message = f"Failed to restore {path}; original content kept at {backup_path}"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class SweepInterrupted(KeyboardInterrupt):
    """A termination signal arrived while a sweep was in progress."""

    def __init__(self, signum: int) -> None:
        self.signum = int(signum)
        super().__init__(f"interrupted by signal {self.signum}")
