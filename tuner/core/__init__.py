"""tuner.core

Core primitives. The pipeline composes these; none of them imports another
module outside this package.
"""

from .artifact import ConfigArtifact, set_key
from .collector import RunMetrics, collect_metrics
from .config import Config
from .exceptions import TunerError
from .notifier import Notifier
from .results import BestResult, ResultsStore
from .runner import EngineRunner, RunOutcome, RunState
from .variants import ParameterVariant

__all__ = [
    "BestResult",
    "Config",
    "ConfigArtifact",
    "EngineRunner",
    "Notifier",
    "ParameterVariant",
    "ResultsStore",
    "RunMetrics",
    "RunOutcome",
    "RunState",
    "TunerError",
    "collect_metrics",
    "set_key",
]
