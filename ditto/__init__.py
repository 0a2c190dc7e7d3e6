"""
Ditto - Record once, replay over every row.

Captures web form interactions as portable multi-locator steps and replays
them against CSV data, re-finding each element even after the page changed.
"""

__version__ = "0.1.0"
__author__ = "Dhiraj Das"
__email__ = "contact@dhirajdas.dev"

from ditto.core.orchestrator import BatchOrchestrator, StepRunner
from ditto.core.models import ActionKind, Sequence, Step
from ditto.core.config import RunConfig

__all__ = [
    "BatchOrchestrator",
    "StepRunner",
    "ActionKind",
    "Sequence",
    "Step",
    "RunConfig",
    "__version__",
]
