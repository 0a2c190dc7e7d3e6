"""Core module - data model, configuration, sessions and orchestration."""

from ditto.core.config import LocatorSettings, RunConfig
from ditto.core.models import ActionKind, Sequence, Step
from ditto.core.results import RowResult, RunResult, StepOutcome, StepStatus

__all__ = [
    "LocatorSettings",
    "RunConfig",
    "ActionKind",
    "Sequence",
    "Step",
    "RowResult",
    "RunResult",
    "StepOutcome",
    "StepStatus",
]
