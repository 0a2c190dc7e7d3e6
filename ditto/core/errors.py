"""
Failure taxonomy.

Every component that talks to the browser returns one of these failures
inside its result object instead of raising. Exceptions are kept for
misuse of the engine itself (conflicting sessions, invalid steps).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class DittoError(Exception):
    """Base class for all ditto exceptions."""


class SessionConflictError(DittoError):
    """A recording or run is already active for the project."""


class InvalidStepError(DittoError, ValueError):
    """A step violates an action-kind invariant."""


class ProjectNotFoundError(DittoError, KeyError):
    """The project store has no document for the requested id."""


@dataclass
class Failure:
    """Base failure. ``stage`` names where in the pipeline it happened."""
    message: str
    stage: str = ""

    kind = "failure"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "stage": self.stage}

    def __str__(self) -> str:
        if self.stage:
            return f"{self.kind}[{self.stage}]: {self.message}"
        return f"{self.kind}: {self.message}"


@dataclass
class CaptureFailure(Failure):
    """No usable bundle could be built for an event target."""
    kind = "capture_failure"


@dataclass
class ResolutionFailure(Failure):
    """The frame / shadow-root path to the target could not be entered."""
    kind = "resolution_failure"


@dataclass
class StrategyAttempt:
    """One locator strategy's outcome: matched, no_match, ambiguous, skipped or error."""
    strategy: str
    outcome: str
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"strategy": self.strategy, "outcome": self.outcome, "detail": self.detail}


@dataclass
class LocatorNotFound(Failure):
    """Every locator strategy was exhausted without a single confident match."""
    attempts: List[StrategyAttempt] = field(default_factory=list)

    kind = "locator_not_found"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["attempts"] = [a.to_dict() for a in self.attempts]
        return data


class ActionFailureReason(str, Enum):
    STALE = "stale"
    THREW = "threw"
    TIMEOUT = "timeout"
    REJECTED = "rejected"


@dataclass
class ActionFailure(Failure):
    """The element was found but the action could not be applied."""
    reason: ActionFailureReason = ActionFailureReason.THREW
    step_id: Optional[str] = None

    kind = "action_failure"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["reason"] = self.reason.value
        data["step_id"] = self.step_id
        return data


@dataclass
class RowFailure(Failure):
    """A step failure that aborted the rest of its row."""
    row_index: int = 0
    step_id: Optional[str] = None
    cause: Optional[Failure] = None

    kind = "row_failure"

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["row_index"] = self.row_index
        data["step_id"] = self.step_id
        data["cause"] = self.cause.to_dict() if self.cause else None
        return data
