"""
Run results - per-step outcomes aggregated per row and per batch.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from ditto.core.errors import Failure, RowFailure


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    NOT_RUN = "not_run"


class RowStatus(str, Enum):
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class _Freezable:
    """Refuses attribute writes once ``_freeze()`` has run."""
    _frozen = False

    def __setattr__(self, name, value):
        if self._frozen:
            raise RuntimeError(f"{type(self).__name__} is finalized and cannot be modified")
        super().__setattr__(name, value)

    def _freeze(self) -> None:
        object.__setattr__(self, "_frozen", True)


@dataclass
class StepOutcome(_Freezable):
    """What happened to one step in one row."""
    step_id: str
    status: StepStatus = StepStatus.PENDING
    label: str = ""
    value: Optional[str] = None
    strategy: Optional[str] = None
    failure: Optional[Failure] = None
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "status": self.status.value,
            "label": self.label,
            "value": self.value,
            "strategy": self.strategy,
            "failure": self.failure.to_dict() if self.failure else None,
            "duration_ms": self.duration_ms,
        }


@dataclass
class RowResult(_Freezable):
    """Outcomes of every step for one data row."""
    row_index: int
    status: RowStatus = RowStatus.PASSED
    outcomes: List[StepOutcome] = field(default_factory=list)
    failure: Optional[RowFailure] = None

    def _freeze(self) -> None:
        for outcome in self.outcomes:
            outcome._freeze()
        object.__setattr__(self, "outcomes", tuple(self.outcomes))
        super()._freeze()

    def count(self, status: StepStatus) -> int:
        return sum(1 for o in self.outcomes if o.status is status)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "row_index": self.row_index,
            "status": self.status.value,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "failure": self.failure.to_dict() if self.failure else None,
        }


@dataclass
class RunResult(_Freezable):
    """
    Aggregate of a batch run.

    Created when the batch starts, appended to while it runs, and frozen by
    ``finalize()``. Any mutation after that, of the run, its rows or their
    step outcomes, raises ``RuntimeError``.
    """
    project_id: str
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    status: RunStatus = RunStatus.RUNNING
    rows: List[RowResult] = field(default_factory=list)
    report_path: Optional[str] = None

    @property
    def is_finalized(self) -> bool:
        return self._frozen

    def add_row(self, row: RowResult) -> None:
        if self._frozen:
            raise RuntimeError(f"Run {self.run_id} is finalized and cannot be modified")
        self.rows.append(row)

    def finalize(self, cancelled: bool = False, report_path: Optional[str] = None) -> "RunResult":
        self.finished_at = datetime.now()
        self.status = RunStatus.CANCELLED if cancelled else RunStatus.COMPLETED
        if report_path:
            self.report_path = report_path
        for row in self.rows:
            row._freeze()
        object.__setattr__(self, "rows", tuple(self.rows))
        self._freeze()
        return self

    def _count(self, status: StepStatus) -> int:
        return sum(row.count(status) for row in self.rows)

    @property
    def passed(self) -> int:
        return self._count(StepStatus.PASSED)

    @property
    def failed(self) -> int:
        return self._count(StepStatus.FAILED)

    @property
    def skipped(self) -> int:
        return self._count(StepStatus.SKIPPED)

    @property
    def not_run(self) -> int:
        return self._count(StepStatus.NOT_RUN)

    @property
    def rows_failed(self) -> int:
        return sum(1 for row in self.rows if row.status is RowStatus.FAILED)

    @property
    def duration_seconds(self) -> float:
        """Total execution time in seconds."""
        end = self.finished_at or datetime.now()
        return (end - self.started_at).total_seconds()

    @property
    def success(self) -> bool:
        return self.status is RunStatus.COMPLETED and self.rows_failed == 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "run_id": self.run_id,
            "project_id": self.project_id,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "status": self.status.value,
            "duration_seconds": self.duration_seconds,
            "counts": {
                "passed": self.passed,
                "failed": self.failed,
                "skipped": self.skipped,
                "not_run": self.not_run,
            },
            "rows": [r.to_dict() for r in self.rows],
            "report_path": self.report_path,
        }
