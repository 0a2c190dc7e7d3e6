"""
Recorded interactions: steps and the sequences that own them.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
import uuid

from ditto.core.errors import InvalidStepError
from ditto.layers.sense.bundle import ElementBundle


class ActionKind(str, Enum):
    """What a step does to its target."""
    CLICK = "click"
    TEXT_ENTRY = "input"
    KEY_SUBMIT = "enter"


def new_step_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Step:
    """
    One recorded user action.

    ``value`` is the captured payload of a text-entry step (possibly an empty
    string). Click and submit steps ignore it.
    """
    action: ActionKind
    bundle: ElementBundle
    label: str = ""
    value: Optional[str] = None
    id: str = field(default_factory=new_step_id)
    x: Optional[float] = None
    y: Optional[float] = None
    delay_seconds: Optional[float] = None
    timestamp: datetime = field(default_factory=datetime.now)
    page_url: str = ""

    def __post_init__(self):
        self.action = ActionKind(self.action)
        if self.action is ActionKind.TEXT_ENTRY and self.value is None:
            raise InvalidStepError(f"Text-entry step {self.id} has no captured value")
        if self.delay_seconds is not None and self.delay_seconds < 0:
            raise InvalidStepError(f"Step {self.id} has a negative delay")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "action": self.action.value,
            "label": self.label,
            "value": self.value,
            "bundle": self.bundle.to_dict(),
            "x": self.x,
            "y": self.y,
            "delay_seconds": self.delay_seconds,
            "timestamp": self.timestamp.isoformat(),
            "page_url": self.page_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        timestamp = data.get("timestamp")
        return cls(
            id=data["id"],
            action=ActionKind(data["action"]),
            label=data.get("label") or "",
            value=data.get("value"),
            bundle=ElementBundle.from_dict(data.get("bundle") or {}),
            x=data.get("x"),
            y=data.get("y"),
            delay_seconds=data.get("delay_seconds"),
            timestamp=datetime.fromisoformat(timestamp) if timestamp else datetime.now(),
            page_url=data.get("page_url") or "",
        )


@dataclass
class Sequence:
    """
    Ordered steps of one project plus optional column mappings and rows.

    ``mappings`` maps a tabular column name to the label of the step that
    should receive that column's value. ``loop_start`` is the 0-based index
    of the step that rows after the first begin from; the steps before it
    (login, navigation) run once per batch.
    """
    project_id: str
    start_url: str = ""
    steps: List[Step] = field(default_factory=list)
    mappings: Dict[str, str] = field(default_factory=dict)
    rows: List[Dict[str, str]] = field(default_factory=list)
    loop_start: Optional[int] = None

    def __post_init__(self):
        seen = set()
        for step in self.steps:
            if step.id in seen:
                raise InvalidStepError(f"Duplicate step id {step.id}")
            seen.add(step.id)
        self._check_loop_start(self.loop_start)

    def _check_loop_start(self, index: Optional[int]) -> None:
        if index is not None and not 0 <= index < len(self.steps):
            raise InvalidStepError(f"Loop start {index} is outside a sequence of {len(self.steps)} steps")

    def set_loop_start(self, index: Optional[int]) -> None:
        """Set the loop start step; ``None`` or ``0`` replays every step for every row."""
        self._check_loop_start(index)
        self.loop_start = index or None

    def loop_url(self) -> str:
        """URL rows after the first open on: the loop start step's page, else the start URL."""
        if self.loop_start:
            return self.steps[self.loop_start].page_url or self.start_url
        return self.start_url

    def __len__(self) -> int:
        return len(self.steps)

    def __iter__(self):
        return iter(self.steps)

    def add_step(self, step: Step) -> None:
        if any(s.id == step.id for s in self.steps):
            raise InvalidStepError(f"Duplicate step id {step.id}")
        self.steps.append(step)

    def get_step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def labels(self) -> List[str]:
        return [s.label for s in self.steps if s.label]

    def move_step(self, src: int, dst: int) -> List[str]:
        """
        Move the step at ``src`` to position ``dst``.

        The move always happens. Returned warnings flag submit steps that now
        run before text-entry steps that used to precede them.
        """
        if not (0 <= src < len(self.steps)) or not (0 <= dst < len(self.steps)):
            raise IndexError(f"Cannot move step {src} to {dst} in a sequence of {len(self.steps)}")
        before = [s.id for s in self.steps]
        loop_step = before[self.loop_start] if self.loop_start else None
        step = self.steps.pop(src)
        self.steps.insert(dst, step)
        if loop_step is not None:
            # Loop start stays on the same step.
            self.loop_start = [s.id for s in self.steps].index(loop_step) or None
        return self._ordering_warnings(before)

    def _ordering_warnings(self, previous_order: List[str]) -> List[str]:
        old_pos = {step_id: i for i, step_id in enumerate(previous_order)}
        new_pos = {s.id: i for i, s in enumerate(self.steps)}
        warnings = []
        for submit in self.steps:
            if submit.action is not ActionKind.KEY_SUBMIT:
                continue
            for fill in self.steps:
                if fill.action is not ActionKind.TEXT_ENTRY:
                    continue
                was_before = old_pos[fill.id] < old_pos[submit.id]
                now_after = new_pos[fill.id] > new_pos[submit.id]
                if was_before and now_after:
                    warnings.append(
                        f"Submit step '{submit.label or submit.id}' now runs before "
                        f"text entry '{fill.label or fill.id}'"
                    )
        return warnings

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_id": self.project_id,
            "start_url": self.start_url,
            "steps": [s.to_dict() for s in self.steps],
            "mappings": dict(self.mappings),
            "rows": [dict(r) for r in self.rows],
            "loop_start": self.loop_start,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Sequence":
        return cls(
            project_id=data["project_id"],
            start_url=data.get("start_url") or "",
            steps=[Step.from_dict(s) for s in data.get("steps") or []],
            mappings=dict(data.get("mappings") or {}),
            rows=[dict(r) for r in data.get("rows") or []],
            loop_start=data.get("loop_start") or None,
        )
