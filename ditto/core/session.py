"""
Explicit session objects for recording and replay.

A ``SessionRegistry`` hands out at most one recording session and one run
session per project. Sessions are created on start and destroyed on stop;
nothing lives in module-level state.
"""

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, Optional
import logging
import threading
import uuid

from ditto.core.errors import SessionConflictError

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Cooperative stop flag.

    ``wait()`` sleeps on the underlying event, so a ``cancel()`` from another
    thread wakes a pending delay immediately.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Sleep up to ``seconds``. Returns True if cancelled meanwhile."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)


@dataclass
class RecordingSession:
    """State of one active recording. Label counters reset per session."""
    project_id: str
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: datetime = field(default_factory=datetime.now)
    context: Any = None
    _label_counts: Dict[str, int] = field(default_factory=dict, repr=False)
    _assigned: Dict[Any, str] = field(default_factory=dict, repr=False)

    def unique_label(self, base: str, target_key: Any = None) -> str:
        """
        Return ``base`` the first time, then ``base_1``, ``base_2``...

        A ``target_key`` already seen with the same base gets its earlier
        label back, so repeated events on one field keep one label.
        """
        if not base:
            return base
        if target_key is not None and (base, target_key) in self._assigned:
            return self._assigned[(base, target_key)]
        count = self._label_counts.get(base, 0)
        self._label_counts[base] = count + 1
        label = base if count == 0 else f"{base}_{count}"
        if target_key is not None:
            self._assigned[(base, target_key)] = label
        return label


@dataclass
class RunSession:
    """State of one active batch run."""
    project_id: str
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    token: CancellationToken = field(default_factory=CancellationToken)
    started_at: datetime = field(default_factory=datetime.now)


class SessionRegistry:
    """
    Tracks active sessions per project.

    Example:
        >>> registry = SessionRegistry()
        >>> with registry.running("checkout") as session:
        ...     session.token.cancel()
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._recordings: Dict[str, RecordingSession] = {}
        self._runs: Dict[str, RunSession] = {}

    def start_recording(self, project_id: str, context: Any = None) -> RecordingSession:
        with self._lock:
            if project_id in self._recordings:
                raise SessionConflictError(f"Project {project_id} is already recording")
            session = RecordingSession(project_id=project_id, context=context)
            self._recordings[project_id] = session
        logger.debug("Recording session %s started for %s", session.session_id, project_id)
        return session

    def stop_recording(self, project_id: str) -> Optional[RecordingSession]:
        with self._lock:
            return self._recordings.pop(project_id, None)

    def start_run(self, project_id: str) -> RunSession:
        with self._lock:
            if project_id in self._runs:
                raise SessionConflictError(f"Project {project_id} already has an active run")
            session = RunSession(project_id=project_id)
            self._runs[project_id] = session
        logger.debug("Run session %s started for %s", session.run_id, project_id)
        return session

    def stop_run(self, project_id: str) -> Optional[RunSession]:
        with self._lock:
            return self._runs.pop(project_id, None)

    def active_run(self, project_id: str) -> Optional[RunSession]:
        return self._runs.get(project_id)

    def active_recording(self, project_id: str) -> Optional[RecordingSession]:
        return self._recordings.get(project_id)

    @contextmanager
    def recording(self, project_id: str, context: Any = None) -> Iterator[RecordingSession]:
        session = self.start_recording(project_id, context)
        try:
            yield session
        finally:
            self.stop_recording(project_id)

    @contextmanager
    def running(self, project_id: str) -> Iterator[RunSession]:
        session = self.start_run(project_id)
        try:
            yield session
        finally:
            self.stop_run(project_id)
