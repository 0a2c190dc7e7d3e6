"""
Project Store - JSON documents keyed by project id.

Each project is one file holding its sequence (steps, mappings, rows) and
the history of finalized runs. Writes replace the whole file atomically;
the last writer wins.
"""

from typing import Any, Dict, List, Optional
import json
import logging
import os
import re
import tempfile

from ditto.core.errors import ProjectNotFoundError
from ditto.core.models import Sequence
from ditto.core.results import RunResult

logger = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9._-]+$")


class ProjectStore:
    """
    Simple get/put/update persistence.

    Example:
        >>> store = ProjectStore("./.ditto")
        >>> store.put(sequence)
        >>> store.get("signup").steps[0].label
        'Email'
    """

    def __init__(self, root_dir: str = "./.ditto"):
        self.root_dir = root_dir
        os.makedirs(root_dir, exist_ok=True)

    def _path(self, project_id: str) -> str:
        if not _SAFE_ID.match(project_id or ""):
            raise ValueError(f"Invalid project id '{project_id}'")
        return os.path.join(self.root_dir, f"{project_id}.json")

    def _read(self, project_id: str) -> Dict[str, Any]:
        path = self._path(project_id)
        if not os.path.exists(path):
            raise ProjectNotFoundError(project_id)
        with open(path, encoding="utf-8") as f:
            return json.load(f)

    def _write(self, project_id: str, document: Dict[str, Any]) -> None:
        path = self._path(project_id)
        fd, tmp_path = tempfile.mkstemp(dir=self.root_dir, prefix=f".{project_id}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def exists(self, project_id: str) -> bool:
        return os.path.exists(self._path(project_id))

    def get(self, project_id: str) -> Sequence:
        return Sequence.from_dict(self._read(project_id)["sequence"])

    def put(self, sequence: Sequence) -> None:
        """Store ``sequence``, keeping any existing run history."""
        try:
            runs = self._read(sequence.project_id).get("runs", [])
        except ProjectNotFoundError:
            runs = []
        self._write(sequence.project_id, {"sequence": sequence.to_dict(), "runs": runs})
        logger.debug("Saved project %s (%d steps)", sequence.project_id, len(sequence.steps))

    def update(self, project_id: str, **fields: Any) -> Sequence:
        """Replace top-level sequence fields (``start_url``, ``mappings``, ``rows``...)."""
        document = self._read(project_id)
        data = document["sequence"]
        for key, value in fields.items():
            if key == "project_id":
                raise ValueError("project_id cannot be changed")
            if key == "steps":
                value = [s.to_dict() if hasattr(s, "to_dict") else s for s in value]
            data[key] = value
        sequence = Sequence.from_dict(data)
        document["sequence"] = sequence.to_dict()
        self._write(project_id, document)
        return sequence

    def append_run(self, project_id: str, result: RunResult) -> None:
        document = self._read(project_id)
        document.setdefault("runs", []).append(result.to_dict())
        self._write(project_id, document)

    def runs(self, project_id: str) -> List[Dict[str, Any]]:
        return list(self._read(project_id).get("runs", []))

    def list_projects(self) -> List[str]:
        return sorted(
            name[:-5] for name in os.listdir(self.root_dir)
            if name.endswith(".json") and not name.startswith(".")
        )

    def delete(self, project_id: str) -> Optional[str]:
        path = self._path(project_id)
        if not os.path.exists(path):
            raise ProjectNotFoundError(project_id)
        os.remove(path)
        return path
