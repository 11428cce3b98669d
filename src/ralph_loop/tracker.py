"""YAML-file tracker for ralph-loop.

Reads tasks from a ``tasks.yaml`` file, answers readiness queries from
the ``depends_on`` graph, and writes status changes back to the file.
"""

import os
from datetime import datetime
from pathlib import Path

import yaml

from .contracts import TrackerAdapter
from .logging import get_logger
from .task import ACTIVE_STATUSES, TaskStatus, TrackerTask

log = get_logger("tracker")


class TrackerError(Exception):
    """Tracker file is missing or malformed."""


def load_tasks_file(path: Path) -> dict:
    """Read a tracker file and check its task list.

    Raises:
        TrackerError: If the file is missing, unparseable or has no task list.
    """
    if not path.exists():
        raise TrackerError(f"Tracker file does not exist: {path}")
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise TrackerError(f"Failed to parse {path}: {e}") from e

    entries = data.get("tasks") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        raise TrackerError(f"{path}: expected a top-level 'tasks' list")
    for entry in entries:
        if not isinstance(entry, dict) or "id" not in entry:
            raise TrackerError(f"{path}: every task needs an 'id'")
    return data


class YamlTracker(TrackerAdapter):
    """Tracker backed by a YAML file.

    Task order in the file is the selection order. When ``epic_id`` is set,
    only tasks whose ``parent_id`` matches are in scope.
    """

    def __init__(self, path: Path, epic_id: str = ""):
        self.path = path
        self.epic_id = epic_id
        self._document: dict = {}
        self._entries: list[dict] = []

    async def sync(self) -> None:
        self._document = load_tasks_file(self.path)
        self._entries = self._document["tasks"]
        log.debug("Tracker synced", path=str(self.path), tasks=len(self._entries))

    def _in_scope(self, entry: dict) -> bool:
        return not self.epic_id or entry.get("parent_id") == self.epic_id

    def _find(self, task_id: str) -> dict | None:
        for entry in self._entries:
            if str(entry["id"]) == task_id:
                return entry
        return None

    async def get_tasks(self, status: list[str] | None = None) -> list[TrackerTask]:
        tasks = [TrackerTask.from_dict(e) for e in self._entries if self._in_scope(e)]
        if status is not None:
            tasks = [t for t in tasks if t.status in status]
        return tasks

    async def get_task(self, task_id: str) -> TrackerTask | None:
        entry = self._find(task_id)
        return TrackerTask.from_dict(entry) if entry else None

    async def is_task_ready(self, task_id: str) -> bool:
        entry = self._find(task_id)
        if entry is None:
            return False
        task = TrackerTask.from_dict(entry)
        if task.status not in ACTIVE_STATUSES:
            return False
        for dep_id in task.depends_on:
            dep = self._find(dep_id)
            # Unknown dependencies count as unresolved
            if dep is None or not TrackerTask.from_dict(dep).is_finished:
                return False
        return True

    async def update_task_status(self, task_id: str, status: str) -> None:
        entry = self._require(task_id)
        entry["status"] = status
        self._save()
        log.info("Task status updated", task_id=task_id, status=status)

    async def complete_task(self, task_id: str, reason: str) -> None:
        entry = self._require(task_id)
        entry["status"] = TaskStatus.CLOSED.value
        entry["close_reason"] = reason
        entry["closed_at"] = datetime.now().isoformat(timespec="seconds")
        self._save()
        log.info("Task closed", task_id=task_id, reason=reason)

    async def is_complete(self) -> bool:
        return all(TrackerTask.from_dict(e).is_finished for e in self._entries if self._in_scope(e))

    def _require(self, task_id: str) -> dict:
        entry = self._find(task_id)
        if entry is None:
            raise TrackerError(f"Unknown task: {task_id}")
        return entry

    def _save(self) -> None:
        """Write entries back atomically (temp file + rename)."""
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(yaml.safe_dump(self._document, sort_keys=False, allow_unicode=True))
        os.replace(tmp, self.path)
