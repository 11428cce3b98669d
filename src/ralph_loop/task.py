"""Task records shared between trackers, prompts and the engine."""

from dataclasses import dataclass, field
from enum import Enum


class TaskStatus(str, Enum):
    """Task statuses understood by the built-in tracker."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"
    DONE = "done"
    BLOCKED = "blocked"


# Statuses a task can be picked up from
ACTIVE_STATUSES = (TaskStatus.OPEN.value, TaskStatus.IN_PROGRESS.value)
# Statuses that count as finished work
FINISHED_STATUSES = frozenset({TaskStatus.CLOSED.value, TaskStatus.DONE.value})


@dataclass
class TrackerTask:
    """A unit of work owned by a tracker"""

    id: str
    title: str
    status: str = TaskStatus.OPEN.value
    description: str = ""
    parent_id: str | None = None
    depends_on: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)
    priority: int | None = None
    type: str | None = None

    @property
    def is_finished(self) -> bool:
        return self.status in FINISHED_STATUSES

    @classmethod
    def from_dict(cls, data: dict) -> "TrackerTask":
        """Build a task from a tracker file entry."""
        return cls(
            id=str(data["id"]),
            title=str(data.get("title", "")),
            status=str(data.get("status", TaskStatus.OPEN.value)),
            description=data.get("description") or "",
            parent_id=data.get("parent_id"),
            depends_on=[str(d) for d in data.get("depends_on") or []],
            labels=[str(label) for label in data.get("labels") or []],
            priority=data.get("priority"),
            type=data.get("type"),
        )
