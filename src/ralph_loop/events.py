"""Engine events and the in-process event bus.

Every event is a frozen dataclass carrying a ``type`` tag and an ISO
timestamp. Listeners are plain callables; the bus calls them synchronously
in registration order and never lets one listener's exception escape.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, ClassVar

from .logging import get_logger
from .task import TrackerTask

if TYPE_CHECKING:
    from .state import IterationResult

logger = get_logger("events")


def _now() -> str:
    return datetime.now().isoformat()


@dataclass(frozen=True, kw_only=True)
class EngineEvent:
    type: ClassVar[str] = "event"
    timestamp: str = field(default_factory=_now)


# === Engine lifecycle ===


@dataclass(frozen=True, kw_only=True)
class EngineStarted(EngineEvent):
    type: ClassVar[str] = "engine:started"
    total_tasks: int


@dataclass(frozen=True, kw_only=True)
class EnginePaused(EngineEvent):
    type: ClassVar[str] = "engine:paused"
    current_iteration: int


@dataclass(frozen=True, kw_only=True)
class EngineResumed(EngineEvent):
    type: ClassVar[str] = "engine:resumed"
    from_iteration: int


@dataclass(frozen=True, kw_only=True)
class EngineStopped(EngineEvent):
    """Reason is one of: completed, max_iterations, no_tasks, error, interrupted."""

    type: ClassVar[str] = "engine:stopped"
    reason: str
    total_iterations: int
    tasks_completed: int


@dataclass(frozen=True, kw_only=True)
class AllComplete(EngineEvent):
    type: ClassVar[str] = "all:complete"
    total_completed: int
    total_iterations: int


# === Iterations ===


@dataclass(frozen=True, kw_only=True)
class IterationStarted(EngineEvent):
    type: ClassVar[str] = "iteration:started"
    iteration: int
    task: TrackerTask


@dataclass(frozen=True, kw_only=True)
class IterationCompleted(EngineEvent):
    type: ClassVar[str] = "iteration:completed"
    result: IterationResult


@dataclass(frozen=True, kw_only=True)
class IterationFailed(EngineEvent):
    """Action is the policy decision: retry, skip or abort."""

    type: ClassVar[str] = "iteration:failed"
    iteration: int
    error: str
    task: TrackerTask
    action: str


@dataclass(frozen=True, kw_only=True)
class IterationRetrying(EngineEvent):
    type: ClassVar[str] = "iteration:retrying"
    iteration: int
    retry_attempt: int
    max_retries: int
    task: TrackerTask
    previous_error: str
    delay_seconds: float


@dataclass(frozen=True, kw_only=True)
class IterationSkipped(EngineEvent):
    type: ClassVar[str] = "iteration:skipped"
    iteration: int
    task: TrackerTask
    reason: str


# === Tasks and output ===


@dataclass(frozen=True, kw_only=True)
class TaskSelected(EngineEvent):
    type: ClassVar[str] = "task:selected"
    task: TrackerTask
    iteration: int


@dataclass(frozen=True, kw_only=True)
class TaskCompleted(EngineEvent):
    type: ClassVar[str] = "task:completed"
    task: TrackerTask
    iteration: int


@dataclass(frozen=True, kw_only=True)
class AgentOutput(EngineEvent):
    type: ClassVar[str] = "agent:output"
    stream: str  # stdout | stderr
    data: str
    iteration: int


EngineEventListener = Callable[[EngineEvent], None]


class EventBus:
    """Multi-subscriber fan-out with explicit unsubscribe handles."""

    def __init__(self) -> None:
        self._listeners: list[EngineEventListener] = []

    def on(self, listener: EngineEventListener) -> Callable[[], None]:
        """Register a listener. Returns a function that removes it again."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, event: EngineEvent) -> None:
        # Iterate over a snapshot so listeners may unsubscribe mid-emit
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.debug("Event listener raised", event_type=event.type, exc_info=True)

    def clear(self) -> None:
        self._listeners.clear()

    def __len__(self) -> int:
        return len(self._listeners)
