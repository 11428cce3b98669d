"""Headless progress reporting.

``HeadlessReporter`` subscribes to engine events and turns them into
structured log lines; agent output can optionally be echoed to a stream.
It also remembers the reason the engine stopped so the CLI can persist a
final session status.
"""

import sys
from typing import TextIO

from .events import (
    AgentOutput,
    AllComplete,
    EngineEvent,
    EnginePaused,
    EngineResumed,
    EngineStarted,
    EngineStopped,
    IterationCompleted,
    IterationFailed,
    IterationRetrying,
    IterationSkipped,
    IterationStarted,
    TaskCompleted,
)
from .logging import get_logger

log = get_logger("reporter")

# Session status persisted for each stop reason
STOP_REASON_STATUS = {
    "completed": "completed",
    "no_tasks": "completed",
    "max_iterations": "paused",
    "error": "failed",
    "interrupted": "interrupted",
}


class HeadlessReporter:
    """Event listener for runs without a terminal UI."""

    def __init__(self, echo_output: bool = False, stream: TextIO | None = None):
        self.echo_output = echo_output
        self.stream = stream or sys.stdout
        self.stop_reason: str | None = None

    @property
    def final_status(self) -> str | None:
        if self.stop_reason is None:
            return None
        return STOP_REASON_STATUS.get(self.stop_reason, "completed")

    def __call__(self, event: EngineEvent) -> None:
        if isinstance(event, AgentOutput):
            if self.echo_output:
                self.stream.write(event.data)
                self.stream.flush()
            return

        if isinstance(event, EngineStarted):
            log.info("Loop started", total_tasks=event.total_tasks)
        elif isinstance(event, IterationStarted):
            log.info(
                "Iteration started",
                iteration=event.iteration,
                task_id=event.task.id,
                title=event.task.title,
            )
        elif isinstance(event, TaskCompleted):
            log.info("Task completed", task_id=event.task.id, iteration=event.iteration)
        elif isinstance(event, IterationCompleted):
            result = event.result
            log.info(
                "Iteration completed",
                iteration=result.iteration,
                task_id=result.task.id,
                status=result.status.value,
                task_completed=result.task_completed,
                duration_s=round(result.duration_ms / 1000, 1),
            )
        elif isinstance(event, IterationFailed):
            log.warning(
                "Iteration failed",
                iteration=event.iteration,
                task_id=event.task.id,
                action=event.action,
                error=event.error,
            )
        elif isinstance(event, IterationRetrying):
            log.info(
                "Retrying task",
                task_id=event.task.id,
                attempt=f"{event.retry_attempt}/{event.max_retries}",
                delay_s=event.delay_seconds,
            )
        elif isinstance(event, IterationSkipped):
            log.warning("Task skipped", task_id=event.task.id, reason=event.reason)
        elif isinstance(event, EnginePaused):
            log.info("Loop paused", iteration=event.current_iteration)
        elif isinstance(event, EngineResumed):
            log.info("Loop resumed", iteration=event.from_iteration)
        elif isinstance(event, AllComplete):
            log.info(
                "All tasks complete",
                completed=event.total_completed,
                iterations=event.total_iterations,
            )
        elif isinstance(event, EngineStopped):
            # stop() reports "interrupted" before the loop unwinds; keep the first reason
            if self.stop_reason is None:
                self.stop_reason = event.reason
            log.info(
                "Loop stopped",
                reason=event.reason,
                iterations=event.total_iterations,
                tasks_completed=event.tasks_completed,
            )
