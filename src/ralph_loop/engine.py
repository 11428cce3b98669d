"""Execution engine for the agent loop.

Handles the iteration cycle: select task -> build prompt -> run agent ->
check result -> update tracker, with a retry / skip / abort policy for
failed iterations and cooperative pause, resume and stop.
"""

import asyncio
import contextlib
import re
from dataclasses import replace
from datetime import datetime

from .config import LoopConfig
from .contracts import (
    AgentAdapter,
    AgentExecuteOptions,
    AgentExecutionHandle,
    AgentStatus,
    IterationLogSink,
    PromptRenderer,
    SessionRecorder,
    TrackerAdapter,
)
from .events import (
    AgentOutput,
    AllComplete,
    EngineEvent,
    EngineEventListener,
    EnginePaused,
    EngineResumed,
    EngineStarted,
    EngineStopped,
    EventBus,
    IterationCompleted,
    IterationFailed,
    IterationRetrying,
    IterationSkipped,
    IterationStarted,
    TaskCompleted,
    TaskSelected,
)
from .logging import get_logger
from .prompt import TemplatePromptRenderer, build_prompt
from .state import EngineState, EngineStatus, IterationResult, IterationStatus
from .task import ACTIVE_STATUSES, TaskStatus, TrackerTask

logger = get_logger("engine")

# Completion signal in agent output, tolerant of inner whitespace
PROMISE_COMPLETE_PATTERN = re.compile(r"<promise>\s*COMPLETE\s*</promise>", re.IGNORECASE)

PAUSE_POLL_INTERVAL = 0.1


class EngineError(Exception):
    """Base class for engine contract errors."""


class EngineInitError(EngineError):
    """Agent or tracker could not be prepared."""


class EngineNotInitializedError(EngineError):
    """start() called before a successful initialize()."""


class EngineStateError(EngineError):
    """Operation not allowed in the current engine status."""


class ExecutionEngine:
    """Runs the agent loop against a tracker.

    The engine is driven from a single asyncio task. ``pause()``,
    ``resume()`` and ``stop()`` may be called from other coroutines or
    callbacks on the same loop while ``start()`` is running.
    """

    def __init__(
        self,
        config: LoopConfig,
        agent: AgentAdapter,
        tracker: TrackerAdapter,
        prompt_renderer: PromptRenderer | None = None,
        session: SessionRecorder | None = None,
        log_sink: IterationLogSink | None = None,
    ):
        self.config = config
        self._agent = agent
        self._tracker = tracker
        self._prompt_renderer = prompt_renderer or TemplatePromptRenderer()
        self._session = session
        self._log_sink = log_sink

        self._bus = EventBus()
        self._state = EngineState()
        self._initialized = False
        self._current_execution: AgentExecutionHandle | None = None
        self._should_stop = False
        self._stop_event: asyncio.Event | None = None
        # Consecutive failures per task id
        self._retry_counts: dict[str, int] = {}
        # Task ids excluded from selection for the rest of the run
        self._skipped_tasks: set[str] = set()

    # === Setup ===

    async def initialize(self) -> None:
        """Check the agent, sync the tracker and snapshot the task count.

        Raises:
            EngineInitError: If the agent is unavailable or the tracker fails to sync.
        """
        detect = await self._agent.detect()
        if not detect.available:
            raise EngineInitError(f"Agent '{self._agent.name}' not available: {detect.error}")

        try:
            await self._tracker.sync()
            tasks = await self._tracker.get_tasks(status=list(ACTIVE_STATUSES))
        except Exception as e:
            raise EngineInitError(f"Tracker unavailable: {e}") from e

        self._state.total_tasks = len(tasks)
        self._initialized = True
        logger.info("Engine initialized", agent=self._agent.name, total_tasks=len(tasks))

    # === Events ===

    def on(self, listener: EngineEventListener):
        """Subscribe to engine events. Returns an unsubscribe function."""
        return self._bus.on(listener)

    def _emit(self, event: EngineEvent) -> None:
        self._bus.emit(event)

    # === Introspection ===

    def get_state(self) -> EngineState:
        """Snapshot of the engine state."""
        return replace(self._state, iterations=list(self._state.iterations))

    @property
    def status(self) -> EngineStatus:
        return self._state.status

    @property
    def skipped_tasks(self) -> frozenset[str]:
        return frozenset(self._skipped_tasks)

    def is_paused(self) -> bool:
        return self._state.status == EngineStatus.PAUSED

    def is_pausing(self) -> bool:
        return self._state.status == EngineStatus.PAUSING

    # === Control ===

    async def start(self) -> None:
        """Run the loop until it finishes or is stopped.

        Raises:
            EngineStateError: If the engine is not idle.
            EngineNotInitializedError: If initialize() has not completed.
        """
        if self._state.status != EngineStatus.IDLE:
            raise EngineStateError(f"Cannot start engine in {self._state.status.value} state")
        if not self._initialized:
            raise EngineNotInitializedError("Engine not initialized")

        self._state.status = EngineStatus.RUNNING
        if self._state.started_at is None:
            self._state.started_at = datetime.now().isoformat()
        self._should_stop = False
        self._stop_event = asyncio.Event()

        logger.info("Engine started", total_tasks=self._state.total_tasks)
        self._emit(EngineStarted(total_tasks=self._state.total_tasks))

        try:
            await self._run_loop()
        finally:
            self._state.status = EngineStatus.IDLE

    async def stop(self) -> None:
        """Request shutdown and interrupt the running agent, if any."""
        if self._state.status in (EngineStatus.IDLE, EngineStatus.STOPPING):
            return

        self._should_stop = True
        self._state.status = EngineStatus.STOPPING
        if self._stop_event is not None:
            self._stop_event.set()

        if self._current_execution is not None:
            self._current_execution.interrupt()

        if self._session is not None:
            self._session.update_session_status(self.config.cwd, "interrupted")

        logger.info("Engine stopping", iteration=self._state.current_iteration)
        self._emit_stopped("interrupted")

    def pause(self) -> None:
        """Pause after the in-flight iteration. No-op unless running."""
        if self._state.status != EngineStatus.RUNNING:
            return
        # The loop flips to PAUSED (and emits) at its next checkpoint
        self._state.status = EngineStatus.PAUSING

    def resume(self) -> None:
        """Resume a paused loop, or cancel a pause that has not landed yet."""
        if self._state.status in (EngineStatus.PAUSING, EngineStatus.PAUSED):
            self._state.status = EngineStatus.RUNNING

    async def dispose(self) -> None:
        await self.stop()
        self._bus.clear()

    # === Main loop ===

    async def _run_loop(self) -> None:
        strategy = self.config.error_handling.strategy

        while not self._should_stop:
            if self._state.status == EngineStatus.PAUSING:
                await self._wait_while_paused()
                if self._should_stop:
                    break

            max_iterations = self.config.max_iterations
            if max_iterations > 0 and self._state.current_iteration >= max_iterations:
                self._emit_stopped("max_iterations")
                break

            if await self._tracker.is_complete():
                self._emit(
                    AllComplete(
                        total_completed=self._state.tasks_completed,
                        total_iterations=self._state.current_iteration,
                    )
                )
                self._emit_stopped("completed")
                break

            task = await self._get_next_available_task()
            if task is None:
                self._emit_stopped("no_tasks")
                break
            if self._should_stop:
                break

            result = await self._run_iteration_with_error_handling(task)

            if result.status == IterationStatus.FAILED and strategy == "abort":
                self._emit_stopped("error")
                break

            if self._session is not None:
                self._session.update_session_iteration(
                    self.config.cwd,
                    self._state.current_iteration,
                    self._state.tasks_completed,
                )

            if self.config.iteration_delay_seconds > 0 and not self._should_stop:
                await self._sleep(self.config.iteration_delay_seconds)

    async def _wait_while_paused(self) -> None:
        self._state.status = EngineStatus.PAUSED
        logger.info("Engine paused", iteration=self._state.current_iteration)
        self._emit(EnginePaused(current_iteration=self._state.current_iteration))

        while self._state.status == EngineStatus.PAUSED and not self._should_stop:
            await asyncio.sleep(PAUSE_POLL_INTERVAL)

        if not self._should_stop:
            logger.info("Engine resumed", iteration=self._state.current_iteration)
            self._emit(EngineResumed(from_iteration=self._state.current_iteration))

    async def _sleep(self, seconds: float) -> None:
        """Wait for a delay; returns early when stop is requested."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)

    def _emit_stopped(self, reason: str) -> None:
        logger.info(
            "Engine stopped",
            reason=reason,
            iterations=self._state.current_iteration,
            tasks_completed=self._state.tasks_completed,
        )
        self._emit(
            EngineStopped(
                reason=reason,
                total_iterations=self._state.current_iteration,
                tasks_completed=self._state.tasks_completed,
            )
        )

    async def _get_next_available_task(self) -> TrackerTask | None:
        """First ready task in tracker order that has not been skipped."""
        tasks = await self._tracker.get_tasks(status=list(ACTIVE_STATUSES))
        for task in tasks:
            if task.id in self._skipped_tasks:
                continue
            if await self._tracker.is_task_ready(task.id):
                return task
        return None

    # === Error handling ===

    async def _run_iteration_with_error_handling(self, task: TrackerTask) -> IterationResult:
        """Run a task, re-attempting it while the retry policy allows."""
        error_config = self.config.error_handling

        while True:
            result = await self._run_iteration(task)
            self._state.iterations.append(result)

            if result.status != IterationStatus.FAILED:
                if result.task_completed:
                    self._state.tasks_completed += 1
                    self._retry_counts.pop(task.id, None)
                self._emit(IterationCompleted(result=result))
                return result

            retry = self._apply_failure_policy(task, result)
            self._emit(IterationCompleted(result=result))
            if not retry:
                return result

            if error_config.retry_delay_seconds > 0 and not self._should_stop:
                await self._sleep(error_config.retry_delay_seconds)
            if self._should_stop:
                return result

    def _apply_failure_policy(self, task: TrackerTask, result: IterationResult) -> bool:
        """Emit policy events for a failed iteration. Returns True to retry."""
        error_config = self.config.error_handling
        error_message = result.error or "Unknown error"
        iteration = result.iteration

        if error_config.strategy == "retry":
            current_retries = self._retry_counts.get(task.id, 0)
            if current_retries < error_config.max_retries:
                self._emit(
                    IterationFailed(
                        iteration=iteration, error=error_message, task=task, action="retry"
                    )
                )
                self._emit(
                    IterationRetrying(
                        iteration=iteration,
                        retry_attempt=current_retries + 1,
                        max_retries=error_config.max_retries,
                        task=task,
                        previous_error=error_message,
                        delay_seconds=error_config.retry_delay_seconds,
                    )
                )
                self._retry_counts[task.id] = current_retries + 1
                logger.warning(
                    "Retrying task",
                    task_id=task.id,
                    attempt=current_retries + 1,
                    max_retries=error_config.max_retries,
                    error=error_message,
                )
                return not self._should_stop

            skip_reason = f"Max retries ({error_config.max_retries}) exceeded: {error_message}"
            self._skip(task, iteration, skip_reason)
            self._retry_counts.pop(task.id, None)
            return False

        if error_config.strategy == "skip":
            self._skip(task, iteration, error_message)
            return False

        # abort: the main loop halts the run
        logger.error("Iteration failed, aborting", task_id=task.id, error=error_message)
        self._emit(
            IterationFailed(iteration=iteration, error=error_message, task=task, action="abort")
        )
        return False

    def _skip(self, task: TrackerTask, iteration: int, reason: str) -> None:
        logger.warning("Skipping task", task_id=task.id, reason=reason)
        self._emit(IterationFailed(iteration=iteration, error=reason, task=task, action="skip"))
        self._emit(IterationSkipped(iteration=iteration, task=task, reason=reason))
        self._skipped_tasks.add(task.id)

    # === Single iteration ===

    async def _run_iteration(self, task: TrackerTask) -> IterationResult:
        self._state.current_iteration += 1
        iteration = self._state.current_iteration
        self._state.current_task = task
        self._state.current_output = ""
        self._state.current_stderr = ""

        started_at = datetime.now()
        log = logger.bind(task_id=task.id, iteration=iteration)

        self._emit(IterationStarted(iteration=iteration, task=task))
        self._emit(TaskSelected(task=task, iteration=iteration))

        def on_stdout(data: str) -> None:
            self._state.current_output += data
            self._emit(AgentOutput(stream="stdout", data=data, iteration=iteration))

        def on_stderr(data: str) -> None:
            self._state.current_stderr += data
            self._emit(AgentOutput(stream="stderr", data=data, iteration=iteration))

        try:
            await self._tracker.update_task_status(task.id, TaskStatus.IN_PROGRESS.value)

            epic = await self._tracker.get_task(task.parent_id) if task.parent_id else None
            prompt = build_prompt(task, self.config, self._prompt_renderer, epic)

            flags: list[str] = []
            if self.config.agent_model:
                flags += ["--model", self.config.agent_model]

            log.info("Running iteration", title=task.title)
            handle = self._agent.execute(
                prompt,
                options=AgentExecuteOptions(
                    cwd=str(self.config.cwd),
                    flags=flags,
                    timeout=self.config.agent_timeout_seconds,
                    on_stdout=on_stdout,
                    on_stderr=on_stderr,
                ),
            )
            self._current_execution = handle
            try:
                agent_result = await handle.wait()
            finally:
                self._current_execution = None

            ended_at = datetime.now()
            promise_complete = bool(PROMISE_COMPLETE_PATTERN.search(agent_result.stdout))
            # Either signal alone closes the task
            task_completed = promise_complete or agent_result.status == AgentStatus.COMPLETED

            if task_completed:
                await self._tracker.complete_task(task.id, "Completed by agent")
                self._emit(TaskCompleted(task=task, iteration=iteration))

            if agent_result.interrupted:
                status = IterationStatus.INTERRUPTED
            elif agent_result.status == AgentStatus.FAILED:
                status = IterationStatus.FAILED
            else:
                status = IterationStatus.COMPLETED

            result = IterationResult(
                iteration=iteration,
                status=status,
                task=task,
                agent_result=agent_result,
                task_completed=task_completed,
                promise_complete=promise_complete,
                duration_ms=_elapsed_ms(started_at, ended_at),
                error=agent_result.error,
                started_at=started_at.isoformat(),
                ended_at=ended_at.isoformat(),
            )
            log.info(
                "Iteration finished",
                status=status.value,
                task_completed=task_completed,
                duration_ms=result.duration_ms,
            )

            self._save_iteration_log(
                result,
                agent_result.stdout,
                agent_result.stderr or self._state.current_stderr,
            )
            return result

        except Exception as e:
            ended_at = datetime.now()
            log.error("Iteration raised", error=str(e), exc_info=True)
            result = IterationResult(
                iteration=iteration,
                status=IterationStatus.FAILED,
                task=task,
                task_completed=False,
                promise_complete=False,
                duration_ms=_elapsed_ms(started_at, ended_at),
                error=str(e) or type(e).__name__,
                started_at=started_at.isoformat(),
                ended_at=ended_at.isoformat(),
            )
            self._save_iteration_log(result, self._state.current_output, self._state.current_stderr)
            return result
        finally:
            self._state.current_task = None

    def _save_iteration_log(self, result: IterationResult, stdout: str, stderr: str) -> None:
        if self._log_sink is None:
            return
        try:
            self._log_sink.save_iteration_log(self.config.cwd, result, stdout, stderr, self.config)
        except Exception as e:
            logger.warning("Failed to save iteration log", iteration=result.iteration, error=str(e))


def _elapsed_ms(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() * 1000)
