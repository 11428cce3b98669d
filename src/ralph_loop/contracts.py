"""Capability interfaces the engine consumes.

The engine only ever talks to agents, trackers, prompt renderers and the
persistence collaborators through these contracts. Concrete adapters live
in ``runner``, ``tracker``, ``prompt``, ``state`` and ``logs``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from .task import TrackerTask

if TYPE_CHECKING:
    from .config import LoopConfig
    from .state import IterationResult


# === Agent ===


class AgentStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class AgentResult:
    """Terminal outcome of one agent process."""

    status: AgentStatus
    stdout: str
    stderr: str
    duration_ms: int
    exit_code: int | None = None
    interrupted: bool = False
    error: str | None = None


@dataclass(frozen=True)
class AgentDetectResult:
    available: bool
    version: str | None = None
    error: str | None = None


@dataclass
class AgentExecuteOptions:
    """Per-execution options handed to an agent adapter.

    Attributes:
        cwd: Working directory for the agent process.
        flags: Extra CLI flags (e.g. model selection).
        env: Extra environment variables merged over the parent environment.
        timeout: Seconds before the process is killed (None = no limit).
        on_stdout: Called with every decoded stdout chunk.
        on_stderr: Called with every decoded stderr chunk.
    """

    cwd: str
    flags: list[str] = field(default_factory=list)
    env: dict[str, str] | None = None
    timeout: float | None = None
    on_stdout: Callable[[str], None] | None = None
    on_stderr: Callable[[str], None] | None = None


class AgentExecutionHandle(ABC):
    """A running (or finished) agent execution."""

    execution_id: str

    @abstractmethod
    async def wait(self) -> AgentResult:
        """Wait for the process to finish and return its result."""

    @abstractmethod
    def interrupt(self) -> None:
        """Ask the process to stop. Safe to call repeatedly or after exit."""

    @abstractmethod
    def is_running(self) -> bool: ...


class AgentAdapter(ABC):
    """Spawns one external agent process per execution request."""

    name: str = "agent"

    @abstractmethod
    async def detect(self) -> AgentDetectResult:
        """Check whether the agent can be run on this machine."""

    @abstractmethod
    def execute(
        self,
        prompt: str,
        files: list[str] | None = None,
        options: AgentExecuteOptions | None = None,
    ) -> AgentExecutionHandle:
        """Start the agent; must be called from a running event loop."""


# === Tracker ===


class TrackerAdapter(ABC):
    """Task source and status sink."""

    @abstractmethod
    async def sync(self) -> None:
        """Refresh backing state."""

    @abstractmethod
    async def get_tasks(self, status: list[str] | None = None) -> list[TrackerTask]:
        """Return tasks in tracker order, optionally filtered by status."""

    @abstractmethod
    async def get_task(self, task_id: str) -> TrackerTask | None: ...

    @abstractmethod
    async def is_task_ready(self, task_id: str) -> bool:
        """True when every dependency of the task is resolved."""

    @abstractmethod
    async def update_task_status(self, task_id: str, status: str) -> None: ...

    @abstractmethod
    async def complete_task(self, task_id: str, reason: str) -> None: ...

    @abstractmethod
    async def is_complete(self) -> bool:
        """True when the whole backlog is done."""


# === Prompt ===


@dataclass(frozen=True)
class PromptResult:
    success: bool
    prompt: str | None = None
    error: str | None = None
    source: str = ""


class PromptRenderer(Protocol):
    def render_prompt(
        self,
        task: TrackerTask,
        config: LoopConfig,
        epic: TrackerTask | None = None,
    ) -> PromptResult: ...


# === Persistence collaborators ===


class SessionRecorder(Protocol):
    def update_session_iteration(
        self, cwd: Path, iteration: int, tasks_completed: int
    ) -> None: ...

    def update_session_status(self, cwd: Path, status: str) -> None: ...


class IterationLogSink(Protocol):
    def save_iteration_log(
        self,
        cwd: Path,
        result: IterationResult,
        stdout: str,
        stderr: str,
        config: LoopConfig,
    ) -> Path | None: ...
