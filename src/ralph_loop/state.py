"""State management for ralph-loop.

In-memory engine state and iteration results, plus the SQLite-backed
session store that records loop progress per working directory.
"""

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from .contracts import AgentResult
from .task import TrackerTask

# === Engine State ===


class EngineStatus(str, Enum):
    """Lifecycle status of the execution engine."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSING = "pausing"
    PAUSED = "paused"
    STOPPING = "stopping"


class IterationStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


@dataclass(frozen=True)
class IterationResult:
    """Outcome of one attempt to run the agent against one task."""

    iteration: int
    status: IterationStatus
    task: TrackerTask
    task_completed: bool
    promise_complete: bool
    duration_ms: int
    started_at: str
    ended_at: str
    agent_result: AgentResult | None = None
    error: str | None = None


@dataclass
class EngineState:
    """Mutable engine record; owned by a single ExecutionEngine."""

    status: EngineStatus = EngineStatus.IDLE
    current_iteration: int = 0
    current_task: TrackerTask | None = None
    total_tasks: int = 0
    tasks_completed: int = 0
    iterations: list[IterationResult] = field(default_factory=list)
    started_at: str | None = None
    current_output: str = ""
    current_stderr: str = ""


# === Session persistence ===


@dataclass
class SessionInfo:
    """Persisted progress of a loop run in one working directory."""

    cwd: str
    status: str
    current_iteration: int
    tasks_completed: int
    total_tasks: int
    started_at: str | None
    updated_at: str | None


class SessionStore:
    """Session progress backed by SQLite."""

    def __init__(self, state_file: Path):
        self.state_file = state_file
        self._conn: sqlite3.Connection | None = None
        self._init_db()

    def _init_db(self) -> None:
        """Initialize SQLite database with WAL mode."""
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.state_file))
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS sessions (
                cwd TEXT PRIMARY KEY,
                status TEXT NOT NULL DEFAULT 'running',
                current_iteration INTEGER NOT NULL DEFAULT 0,
                tasks_completed INTEGER NOT NULL DEFAULT 0,
                total_tasks INTEGER NOT NULL DEFAULT 0,
                started_at TEXT,
                updated_at TEXT
            )
        """)
        self._conn.commit()

    def start_session(self, cwd: Path, total_tasks: int) -> None:
        """Create (or reset) the session row for a working directory."""
        now = datetime.now().isoformat()
        with self._conn:
            self._conn.execute(
                "INSERT INTO sessions "
                "(cwd, status, current_iteration, tasks_completed, total_tasks, "
                "started_at, updated_at) "
                "VALUES (?, 'running', 0, 0, ?, ?, ?) "
                "ON CONFLICT(cwd) DO UPDATE SET "
                "status = excluded.status, "
                "current_iteration = 0, "
                "tasks_completed = 0, "
                "total_tasks = excluded.total_tasks, "
                "started_at = excluded.started_at, "
                "updated_at = excluded.updated_at",
                (str(cwd), total_tasks, now, now),
            )

    def update_session_iteration(self, cwd: Path, iteration: int, tasks_completed: int) -> None:
        now = datetime.now().isoformat()
        with self._conn:
            self._conn.execute(
                "INSERT INTO sessions (cwd, current_iteration, tasks_completed, updated_at) "
                "VALUES (?, ?, ?, ?) "
                "ON CONFLICT(cwd) DO UPDATE SET "
                "current_iteration = excluded.current_iteration, "
                "tasks_completed = excluded.tasks_completed, "
                "updated_at = excluded.updated_at",
                (str(cwd), iteration, tasks_completed, now),
            )

    def update_session_status(self, cwd: Path, status: str) -> None:
        now = datetime.now().isoformat()
        with self._conn:
            self._conn.execute(
                "INSERT INTO sessions (cwd, status, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(cwd) DO UPDATE SET "
                "status = excluded.status, "
                "updated_at = excluded.updated_at",
                (str(cwd), status, now),
            )

    def get_session(self, cwd: Path) -> SessionInfo | None:
        row = self._conn.execute(
            "SELECT cwd, status, current_iteration, tasks_completed, total_tasks, "
            "started_at, updated_at FROM sessions WHERE cwd = ?",
            (str(cwd),),
        ).fetchone()
        if row is None:
            return None
        return SessionInfo(*row)

    def close(self) -> None:
        """Close the SQLite connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False  # Don't suppress exceptions
