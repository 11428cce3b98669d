"""Per-iteration log files.

Each iteration writes ``iteration-NNN-<task>.log`` under
``<output_dir>/iterations`` with a short header followed by the raw
agent stdout and stderr.
"""

import re
from pathlib import Path

from .config import LoopConfig
from .state import IterationResult

ITERATIONS_SUBDIR = "iterations"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def iteration_log_name(iteration: int, task_id: str) -> str:
    return f"iteration-{iteration:03d}-{_UNSAFE_CHARS.sub('_', task_id)}.log"


class IterationLogWriter:
    """Writes iteration logs under a fixed output directory."""

    def __init__(self, output_dir: Path):
        self.output_dir = output_dir

    def _iterations_dir(self, cwd: Path) -> Path:
        base = self.output_dir if self.output_dir.is_absolute() else cwd / self.output_dir
        return base / ITERATIONS_SUBDIR

    def save_iteration_log(
        self,
        cwd: Path,
        result: IterationResult,
        stdout: str,
        stderr: str,
        config: LoopConfig,
    ) -> Path:
        log_dir = self._iterations_dir(cwd)
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / iteration_log_name(result.iteration, result.task.id)

        agent = result.agent_result
        header = [
            f"Iteration: {result.iteration}",
            f"Task: {result.task.id} - {result.task.title}",
            f"Status: {result.status.value}",
            f"Task completed: {result.task_completed}",
            f"Completion signal: {result.promise_complete}",
            f"Started: {result.started_at}",
            f"Ended: {result.ended_at}",
            f"Duration: {result.duration_ms / 1000:.1f}s",
            f"Agent: {config.agent_command}",
        ]
        if config.agent_model:
            header.append(f"Model: {config.agent_model}")
        if agent is not None and agent.exit_code is not None:
            header.append(f"Exit code: {agent.exit_code}")
        if result.error:
            header.append(f"Error: {result.error}")

        with open(log_file, "w") as f:
            f.write("=== ITERATION ===\n")
            f.write("\n".join(header))
            f.write(f"\n\n=== STDOUT ===\n{stdout}\n\n")
            f.write(f"=== STDERR ===\n{stderr}\n")
        return log_file

    def list_logs(self, cwd: Path, task_id: str | None = None) -> list[Path]:
        """Return iteration logs sorted by iteration number."""
        log_dir = self._iterations_dir(cwd)
        if not log_dir.exists():
            return []
        pattern = "iteration-*.log"
        if task_id:
            pattern = f"iteration-*-{_UNSAFE_CHARS.sub('_', task_id)}.log"
        return sorted(log_dir.glob(pattern))
