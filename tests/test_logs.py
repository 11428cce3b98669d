"""Tests for ralph_loop.logs: per-iteration log files."""

from ralph_loop.config import LoopConfig
from ralph_loop.contracts import AgentResult, AgentStatus
from ralph_loop.logs import ITERATIONS_SUBDIR, IterationLogWriter, iteration_log_name
from ralph_loop.state import IterationResult, IterationStatus
from ralph_loop.task import TrackerTask


def _make_result(iteration: int = 1, task_id: str = "T-1", **overrides) -> IterationResult:
    defaults = {
        "iteration": iteration,
        "status": IterationStatus.COMPLETED,
        "task": TrackerTask(id=task_id, title="Add login page"),
        "task_completed": True,
        "promise_complete": True,
        "duration_ms": 1500,
        "started_at": "2026-01-01T10:00:00",
        "ended_at": "2026-01-01T10:00:01.5",
        "agent_result": AgentResult(
            status=AgentStatus.COMPLETED, stdout="", stderr="", duration_ms=1500, exit_code=0
        ),
    }
    defaults.update(overrides)
    return IterationResult(**defaults)


class TestIterationLogName:
    def test_zero_padded(self):
        assert iteration_log_name(7, "T-1") == "iteration-007-T-1.log"

    def test_unsafe_characters_replaced(self):
        assert iteration_log_name(12, "team/bug 42") == "iteration-012-team_bug_42.log"


class TestIterationLogWriter:
    def test_writes_header_and_streams(self, tmp_path):
        config = LoopConfig(cwd=tmp_path, agent_model="opus")
        writer = IterationLogWriter(config.output_dir)

        path = writer.save_iteration_log(
            tmp_path, _make_result(), "agent said hi", "a warning", config
        )

        assert path == config.output_dir / ITERATIONS_SUBDIR / "iteration-001-T-1.log"
        content = path.read_text()
        assert content.startswith("=== ITERATION ===\n")
        assert "Task: T-1 - Add login page" in content
        assert "Status: completed" in content
        assert "Duration: 1.5s" in content
        assert "Agent: claude" in content
        assert "Model: opus" in content
        assert "Exit code: 0" in content
        assert "=== STDOUT ===\nagent said hi" in content
        assert "=== STDERR ===\na warning" in content

    def test_error_in_header(self, tmp_path):
        config = LoopConfig(cwd=tmp_path)
        writer = IterationLogWriter(config.output_dir)
        result = _make_result(
            status=IterationStatus.FAILED,
            task_completed=False,
            agent_result=None,
            error="write failed",
        )

        content = writer.save_iteration_log(tmp_path, result, "", "", config).read_text()

        assert "Status: failed" in content
        assert "Error: write failed" in content
        assert "Exit code" not in content

    def test_relative_output_dir_under_cwd(self, tmp_path):
        config = LoopConfig(cwd=tmp_path)
        writer = IterationLogWriter(config.output_dir.relative_to(config.cwd))

        path = writer.save_iteration_log(tmp_path, _make_result(), "", "", config)
        assert path.is_relative_to(tmp_path)

    def test_list_logs_sorted_and_filtered(self, tmp_path):
        config = LoopConfig(cwd=tmp_path)
        writer = IterationLogWriter(config.output_dir)
        for iteration, task_id in [(2, "T-2"), (1, "T-1"), (3, "T-1")]:
            writer.save_iteration_log(
                tmp_path, _make_result(iteration, task_id), "", "", config
            )

        names = [p.name for p in writer.list_logs(tmp_path)]
        assert names == [
            "iteration-001-T-1.log",
            "iteration-002-T-2.log",
            "iteration-003-T-1.log",
        ]
        only_t1 = [p.name for p in writer.list_logs(tmp_path, "T-1")]
        assert only_t1 == ["iteration-001-T-1.log", "iteration-003-T-1.log"]

    def test_list_logs_without_directory(self, tmp_path):
        writer = IterationLogWriter(tmp_path / "nothing-here")
        assert writer.list_logs(tmp_path) == []
