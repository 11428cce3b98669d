"""Tests for ralph_loop.cli: argument parsing and headless commands."""

import sys

import yaml

from ralph_loop.cli import build_parser, main
from ralph_loop.config import RunLock
from ralph_loop.state import SessionStore

TASKS = """
tasks:
  - id: T-1
    title: First task
  - id: T-2
    title: Second task
    depends_on: [T-1]
"""


def _write_project(tmp_path, tasks: str = TASKS):
    (tmp_path / "tasks.yaml").write_text(tasks)
    config_dir = tmp_path / ".ralph-loop"
    config_dir.mkdir()
    # `python -c <prompt>`: prompts are not valid Python, so print a marker instead
    (config_dir / "config.yaml").write_text(
        "loop:\n"
        "  iteration_delay_seconds: 0\n"
        "  agent:\n"
        f"    command: {sys.executable}\n"
        "    command_template: \"{cmd} -c \\\"print('<promise>COMPLETE</promise>')\\\" {flags}\"\n"
    )


class TestParser:
    def test_run_options(self):
        argv = [
            "run",
            "--iterations", "3",
            "--on-error", "retry",
            "--max-retries", "2",
            "--model", "opus",
            "--epic", "E-1",
            "--delay", "0.5",
            "--force",
        ]
        args = build_parser().parse_args(argv)
        assert args.command == "run"
        assert args.iterations == 3
        assert args.on_error == "retry"
        assert args.max_retries == 2
        assert args.model == "opus"
        assert args.epic == "E-1"
        assert args.delay == 0.5
        assert args.force is True

    def test_common_options_after_subcommand(self):
        args = build_parser().parse_args(["status", "--cwd", "/tmp/x", "--log-level", "debug"])
        assert args.cwd == "/tmp/x"
        assert args.log_level == "debug"

    def test_logs_task_id(self):
        args = build_parser().parse_args(["logs", "T-1"])
        assert args.task_id == "T-1"

    def test_no_command_prints_help(self, capsys):
        assert main([]) == 0
        assert "ralph-loop" in capsys.readouterr().out


class TestCommands:
    def test_validate_ok(self, tmp_path, capsys):
        _write_project(tmp_path)
        assert main(["validate", "--cwd", str(tmp_path)]) == 0
        assert "0 errors" in capsys.readouterr().out

    def test_validate_reports_errors(self, tmp_path, capsys):
        _write_project(tmp_path, "tasks:\n  - {id: A, title: a, depends_on: [Z]}\n")
        assert main(["validate", "--cwd", str(tmp_path)]) == 1
        assert "dependency 'Z'" in capsys.readouterr().out

    def test_status_without_session(self, tmp_path, capsys):
        _write_project(tmp_path)
        assert main(["status", "--cwd", str(tmp_path)]) == 0
        out = capsys.readouterr().out
        assert "No session recorded" in out
        assert "Tasks:      2 (open: 2)" in out

    def test_run_completes_backlog(self, tmp_path, capsys):
        _write_project(tmp_path)

        assert main(["run", "--cwd", str(tmp_path), "--quiet"]) == 0

        tasks = yaml.safe_load((tmp_path / "tasks.yaml").read_text())["tasks"]
        assert [t["status"] for t in tasks] == ["closed", "closed"]

        with SessionStore(tmp_path / ".ralph-loop" / "session.db") as store:
            info = store.get_session(tmp_path.resolve())
        assert info.status == "completed"
        assert info.current_iteration == 2
        assert info.tasks_completed == 2

        logs_dir = tmp_path / ".ralph-loop" / "output" / "iterations"
        assert sorted(p.name for p in logs_dir.iterdir()) == [
            "iteration-001-T-1.log",
            "iteration-002-T-2.log",
        ]

        assert main(["logs", "T-2", "--cwd", str(tmp_path)]) == 0
        assert "=== STDOUT ===" in capsys.readouterr().out

    def test_run_with_missing_agent_fails(self, tmp_path):
        _write_project(tmp_path)
        assert main(["run", "--cwd", str(tmp_path), "--agent", "no-such-agent-binary"]) == 1

    def test_run_refuses_when_locked(self, tmp_path):
        _write_project(tmp_path)
        lock = RunLock(tmp_path / ".ralph-loop" / "session.lock")
        assert lock.acquire()
        try:
            assert main(["run", "--cwd", str(tmp_path)]) == 1
        finally:
            lock.release()
