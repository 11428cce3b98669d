"""CLI commands and argument parsing for ralph-loop."""

import argparse
import asyncio
import signal
import sys
from pathlib import Path

from .config import (
    CONFIG_FILE,
    ERROR_STRATEGIES,
    LoopConfig,
    RunLock,
    build_config,
    load_config_from_yaml,
)
from .engine import EngineInitError, ExecutionEngine
from .logging import bind_run, get_logger, setup_logging
from .logs import IterationLogWriter
from .prompt import TemplatePromptRenderer
from .reporter import HeadlessReporter
from .runner import SubprocessAgent
from .state import SessionStore
from .tracker import TrackerError, YamlTracker, load_tasks_file
from .validate import format_results, validate_all

logger = get_logger("cli")


# === Run ===


def _install_signal_handlers(engine: ExecutionEngine) -> list[signal.Signals]:
    """SIGINT/SIGTERM stop the engine; SIGUSR1 toggles pause."""
    loop = asyncio.get_running_loop()
    pending: set[asyncio.Task] = set()

    def request_stop() -> None:
        logger.info("Shutdown requested")
        task = loop.create_task(engine.stop())
        pending.add(task)
        task.add_done_callback(pending.discard)

    def toggle_pause() -> None:
        if engine.is_paused() or engine.is_pausing():
            engine.resume()
        else:
            engine.pause()

    installed = []
    for sig, handler in (
        (signal.SIGINT, request_stop),
        (signal.SIGTERM, request_stop),
        (signal.SIGUSR1, toggle_pause),
    ):
        try:
            loop.add_signal_handler(sig, handler)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler unavailable", signal=sig.name)
    return installed


async def run_loop(config: LoopConfig, echo_output: bool = True) -> int:
    """Wire the default adapters together and run the engine.

    Returns:
        Process exit code (0 unless initialization failed or the run aborted).
    """
    agent = SubprocessAgent(
        command=config.agent_command,
        template=config.command_template,
        skip_permissions=config.skip_permissions,
    )
    tracker = YamlTracker(config.tracker_file, epic_id=config.epic_id)

    with SessionStore(config.state_file) as session:
        engine = ExecutionEngine(
            config,
            agent,
            tracker,
            prompt_renderer=TemplatePromptRenderer(),
            session=session,
            log_sink=IterationLogWriter(config.output_dir),
        )
        reporter = HeadlessReporter(echo_output=echo_output)
        engine.on(reporter)

        try:
            await engine.initialize()
        except EngineInitError as e:
            logger.error("Initialization failed", error=str(e))
            return 1

        session.start_session(config.cwd, engine.get_state().total_tasks)
        installed = _install_signal_handlers(engine)
        try:
            await engine.start()
        finally:
            loop = asyncio.get_running_loop()
            for sig in installed:
                loop.remove_signal_handler(sig)

        if reporter.stop_reason != "interrupted" and reporter.final_status:
            session.update_session_status(config.cwd, reporter.final_status)

    return 1 if reporter.stop_reason == "error" else 0


def cmd_run(args: argparse.Namespace, config: LoopConfig) -> int:
    """Run the agent loop headless."""
    lock = RunLock(config.lock_file)
    if getattr(args, "force", False):
        logger.warning("Skipping lock check (--force)")
    elif not lock.acquire():
        logger.error("Another loop is already running here", lock_file=str(config.lock_file))
        return 1

    try:
        return asyncio.run(run_loop(config, echo_output=not getattr(args, "quiet", False)))
    finally:
        lock.release()


# === Inspection ===


def cmd_status(args: argparse.Namespace, config: LoopConfig) -> int:
    """Show session progress and tracker counts."""
    if config.state_file.exists():
        with SessionStore(config.state_file) as session:
            info = session.get_session(config.cwd)
    else:
        info = None

    if info is None:
        print("No session recorded for this directory.")
    else:
        print(f"Session:    {info.status}")
        print(f"Iteration:  {info.current_iteration}")
        print(f"Completed:  {info.tasks_completed}/{info.total_tasks}")
        print(f"Started:    {info.started_at}")
        print(f"Updated:    {info.updated_at}")

    try:
        entries = load_tasks_file(config.tracker_file)["tasks"]
    except TrackerError as e:
        logger.warning("Cannot read tracker", error=str(e))
        return 0

    counts: dict[str, int] = {}
    for entry in entries:
        status = str(entry.get("status", "open"))
        counts[status] = counts.get(status, 0) + 1
    summary = ", ".join(f"{k}: {v}" for k, v in sorted(counts.items()))
    print(f"Tasks:      {len(entries)} ({summary})")
    return 0


def cmd_logs(args: argparse.Namespace, config: LoopConfig) -> int:
    """Show the latest iteration log (optionally for one task)."""
    writer = IterationLogWriter(config.output_dir)
    log_files = writer.list_logs(config.cwd, getattr(args, "task_id", None))

    if not log_files:
        logger.info("No logs found", task_id=getattr(args, "task_id", None))
        return 0

    latest = log_files[-1]
    logger.info("Showing latest log", log_file=str(latest))
    print(latest.read_text()[:5000])
    return 0


def cmd_validate(args: argparse.Namespace, config: LoopConfig) -> int:
    """Validate config and tracker file."""
    result = validate_all(config, config_file=_config_path(args))
    print(format_results(result))
    return 0 if result.ok else 1


# === Entry point ===


def _config_path(args: argparse.Namespace) -> Path:
    if getattr(args, "config", None):
        return Path(args.config)
    return Path(getattr(args, "cwd", None) or ".") / CONFIG_FILE


def build_parser() -> argparse.ArgumentParser:
    # Shared options available to every subcommand
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--cwd", type=str, default="", help="Working directory (default: .)")
    common.add_argument("--config", type=str, default="", help="Config file path")
    common.add_argument("--tracker-file", type=str, default="", help="Tracker YAML file")
    common.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: info)",
    )
    common.add_argument("--log-json", action="store_true", help="Output logs as JSON lines")

    parser = argparse.ArgumentParser(
        prog="ralph-loop",
        description="ralph-loop - run a coding agent over a task backlog",
        parents=[common],
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    run_parser = subparsers.add_parser("run", parents=[common], help="Run the agent loop")
    run_parser.add_argument("--agent", help="Agent command (default: claude)")
    run_parser.add_argument("--model", help="Model passed to the agent")
    run_parser.add_argument("--epic", help="Only work on children of this task")
    run_parser.add_argument(
        "--iterations", type=int, default=None, help="Max iterations (0 = unlimited)"
    )
    run_parser.add_argument(
        "--delay", type=float, default=None, help="Seconds between iterations"
    )
    run_parser.add_argument(
        "--timeout", type=int, default=None, help="Agent timeout in minutes (0 = none)"
    )
    run_parser.add_argument(
        "--on-error", choices=list(ERROR_STRATEGIES), help="Failure strategy"
    )
    run_parser.add_argument(
        "--max-retries", type=int, default=None, help="Retries per task (retry strategy)"
    )
    run_parser.add_argument("--quiet", action="store_true", help="Do not echo agent output")
    run_parser.add_argument(
        "--force", action="store_true", help="Skip lock check (use when lock is stale)"
    )

    subparsers.add_parser("status", parents=[common], help="Show session status")

    logs_parser = subparsers.add_parser("logs", parents=[common], help="Show iteration logs")
    logs_parser.add_argument("task_id", nargs="?", help="Task ID")

    subparsers.add_parser("validate", parents=[common], help="Validate config and tasks")

    return parser


COMMANDS = {
    "run": cmd_run,
    "status": cmd_status,
    "logs": cmd_logs,
    "validate": cmd_validate,
}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    yaml_config = load_config_from_yaml(_config_path(args))
    config = build_config(yaml_config, args)

    setup_logging(level=config.log_level, json_output=getattr(args, "log_json", False))
    bind_run()

    return COMMANDS[args.command](args, config)


if __name__ == "__main__":
    sys.exit(main())
