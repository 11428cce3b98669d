"""Configuration module for ralph-loop.

Contains the LoopConfig dataclass, file-based run locking, config loading
from YAML, and config building from CLI arguments.
"""

import argparse
import contextlib
import fcntl
import os
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TextIO

import yaml

from .logging import get_logger

logger = get_logger("config")

# === Run Lock ===


class RunLock:
    """File lock to prevent two loops running in the same working directory."""

    def __init__(self, lock_path: Path):
        self.lock_path = lock_path
        self.lock_file: TextIO | None = None

    def acquire(self) -> bool:
        """Try to acquire lock. Returns True if successful."""
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_file = open(self.lock_path, "w")  # noqa: SIM115
        try:
            fcntl.flock(self.lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
            self.lock_file.write(f"PID: {os.getpid()}\nStarted: {datetime.now().isoformat()}\n")
            self.lock_file.flush()
            return True
        except BlockingIOError:
            self.lock_file.close()
            self.lock_file = None
            return False

    def release(self):
        """Release the lock."""
        if self.lock_file:
            fcntl.flock(self.lock_file, fcntl.LOCK_UN)
            self.lock_file.close()
            self.lock_file = None
            with contextlib.suppress(FileNotFoundError):
                self.lock_path.unlink()


# === Constants ===

CONFIG_FILE = Path(".ralph-loop/config.yaml")

ERROR_STRATEGIES = ("retry", "skip", "abort")

# Error patterns that turn a clean agent exit into a failure
ERROR_PATTERNS = [
    "you've hit your limit",
    "rate limit exceeded",
    "context window",
    "quota exceeded",
    "too many requests",
    "anthropic.RateLimitError",
]


# === Config dataclasses ===


@dataclass
class ErrorHandlingConfig:
    """How the engine reacts to a failed iteration."""

    strategy: str = "skip"  # retry | skip | abort
    max_retries: int = 3  # Retries per task before it is skipped
    retry_delay_seconds: float = 5.0  # Pause before re-running a failed task


@dataclass
class LoopConfig:
    """Loop configuration"""

    # Agent CLI
    agent_command: str = "claude"
    agent_model: str = ""  # Model (empty = agent default)
    # Command template for custom CLIs. Placeholders: {cmd}, {prompt}, {flags}
    # Examples:
    #   claude: "{cmd} -p {prompt} {flags}"
    #   aider: "{cmd} --yes --message {prompt} {flags}"
    # If empty, auto-detects based on command name
    command_template: str = ""
    skip_permissions: bool = True
    agent_timeout_minutes: int = 30  # 0 = no timeout

    # Tracker
    tracker_file: Path = Path("tasks.yaml")
    epic_id: str = ""  # Restrict the run to children of this task

    # Loop
    max_iterations: int = 10  # 0 = unlimited
    iteration_delay_seconds: float = 1.0
    error_handling: ErrorHandlingConfig = field(default_factory=ErrorHandlingConfig)

    # Paths
    cwd: Path = Path(".")
    output_dir: Path = Path(".ralph-loop/output")
    state_file: Path = Path(".ralph-loop/session.db")
    prompt_template: Path | None = None  # Custom prompt template file

    log_level: str = "info"

    def __post_init__(self):
        """Resolve cwd and anchor relative paths under it."""
        self.cwd = Path(self.cwd).resolve()
        if isinstance(self.error_handling, dict):
            self.error_handling = ErrorHandlingConfig(**self.error_handling)

        self.tracker_file = self._anchor(self.tracker_file)
        self.output_dir = self._anchor(self.output_dir)
        self.state_file = self._anchor(self.state_file)
        if self.prompt_template is not None:
            self.prompt_template = self._anchor(self.prompt_template)

    def _anchor(self, path: Path | str) -> Path:
        path = Path(path)
        return path if path.is_absolute() else self.cwd / path

    @property
    def lock_file(self) -> Path:
        return self.state_file.with_suffix(".lock")

    @property
    def agent_timeout_seconds(self) -> float | None:
        if self.agent_timeout_minutes <= 0:
            return None
        return self.agent_timeout_minutes * 60.0


# === Config Loading ===


def load_config_from_yaml(config_path: Path = CONFIG_FILE) -> dict:
    """Load configuration from YAML file.

    Args:
        config_path: Path to the configuration file.

    Returns:
        Dictionary with configuration values (None for keys not set).
    """
    if not config_path.exists():
        return {}

    try:
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}

        loop_config = data.get("loop", {}) or {}
        agent = loop_config.get("agent", {}) or {}
        tracker = loop_config.get("tracker", {}) or {}
        errors = loop_config.get("error_handling", {}) or {}
        paths = loop_config.get("paths", {}) or {}

        return {
            "agent_command": agent.get("command"),
            "agent_model": agent.get("model"),
            "command_template": agent.get("command_template"),
            "skip_permissions": agent.get("skip_permissions"),
            "agent_timeout_minutes": agent.get("timeout_minutes"),
            "tracker_file": Path(tracker["file"]) if tracker.get("file") else None,
            "epic_id": tracker.get("epic_id"),
            "max_iterations": loop_config.get("max_iterations"),
            "iteration_delay_seconds": loop_config.get("iteration_delay_seconds"),
            "strategy": errors.get("strategy"),
            "max_retries": errors.get("max_retries"),
            "retry_delay_seconds": errors.get("retry_delay_seconds"),
            "output_dir": Path(paths["output"]) if paths.get("output") else None,
            "state_file": Path(paths["state"]) if paths.get("state") else None,
            "prompt_template": Path(paths["prompt_template"])
            if paths.get("prompt_template")
            else None,
            "log_level": loop_config.get("log_level"),
        }
    except (OSError, yaml.YAMLError, AttributeError) as e:
        logger.warning("Failed to load config", path=str(config_path), error=str(e))
        return {}


_ERROR_HANDLING_KEYS = ("strategy", "max_retries", "retry_delay_seconds")


def build_config(yaml_config: dict, args: argparse.Namespace) -> LoopConfig:
    """Build LoopConfig from YAML and CLI arguments.

    CLI arguments override YAML config.

    Args:
        yaml_config: Configuration loaded from YAML file.
        args: Parsed CLI arguments.

    Returns:
        LoopConfig instance.
    """
    config_kwargs: dict = {}
    error_kwargs: dict = {}

    for key, value in yaml_config.items():
        if value is None:
            continue
        if key in _ERROR_HANDLING_KEYS:
            error_kwargs[key] = value
        else:
            config_kwargs[key] = value

    if getattr(args, "cwd", None):
        config_kwargs["cwd"] = Path(args.cwd)
    if getattr(args, "tracker_file", None):
        config_kwargs["tracker_file"] = Path(args.tracker_file)
    if getattr(args, "epic", None):
        config_kwargs["epic_id"] = args.epic
    if getattr(args, "agent", None):
        config_kwargs["agent_command"] = args.agent
    if getattr(args, "model", None):
        config_kwargs["agent_model"] = args.model
    if getattr(args, "iterations", None) is not None:
        config_kwargs["max_iterations"] = args.iterations
    if getattr(args, "delay", None) is not None:
        config_kwargs["iteration_delay_seconds"] = args.delay
    if getattr(args, "timeout", None) is not None:
        config_kwargs["agent_timeout_minutes"] = args.timeout
    if getattr(args, "log_level", None):
        config_kwargs["log_level"] = args.log_level
    if getattr(args, "on_error", None):
        error_kwargs["strategy"] = args.on_error
    if getattr(args, "max_retries", None) is not None:
        error_kwargs["max_retries"] = args.max_retries

    return LoopConfig(error_handling=ErrorHandlingConfig(**error_kwargs), **config_kwargs)
