"""
ralph-loop: run a coding agent over a task backlog, one task per iteration.

Usage as library:
    from ralph_loop import ExecutionEngine, LoopConfig, SubprocessAgent, YamlTracker

    engine = ExecutionEngine(config, SubprocessAgent(), YamlTracker(config.tracker_file))
    engine.on(print)
    await engine.initialize()
    await engine.start()

Usage as CLI:
    ralph-loop run             # Run the loop over tasks.yaml
    ralph-loop status          # Session progress
    ralph-loop logs [TASK]     # Latest iteration log
    ralph-loop validate        # Check config and tracker file
"""

from importlib.metadata import PackageNotFoundError, version

from .config import (
    ErrorHandlingConfig,
    LoopConfig,
    RunLock,
    build_config,
    load_config_from_yaml,
)
from .contracts import (
    AgentAdapter,
    AgentDetectResult,
    AgentExecuteOptions,
    AgentExecutionHandle,
    AgentResult,
    AgentStatus,
    PromptResult,
    TrackerAdapter,
)
from .engine import (
    EngineError,
    EngineInitError,
    EngineNotInitializedError,
    EngineStateError,
    ExecutionEngine,
)
from .events import (
    AgentOutput,
    AllComplete,
    EngineEvent,
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
from .logging import get_logger, setup_logging
from .logs import IterationLogWriter
from .prompt import TemplatePromptRenderer, build_prompt, render_template
from .reporter import HeadlessReporter
from .runner import SubprocessAgent, build_cli_command
from .state import (
    EngineState,
    EngineStatus,
    IterationResult,
    IterationStatus,
    SessionInfo,
    SessionStore,
)
from .task import TaskStatus, TrackerTask
from .tracker import TrackerError, YamlTracker
from .validate import ValidationResult, format_results, validate_all

try:
    __version__ = version("ralph-loop")
except PackageNotFoundError:
    __version__ = "0.0.0.dev"  # Fallback for development without install
__all__ = [
    # Engine
    "ExecutionEngine",
    "EngineError",
    "EngineInitError",
    "EngineNotInitializedError",
    "EngineStateError",
    "EngineState",
    "EngineStatus",
    "IterationResult",
    "IterationStatus",
    # Events
    "EventBus",
    "EngineEvent",
    "EngineStarted",
    "EnginePaused",
    "EngineResumed",
    "EngineStopped",
    "AllComplete",
    "IterationStarted",
    "IterationCompleted",
    "IterationFailed",
    "IterationRetrying",
    "IterationSkipped",
    "TaskSelected",
    "TaskCompleted",
    "AgentOutput",
    # Contracts
    "AgentAdapter",
    "AgentDetectResult",
    "AgentExecuteOptions",
    "AgentExecutionHandle",
    "AgentResult",
    "AgentStatus",
    "PromptResult",
    "TrackerAdapter",
    # Adapters
    "SubprocessAgent",
    "build_cli_command",
    "YamlTracker",
    "TrackerError",
    "TrackerTask",
    "TaskStatus",
    "TemplatePromptRenderer",
    "build_prompt",
    "render_template",
    "SessionStore",
    "SessionInfo",
    "IterationLogWriter",
    "HeadlessReporter",
    # Config
    "LoopConfig",
    "ErrorHandlingConfig",
    "RunLock",
    "build_config",
    "load_config_from_yaml",
    # Validation
    "ValidationResult",
    "format_results",
    "validate_all",
    # Logging
    "get_logger",
    "setup_logging",
]
