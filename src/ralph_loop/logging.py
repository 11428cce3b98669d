"""Structured logging for ralph-loop.

Configures structlog with context processors, output formatters,
and sensitive data redaction. Agent output can echo environment
secrets, so every string value is scrubbed before rendering.
"""

import logging
import re
import sys
from pathlib import Path
from uuid import uuid4

import structlog

# Regex for sensitive patterns
_SENSITIVE_RE = re.compile(r"(sk-|key-|token-)[a-zA-Z0-9]{6,}", re.IGNORECASE)

# Agent stdout and stderr can land in error fields; keep log lines readable
MAX_VALUE_CHARS = 2000


def redact_sensitive(logger: object, method_name: str, event_dict: dict) -> dict:
    """Structlog processor that redacts sensitive data."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = _SENSITIVE_RE.sub(lambda m: m.group(1) + "***", value)
    return event_dict


def truncate_long_values(logger: object, method_name: str, event_dict: dict) -> dict:
    """Structlog processor that clips oversized string values."""
    for key, value in event_dict.items():
        if key != "event" and isinstance(value, str) and len(value) > MAX_VALUE_CHARS:
            clipped = len(value) - MAX_VALUE_CHARS
            event_dict[key] = f"{value[:MAX_VALUE_CHARS]}... [{clipped} chars truncated]"
    return event_dict


def bind_run(run_id: str | None = None) -> str:
    """Bind a run id to every log record emitted by this context.

    Returns:
        The bound run id.
    """
    run_id = run_id or uuid4().hex[:8]
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(run_id=run_id)
    return run_id


def setup_logging(
    level: str = "info",
    json_output: bool = False,
    log_file: Path | None = None,
) -> None:
    """Configure structlog for the entire application.

    Args:
        level: Log level (debug, info, warning, error).
        json_output: If True, output JSON lines.
        log_file: Optional file that receives log records in addition to stderr.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_sensitive,
        truncate_long_values,
    ]

    logging.basicConfig(
        format="%(message)s",
        level=log_level,
        stream=sys.stderr,
        force=True,
    )

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(str(log_file))
        handler.setLevel(log_level)
        logging.getLogger().addHandler(handler)

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )
    for handler in logging.getLogger().handlers:
        handler.setFormatter(formatter)


def get_logger(module: str) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger bound to a module name.

    Args:
        module: Module name (e.g., "engine", "runner").

    Returns:
        Bound structlog logger.
    """
    return structlog.get_logger(module=module)
