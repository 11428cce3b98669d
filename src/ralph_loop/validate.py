"""Validation for the tracker file and loop config: field checks, dependency refs, cycles."""

from dataclasses import dataclass, field
from pathlib import Path

import yaml

from ralph_loop.config import ERROR_STRATEGIES, LoopConfig
from ralph_loop.logging import get_logger
from ralph_loop.task import TaskStatus, TrackerTask
from ralph_loop.tracker import TrackerError, load_tasks_file

log = get_logger("validate")

VALID_STATUSES = {s.value for s in TaskStatus}

# Known keys per section of the config YAML
KNOWN_LOOP_KEYS: set[str] = {
    "agent",
    "tracker",
    "error_handling",
    "paths",
    "max_iterations",
    "iteration_delay_seconds",
    "log_level",
}
KNOWN_SECTION_KEYS: dict[str, set[str]] = {
    "agent": {"command", "model", "command_template", "skip_permissions", "timeout_minutes"},
    "tracker": {"file", "epic_id"},
    "error_handling": {"strategy", "max_retries", "retry_delay_seconds"},
    "paths": {"output", "state", "prompt_template"},
}


@dataclass
class ValidationResult:
    """Collects errors and warnings from validation checks."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """True when no errors were found."""
        return len(self.errors) == 0

    def merge(self, other: "ValidationResult") -> None:
        """Merge another result into this one."""
        self.errors.extend(other.errors)
        self.warnings.extend(other.warnings)


def validate_task_fields(tasks: list[TrackerTask]) -> ValidationResult:
    """Check ids, statuses and dependency refs of every task.

    Args:
        tasks: Parsed task list.

    Returns:
        ValidationResult with errors and warnings found.
    """
    result = ValidationResult()
    seen: set[str] = set()
    task_ids = {t.id for t in tasks}

    for task in tasks:
        if task.id in seen:
            result.errors.append(f"{task.id}: duplicate task id")
        seen.add(task.id)

        if task.status not in VALID_STATUSES:
            result.errors.append(
                f"{task.id}: invalid status '{task.status}' "
                f"(expected one of {sorted(VALID_STATUSES)})"
            )

        for dep in task.depends_on:
            if dep not in task_ids:
                result.errors.append(f"{task.id}: dependency '{dep}' not found in task list")

        if not task.title:
            result.warnings.append(f"{task.id}: missing title")

        if task.parent_id and task.parent_id not in task_ids:
            result.warnings.append(f"{task.id}: parent '{task.parent_id}' not in task list")

    return result


def _detect_cycle(tasks: list[TrackerTask]) -> ValidationResult:
    """DFS cycle detection on the dependency graph.

    Args:
        tasks: Parsed task list.

    Returns:
        ValidationResult with an error per cycle found.
    """
    result = ValidationResult()

    adj: dict[str, list[str]] = {t.id: list(t.depends_on) for t in tasks}
    all_ids = set(adj.keys())

    WHITE, GRAY, BLACK = 0, 1, 2
    color: dict[str, int] = dict.fromkeys(all_ids, WHITE)

    def dfs(node: str, path: list[str]) -> None:
        color[node] = GRAY
        path.append(node)
        for neighbour in adj.get(node, []):
            if neighbour not in all_ids:
                continue  # dangling ref handled by validate_task_fields
            if color[neighbour] == GRAY:
                cycle_start = path.index(neighbour)
                cycle = path[cycle_start:] + [neighbour]
                result.errors.append(f"Dependency cycle detected: {' -> '.join(cycle)}")
                continue
            elif color[neighbour] == WHITE:
                dfs(neighbour, path)
        path.pop()
        color[node] = BLACK

    for tid in sorted(all_ids):
        if color[tid] == WHITE:
            dfs(tid, [])

    return result


def _levenshtein(s1: str, s2: str) -> int:
    """Compute the Levenshtein (edit) distance between two strings."""
    if len(s1) < len(s2):
        return _levenshtein(s2, s1)

    if not s2:
        return len(s1)

    prev_row = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1):
        curr_row = [i + 1]
        for j, c2 in enumerate(s2):
            cost = 0 if c1 == c2 else 1
            curr_row.append(min(curr_row[j] + 1, prev_row[j + 1] + 1, prev_row[j] + cost))
        prev_row = curr_row

    return prev_row[-1]


def _suggest_key(unknown: str, known: set[str]) -> str | None:
    """Suggest the closest known key if Levenshtein distance <= 2."""
    best: str | None = None
    best_dist = 3
    for k in sorted(known):
        d = _levenshtein(unknown, k)
        if d < best_dist:
            best = k
            best_dist = d
    return best


def _check_keys(section: dict, known: set[str], prefix: str, result: ValidationResult) -> None:
    for key in section:
        if key not in known:
            suggestion = _suggest_key(key, known)
            msg = f"Unknown config key '{prefix}.{key}'"
            if suggestion:
                msg += f"; did you mean '{suggestion}'?"
            result.errors.append(msg)


def validate_config_file(config_path: Path) -> ValidationResult:
    """Validate a loop config YAML file.

    A missing file is fine (defaults apply). Checks that the YAML parses
    and that keys under ``loop:`` and its sections are recognised.
    """
    result = ValidationResult()

    if not config_path.exists():
        return result

    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        result.errors.append(f"Failed to parse YAML in {config_path}: {exc}")
        return result

    if not isinstance(data, dict):
        return result

    loop_section = data.get("loop")
    if not isinstance(loop_section, dict):
        return result

    _check_keys(loop_section, KNOWN_LOOP_KEYS, "loop", result)
    for name, known in KNOWN_SECTION_KEYS.items():
        section = loop_section.get(name)
        if isinstance(section, dict):
            _check_keys(section, known, f"loop.{name}", result)

    return result


def validate_loop_config(config: LoopConfig) -> ValidationResult:
    """Check value ranges of a built LoopConfig."""
    result = ValidationResult()
    errors = config.error_handling

    if errors.strategy not in ERROR_STRATEGIES:
        result.errors.append(
            f"error_handling.strategy '{errors.strategy}' is not one of {list(ERROR_STRATEGIES)}"
        )
    if errors.max_retries < 0:
        result.errors.append("error_handling.max_retries must be >= 0")
    if errors.retry_delay_seconds < 0:
        result.errors.append("error_handling.retry_delay_seconds must be >= 0")
    if config.max_iterations < 0:
        result.errors.append("max_iterations must be >= 0 (0 = unlimited)")
    if config.iteration_delay_seconds < 0:
        result.errors.append("iteration_delay_seconds must be >= 0")
    if config.agent_timeout_minutes < 0:
        result.errors.append("agent timeout must be >= 0 (0 = none)")

    if config.prompt_template is not None and not config.prompt_template.exists():
        result.warnings.append(
            f"Prompt template {config.prompt_template} not found; built-in prompt will be used"
        )
    if config.max_iterations == 0:
        result.warnings.append("max_iterations is 0: the loop runs until the backlog is empty")

    return result


def validate_tracker_file(tracker_file: Path) -> ValidationResult:
    """Run all checks on a tracker file.

    Checks performed (in order):
    1. File exists and parses
    2. At least one task
    3. Task fields are valid (ids, status, dep refs)
    4. No dependency cycles
    """
    result = ValidationResult()

    try:
        data = load_tasks_file(tracker_file)
    except TrackerError as e:
        result.errors.append(str(e))
        return result

    tasks = [TrackerTask.from_dict(entry) for entry in data["tasks"]]
    if not tasks:
        result.errors.append(f"No tasks found in {tracker_file}")
        return result

    result.merge(validate_task_fields(tasks))
    result.merge(_detect_cycle(tasks))

    log.info(
        "validation_complete",
        file=str(tracker_file),
        errors=len(result.errors),
        warnings=len(result.warnings),
    )

    return result


def validate_all(
    config: LoopConfig,
    config_file: Path | None = None,
) -> ValidationResult:
    """Run config, config-file and tracker-file checks."""
    result = ValidationResult()
    if config_file:
        result.merge(validate_config_file(config_file))
    result.merge(validate_loop_config(config))
    result.merge(validate_tracker_file(config.tracker_file))
    return result


def format_results(result: ValidationResult) -> str:
    """Format validation results for terminal output."""
    lines: list[str] = []
    if result.errors:
        for e in result.errors:
            lines.append(f"  x {e}")
    if result.warnings:
        if lines:
            lines.append("")
        for w in result.warnings:
            lines.append(f"  ! {w}")
    n_err = len(result.errors)
    n_warn = len(result.warnings)
    err_word = "error" if n_err == 1 else "errors"
    warn_word = "warning" if n_warn == 1 else "warnings"
    lines.append(f"\n{n_err} {err_word}, {n_warn} {warn_word}")
    return "\n".join(lines)
