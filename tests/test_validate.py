"""Tests for ralph_loop.validate module."""

from ralph_loop.config import ErrorHandlingConfig, LoopConfig
from ralph_loop.task import TrackerTask
from ralph_loop.validate import (
    ValidationResult,
    _detect_cycle,
    _levenshtein,
    _suggest_key,
    format_results,
    validate_all,
    validate_config_file,
    validate_loop_config,
    validate_task_fields,
    validate_tracker_file,
)


def _task(task_id: str, **kwargs) -> TrackerTask:
    kwargs.setdefault("title", f"Task {task_id}")
    return TrackerTask(id=task_id, **kwargs)


class TestValidationResult:
    def test_ok_without_errors(self):
        result = ValidationResult(warnings=["meh"])
        assert result.ok is True

    def test_merge(self):
        a = ValidationResult(errors=["e1"])
        a.merge(ValidationResult(errors=["e2"], warnings=["w1"]))
        assert a.errors == ["e1", "e2"]
        assert a.warnings == ["w1"]
        assert a.ok is False


class TestValidateTaskFields:
    def test_valid_tasks(self):
        result = validate_task_fields([_task("A"), _task("B", depends_on=["A"])])
        assert result.errors == []
        assert result.warnings == []

    def test_duplicate_id(self):
        result = validate_task_fields([_task("A"), _task("A")])
        assert any("duplicate" in e for e in result.errors)

    def test_invalid_status(self):
        result = validate_task_fields([_task("A", status="wip")])
        assert any("invalid status 'wip'" in e for e in result.errors)

    def test_unknown_dependency(self):
        result = validate_task_fields([_task("A", depends_on=["Z"])])
        assert result.errors == ["A: dependency 'Z' not found in task list"]

    def test_missing_title_warns(self):
        result = validate_task_fields([_task("A", title="")])
        assert result.ok
        assert result.warnings == ["A: missing title"]

    def test_unknown_parent_warns(self):
        result = validate_task_fields([_task("A", parent_id="EPIC-9")])
        assert result.warnings == ["A: parent 'EPIC-9' not in task list"]


class TestDetectCycle:
    def test_no_cycle(self):
        result = _detect_cycle([_task("A"), _task("B", depends_on=["A"])])
        assert result.errors == []

    def test_two_node_cycle(self):
        result = _detect_cycle([_task("A", depends_on=["B"]), _task("B", depends_on=["A"])])
        assert result.errors == ["Dependency cycle detected: A -> B -> A"]

    def test_self_dependency(self):
        result = _detect_cycle([_task("A", depends_on=["A"])])
        assert len(result.errors) == 1

    def test_dangling_refs_ignored(self):
        result = _detect_cycle([_task("A", depends_on=["MISSING"])])
        assert result.errors == []


class TestKeySuggestions:
    def test_levenshtein(self):
        assert _levenshtein("kitten", "sitting") == 3
        assert _levenshtein("", "abc") == 3
        assert _levenshtein("same", "same") == 0

    def test_suggest_close_key(self):
        assert _suggest_key("max_iteration", {"max_iterations", "log_level"}) == "max_iterations"

    def test_no_suggestion_for_distant_key(self):
        assert _suggest_key("zzzzzz", {"max_iterations"}) is None


class TestValidateConfigFile:
    def test_missing_file_ok(self, tmp_path):
        assert validate_config_file(tmp_path / "config.yaml").ok

    def test_known_keys_ok(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            "loop:\n"
            "  max_iterations: 3\n"
            "  agent:\n"
            "    command: claude\n"
            "  error_handling:\n"
            "    strategy: retry\n"
        )
        assert validate_config_file(path).errors == []

    def test_unknown_key_with_suggestion(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("loop:\n  max_iteratons: 3\n  agent:\n    modle: opus\n")
        errors = validate_config_file(path).errors
        assert "Unknown config key 'loop.max_iteratons'; did you mean 'max_iterations'?" in errors
        assert "Unknown config key 'loop.agent.modle'; did you mean 'model'?" in errors

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("loop: [unclosed")
        errors = validate_config_file(path).errors
        assert len(errors) == 1
        assert errors[0].startswith("Failed to parse YAML")


class TestValidateLoopConfig:
    def test_defaults_valid(self, tmp_path):
        result = validate_loop_config(LoopConfig(cwd=tmp_path))
        assert result.ok

    def test_bad_strategy(self, tmp_path):
        config = LoopConfig(cwd=tmp_path, error_handling=ErrorHandlingConfig(strategy="ignore"))
        assert any("strategy 'ignore'" in e for e in validate_loop_config(config).errors)

    def test_negative_values(self, tmp_path):
        config = LoopConfig(
            cwd=tmp_path,
            max_iterations=-1,
            iteration_delay_seconds=-1,
            agent_timeout_minutes=-5,
            error_handling=ErrorHandlingConfig(max_retries=-1, retry_delay_seconds=-1),
        )
        assert len(validate_loop_config(config).errors) == 5

    def test_missing_template_warns(self, tmp_path):
        config = LoopConfig(cwd=tmp_path, prompt_template="missing.md")
        result = validate_loop_config(config)
        assert result.ok
        assert any("missing.md" in w for w in result.warnings)

    def test_unlimited_iterations_warns(self, tmp_path):
        result = validate_loop_config(LoopConfig(cwd=tmp_path, max_iterations=0))
        assert any("max_iterations is 0" in w for w in result.warnings)


class TestValidateTrackerFile:
    def test_missing_file(self, tmp_path):
        result = validate_tracker_file(tmp_path / "tasks.yaml")
        assert any("does not exist" in e for e in result.errors)

    def test_empty_task_list(self, tmp_path):
        path = tmp_path / "tasks.yaml"
        path.write_text("tasks: []\n")
        assert validate_tracker_file(path).errors == [f"No tasks found in {path}"]

    def test_reports_cycles_and_refs(self, tmp_path):
        path = tmp_path / "tasks.yaml"
        path.write_text(
            "tasks:\n"
            "  - {id: A, title: a, depends_on: [B]}\n"
            "  - {id: B, title: b, depends_on: [A]}\n"
            "  - {id: C, title: c, depends_on: [Z]}\n"
        )
        errors = validate_tracker_file(path).errors
        assert "C: dependency 'Z' not found in task list" in errors
        assert "Dependency cycle detected: A -> B -> A" in errors

    def test_validate_all(self, tmp_path):
        (tmp_path / "tasks.yaml").write_text("tasks:\n  - {id: A, title: a}\n")
        config_file = tmp_path / "config.yaml"
        config_file.write_text("loop:\n  max_iterations: 2\n")

        result = validate_all(LoopConfig(cwd=tmp_path), config_file=config_file)
        assert result.ok


class TestFormatResults:
    def test_counts(self):
        out = format_results(ValidationResult(errors=["bad"], warnings=["w1", "w2"]))
        assert "  x bad" in out
        assert "  ! w1" in out
        assert out.endswith("1 error, 2 warnings")

    def test_clean(self):
        assert format_results(ValidationResult()).strip() == "0 errors, 0 warnings"
