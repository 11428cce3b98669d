"""Tests for ralph_loop.tracker: YAML task file adapter."""

import asyncio
from pathlib import Path

import pytest
import yaml

from ralph_loop.tracker import TrackerError, YamlTracker, load_tasks_file

TASKS_YAML = """
project: demo
tasks:
  - id: EPIC-1
    title: Auth epic
    status: blocked
  - id: T-1
    title: Set up project
    status: closed
    parent_id: EPIC-1
  - id: T-2
    title: Add login page
    description: Email and password form
    parent_id: EPIC-1
    depends_on: [T-1]
    labels: [frontend]
    priority: 1
  - id: T-3
    title: Add logout
    status: in_progress
    depends_on: [T-2]
  - id: T-4
    title: Orphan
    depends_on: [MISSING]
"""


def _write(tmp_path: Path, content: str = TASKS_YAML) -> Path:
    path = tmp_path / "tasks.yaml"
    path.write_text(content)
    return path


def _synced(path: Path, epic_id: str = "") -> YamlTracker:
    tracker = YamlTracker(path, epic_id=epic_id)
    asyncio.run(tracker.sync())
    return tracker


class TestLoadTasksFile:
    def test_missing_file(self, tmp_path):
        with pytest.raises(TrackerError, match="does not exist"):
            load_tasks_file(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        with pytest.raises(TrackerError, match="Failed to parse"):
            load_tasks_file(_write(tmp_path, "tasks: [unclosed"))

    def test_requires_task_list(self, tmp_path):
        with pytest.raises(TrackerError, match="'tasks' list"):
            load_tasks_file(_write(tmp_path, "tasks: nope\n"))

    def test_requires_ids(self, tmp_path):
        with pytest.raises(TrackerError, match="needs an 'id'"):
            load_tasks_file(_write(tmp_path, "tasks:\n  - title: no id\n"))

    def test_returns_document(self, tmp_path):
        data = load_tasks_file(_write(tmp_path))
        assert data["project"] == "demo"
        assert len(data["tasks"]) == 5


class TestQueries:
    def test_get_tasks_in_file_order(self, tmp_path):
        tracker = _synced(_write(tmp_path))
        tasks = asyncio.run(tracker.get_tasks())
        assert [t.id for t in tasks] == ["EPIC-1", "T-1", "T-2", "T-3", "T-4"]

    def test_get_tasks_status_filter(self, tmp_path):
        tracker = _synced(_write(tmp_path))
        tasks = asyncio.run(tracker.get_tasks(status=["open", "in_progress"]))
        assert [t.id for t in tasks] == ["T-2", "T-3", "T-4"]

    def test_get_task_fields(self, tmp_path):
        tracker = _synced(_write(tmp_path))
        task = asyncio.run(tracker.get_task("T-2"))
        assert task.title == "Add login page"
        assert task.status == "open"
        assert task.description == "Email and password form"
        assert task.parent_id == "EPIC-1"
        assert task.depends_on == ["T-1"]
        assert task.labels == ["frontend"]
        assert task.priority == 1

    def test_get_task_unknown(self, tmp_path):
        tracker = _synced(_write(tmp_path))
        assert asyncio.run(tracker.get_task("NOPE")) is None

    def test_ready_when_dependencies_finished(self, tmp_path):
        tracker = _synced(_write(tmp_path))
        assert asyncio.run(tracker.is_task_ready("T-2")) is True

    def test_not_ready_with_open_dependency(self, tmp_path):
        tracker = _synced(_write(tmp_path))
        assert asyncio.run(tracker.is_task_ready("T-3")) is False

    def test_unknown_dependency_not_ready(self, tmp_path):
        tracker = _synced(_write(tmp_path))
        assert asyncio.run(tracker.is_task_ready("T-4")) is False

    def test_finished_or_blocked_task_not_ready(self, tmp_path):
        tracker = _synced(_write(tmp_path))
        assert asyncio.run(tracker.is_task_ready("T-1")) is False
        assert asyncio.run(tracker.is_task_ready("EPIC-1")) is False

    def test_done_counts_as_finished(self, tmp_path):
        content = (
            "tasks:\n"
            "  - {id: A, title: a, status: done}\n"
            "  - {id: B, title: b, depends_on: [A]}\n"
        )
        tracker = _synced(_write(tmp_path, content))
        assert asyncio.run(tracker.is_task_ready("B")) is True

    def test_is_complete(self, tmp_path):
        tracker = _synced(_write(tmp_path))
        assert asyncio.run(tracker.is_complete()) is False

        content = (
            "tasks:\n"
            "  - {id: A, title: a, status: done}\n"
            "  - {id: B, title: b, status: closed}\n"
        )
        tracker = _synced(_write(tmp_path, content))
        assert asyncio.run(tracker.is_complete()) is True

    def test_sync_missing_file_raises(self, tmp_path):
        tracker = YamlTracker(tmp_path / "missing.yaml")
        with pytest.raises(TrackerError):
            asyncio.run(tracker.sync())


class TestEpicScope:
    def test_only_children_in_scope(self, tmp_path):
        tracker = _synced(_write(tmp_path), epic_id="EPIC-1")
        tasks = asyncio.run(tracker.get_tasks())
        assert [t.id for t in tasks] == ["T-1", "T-2"]

    def test_epic_task_still_fetchable(self, tmp_path):
        tracker = _synced(_write(tmp_path), epic_id="EPIC-1")
        assert asyncio.run(tracker.get_task("EPIC-1")).title == "Auth epic"

    def test_is_complete_considers_scope_only(self, tmp_path):
        path = _write(tmp_path)
        tracker = _synced(path, epic_id="EPIC-1")
        asyncio.run(tracker.complete_task("T-2", "done"))
        assert asyncio.run(tracker.is_complete()) is True


class TestWrites:
    def test_update_status_persists(self, tmp_path):
        path = _write(tmp_path)
        tracker = _synced(path)
        asyncio.run(tracker.update_task_status("T-2", "in_progress"))

        reloaded = _synced(path)
        assert asyncio.run(reloaded.get_task("T-2")).status == "in_progress"

    def test_complete_task_records_reason(self, tmp_path):
        path = _write(tmp_path)
        tracker = _synced(path)
        asyncio.run(tracker.complete_task("T-2", "Completed by agent"))

        entry = next(e for e in yaml.safe_load(path.read_text())["tasks"] if e["id"] == "T-2")
        assert entry["status"] == "closed"
        assert entry["close_reason"] == "Completed by agent"
        assert "closed_at" in entry

    def test_write_keeps_other_keys(self, tmp_path):
        path = _write(tmp_path)
        tracker = _synced(path)
        asyncio.run(tracker.update_task_status("T-2", "in_progress"))

        data = yaml.safe_load(path.read_text())
        assert data["project"] == "demo"
        assert [e["id"] for e in data["tasks"]] == ["EPIC-1", "T-1", "T-2", "T-3", "T-4"]
        assert not path.with_suffix(".yaml.tmp").exists()

    def test_completion_unblocks_dependents(self, tmp_path):
        tracker = _synced(_write(tmp_path))
        asyncio.run(tracker.complete_task("T-2", "done"))
        assert asyncio.run(tracker.is_task_ready("T-3")) is True

    def test_unknown_task_raises(self, tmp_path):
        tracker = _synced(_write(tmp_path))
        with pytest.raises(TrackerError, match="Unknown task"):
            asyncio.run(tracker.update_task_status("NOPE", "closed"))
