from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

import allure
import pytest

from loopwork.tasks import (
    CorruptTaskFileError,
    JsonTaskStore,
    Priority,
    TaskDefinition,
    TaskFilters,
    TaskNotFoundError,
    TaskStatus,
    TaskStoreLockError,
)

pytestmark = [
    allure.epic("Task Backlog"),
    allure.feature("JSON Task Store"),
]


def _write_tasks(tasks_dir: Path, tasks: list[dict[str, Any]], **extra: Any) -> Path:
    tasks_dir.mkdir(parents=True, exist_ok=True)
    path = tasks_dir / "tasks.json"
    path.write_text(json.dumps({"tasks": tasks, **extra}, indent=2), "utf-8")
    return path


def _entries(path: Path) -> dict[str, dict[str, Any]]:
    payload = json.loads(path.read_text("utf-8"))
    return {entry["id"]: entry for entry in payload["tasks"]}


def _store(tasks_file: Path, **kwargs: Any) -> JsonTaskStore:
    return JsonTaskStore(tasks_file, **kwargs)


@pytest.fixture()
def backlog(tmp_path: Path) -> Path:
    tasks_dir = tmp_path / ".specs" / "tasks"
    path = _write_tasks(
        tasks_dir,
        [
            {"id": "TASK-001", "status": "completed", "priority": "high"},
            {"id": "TASK-002", "status": "pending", "priority": "low"},
            {"id": "TASK-003", "status": "pending", "priority": "high", "feature": "auth"},
            {
                "id": "TASK-004",
                "status": "pending",
                "priority": "high",
                "dependsOn": ["TASK-002"],
            },
            {"id": "TASK-005", "status": "pending"},
            {"id": "TASK-003a", "status": "pending", "parentId": "TASK-003"},
        ],
        features={"auth": {"name": "Authentication"}},
    )
    (tasks_dir / "TASK-003.md").write_text("# Login form\n\nBuild the login form.\n", "utf-8")
    return path


def test_pending_tasks_are_ordered_by_priority_then_file_order(backlog: Path) -> None:
    store = _store(backlog)

    ids = [task.id for task in store.list_pending_tasks()]

    assert ids == ["TASK-003", "TASK-005", "TASK-003a", "TASK-002"]
    assert store.count_pending() == 4


def test_blocked_tasks_are_listed_only_on_request(backlog: Path) -> None:
    store = _store(backlog)

    ids = [task.id for task in store.list_pending_tasks(TaskFilters(include_blocked=True))]

    assert ids == ["TASK-003", "TASK-004", "TASK-005", "TASK-003a", "TASK-002"]
    assert store.are_dependencies_met("TASK-004") is False
    assert store.are_dependencies_met("TASK-003") is True
    assert store.are_dependencies_met("NOPE-1") is True


def test_filters_narrow_the_backlog(backlog: Path) -> None:
    store = _store(backlog)

    assert [t.id for t in store.list_pending_tasks(TaskFilters(feature="auth"))] == ["TASK-003"]
    assert [t.id for t in store.list_pending_tasks(TaskFilters(priority=Priority.LOW))] == [
        "TASK-002",
    ]
    assert [t.id for t in store.list_pending_tasks(TaskFilters(parent_id="TASK-003"))] == [
        "TASK-003a",
    ]
    top_level = store.list_pending_tasks(TaskFilters(top_level_only=True))
    assert "TASK-003a" not in [task.id for task in top_level]


def test_find_next_task_prefers_start_from_when_pending(backlog: Path) -> None:
    store = _store(backlog)

    assert store.find_next_task().id == "TASK-003"
    assert store.find_next_task(TaskFilters(start_from="TASK-002")).id == "TASK-002"
    assert store.find_next_task(TaskFilters(start_from="TASK-001")).id == "TASK-003"


def test_task_title_and_metadata_come_from_markdown(backlog: Path) -> None:
    store = _store(backlog)

    task = store.get_task("TASK-003")
    assert task is not None
    assert task.title == "Login form"
    assert "Build the login form." in task.description
    assert task.metadata["feature_name"] == "Authentication"
    assert task.metadata["prd_file"].endswith("TASK-003.md")

    missing = store.get_task("TASK-002")
    assert missing is not None
    assert missing.title == "TASK-002"
    assert missing.metadata["prd_warning"].startswith("PRD file not found")


def test_relationship_queries(backlog: Path) -> None:
    store = _store(backlog)

    assert [task.id for task in store.get_sub_tasks("TASK-003")] == ["TASK-003a"]
    assert [task.id for task in store.get_dependencies("TASK-004")] == ["TASK-002"]
    assert [task.id for task in store.get_dependents("TASK-002")] == ["TASK-004"]
    assert store.get_task("TASK-404") is None
    assert store.get_task("TASK-003a").is_sub_task


def test_status_transitions_record_events_and_log(backlog: Path) -> None:
    store = _store(backlog)

    assert store.mark_in_progress("TASK-002").success
    assert store.mark_failed("TASK-002", "tests failed").success

    entry = _entries(backlog)["TASK-002"]
    assert entry["status"] == "failed"
    assert [(event["from"], event["to"]) for event in entry["events"]] == [
        ("pending", "in-progress"),
        ("in-progress", "failed"),
    ]
    assert entry["events"][-1]["reason"] == "tests failed"
    log = (backlog.parent / "TASK-002.log").read_text("utf-8")
    assert "FAILED: tests failed" in log

    task = store.get_task("TASK-002")
    assert task.status == TaskStatus.FAILED
    assert task.events[-1].status_to == TaskStatus.FAILED


def test_completing_a_dependency_unblocks_dependents(backlog: Path) -> None:
    store = _store(backlog)

    store.mark_completed("TASK-002", "done")

    assert store.are_dependencies_met("TASK-004") is True
    assert store.find_next_task().id == "TASK-003"
    assert "TASK-004" in [task.id for task in store.list_pending_tasks()]


def test_quarantine_and_reset(backlog: Path) -> None:
    store = _store(backlog)

    store.mark_quarantined("TASK-005", "flaky")
    assert _entries(backlog)["TASK-005"]["status"] == "quarantined"
    assert "TASK-005" not in [task.id for task in store.list_pending_tasks()]

    store.reset_to_pending("TASK-005")
    assert _entries(backlog)["TASK-005"]["status"] == "pending"


def test_mutations_report_missing_task_and_missing_file(backlog: Path, tmp_path: Path) -> None:
    result = _store(backlog).mark_completed("TASK-404")
    assert not result.success
    assert result.error == "Task TASK-404 not found"

    missing = _store(tmp_path / "nowhere" / "tasks.json")
    assert missing.mark_in_progress("TASK-001").error == "Tasks file not found"
    assert missing.list_pending_tasks() == []
    assert missing.find_next_task() is None
    assert missing.ping().ok is False


def test_corrupt_file_reads_empty_and_mutations_raise(tmp_path: Path) -> None:
    path = tmp_path / "tasks.json"
    path.write_text('{"tasks": [', "utf-8")
    store = _store(path)

    assert store.list_pending_tasks() == []
    with pytest.raises(CorruptTaskFileError):
        store.mark_in_progress("TASK-001")
    assert path.read_text("utf-8") == '{"tasks": ['
    assert not store.lock_path.exists()


def test_unknown_status_is_treated_as_corruption(tmp_path: Path) -> None:
    path = _write_tasks(tmp_path, [{"id": "TASK-001", "status": "paused"}])

    with pytest.raises(CorruptTaskFileError, match="paused"):
        _store(path).mark_completed("TASK-001")


@pytest.mark.parametrize(
    ("entry", "problem"),
    [
        ({"id": "TASK-001", "events": [{"at": "x"}]}, "event is missing"),
        ({"id": "TASK-001", "events": [{"from": "bogus", "to": "pending"}]}, "bogus"),
        ({"id": "TASK-001", "events": "done"}, '"events" must be a list'),
        ({"id": "TASK-001", "events": ["done"]}, "items must be objects"),
        ({"id": "TASK-001", "metadata": "oops"}, '"metadata" must be an object'),
        ({"id": "TASK-001", "dependsOn": "TASK-000"}, '"dependsOn" must be a list'),
        ({"id": "TASK-001", "dependsOn": [7]}, '"dependsOn" must be a list'),
        ({"id": "TASK-001", "parentId": 3}, '"parentId" must be a string'),
        ({"id": "TASK-001", "priority": ["high"]}, "tasks\\[0\\]"),
        ({"id": "TASK-\n001"}, "control characters"),
        ({"id": ""}, "non-empty string"),
        ("TASK-001", "entry must be an object"),
    ],
)
def test_malformed_entries_degrade_reads_and_refuse_mutations(
    tmp_path: Path,
    entry: Any,
    problem: str,
) -> None:
    path = _write_tasks(tmp_path, [entry])
    store = _store(path)

    assert store.list_pending_tasks() == []
    assert store.find_next_task() is None
    assert store.get_task("TASK-001") is None
    assert store.count_pending() == 0
    with pytest.raises(CorruptTaskFileError, match=problem):
        store.mark_in_progress("TASK-001")


def test_non_object_features_map_is_corruption(tmp_path: Path) -> None:
    path = _write_tasks(tmp_path, [{"id": "TASK-001"}], features=["auth"])

    assert _store(path).get_task("TASK-001") is None
    with pytest.raises(CorruptTaskFileError, match='"features" must be an object'):
        _store(path).mark_completed("TASK-001")


def test_lock_is_released_after_each_mutation(backlog: Path) -> None:
    store = _store(backlog)

    store.mark_in_progress("TASK-002")

    assert not store.lock_path.exists()


def test_lock_held_by_live_process_times_out(backlog: Path) -> None:
    now = [0.0]

    def _sleep(seconds: float) -> None:
        now[0] += seconds

    store = _store(
        backlog,
        lock_timeout_seconds=1.0,
        is_alive=lambda _: True,
        clock=lambda: now[0],
        sleep=_sleep,
    )
    store.lock_path.write_text("700900", "utf-8")

    with pytest.raises(TaskStoreLockError):
        store.mark_in_progress("TASK-002")
    assert store.lock_path.read_text("utf-8") == "700900"


def test_lock_from_dead_process_is_removed(backlog: Path) -> None:
    store = _store(backlog, is_alive=lambda _: False)
    store.lock_path.write_text("700901", "utf-8")

    assert store.mark_in_progress("TASK-002").success
    assert not store.lock_path.exists()


def test_old_lock_is_removed_even_if_owner_looks_alive(backlog: Path) -> None:
    store = _store(backlog, lock_stale_seconds=30.0, is_alive=lambda _: True)
    store.lock_path.write_text("700902", "utf-8")
    old = store.lock_path.stat().st_mtime - 120
    os.utime(store.lock_path, (old, old))

    assert store.mark_in_progress("TASK-002").success


def test_create_task_allocates_ids_and_writes_markdown(backlog: Path) -> None:
    store = _store(backlog)

    task = store.create_task(
        TaskDefinition(title="Write docs", description="Cover the CLI.", priority=Priority.LOW),
    )
    feature_task = store.create_task(TaskDefinition(title="OAuth", feature="auth"))

    assert task.id == "TASK-006"
    assert task.title == "Write docs"
    assert task.priority == Priority.LOW
    assert feature_task.id == "AUTH-001"
    md = (backlog.parent / "TASK-006.md").read_text("utf-8")
    assert md == "# Write docs\n\nCover the CLI."
    assert _entries(backlog)["AUTH-001"]["feature"] == "auth"


def test_create_task_bootstraps_missing_file(tmp_path: Path) -> None:
    path = tmp_path / ".specs" / "tasks" / "tasks.json"
    store = _store(path)

    task = store.create_task(TaskDefinition(title="First"))

    assert task.id == "TASK-001"
    assert json.loads(path.read_text("utf-8"))["features"] == {}


def test_create_sub_task_uses_next_free_letter(backlog: Path) -> None:
    store = _store(backlog)

    first = store.create_sub_task("TASK-003", TaskDefinition(title="Validation"))
    second = store.create_sub_task("TASK-005", TaskDefinition(title="Part"))

    assert first.id == "TASK-003b"
    assert first.parent_id == "TASK-003"
    assert second.id == "TASK-005a"
    with pytest.raises(TaskNotFoundError, match="TASK-404"):
        store.create_sub_task("TASK-404", TaskDefinition(title="Orphan"))


def test_add_dependency_validates_target_and_cycles(backlog: Path) -> None:
    store = _store(backlog)

    assert store.add_dependency("TASK-005", "TASK-003").success
    assert store.add_dependency("TASK-005", "TASK-003").success
    assert _entries(backlog)["TASK-005"]["dependsOn"] == ["TASK-003"]

    missing = store.add_dependency("TASK-005", "TASK-404")
    assert missing.error == "Dependency TASK-404 not found"

    cycle = store.add_dependency("TASK-002", "TASK-004")
    assert not cycle.success
    assert "would create a cycle" in cycle.error

    self_edge = store.add_dependency("TASK-002", "TASK-002")
    assert not self_edge.success


def test_remove_dependency_drops_empty_list(backlog: Path) -> None:
    store = _store(backlog)

    assert store.remove_dependency("TASK-004", "TASK-002").success

    assert "dependsOn" not in _entries(backlog)["TASK-004"]
    assert store.are_dependencies_met("TASK-004")


def test_set_priority_and_add_comment(backlog: Path) -> None:
    store = _store(backlog)

    assert store.set_priority("TASK-002", Priority.HIGH).success
    assert store.find_next_task().id == "TASK-002"
    assert _entries(backlog)["TASK-002"]["priority"] == "high"

    assert store.add_comment("TASK-002", "needs review").success
    assert "needs review" in (backlog.parent / "TASK-002.log").read_text("utf-8")
    assert not store.add_comment("TASK-404", "x").success


def test_ping_reports_healthy_file(backlog: Path) -> None:
    result = _store(backlog).ping()

    assert result.ok is True
    assert result.error is None
    assert result.latency_ms >= 0


def test_dependency_edges_expose_graph(backlog: Path) -> None:
    edges = _store(backlog).dependency_edges()

    assert edges["TASK-004"] == ["TASK-002"]
    assert edges["TASK-001"] == []
