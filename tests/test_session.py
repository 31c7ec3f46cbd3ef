from __future__ import annotations

import logging
import os
import stat
from pathlib import Path

import allure
import pytest

from loopwork.context import OrchestrationContext
from loopwork.errors import CorruptStateError, SessionLockedError
from loopwork.session import JsonPluginStateStore, SessionStateManager

pytestmark = [
    allure.epic("Loop Runtime"),
    allure.feature("Session Lock & Resume State"),
]

_OTHER_PID = 700_500


def _manager(context: OrchestrationContext, *, alive: bool) -> SessionStateManager:
    return SessionStateManager(context, is_alive=lambda _: alive)


def _plant_lock(manager: SessionStateManager, pid: str) -> None:
    manager.lock_path.mkdir(parents=True)
    (manager.lock_path / "pid").write_text(pid, "utf-8")


def test_acquire_and_release_lock(context: OrchestrationContext) -> None:
    manager = SessionStateManager(context)

    assert manager.acquire_lock() is True
    assert manager.lock_path.name == "state-test.lock"
    assert manager.lock_holder() == os.getpid()
    assert manager.is_locked()

    manager.release_lock()
    manager.release_lock()
    assert not manager.is_locked()


def test_second_acquire_from_same_process_is_refused(context: OrchestrationContext) -> None:
    manager = SessionStateManager(context)
    assert manager.acquire_lock()

    assert manager.acquire_lock() is False
    assert manager.lock_holder() == os.getpid()


def test_lock_held_by_live_process_is_respected(context: OrchestrationContext) -> None:
    manager = _manager(context, alive=True)
    _plant_lock(manager, str(_OTHER_PID))

    assert manager.acquire_lock() is False
    assert manager.lock_holder() == _OTHER_PID


def test_stale_lock_from_dead_process_is_reclaimed(context: OrchestrationContext) -> None:
    manager = _manager(context, alive=False)
    _plant_lock(manager, str(_OTHER_PID))

    assert manager.acquire_lock() is True
    assert manager.lock_holder() == os.getpid()


def test_fresh_lock_without_pid_is_not_stolen(context: OrchestrationContext) -> None:
    manager = _manager(context, alive=False)
    manager.lock_path.mkdir(parents=True)

    assert manager.acquire_lock() is False
    assert manager.is_locked()


def test_old_lock_without_pid_is_reclaimed(context: OrchestrationContext) -> None:
    manager = SessionStateManager(context, lock_grace_seconds=10.0, is_alive=lambda _: False)
    _plant_lock(manager, "not-a-pid")
    old = manager.lock_path.stat().st_mtime - 60
    os.utime(manager.lock_path, (old, old))

    assert manager.acquire_lock() is True


def test_acquire_gives_up_after_max_attempts(context: OrchestrationContext) -> None:
    manager = SessionStateManager(context, max_lock_attempts=0)

    assert manager.acquire_lock() is False
    assert not manager.is_locked()


def test_namespaces_lock_independently(tmp_path: Path) -> None:
    first = SessionStateManager(OrchestrationContext(project_root=tmp_path, namespace="a"))
    second = SessionStateManager(OrchestrationContext(project_root=tmp_path, namespace="b"))

    assert first.acquire_lock()
    assert second.acquire_lock()


def test_hold_lock_raises_when_locked(context: OrchestrationContext) -> None:
    holder = _manager(context, alive=True)
    _plant_lock(holder, str(_OTHER_PID))

    with pytest.raises(SessionLockedError) as excinfo, holder.hold_lock():
        pass

    assert excinfo.value.holder_pid == _OTHER_PID
    assert "Use a different namespace" in str(excinfo.value)


def test_hold_lock_releases_on_exit(context: OrchestrationContext) -> None:
    manager = SessionStateManager(context)

    with manager.hold_lock():
        assert manager.is_locked()

    assert not manager.is_locked()


def test_save_and_load_state(tmp_path: Path) -> None:
    context = OrchestrationContext(
        project_root=tmp_path,
        namespace="feature-x",
        logger=logging.getLogger("loopwork.test"),
        output_dir=tmp_path / "runs",
        session_id="abc123",
    )
    manager = SessionStateManager(context)

    manager.save_state("TASK-002", 7)
    snapshot = manager.load_state()

    assert snapshot is not None
    assert snapshot.namespace == "feature-x"
    assert snapshot.task_ref == "TASK-002"
    assert snapshot.iteration == 7
    assert snapshot.output_dir == str(tmp_path / "runs")
    assert snapshot.session_id == "abc123"
    assert snapshot.saved_at is not None
    assert stat.S_IMODE(manager.state_path.stat().st_mode) == 0o600


def test_load_state_accepts_legacy_issue_key(context: OrchestrationContext) -> None:
    manager = SessionStateManager(context)
    context.ensure_state_dir()
    manager.state_path.write_text("LAST_ISSUE=42\nLAST_ITERATION=3\n", "utf-8")

    snapshot = manager.load_state()

    assert snapshot is not None
    assert snapshot.task_ref == "42"
    assert snapshot.iteration == 3
    assert snapshot.saved_at is None


@pytest.mark.parametrize(
    "content",
    [
        "",
        "TASK_REF=TASK-001\n",
        "LAST_ITERATION=2\n",
        "TASK_REF=TASK-001\nLAST_ITERATION=two\n",
    ],
)
def test_load_state_returns_none_for_incomplete_snapshot(
    context: OrchestrationContext,
    content: str,
) -> None:
    manager = SessionStateManager(context)
    context.ensure_state_dir()
    manager.state_path.write_text(content, "utf-8")

    assert manager.load_state() is None


@pytest.mark.parametrize(
    "task_ref",
    ["", "TASK-1\nLAST_ITERATION=99", " TASK-1", "TASK\r1", "TASK\x001"],
)
def test_save_state_rejects_references_that_break_the_format(
    context: OrchestrationContext,
    task_ref: str,
) -> None:
    manager = SessionStateManager(context)
    manager.save_state("TASK-001", 1)

    with pytest.raises(ValueError, match="cannot be stored"):
        manager.save_state(task_ref, 2)

    snapshot = manager.load_state()
    assert snapshot is not None
    assert snapshot.task_ref == "TASK-001"
    assert snapshot.iteration == 1


def test_save_state_keeps_equals_signs_in_reference(context: OrchestrationContext) -> None:
    manager = SessionStateManager(context)

    manager.save_state("=owner/repo#12", 3)

    assert manager.load_state().task_ref == "=owner/repo#12"


def test_clear_state_is_idempotent(context: OrchestrationContext) -> None:
    manager = SessionStateManager(context)
    manager.save_state("TASK-001", 1)

    manager.clear_state()
    manager.clear_state()

    assert manager.load_state() is None


def test_plugin_state_round_trip(context: OrchestrationContext) -> None:
    manager = SessionStateManager(context)

    manager.set_plugin_state("cost", {"tokens": 12})
    manager.set_plugin_state("alpha", [1, 2])

    assert manager.get_plugin_state("cost") == {"tokens": 12}
    plugin_path = context.namespaced("plugin-state", ".json")
    assert stat.S_IMODE(plugin_path.stat().st_mode) == 0o600
    assert manager.has_plugin_state("alpha")
    assert manager.list_plugins() == ["alpha", "cost"]
    assert manager.delete_plugin_state("cost") is True
    assert manager.delete_plugin_state("cost") is False
    assert manager.get_plugin_state("cost") is None


def test_plugin_state_is_namespaced(tmp_path: Path) -> None:
    first = JsonPluginStateStore(OrchestrationContext(project_root=tmp_path, namespace="a"))
    second = JsonPluginStateStore(OrchestrationContext(project_root=tmp_path, namespace="b"))

    first.set_plugin_state("p", 1)

    assert second.get_plugin_state("p") is None
    assert first.path.name == "plugin-state-a.json"


def test_corrupt_plugin_state_reads_empty_but_refuses_writes(
    context: OrchestrationContext,
) -> None:
    store = JsonPluginStateStore(context)
    context.ensure_state_dir()
    store.path.write_text("[1, 2", "utf-8")

    assert store.get_plugin_state("p") is None
    assert store.list_plugins() == []
    with pytest.raises(CorruptStateError):
        store.set_plugin_state("p", 1)
    assert store.path.read_text("utf-8") == "[1, 2"


def test_unserializable_plugin_state_is_rejected(context: OrchestrationContext) -> None:
    store = JsonPluginStateStore(context)

    with pytest.raises(ValueError, match="not JSON-serializable"):
        store.set_plugin_state("p", object())
