"""Task store contract and backends."""

from __future__ import annotations

from loopwork.config import Settings
from loopwork.tasks.base import (
    CorruptTaskFileError,
    RemoteTaskError,
    TaskNotFoundError,
    TaskStore,
    TaskStoreError,
    TaskStoreLockError,
)
from loopwork.tasks.fallback_store import FallbackTaskStore
from loopwork.tasks.github_store import GitHubTaskStore
from loopwork.tasks.graph import find_dependency_cycle, would_create_cycle
from loopwork.tasks.json_store import JsonTaskStore
from loopwork.tasks.models import (
    PingResult,
    Priority,
    Task,
    TaskDefinition,
    TaskEvent,
    TaskFilters,
    TaskStatus,
    UpdateResult,
)


def build_task_store(settings: Settings) -> TaskStore:
    """Construct the backend selected by ``settings.tasks.backend``."""

    tasks = settings.tasks
    if tasks.backend == "github":
        remote = GitHubTaskStore(
            repo=tasks.github_repo,
            max_retries=tasks.github_max_retries,
            retry_base_seconds=tasks.github_retry_base_seconds,
        )
        if tasks.github_fallback_to_json:
            return FallbackTaskStore(remote, _json_store(settings))
        return remote
    return _json_store(settings)


def _json_store(settings: Settings) -> JsonTaskStore:
    tasks = settings.tasks
    tasks_dir = tasks.tasks_dir
    if tasks_dir is not None and not tasks_dir.is_absolute():
        tasks_dir = settings.project_root / tasks_dir
    return JsonTaskStore(
        settings.resolved_tasks_file,
        tasks_dir=tasks_dir,
        lock_timeout_seconds=tasks.lock_timeout_seconds,
        lock_stale_seconds=tasks.lock_stale_seconds,
        lock_retry_delay_seconds=tasks.lock_retry_delay_seconds,
    )


__all__ = [
    "CorruptTaskFileError",
    "FallbackTaskStore",
    "GitHubTaskStore",
    "JsonTaskStore",
    "PingResult",
    "Priority",
    "RemoteTaskError",
    "Task",
    "TaskDefinition",
    "TaskEvent",
    "TaskFilters",
    "TaskNotFoundError",
    "TaskStatus",
    "TaskStore",
    "TaskStoreError",
    "TaskStoreLockError",
    "UpdateResult",
    "build_task_store",
    "find_dependency_cycle",
    "would_create_cycle",
]
