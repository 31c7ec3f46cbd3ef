"""Task store contract and its error types."""

from __future__ import annotations

from typing import Protocol

from loopwork.errors import LoopworkError
from loopwork.tasks.models import (
    PingResult,
    Priority,
    Task,
    TaskDefinition,
    TaskFilters,
    UpdateResult,
)

TASKS_FILE_NOT_FOUND = "Tasks file not found"


class TaskStoreError(LoopworkError):
    """Base task store error."""


class CorruptTaskFileError(TaskStoreError):
    """Tasks file exists but cannot be parsed; mutations are refused."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(
            f"Cannot read or parse tasks file: {path} ({reason})",
            (
                "Check that the file contains valid JSON",
                "Verify file permissions allow reading",
                'Review the file format: {"tasks": [...], "features": {...}}',
            ),
        )
        self.path = path


class TaskStoreLockError(TaskStoreError):
    """Advisory tasks-file lock could not be acquired in time."""

    def __init__(self, lock_path: str, timeout: float) -> None:
        super().__init__(
            f"Failed to acquire file lock {lock_path} within {timeout:g}s",
            (
                "Another process may be accessing the tasks file",
                f"Check if a stale lock exists: {lock_path}",
                "Manually remove the lock file if safe",
            ),
        )
        self.lock_path = lock_path


class TaskNotFoundError(TaskStoreError):
    """Referenced task does not exist where no result type can carry that."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class RemoteTaskError(TaskStoreError):
    """Remote backend call failed after retries."""

    def __init__(self, message: str, *, transient: bool, reason_code: str = "unknown") -> None:
        super().__init__(message)
        self.transient = transient
        self.reason_code = reason_code


class TaskStore(Protocol):
    """Dependency-aware backlog used by the loop runner."""

    name: str

    def find_next_task(self, filters: TaskFilters | None = None) -> Task | None:
        """Return the highest-priority runnable task or None."""

    def list_pending_tasks(self, filters: TaskFilters | None = None) -> list[Task]:
        """Return pending tasks in scheduling order."""

    def count_pending(self, filters: TaskFilters | None = None) -> int:
        """Return the number of pending tasks matching filters."""

    def get_task(self, task_id: str) -> Task | None:
        """Return one task with its description, or None."""

    def get_sub_tasks(self, parent_id: str) -> list[Task]:
        """Return tasks whose parent is ``parent_id``."""

    def get_dependencies(self, task_id: str) -> list[Task]:
        """Return existing tasks that ``task_id`` depends on."""

    def get_dependents(self, task_id: str) -> list[Task]:
        """Return tasks that depend on ``task_id``."""

    def are_dependencies_met(self, task_id: str) -> bool:
        """Return True when every dependency is completed."""

    def mark_in_progress(self, task_id: str) -> UpdateResult:
        """Move the task to in-progress."""

    def mark_completed(self, task_id: str, comment: str | None = None) -> UpdateResult:
        """Move the task to completed."""

    def mark_failed(self, task_id: str, reason: str) -> UpdateResult:
        """Move the task to failed and record the reason."""

    def mark_quarantined(self, task_id: str, reason: str) -> UpdateResult:
        """Move the task to quarantined and record the reason."""

    def reset_to_pending(self, task_id: str) -> UpdateResult:
        """Move the task back to pending."""

    def create_task(self, definition: TaskDefinition) -> Task:
        """Create a top-level task with a generated id."""

    def create_sub_task(self, parent_id: str, definition: TaskDefinition) -> Task:
        """Create a sub-task of ``parent_id``."""

    def add_dependency(self, task_id: str, depends_on_id: str) -> UpdateResult:
        """Make ``task_id`` depend on ``depends_on_id``."""

    def remove_dependency(self, task_id: str, depends_on_id: str) -> UpdateResult:
        """Drop a dependency edge."""

    def set_priority(self, task_id: str, priority: Priority) -> UpdateResult:
        """Change task priority."""

    def add_comment(self, task_id: str, comment: str) -> UpdateResult:
        """Attach a free-form note to the task."""

    def ping(self) -> PingResult:
        """Probe backend health."""
