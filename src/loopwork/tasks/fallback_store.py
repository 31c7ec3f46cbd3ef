"""Read failover from a remote task store to a local one."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TypeVar

from loopwork.tasks.base import RemoteTaskError, TaskStore
from loopwork.tasks.models import (
    PingResult,
    Priority,
    Task,
    TaskDefinition,
    TaskFilters,
    UpdateResult,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class FallbackTaskStore:
    """Serve reads from ``fallback`` while ``primary`` has a transient outage.

    Only transient remote failures (network, timeout, rate limit, 5xx) switch
    a read over; permanent ones such as bad credentials still raise. Writes
    always go to the primary so the two stores never diverge silently.
    """

    def __init__(
        self,
        primary: TaskStore,
        fallback: TaskStore,
        *,
        log: logging.Logger | None = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self._log = log or logger

    @property
    def name(self) -> str:
        return f"{self.primary.name}+{self.fallback.name}"

    # Reads

    def find_next_task(self, filters: TaskFilters | None = None) -> Task | None:
        return self._read("find_next_task", lambda store: store.find_next_task(filters))

    def list_pending_tasks(self, filters: TaskFilters | None = None) -> list[Task]:
        return self._read("list_pending_tasks", lambda store: store.list_pending_tasks(filters))

    def count_pending(self, filters: TaskFilters | None = None) -> int:
        return self._read("count_pending", lambda store: store.count_pending(filters))

    def get_task(self, task_id: str) -> Task | None:
        return self._read("get_task", lambda store: store.get_task(task_id))

    def get_sub_tasks(self, parent_id: str) -> list[Task]:
        return self._read("get_sub_tasks", lambda store: store.get_sub_tasks(parent_id))

    def get_dependencies(self, task_id: str) -> list[Task]:
        return self._read("get_dependencies", lambda store: store.get_dependencies(task_id))

    def get_dependents(self, task_id: str) -> list[Task]:
        return self._read("get_dependents", lambda store: store.get_dependents(task_id))

    def are_dependencies_met(self, task_id: str) -> bool:
        return self._read(
            "are_dependencies_met",
            lambda store: store.are_dependencies_met(task_id),
        )

    # Writes

    def mark_in_progress(self, task_id: str) -> UpdateResult:
        return self.primary.mark_in_progress(task_id)

    def mark_completed(self, task_id: str, comment: str | None = None) -> UpdateResult:
        return self.primary.mark_completed(task_id, comment)

    def mark_failed(self, task_id: str, reason: str) -> UpdateResult:
        return self.primary.mark_failed(task_id, reason)

    def mark_quarantined(self, task_id: str, reason: str) -> UpdateResult:
        return self.primary.mark_quarantined(task_id, reason)

    def reset_to_pending(self, task_id: str) -> UpdateResult:
        return self.primary.reset_to_pending(task_id)

    def create_task(self, definition: TaskDefinition) -> Task:
        return self.primary.create_task(definition)

    def create_sub_task(self, parent_id: str, definition: TaskDefinition) -> Task:
        return self.primary.create_sub_task(parent_id, definition)

    def add_dependency(self, task_id: str, depends_on_id: str) -> UpdateResult:
        return self.primary.add_dependency(task_id, depends_on_id)

    def remove_dependency(self, task_id: str, depends_on_id: str) -> UpdateResult:
        return self.primary.remove_dependency(task_id, depends_on_id)

    def set_priority(self, task_id: str, priority: Priority) -> UpdateResult:
        return self.primary.set_priority(task_id, priority)

    def add_comment(self, task_id: str, comment: str) -> UpdateResult:
        return self.primary.add_comment(task_id, comment)

    def ping(self) -> PingResult:
        # Health reflects the store that accepts writes.
        return self.primary.ping()

    def _read(self, operation: str, call: Callable[[TaskStore], T]) -> T:
        try:
            return call(self.primary)
        except RemoteTaskError as error:
            if not error.transient:
                raise
            self._log.warning(
                "%s failed on %s (%s); reading from %s",
                operation,
                self.primary.name,
                error.message,
                self.fallback.name,
            )
        return call(self.fallback)
