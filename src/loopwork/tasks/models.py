"""Domain models shared by every task store backend."""

from __future__ import annotations

from collections.abc import Container
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Lifecycle states for backlog tasks."""

    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    QUARANTINED = "quarantined"


class Priority(str, Enum):
    """Scheduling priority; lower rank is picked first."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


@dataclass(slots=True, frozen=True)
class TaskEvent:
    """One status transition in a task history."""

    at: str
    status_from: TaskStatus
    status_to: TaskStatus
    reason: str | None = None

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "at": self.at,
            "from": self.status_from.value,
            "to": self.status_to.value,
        }
        if self.reason:
            payload["reason"] = self.reason
        return payload

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> TaskEvent:
        return cls(
            at=str(payload.get("at", "")),
            status_from=TaskStatus(payload["from"]),
            status_to=TaskStatus(payload["to"]),
            reason=payload.get("reason"),
        )


@dataclass(slots=True)
class Task:
    """Unit of work handed to the agent."""

    id: str
    title: str
    status: TaskStatus = TaskStatus.PENDING
    priority: Priority = Priority.MEDIUM
    description: str = ""
    feature: str | None = None
    parent_id: str | None = None
    depends_on: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    events: list[TaskEvent] = field(default_factory=list)

    @property
    def is_sub_task(self) -> bool:
        return self.parent_id is not None


@dataclass(slots=True, frozen=True)
class TaskFilters:
    """Selection options for pending-task queries."""

    feature: str | None = None
    priority: Priority | None = None
    parent_id: str | None = None
    top_level_only: bool = False
    include_blocked: bool = False
    start_from: str | None = None


@dataclass(slots=True, frozen=True)
class TaskDefinition:
    """Fields supplied when creating a task or sub-task."""

    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    feature: str | None = None
    depends_on: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class UpdateResult:
    """Outcome of a mutating store call."""

    success: bool
    error: str | None = None
    retryable: bool = False

    @classmethod
    def ok(cls) -> UpdateResult:
        return cls(success=True)

    @classmethod
    def failure(cls, error: str, *, retryable: bool = False) -> UpdateResult:
        return cls(success=False, error=error, retryable=retryable)


@dataclass(slots=True, frozen=True)
class PingResult:
    """Backend health probe result."""

    ok: bool
    latency_ms: float
    error: str | None = None


def letter_suffix(position: int) -> str:
    """0 -> a, 25 -> z, 26 -> aa."""

    letters = ""
    position += 1
    while position > 0:
        position, remainder = divmod(position - 1, 26)
        letters = chr(ord("a") + remainder) + letters
    return letters


def next_sub_task_id(parent_id: str, existing: Container[str]) -> str:
    """Return ``<parent_id><letter>`` using the first suffix not in ``existing``."""

    position = 0
    while f"{parent_id}{letter_suffix(position)}" in existing:
        position += 1
    return f"{parent_id}{letter_suffix(position)}"
