"""Task store backed by a local JSON registry plus Markdown descriptions.

Layout::

    .specs/tasks/
        tasks.json        {"tasks": [...], "features": {...}}
        TASK-001.md       description; the first "# " heading is the title
        TASK-001.log      comments and failure reasons, append-only

Every mutation is one read-modify-write cycle under ``tasks.json.lock``.
The lock file is created exclusively and holds the owner PID.
"""

from __future__ import annotations

import logging
import os
import re
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loopwork.fileio import load_json, write_json
from loopwork.processes.liveness import is_process_alive
from loopwork.tasks.base import (
    TASKS_FILE_NOT_FOUND,
    CorruptTaskFileError,
    TaskNotFoundError,
    TaskStoreError,
    TaskStoreLockError,
)
from loopwork.tasks.graph import would_create_cycle
from loopwork.tasks.models import (
    PingResult,
    Priority,
    Task,
    TaskDefinition,
    TaskEvent,
    TaskFilters,
    TaskStatus,
    UpdateResult,
    next_sub_task_id,
)

logger = logging.getLogger(__name__)

_TITLE_RE = re.compile(r"^#\s+(.+)$", re.MULTILINE)

Document = dict[str, Any]
Entry = dict[str, Any]


class JsonTaskStore:
    """File-backed task store safe for concurrent writers on one host."""

    name = "json"

    def __init__(  # noqa: PLR0913
        self,
        tasks_file: Path | str,
        *,
        tasks_dir: Path | str | None = None,
        lock_timeout_seconds: float = 5.0,
        lock_stale_seconds: float = 30.0,
        lock_retry_delay_seconds: float = 0.1,
        is_alive: Callable[[int], bool] = is_process_alive,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        log: logging.Logger | None = None,
    ) -> None:
        self.tasks_file = Path(tasks_file)
        self.tasks_dir = Path(tasks_dir) if tasks_dir is not None else self.tasks_file.parent
        self.lock_path = self.tasks_file.with_name(f"{self.tasks_file.name}.lock")
        self.lock_timeout_seconds = lock_timeout_seconds
        self.lock_stale_seconds = lock_stale_seconds
        self.lock_retry_delay_seconds = lock_retry_delay_seconds
        self._is_alive = is_alive
        self._clock = clock
        self._sleep = sleep
        self._log = log or logger

    # Reads

    def find_next_task(self, filters: TaskFilters | None = None) -> Task | None:
        candidates = self.list_pending_tasks(filters)
        if not candidates:
            return None
        start_from = filters.start_from if filters else None
        if start_from:
            for task in candidates:
                if task.id == start_from:
                    return task
        return candidates[0]

    def list_pending_tasks(self, filters: TaskFilters | None = None) -> list[Task]:
        filters = filters or TaskFilters()
        document = self._read()
        if document is None:
            return []

        entries = [entry for entry in document["tasks"] if _status(entry) == TaskStatus.PENDING]
        if filters.feature:
            entries = [entry for entry in entries if entry.get("feature") == filters.feature]
        if filters.priority:
            entries = [entry for entry in entries if _priority(entry) == filters.priority]
        if filters.parent_id:
            entries = [entry for entry in entries if entry.get("parentId") == filters.parent_id]
        if filters.top_level_only:
            entries = [entry for entry in entries if not entry.get("parentId")]
        entries.sort(key=lambda entry: _priority(entry).rank)

        index = _index(document)
        tasks: list[Task] = []
        for entry in entries:
            if not filters.include_blocked and not _dependencies_met(entry, index):
                continue
            tasks.append(self._to_task(entry, document))
        return tasks

    def count_pending(self, filters: TaskFilters | None = None) -> int:
        return len(self.list_pending_tasks(filters))

    def get_task(self, task_id: str) -> Task | None:
        document = self._read()
        if document is None:
            return None
        entry = _index(document).get(task_id)
        return self._to_task(entry, document) if entry is not None else None

    def get_sub_tasks(self, parent_id: str) -> list[Task]:
        document = self._read()
        if document is None:
            return []
        return [
            self._to_task(entry, document)
            for entry in document["tasks"]
            if entry.get("parentId") == parent_id
        ]

    def get_dependencies(self, task_id: str) -> list[Task]:
        document = self._read()
        if document is None:
            return []
        index = _index(document)
        entry = index.get(task_id)
        if entry is None:
            return []
        return [
            self._to_task(index[dep_id], document)
            for dep_id in entry.get("dependsOn") or []
            if dep_id in index
        ]

    def get_dependents(self, task_id: str) -> list[Task]:
        document = self._read()
        if document is None:
            return []
        return [
            self._to_task(entry, document)
            for entry in document["tasks"]
            if task_id in (entry.get("dependsOn") or [])
        ]

    def are_dependencies_met(self, task_id: str) -> bool:
        document = self._read()
        if document is None:
            return True
        index = _index(document)
        entry = index.get(task_id)
        return True if entry is None else _dependencies_met(entry, index)

    def dependency_edges(self) -> dict[str, list[str]]:
        """Return ``{task_id: depends_on}`` for cycle reporting."""

        document = self._read()
        if document is None:
            return {}
        return {entry["id"]: list(entry.get("dependsOn") or []) for entry in document["tasks"]}

    # Status mutations

    def mark_in_progress(self, task_id: str) -> UpdateResult:
        return self._set_status(task_id, TaskStatus.IN_PROGRESS)

    def mark_completed(self, task_id: str, comment: str | None = None) -> UpdateResult:
        result = self._set_status(task_id, TaskStatus.COMPLETED, reason=comment)
        if result.success and comment:
            self._append_log(task_id, comment)
        return result

    def mark_failed(self, task_id: str, reason: str) -> UpdateResult:
        result = self._set_status(task_id, TaskStatus.FAILED, reason=reason)
        if result.success:
            self._append_log(task_id, f"FAILED: {reason}")
        return result

    def mark_quarantined(self, task_id: str, reason: str) -> UpdateResult:
        result = self._set_status(task_id, TaskStatus.QUARANTINED, reason=reason)
        if result.success:
            self._append_log(task_id, f"QUARANTINED: {reason}")
        return result

    def reset_to_pending(self, task_id: str) -> UpdateResult:
        return self._set_status(task_id, TaskStatus.PENDING)

    # Structural mutations

    def create_task(self, definition: TaskDefinition) -> Task:
        with self._lock():
            document = self._load_for_update() or {"tasks": [], "features": {}}
            existing = set(_index(document))
            prefix = definition.feature.upper() if definition.feature else "TASK"
            number = 1
            while f"{prefix}-{number:03d}" in existing:
                number += 1
            task_id = f"{prefix}-{number:03d}"
            entry = _new_entry(task_id, definition, parent_id=None)
            document["tasks"].append(entry)
            self._save(document)
        self._write_description(task_id, definition)
        self._log.info("Created task %s", task_id)
        return self._to_task(entry, document)

    def create_sub_task(self, parent_id: str, definition: TaskDefinition) -> Task:
        """Create ``<parent_id><letter>`` using the first unused letter suffix."""

        with self._lock():
            document = self._load_for_update()
            if document is None:
                raise TaskNotFoundError(parent_id)
            existing = set(_index(document))
            if parent_id not in existing:
                raise TaskNotFoundError(parent_id)
            task_id = next_sub_task_id(parent_id, existing)
            entry = _new_entry(task_id, definition, parent_id=parent_id)
            document["tasks"].append(entry)
            self._save(document)
        self._write_description(task_id, definition)
        self._log.info("Created sub-task %s under %s", task_id, parent_id)
        return self._to_task(entry, document)

    def add_dependency(self, task_id: str, depends_on_id: str) -> UpdateResult:
        def mutate(document: Document, entry: Entry) -> UpdateResult | None:
            index = _index(document)
            if depends_on_id not in index:
                return UpdateResult.failure(f"Dependency {depends_on_id} not found")
            dependencies = entry.setdefault("dependsOn", [])
            if depends_on_id in dependencies:
                return None
            edges = {item["id"]: list(item.get("dependsOn") or []) for item in document["tasks"]}
            if would_create_cycle(edges, task_id, depends_on_id):
                return UpdateResult.failure(
                    f"Dependency {task_id} -> {depends_on_id} would create a cycle",
                )
            dependencies.append(depends_on_id)
            return None

        return self._update(task_id, mutate)

    def remove_dependency(self, task_id: str, depends_on_id: str) -> UpdateResult:
        def mutate(_document: Document, entry: Entry) -> UpdateResult | None:
            dependencies = [dep for dep in entry.get("dependsOn") or [] if dep != depends_on_id]
            if dependencies:
                entry["dependsOn"] = dependencies
            else:
                entry.pop("dependsOn", None)
            return None

        return self._update(task_id, mutate)

    def set_priority(self, task_id: str, priority: Priority) -> UpdateResult:
        def mutate(_document: Document, entry: Entry) -> UpdateResult | None:
            entry["priority"] = Priority(priority).value
            return None

        return self._update(task_id, mutate)

    def add_comment(self, task_id: str, comment: str) -> UpdateResult:
        if self.get_task(task_id) is None:
            return UpdateResult.failure(f"Task {task_id} not found")
        try:
            self._append_log(task_id, comment, strict=True)
        except OSError as error:
            return UpdateResult.failure(str(error))
        return UpdateResult.ok()

    def ping(self) -> PingResult:
        started = time.perf_counter()
        try:
            load_json(self.tasks_file)
        except FileNotFoundError:
            return PingResult(ok=False, latency_ms=_elapsed_ms(started), error=TASKS_FILE_NOT_FOUND)
        except (OSError, TypeError, ValueError) as error:
            return PingResult(ok=False, latency_ms=_elapsed_ms(started), error=str(error))
        return PingResult(ok=True, latency_ms=_elapsed_ms(started))

    # Internals

    def _set_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        reason: str | None = None,
    ) -> UpdateResult:
        def mutate(_document: Document, entry: Entry) -> UpdateResult | None:
            previous = _status(entry)
            entry["status"] = status.value
            event = TaskEvent(
                at=datetime.now(tz=UTC).isoformat(),
                status_from=previous,
                status_to=status,
                reason=reason,
            )
            entry.setdefault("events", []).append(event.to_json())
            return None

        result = self._update(task_id, mutate)
        if result.success:
            self._log.debug("Task %s -> %s", task_id, status.value)
        return result

    def _update(
        self,
        task_id: str,
        mutate: Callable[[Document, Entry], UpdateResult | None],
    ) -> UpdateResult:
        if not self.tasks_file.exists():
            return UpdateResult.failure(TASKS_FILE_NOT_FOUND)
        with self._lock():
            document = self._load_for_update()
            if document is None:
                return UpdateResult.failure(TASKS_FILE_NOT_FOUND)
            entry = _index(document).get(task_id)
            if entry is None:
                return UpdateResult.failure(f"Task {task_id} not found")
            outcome = mutate(document, entry)
            if outcome is not None:
                return outcome
            self._save(document)
        return UpdateResult.ok()

    def _read(self) -> Document | None:
        try:
            return self._load_document()
        except FileNotFoundError:
            self._log.warning("Tasks file not found: %s", self.tasks_file)
            return None
        except CorruptTaskFileError as error:
            self._log.warning("%s", error.message)
            return None
        except OSError as error:
            self._log.warning("Failed to read tasks file %s: %s", self.tasks_file, error)
            return None

    def _load_for_update(self) -> Document | None:
        try:
            return self._load_document()
        except FileNotFoundError:
            return None

    def _load_document(self) -> Document:
        try:
            document = load_json(self.tasks_file)
        except (TypeError, ValueError) as error:
            raise CorruptTaskFileError(str(self.tasks_file), str(error)) from error
        tasks = document.get("tasks")
        if not isinstance(tasks, list):
            raise CorruptTaskFileError(str(self.tasks_file), '"tasks" must be a list')
        for position, entry in enumerate(tasks):
            problem = _entry_problem(entry)
            if problem is not None:
                raise CorruptTaskFileError(str(self.tasks_file), f"tasks[{position}]: {problem}")
        features = document.get("features")
        if features is None:
            document["features"] = {}
        elif not isinstance(features, dict):
            raise CorruptTaskFileError(str(self.tasks_file), '"features" must be an object')
        return document

    def _save(self, document: Document) -> None:
        try:
            write_json(self.tasks_file, document)
        except OSError as error:
            raise TaskStoreError(
                f"Cannot write to tasks file: {self.tasks_file} ({error})",
                (
                    "Check file permissions allow writing",
                    "Verify the directory exists",
                    "Ensure disk space is available",
                ),
            ) from error

    def _to_task(self, entry: Entry, document: Document) -> Task:
        task_id = entry["id"]
        description_file = self.tasks_dir / f"{task_id}.md"
        title, description = task_id, ""
        metadata: dict[str, Any] = dict(entry.get("metadata") or {})
        metadata["prd_file"] = str(description_file)
        try:
            description = description_file.read_text("utf-8")
        except FileNotFoundError:
            metadata["prd_warning"] = f"PRD file not found: {description_file}"
        except (OSError, UnicodeDecodeError) as error:
            metadata["prd_warning"] = f"Error reading PRD file: {error}"
        else:
            match = _TITLE_RE.search(description)
            if match:
                title = match.group(1).strip()

        feature = entry.get("feature")
        feature_info = (document.get("features") or {}).get(feature) if feature else None
        if isinstance(feature_info, dict) and feature_info.get("name"):
            metadata["feature_name"] = feature_info["name"]

        return Task(
            id=task_id,
            title=title,
            status=_status(entry),
            priority=_priority(entry),
            description=description,
            feature=feature,
            parent_id=entry.get("parentId"),
            depends_on=list(entry.get("dependsOn") or []),
            metadata=metadata,
            events=[TaskEvent.from_json(item) for item in entry.get("events") or []],
        )

    def _write_description(self, task_id: str, definition: TaskDefinition) -> None:
        self.tasks_dir.mkdir(parents=True, exist_ok=True)
        path = self.tasks_dir / f"{task_id}.md"
        path.write_text(f"# {definition.title}\n\n{definition.description}", "utf-8")

    def _append_log(self, task_id: str, message: str, *, strict: bool = False) -> None:
        path = self.tasks_dir / f"{task_id}.log"
        line = f"\n[{datetime.now(tz=UTC).isoformat()}] {message}\n"
        try:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(line)
        except OSError as error:
            if strict:
                raise
            self._log.warning("Failed to write log for %s: %s", task_id, error)

    @contextmanager
    def _lock(self) -> Iterator[None]:
        self._acquire_lock()
        try:
            yield
        finally:
            self._release_lock()

    def _acquire_lock(self) -> None:
        deadline = self._clock() + self.lock_timeout_seconds
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        while True:
            try:
                fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if self._remove_stale_lock():
                    continue
                if self._clock() >= deadline:
                    raise TaskStoreLockError(
                        str(self.lock_path),
                        self.lock_timeout_seconds,
                    ) from None
                self._sleep(self.lock_retry_delay_seconds)
                continue
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(str(os.getpid()))
            return

    def _release_lock(self) -> None:
        try:
            owner = self.lock_path.read_text("utf-8").strip()
            if owner == str(os.getpid()):
                self.lock_path.unlink()
        except FileNotFoundError:
            return
        except OSError as error:
            self._log.warning("Failed to release lock file %s: %s", self.lock_path, error)

    def _remove_stale_lock(self) -> bool:
        try:
            age = time.time() - self.lock_path.stat().st_mtime
            raw_pid = self.lock_path.read_text("utf-8").strip()
        except FileNotFoundError:
            return True
        except OSError as error:
            self._log.warning("Failed to read lock file %s: %s", self.lock_path, error)
            return False

        stale = age > self.lock_stale_seconds
        if not stale and raw_pid.isdigit():
            stale = not self._is_alive(int(raw_pid))
        if not stale:
            return False
        self._log.warning("Removing stale tasks lock %s (owner %s)", self.lock_path, raw_pid or "?")
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass
        return True


def _entry_problem(entry: object) -> str | None:
    """Describe the first shape error in a task entry, or None if it is usable."""

    if not isinstance(entry, dict):
        return "entry must be an object"
    task_id = entry.get("id")
    if not isinstance(task_id, str) or not task_id.strip():
        return '"id" must be a non-empty string'
    if task_id != task_id.strip() or any(ord(char) < 0x20 for char in task_id):
        return f"id {task_id!r} contains whitespace padding or control characters"
    for key in ("feature", "parentId"):
        if entry.get(key) is not None and not isinstance(entry[key], str):
            return f'"{key}" must be a string'
    depends_on = entry.get("dependsOn")
    if depends_on is not None and (
        not isinstance(depends_on, list) or not all(isinstance(dep, str) for dep in depends_on)
    ):
        return '"dependsOn" must be a list of task ids'
    metadata = entry.get("metadata")
    if metadata is not None and not isinstance(metadata, dict):
        return '"metadata" must be an object'
    events = entry.get("events")
    if events is not None and not isinstance(events, list):
        return '"events" must be a list'
    try:
        _status(entry)
        _priority(entry)
        for item in events or []:
            if not isinstance(item, dict):
                return '"events" items must be objects'
            TaskEvent.from_json(item)
    except KeyError as error:
        return f"event is missing {error}"
    except (TypeError, ValueError) as error:
        return str(error)
    return None


def _status(entry: Entry) -> TaskStatus:
    return TaskStatus(entry.get("status") or TaskStatus.PENDING.value)


def _priority(entry: Entry) -> Priority:
    return Priority(entry.get("priority") or Priority.MEDIUM.value)


def _index(document: Document) -> dict[str, Entry]:
    return {entry["id"]: entry for entry in document["tasks"]}


def _dependencies_met(entry: Entry, index: dict[str, Entry]) -> bool:
    for dep_id in entry.get("dependsOn") or []:
        dependency = index.get(dep_id)
        if dependency is None or _status(dependency) != TaskStatus.COMPLETED:
            return False
    return True


def _new_entry(task_id: str, definition: TaskDefinition, *, parent_id: str | None) -> Entry:
    entry: Entry = {
        "id": task_id,
        "status": TaskStatus.PENDING.value,
        "priority": Priority(definition.priority).value,
    }
    if definition.feature:
        entry["feature"] = definition.feature
    if parent_id:
        entry["parentId"] = parent_id
    if definition.depends_on:
        entry["dependsOn"] = list(dict.fromkeys(definition.depends_on))
    return entry


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
