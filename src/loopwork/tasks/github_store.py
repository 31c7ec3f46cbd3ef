"""Task store backed by GitHub issues through the ``gh`` CLI."""

from __future__ import annotations

import json
import logging
import re
import subprocess
import time
from collections.abc import Callable, Sequence
from typing import Any, TypeVar

from loopwork.tasks.base import RemoteTaskError, TaskNotFoundError
from loopwork.tasks.failure_classifier import classify_remote_failure
from loopwork.tasks.graph import would_create_cycle
from loopwork.tasks.models import (
    PingResult,
    Priority,
    Task,
    TaskDefinition,
    TaskFilters,
    TaskStatus,
    UpdateResult,
    next_sub_task_id,
)

logger = logging.getLogger(__name__)

LABEL_TASK = "loopwork-task"
LABEL_SUB_TASK = "sub-task"
STATUS_LABELS: dict[TaskStatus, str] = {
    TaskStatus.PENDING: "status:pending",
    TaskStatus.IN_PROGRESS: "status:in-progress",
    TaskStatus.FAILED: "status:failed",
    TaskStatus.QUARANTINED: "status:quarantined",
}
PRIORITY_LABEL_PREFIX = "priority:"
FEATURE_LABEL_PREFIX = "feat:"

ISSUE_FIELDS = "number,title,body,labels,url,state"
LIST_LIMIT = "500"
GH_TIMEOUT_SECONDS = 60

_TITLE_ID_RE = re.compile(r"^\[([A-Za-z][A-Za-z0-9_.-]*)\]\s*")
_PARENT_RE = re.compile(r"^[ \t]*parent:[ \t]*(\S+)[ \t]*$", re.IGNORECASE | re.MULTILINE)
_DEPENDS_RE = re.compile(
    r"^[ \t]*(?:depends on|dependencies):[ \t]*(.*?)[ \t]*$",
    re.IGNORECASE | re.MULTILINE,
)
_ISSUE_REF_RE = re.compile(r"^(?:[\w.-]+/[\w.-]+)?#(\d+)$")
_GH_ID_RE = re.compile(r"^GH-(\d+)$", re.IGNORECASE)
_ISSUE_URL_RE = re.compile(r"/issues/(\d+)\s*$")

GhRunner = Callable[[Sequence[str]], "subprocess.CompletedProcess[str]"]
T = TypeVar("T")


def run_gh(args: Sequence[str]) -> subprocess.CompletedProcess[str]:
    """Run ``gh`` with captured text output."""

    return subprocess.run(  # noqa: S603
        ["gh", *args],  # noqa: S607
        capture_output=True,
        text=True,
        timeout=GH_TIMEOUT_SECONDS,
        check=False,
    )


class GitHubTaskStore:
    """Remote task store; labels carry status, priority and feature."""

    name = "github"

    def __init__(  # noqa: PLR0913
        self,
        *,
        repo: str | None = None,
        max_retries: int = 3,
        retry_base_seconds: float = 1.0,
        runner: GhRunner = run_gh,
        sleep: Callable[[float], None] = time.sleep,
        log: logging.Logger | None = None,
    ) -> None:
        self.repo = repo
        self.max_retries = max_retries
        self.retry_base_seconds = retry_base_seconds
        self._runner = runner
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
                if _matches_ref(task, start_from):
                    return task
        return candidates[0]

    def list_pending_tasks(self, filters: TaskFilters | None = None) -> list[Task]:
        filters = filters or TaskFilters()
        labels = [LABEL_TASK, STATUS_LABELS[TaskStatus.PENDING]]
        if filters.feature:
            labels.append(f"{FEATURE_LABEL_PREFIX}{filters.feature}")
        if filters.priority:
            labels.append(f"{PRIORITY_LABEL_PREFIX}{Priority(filters.priority).value}")

        tasks = [
            task
            for task in self._list_issues(labels=labels, state="open")
            if task.status == TaskStatus.PENDING
        ]
        if filters.parent_id:
            tasks = [task for task in tasks if _same_ref(task.parent_id, filters.parent_id)]
        if filters.top_level_only:
            tasks = [task for task in tasks if task.parent_id is None]

        if not filters.include_blocked and any(task.depends_on for task in tasks):
            everything = self._list_issues(labels=[LABEL_TASK], state="all")
            tasks = [task for task in tasks if _dependencies_met(task, everything)]

        tasks.sort(key=lambda task: (task.priority.rank, _issue_number(task)))
        return tasks

    def count_pending(self, filters: TaskFilters | None = None) -> int:
        return len(self.list_pending_tasks(filters))

    def get_task(self, task_id: str) -> Task | None:
        number = self._resolve_number(task_id)
        if number is None:
            return None
        return self._view_issue(number)

    def get_sub_tasks(self, parent_id: str) -> list[Task]:
        return [
            task
            for task in self._list_issues(labels=[LABEL_TASK], state="all")
            if _same_ref(task.parent_id, parent_id)
        ]

    def get_dependencies(self, task_id: str) -> list[Task]:
        task = self.get_task(task_id)
        if task is None:
            return []
        dependencies = []
        for dep_id in task.depends_on:
            dependency = self.get_task(dep_id)
            if dependency is not None:
                dependencies.append(dependency)
        return dependencies

    def get_dependents(self, task_id: str) -> list[Task]:
        return [
            task
            for task in self._list_issues(labels=[LABEL_TASK], state="all")
            if any(_same_ref(dep_id, task_id) for dep_id in task.depends_on)
        ]

    def are_dependencies_met(self, task_id: str) -> bool:
        task = self.get_task(task_id)
        if task is None:
            return True
        for dep_id in task.depends_on:
            dependency = self.get_task(dep_id)
            if dependency is None or dependency.status != TaskStatus.COMPLETED:
                return False
        return True

    # Status mutations

    def mark_in_progress(self, task_id: str) -> UpdateResult:
        return self._set_status(task_id, TaskStatus.IN_PROGRESS)

    def mark_completed(self, task_id: str, comment: str | None = None) -> UpdateResult:
        return self._set_status(task_id, TaskStatus.COMPLETED, comment=comment)

    def mark_failed(self, task_id: str, reason: str) -> UpdateResult:
        return self._set_status(
            task_id,
            TaskStatus.FAILED,
            comment=f"**Loopwork Failed**\n\n```\n{reason}\n```",
        )

    def mark_quarantined(self, task_id: str, reason: str) -> UpdateResult:
        return self._set_status(
            task_id,
            TaskStatus.QUARANTINED,
            comment=f"**Loopwork Quarantined**\n\n```\n{reason}\n```",
        )

    def reset_to_pending(self, task_id: str) -> UpdateResult:
        return self._set_status(task_id, TaskStatus.PENDING)

    # Structural mutations

    def create_task(self, definition: TaskDefinition) -> Task:
        labels = [LABEL_TASK, STATUS_LABELS[TaskStatus.PENDING], *_definition_labels(definition)]
        body = _compose_body(definition.description, depends_on=definition.depends_on)
        number = self._create_issue(definition.title, body, labels)
        self._log.info("Created issue #%d", number)
        return Task(
            id=f"GH-{number}",
            title=definition.title,
            priority=Priority(definition.priority),
            description=body,
            feature=definition.feature,
            depends_on=list(definition.depends_on),
            metadata={"issue_number": number, "labels": labels},
        )

    def create_sub_task(self, parent_id: str, definition: TaskDefinition) -> Task:
        """Create ``<parent_id><letter>`` and link it with a ``Parent:`` body line."""

        parent = self.get_task(parent_id)
        if parent is None:
            raise TaskNotFoundError(parent_id)
        existing = {task.id for task in self._list_issues(labels=[LABEL_TASK], state="all")}
        task_id = next_sub_task_id(parent.id, existing)

        labels = [
            LABEL_TASK,
            STATUS_LABELS[TaskStatus.PENDING],
            LABEL_SUB_TASK,
            *_definition_labels(definition),
        ]
        body = _compose_body(
            definition.description,
            parent_ref=_body_ref(parent.id),
            depends_on=definition.depends_on,
        )
        number = self._create_issue(f"[{task_id}] {definition.title}", body, labels)
        self._log.info("Created sub-task %s as issue #%d", task_id, number)
        return Task(
            id=task_id,
            title=f"[{task_id}] {definition.title}",
            priority=Priority(definition.priority),
            description=body,
            feature=definition.feature,
            parent_id=parent.id,
            depends_on=list(definition.depends_on),
            metadata={"issue_number": number, "labels": labels},
        )

    def add_dependency(self, task_id: str, depends_on_id: str) -> UpdateResult:
        def mutate() -> UpdateResult:
            task = self.get_task(task_id)
            if task is None:
                return UpdateResult.failure(f"Task {task_id} not found")
            dependency = self.get_task(depends_on_id)
            if dependency is None:
                return UpdateResult.failure(f"Dependency {depends_on_id} not found")
            if any(_same_ref(dep_id, dependency.id) for dep_id in task.depends_on):
                return UpdateResult.ok()
            everything = self._list_issues(labels=[LABEL_TASK], state="all")
            edges = {item.id: list(item.depends_on) for item in everything}
            if would_create_cycle(edges, task.id, dependency.id):
                return UpdateResult.failure(
                    f"Dependency {task.id} -> {dependency.id} would create a cycle",
                )
            body = _replace_depends(task.description, [*task.depends_on, dependency.id])
            self._edit(_issue_number(task), "--body", body)
            return UpdateResult.ok()

        return self._mutation(mutate)

    def remove_dependency(self, task_id: str, depends_on_id: str) -> UpdateResult:
        def mutate() -> UpdateResult:
            task = self.get_task(task_id)
            if task is None:
                return UpdateResult.failure(f"Task {task_id} not found")
            remaining = [dep for dep in task.depends_on if not _same_ref(dep, depends_on_id)]
            if len(remaining) == len(task.depends_on):
                return UpdateResult.ok()
            self._edit(_issue_number(task), "--body", _replace_depends(task.description, remaining))
            return UpdateResult.ok()

        return self._mutation(mutate)

    def set_priority(self, task_id: str, priority: Priority) -> UpdateResult:
        def mutate() -> UpdateResult:
            task = self.get_task(task_id)
            if task is None:
                return UpdateResult.failure(f"Task {task_id} not found")
            wanted = f"{PRIORITY_LABEL_PREFIX}{Priority(priority).value}"
            stale = [
                label
                for label in task.metadata.get("labels", [])
                if label.startswith(PRIORITY_LABEL_PREFIX) and label != wanted
            ]
            args = ["--add-label", wanted]
            if stale:
                args.extend(["--remove-label", ",".join(stale)])
            self._edit(_issue_number(task), *args)
            return UpdateResult.ok()

        return self._mutation(mutate)

    def add_comment(self, task_id: str, comment: str) -> UpdateResult:
        def mutate() -> UpdateResult:
            number = self._resolve_number(task_id)
            if number is None:
                return UpdateResult.failure(f"Task {task_id} not found")
            self._gh_retry(["issue", "comment", str(number), "--body", comment])
            return UpdateResult.ok()

        return self._mutation(mutate)

    def ping(self) -> PingResult:
        started = time.perf_counter()
        try:
            completed = self._runner(["auth", "status"])
        except (OSError, subprocess.SubprocessError) as error:
            return PingResult(ok=False, latency_ms=_elapsed_ms(started), error=str(error))
        if completed.returncode != 0:
            message = (completed.stderr or completed.stdout or "gh auth status failed").strip()
            return PingResult(ok=False, latency_ms=_elapsed_ms(started), error=message)
        return PingResult(ok=True, latency_ms=_elapsed_ms(started))

    # Internals

    def _set_status(
        self,
        task_id: str,
        status: TaskStatus,
        *,
        comment: str | None = None,
    ) -> UpdateResult:
        def mutate() -> UpdateResult:
            task = self.get_task(task_id)
            if task is None:
                return UpdateResult.failure(f"Task {task_id} not found")
            number = _issue_number(task)
            labels = task.metadata.get("labels", [])
            wanted = STATUS_LABELS.get(status)
            stale = [
                label
                for label in labels
                if label in STATUS_LABELS.values() and label != wanted
            ]

            edit_args: list[str] = []
            if wanted is not None and wanted not in labels:
                edit_args.extend(["--add-label", wanted])
            if stale:
                edit_args.extend(["--remove-label", ",".join(stale)])
            if edit_args:
                self._edit(number, *edit_args)

            closed = task.metadata.get("state") == "closed"
            if status == TaskStatus.COMPLETED:
                if not closed:
                    close_args = ["issue", "close", str(number)]
                    close_args.extend(["--comment", comment or "Completed by Loopwork"])
                    self._gh_retry(close_args)
                    return UpdateResult.ok()
            elif closed:
                self._gh_retry(["issue", "reopen", str(number)])

            if comment:
                self._gh_retry(["issue", "comment", str(number), "--body", comment])
            return UpdateResult.ok()

        result = self._mutation(mutate)
        if result.success:
            self._log.debug("Task %s -> %s", task_id, status.value)
        return result

    def _mutation(self, mutate: Callable[[], UpdateResult]) -> UpdateResult:
        try:
            return mutate()
        except RemoteTaskError as error:
            self._log.warning("GitHub update failed: %s", error.message)
            return UpdateResult.failure(error.message, retryable=error.transient)

    def _resolve_number(self, task_id: str) -> int | None:
        number = _ref_number(task_id)
        if number is not None:
            return number
        for task in self._list_issues(labels=[LABEL_TASK], state="all"):
            if task.id == task_id:
                return _issue_number(task)
        return None

    def _view_issue(self, number: int) -> Task | None:
        try:
            stdout = self._gh_retry(["issue", "view", str(number), "--json", ISSUE_FIELDS])
        except RemoteTaskError as error:
            if error.reason_code == "not_found":
                return None
            raise
        return _adapt_issue(_decode(stdout))

    def _list_issues(self, *, labels: Sequence[str], state: str) -> list[Task]:
        args = ["issue", "list", "--state", state, "--json", ISSUE_FIELDS, "--limit", LIST_LIMIT]
        for label in labels:
            args.extend(["--label", label])
        payload = _decode(self._gh_retry(args))
        if not isinstance(payload, list):
            raise RemoteTaskError("Unexpected gh issue list output", transient=False)
        return [_adapt_issue(issue) for issue in payload]

    def _create_issue(self, title: str, body: str, labels: Sequence[str]) -> int:
        args = ["issue", "create", "--title", title, "--body", body]
        for label in labels:
            args.extend(["--label", label])
        stdout = self._gh_retry(args)
        match = _ISSUE_URL_RE.search(stdout.strip())
        if match is None:
            raise RemoteTaskError(
                f"Cannot parse issue number from gh output: {stdout.strip()!r}",
                transient=False,
            )
        return int(match.group(1))

    def _edit(self, number: int, *args: str) -> None:
        self._gh_retry(["issue", "edit", str(number), *args])

    def _gh_retry(self, args: Sequence[str]) -> str:
        return self._with_retry(lambda: self._gh(args))

    def _gh(self, args: Sequence[str]) -> str:
        full_args = [*args, "--repo", self.repo] if self.repo else list(args)
        try:
            completed = self._runner(full_args)
        except FileNotFoundError as error:
            raise RemoteTaskError(
                "gh CLI not found; install it and run `gh auth login`",
                transient=False,
                reason_code="missing_cli",
            ) from error
        except subprocess.TimeoutExpired as error:
            raise RemoteTaskError(
                f"gh {' '.join(args[:2])} timed out",
                transient=True,
                reason_code="network",
            ) from error
        if completed.returncode != 0:
            message = (completed.stderr or completed.stdout or "").strip()
            message = message or f"gh exited with code {completed.returncode}"
            classification = classify_remote_failure(message)
            raise RemoteTaskError(
                message,
                transient=classification.transient,
                reason_code=classification.reason_code,
            )
        return completed.stdout

    def _with_retry(self, operation: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return operation()
            except RemoteTaskError as error:
                if not error.transient or attempt >= self.max_retries:
                    raise
                backoff = self.retry_base_seconds * (2**attempt)
                self._log.warning(
                    "Transient GitHub failure (attempt %d/%d), retrying in %.1fs: %s",
                    attempt + 1,
                    self.max_retries,
                    backoff,
                    error.message,
                )
                self._sleep(backoff)
                attempt += 1


def parse_issue_ref(ref: str) -> str:
    """Normalize ``#12``, ``12`` and ``owner/repo#12`` to ``GH-12``; keep task ids."""

    ref = ref.strip().rstrip(",")
    match = _ISSUE_REF_RE.match(ref)
    if match:
        return f"GH-{match.group(1)}"
    if ref.isdigit():
        return f"GH-{ref}"
    gh_match = _GH_ID_RE.match(ref)
    if gh_match:
        return f"GH-{gh_match.group(1)}"
    return ref


def parse_issue_body(body: str) -> tuple[str | None, list[str]]:
    """Extract parent and dependency references from an issue body."""

    parent_match = _PARENT_RE.search(body)
    parent_id = parse_issue_ref(parent_match.group(1)) if parent_match else None

    depends_on: list[str] = []
    depends_match = _DEPENDS_RE.search(body)
    if depends_match:
        for raw in re.split(r"[,\s]+", depends_match.group(1)):
            if raw:
                ref = parse_issue_ref(raw)
                if ref not in depends_on:
                    depends_on.append(ref)
    return parent_id, depends_on


def _adapt_issue(issue: dict[str, Any]) -> Task:
    number = int(issue["number"])
    title = str(issue.get("title") or "")
    body = str(issue.get("body") or "")
    labels = [str(label.get("name")) for label in issue.get("labels") or []]
    state = str(issue.get("state") or "open").lower()

    title_match = _TITLE_ID_RE.match(title)
    task_id = title_match.group(1) if title_match else f"GH-{number}"

    if state == "closed":
        status = TaskStatus.COMPLETED
    elif STATUS_LABELS[TaskStatus.IN_PROGRESS] in labels:
        status = TaskStatus.IN_PROGRESS
    elif STATUS_LABELS[TaskStatus.FAILED] in labels:
        status = TaskStatus.FAILED
    elif STATUS_LABELS[TaskStatus.QUARANTINED] in labels:
        status = TaskStatus.QUARANTINED
    else:
        status = TaskStatus.PENDING

    priority = Priority.MEDIUM
    for candidate in (Priority.HIGH, Priority.LOW):
        if f"{PRIORITY_LABEL_PREFIX}{candidate.value}" in labels:
            priority = candidate
            break

    feature = None
    for label in labels:
        if label.startswith(FEATURE_LABEL_PREFIX):
            feature = label[len(FEATURE_LABEL_PREFIX) :]
            break
    parent_id, depends_on = parse_issue_body(body)

    return Task(
        id=task_id,
        title=title,
        status=status,
        priority=priority,
        description=body,
        feature=feature,
        parent_id=parent_id,
        depends_on=depends_on,
        metadata={
            "issue_number": number,
            "url": issue.get("url"),
            "labels": labels,
            "state": state,
        },
    )


def _decode(stdout: str) -> Any:
    try:
        return json.loads(stdout or "null")
    except ValueError as error:
        raise RemoteTaskError(f"Invalid JSON from gh: {error}", transient=False) from error


def _definition_labels(definition: TaskDefinition) -> list[str]:
    labels = [f"{PRIORITY_LABEL_PREFIX}{Priority(definition.priority).value}"]
    if definition.feature:
        labels.append(f"{FEATURE_LABEL_PREFIX}{definition.feature}")
    return labels


def _compose_body(
    description: str,
    *,
    parent_ref: str | None = None,
    depends_on: Sequence[str] = (),
) -> str:
    header: list[str] = []
    if parent_ref:
        header.append(f"Parent: {parent_ref}")
    if depends_on:
        header.append(f"Depends on: {', '.join(_body_ref(dep) for dep in depends_on)}")
    if not header:
        return description
    return "\n".join(header) + "\n\n" + description


def _replace_depends(body: str, depends_on: Sequence[str]) -> str:
    if depends_on:
        line = f"Depends on: {', '.join(_body_ref(dep) for dep in depends_on)}"
        if _DEPENDS_RE.search(body):
            return _DEPENDS_RE.sub(line, body, count=1)
        return f"{line}\n\n{body}"
    return _DEPENDS_RE.sub("", body, count=1).lstrip("\n")


def _body_ref(task_id: str) -> str:
    match = _GH_ID_RE.match(task_id)
    return f"#{match.group(1)}" if match else task_id


def _ref_number(ref: str) -> int | None:
    normalized = parse_issue_ref(ref)
    match = _GH_ID_RE.match(normalized)
    return int(match.group(1)) if match else None


def _same_ref(left: str | None, right: str | None) -> bool:
    if left is None or right is None:
        return False
    return parse_issue_ref(left) == parse_issue_ref(right)


def _issue_number(task: Task) -> int:
    return int(task.metadata["issue_number"])


def _matches_ref(task: Task, ref: str) -> bool:
    return _same_ref(task.id, ref) or parse_issue_ref(ref) == f"GH-{_issue_number(task)}"


def _dependencies_met(task: Task, everything: Sequence[Task]) -> bool:
    for dep_id in task.depends_on:
        dependency = next((item for item in everything if _matches_ref(item, dep_id)), None)
        if dependency is None or dependency.status != TaskStatus.COMPLETED:
            return False
    return True


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
