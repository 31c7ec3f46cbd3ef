from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence
from typing import Any

import allure
import pytest

from loopwork.tasks import (
    GitHubTaskStore,
    Priority,
    RemoteTaskError,
    TaskDefinition,
    TaskFilters,
    TaskNotFoundError,
    TaskStatus,
)
from loopwork.tasks.github_store import parse_issue_body, parse_issue_ref

pytestmark = [
    allure.epic("Task Backlog"),
    allure.feature("GitHub Issue Store"),
]


def _issue(  # noqa: PLR0913
    number: int,
    title: str,
    *,
    labels: Sequence[str] = ("loopwork-task", "status:pending"),
    body: str = "",
    state: str = "OPEN",
) -> dict[str, Any]:
    return {
        "number": number,
        "title": title,
        "body": body,
        "labels": [{"name": label} for label in labels],
        "url": f"https://github.com/acme/app/issues/{number}",
        "state": state,
    }


class _FakeGh:
    """In-memory ``gh`` covering the issue subcommands the store uses."""

    def __init__(self, issues: Sequence[dict[str, Any]] = ()) -> None:
        self.issues = {issue["number"]: issue for issue in issues}
        self.calls: list[list[str]] = []
        self.failures: list[subprocess.CompletedProcess[str] | Exception] = []

    def __call__(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        args = list(args)
        self.calls.append(args)
        if self.failures:
            failure = self.failures.pop(0)
            if isinstance(failure, Exception):
                raise failure
            return failure
        if args[:2] == ["auth", "status"]:
            return _ok("Logged in to github.com")
        command = args[1]
        handler = getattr(self, f"_{command}")
        return handler(args[2:])

    def fail_with(self, stderr: str, times: int = 1) -> None:
        for _ in range(times):
            self.failures.append(subprocess.CompletedProcess([], 1, "", stderr))

    def labels(self, number: int) -> list[str]:
        return [label["name"] for label in self.issues[number]["labels"]]

    def _list(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        state = _option(args, "--state")
        wanted = _options(args, "--label")
        result = []
        for issue in sorted(self.issues.values(), key=lambda item: item["number"]):
            names = {label["name"] for label in issue["labels"]}
            if state != "all" and issue["state"].lower() != state:
                continue
            if all(label in names for label in wanted):
                result.append(issue)
        return _ok(json.dumps(result))

    def _view(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        issue = self.issues.get(int(args[0]))
        if issue is None:
            return subprocess.CompletedProcess([], 1, "", "GraphQL: Could not resolve to an Issue")
        return _ok(json.dumps(issue))

    def _edit(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        issue = self.issues[int(args[0])]
        names = [label["name"] for label in issue["labels"]]
        for added in _options(args, "--add-label"):
            names.extend(name for name in added.split(",") if name not in names)
        for removed in _options(args, "--remove-label"):
            names = [name for name in names if name not in removed.split(",")]
        issue["labels"] = [{"name": name} for name in names]
        body = _option(args, "--body")
        if body is not None:
            issue["body"] = body
        return _ok("")

    def _close(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        self.issues[int(args[0])]["state"] = "CLOSED"
        return _ok("")

    def _reopen(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        self.issues[int(args[0])]["state"] = "OPEN"
        return _ok("")

    def _comment(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        return _ok("")

    def _create(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        number = max(self.issues, default=0) + 1
        self.issues[number] = _issue(
            number,
            _option(args, "--title"),
            labels=_options(args, "--label"),
            body=_option(args, "--body") or "",
        )
        return _ok(f"https://github.com/acme/app/issues/{number}\n")


def _ok(stdout: str) -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess([], 0, stdout, "")


def _option(args: list[str], name: str) -> str | None:
    values = _options(args, name)
    return values[0] if values else None


def _options(args: list[str], name: str) -> list[str]:
    return [args[index + 1] for index, arg in enumerate(args[:-1]) if arg == name]


def _store(fake: _FakeGh, **kwargs: Any) -> tuple[GitHubTaskStore, list[float]]:
    sleeps: list[float] = []
    store = GitHubTaskStore(runner=fake, sleep=sleeps.append, **kwargs)
    return store, sleeps


@pytest.fixture()
def fake() -> _FakeGh:
    return _FakeGh(
        [
            _issue(1, "Done", state="CLOSED", labels=("loopwork-task",)),
            _issue(2, "Low work", labels=("loopwork-task", "status:pending", "priority:low")),
            _issue(3, "Urgent", labels=("loopwork-task", "status:pending", "priority:high")),
            _issue(4, "Blocked", body="Depends on: #5\n\nWait for it."),
            _issue(5, "Prerequisite", labels=("loopwork-task", "status:in-progress")),
            _issue(
                6,
                "[GH-3a] Split part",
                body="Parent: #3",
                labels=("loopwork-task", "status:pending", "sub-task", "feat:auth"),
            ),
        ],
    )


def test_parse_issue_body_extracts_parent_and_dependencies() -> None:
    body = "Parent: #12\nDepends on: #3, owner/repo#4 GH-5 TASK-001\n\nDetails."

    assert parse_issue_body(body) == ("GH-12", ["GH-3", "GH-4", "GH-5", "TASK-001"])
    assert parse_issue_body("dependencies: 7\n") == (None, ["GH-7"])
    assert parse_issue_body("no metadata here") == (None, [])


def test_parse_issue_ref_normalizes_forms() -> None:
    assert parse_issue_ref("#9") == "GH-9"
    assert parse_issue_ref("9") == "GH-9"
    assert parse_issue_ref("gh-9") == "GH-9"
    assert parse_issue_ref("TASK-002a") == "TASK-002a"


def test_pending_tasks_sorted_and_blocked_filtered(fake: _FakeGh) -> None:
    store, _ = _store(fake)

    tasks = store.list_pending_tasks()

    assert [task.id for task in tasks] == ["GH-3", "GH-3a", "GH-2"]
    assert tasks[1].parent_id == "GH-3"
    assert tasks[1].feature == "auth"
    assert tasks[0].priority == Priority.HIGH

    blocked = store.list_pending_tasks(TaskFilters(include_blocked=True))
    assert [task.id for task in blocked] == ["GH-3", "GH-4", "GH-3a", "GH-2"]


def test_filters_and_start_from(fake: _FakeGh) -> None:
    store, _ = _store(fake)

    assert [t.id for t in store.list_pending_tasks(TaskFilters(top_level_only=True))] == [
        "GH-3",
        "GH-2",
    ]
    assert [t.id for t in store.list_pending_tasks(TaskFilters(parent_id="#3"))] == ["GH-3a"]
    assert store.find_next_task(TaskFilters(start_from="#2")).id == "GH-2"
    assert store.find_next_task(TaskFilters(start_from="GH-99")).id == "GH-3"
    assert store.count_pending(TaskFilters(feature="auth")) == 1


def test_get_task_resolves_numbers_and_bracket_ids(fake: _FakeGh) -> None:
    store, _ = _store(fake)

    assert store.get_task("#1").status == TaskStatus.COMPLETED
    assert store.get_task("GH-5").status == TaskStatus.IN_PROGRESS
    sub_task = store.get_task("GH-3a")
    assert sub_task.metadata["issue_number"] == 6
    assert store.get_task("GH-404") is None
    assert store.get_task("TASK-404") is None


def test_relationship_queries(fake: _FakeGh) -> None:
    store, _ = _store(fake)

    assert [task.id for task in store.get_sub_tasks("GH-3")] == ["GH-3a"]
    assert [task.id for task in store.get_dependencies("GH-4")] == ["GH-5"]
    assert [task.id for task in store.get_dependents("#5")] == ["GH-4"]
    assert store.are_dependencies_met("GH-4") is False
    assert store.are_dependencies_met("GH-3") is True


def test_status_labels_are_swapped_in_one_edit(fake: _FakeGh) -> None:
    store, _ = _store(fake)

    assert store.mark_in_progress("GH-2").success

    assert "status:in-progress" in fake.labels(2)
    assert "status:pending" not in fake.labels(2)
    edits = [call for call in fake.calls if call[:2] == ["issue", "edit"]]
    assert len(edits) == 1


def test_mark_completed_closes_issue_with_comment(fake: _FakeGh) -> None:
    store, _ = _store(fake)

    assert store.mark_completed("GH-5", "All green").success

    assert fake.issues[5]["state"] == "CLOSED"
    close = next(call for call in fake.calls if call[:2] == ["issue", "close"])
    assert close[close.index("--comment") + 1] == "All green"
    assert store.are_dependencies_met("GH-4") is True


def test_mark_failed_labels_and_comments(fake: _FakeGh) -> None:
    store, _ = _store(fake)

    assert store.mark_failed("GH-2", "exit 1").success

    assert "status:failed" in fake.labels(2)
    comment = next(call for call in fake.calls if call[:2] == ["issue", "comment"])
    assert "exit 1" in comment[comment.index("--body") + 1]


def test_reset_reopens_closed_issue(fake: _FakeGh) -> None:
    store, _ = _store(fake)

    assert store.reset_to_pending("GH-1").success

    assert fake.issues[1]["state"] == "OPEN"
    assert "status:pending" in fake.labels(1)


def test_create_task_and_sub_task(fake: _FakeGh) -> None:
    store, _ = _store(fake, repo="acme/app")

    task = store.create_task(
        TaskDefinition(title="New", description="Body", priority=Priority.HIGH, feature="api"),
    )
    sub_task = store.create_sub_task("GH-3", TaskDefinition(title="Another part"))

    assert task.id == "GH-7"
    assert set(fake.labels(7)) == {"loopwork-task", "status:pending", "priority:high", "feat:api"}
    assert sub_task.id == "GH-3b"
    assert fake.issues[8]["title"] == "[GH-3b] Another part"
    assert fake.issues[8]["body"].startswith("Parent: #3")
    assert all(call[-2:] == ["--repo", "acme/app"] for call in fake.calls)
    with pytest.raises(TaskNotFoundError):
        store.create_sub_task("GH-404", TaskDefinition(title="Nope"))


def test_dependency_edits_rewrite_body(fake: _FakeGh) -> None:
    store, _ = _store(fake)

    assert store.add_dependency("GH-2", "GH-3").success
    assert parse_issue_body(fake.issues[2]["body"])[1] == ["GH-3"]

    assert store.add_dependency("GH-4", "#2").success
    assert parse_issue_body(fake.issues[4]["body"])[1] == ["GH-5", "GH-2"]
    assert "Wait for it." in fake.issues[4]["body"]

    cycle = store.add_dependency("GH-3", "GH-4")
    assert not cycle.success
    assert "would create a cycle" in cycle.error

    assert store.add_dependency("GH-2", "GH-404").error == "Dependency GH-404 not found"

    assert store.remove_dependency("GH-4", "#5").success
    assert parse_issue_body(fake.issues[4]["body"])[1] == ["GH-2"]


def test_set_priority_replaces_label(fake: _FakeGh) -> None:
    store, _ = _store(fake)

    assert store.set_priority("GH-2", Priority.HIGH).success

    assert "priority:high" in fake.labels(2)
    assert "priority:low" not in fake.labels(2)


def test_transient_failures_are_retried_with_backoff(fake: _FakeGh) -> None:
    store, sleeps = _store(fake, retry_base_seconds=0.5)
    fake.fail_with("HTTP 502: Bad Gateway", times=2)

    assert store.add_comment("GH-2", "hello").success

    assert sleeps == [0.5, 1.0]


def test_permanent_failures_are_not_retried(fake: _FakeGh) -> None:
    store, sleeps = _store(fake)
    fake.fail_with("HTTP 401: Bad credentials")

    with pytest.raises(RemoteTaskError) as excinfo:
        store.list_pending_tasks()

    assert excinfo.value.transient is False
    assert excinfo.value.reason_code == "auth"
    assert sleeps == []


def test_exhausted_retries_surface_as_retryable_result(fake: _FakeGh) -> None:
    store, sleeps = _store(fake, max_retries=2, retry_base_seconds=1.0)
    fake.fail_with("API rate limit exceeded", times=3)

    result = store.mark_in_progress("GH-2")

    assert result.success is False
    assert result.retryable is True
    assert sleeps == [1.0, 2.0]


def test_missing_cli_is_permanent() -> None:
    fake = _FakeGh()
    fake.failures.append(FileNotFoundError("gh"))
    store, _ = _store(fake)

    result = store.add_comment("#1", "x")

    assert result.success is False
    assert result.retryable is False
    assert "gh CLI not found" in result.error


def test_ping_uses_auth_status(fake: _FakeGh) -> None:
    store, _ = _store(fake)

    assert store.ping().ok is True

    fake.fail_with("You are not logged into any GitHub hosts")
    failed = store.ping()
    assert failed.ok is False
    assert "not logged" in failed.error
