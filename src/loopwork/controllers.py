"""Controllers for loopwork CLI commands."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from loopwork.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from loopwork.config import Settings
from loopwork.context import OrchestrationContext
from loopwork.errors import LoopworkError
from loopwork.processes import (
    DEFAULT_ORPHAN_PATTERNS,
    KillOptions,
    KillResult,
    OrphanClassification,
    OrphanDetector,
    OrphanEventLog,
    OrphanKiller,
    ProcessTracker,
    is_process_alive,
)
from loopwork.runner.backend import CliAgentBackend
from loopwork.runner.loop import LoopRunner
from loopwork.session.manager import SessionStateManager
from loopwork.tasks import (
    JsonTaskStore,
    TaskFilters,
    TaskStore,
    build_task_store,
    find_dependency_cycle,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunCommand:
    """CLI input for the automation loop."""

    project_root: Path | None
    namespace: str | None
    tasks_file: Path | None
    once: bool
    max_iterations: int | None
    resume: bool
    feature: str | None = None


@dataclass(slots=True)
class TasksCommand:
    """CLI input for backlog inspection."""

    project_root: Path | None
    namespace: str | None
    tasks_file: Path | None
    feature: str | None
    include_blocked: bool = False


@dataclass(slots=True)
class NamespaceCommand:
    """CLI input for commands that only need the project and namespace."""

    project_root: Path | None
    namespace: str | None
    tasks_file: Path | None = None


@dataclass(slots=True)
class CleanProcessesCommand:
    """CLI input for orphan termination."""

    project_root: Path | None
    namespace: str | None
    dry_run: bool
    force: bool
    timeout: float | None


class LoopworkCliController:
    """Coordinates loop, backlog, session, and process CLI operations."""

    def run(self, command: RunCommand) -> list[str]:
        settings = _settings(command.project_root, command.namespace, command.tasks_file)
        context = _context(settings)
        tracker = ProcessTracker(context)
        runner = LoopRunner(
            context=context,
            store=build_task_store(settings),
            session=_session(context, settings),
            backend=CliAgentBackend(tracker),
            breaker=CircuitBreaker(
                CircuitBreakerConfig(
                    max_failures=settings.circuit_breaker.max_failures,
                    cooldown_seconds=settings.circuit_breaker.cooldown_seconds,
                    half_open_attempts=settings.circuit_breaker.half_open_attempts,
                ),
            ),
            agent=settings.agent,
            filters=TaskFilters(feature=command.feature),
            before_start=lambda: _clean_confirmed_orphans(context, settings, tracker),
        )
        max_iterations = 1 if command.once else command.max_iterations
        summary = runner.run(max_iterations=max_iterations, resume=command.resume)

        lines = []
        if summary.resumed_from:
            lines.append(f"Resumed from: {summary.resumed_from}")
        lines.append(
            "Loop summary: "
            f"iterations={summary.iterations} completed={summary.completed} "
            f"failed={summary.failed} timeouts={summary.timeouts} "
            f"reason={summary.stop_reason.value if summary.stop_reason else 'unknown'}",
        )
        return lines

    def next_task(self, command: TasksCommand) -> list[str]:
        settings = _settings(command.project_root, command.namespace, command.tasks_file)
        store = build_task_store(settings)
        task = store.find_next_task(TaskFilters(feature=command.feature))
        if task is None:
            return ["No runnable tasks."]
        lines = [f"Next task: {task.id} [{task.priority.value}] {task.title}"]
        if task.parent_id:
            lines.append(f"Parent: {task.parent_id}")
        if task.depends_on:
            lines.append(f"Depends on: {', '.join(task.depends_on)}")
        return lines

    def list_tasks(self, command: TasksCommand) -> list[str]:
        settings = _settings(command.project_root, command.namespace, command.tasks_file)
        store = build_task_store(settings)
        tasks = store.list_pending_tasks(
            TaskFilters(feature=command.feature, include_blocked=command.include_blocked),
        )
        if not tasks:
            lines = ["No pending tasks."]
        else:
            lines = [f"Pending tasks: {len(tasks)}"]
            for task in tasks:
                blocked = ""
                if command.include_blocked and not store.are_dependencies_met(task.id):
                    blocked = " (blocked)"
                lines.append(
                    f"{task.id}\t{task.priority.value}\t{task.title}{blocked}",
                )
        lines.extend(_cycle_lines(store))
        return lines

    def status(self, command: NamespaceCommand) -> list[str]:
        settings = _settings(command.project_root, command.namespace, command.tasks_file)
        context = _context(settings)
        session = _session(context, settings)
        lines = [f"Namespace: {context.namespace}"]

        if session.is_locked():
            holder = session.lock_holder()
            if holder is None:
                lines.append("Lock: held (PID unknown)")
            else:
                state = "running" if is_process_alive(holder) else "stale"
                lines.append(f"Lock: held by PID {holder} ({state})")
        else:
            lines.append("Lock: free")

        snapshot = session.load_state()
        if snapshot is None:
            lines.append("Last state: none")
        else:
            saved_at = snapshot.saved_at.isoformat() if snapshot.saved_at else "unknown"
            lines.append(
                f"Last state: task={snapshot.task_ref} iteration={snapshot.iteration} "
                f"saved_at={saved_at}",
            )

        store = build_task_store(settings)
        ping = store.ping()
        if ping.ok:
            lines.append(f"Backend {store.name}: ok ({ping.latency_ms:.1f} ms)")
            lines.append(f"Pending tasks: {store.count_pending()}")
        else:
            lines.append(f"Backend {store.name}: unavailable ({ping.error})")

        tracked = ProcessTracker(context).get_tracked_pids()
        lines.append(f"Tracked processes: {len(tracked)}")
        return lines

    def unlock(self, command: NamespaceCommand) -> list[str]:
        settings = _settings(command.project_root, command.namespace, command.tasks_file)
        context = _context(settings)
        session = _session(context, settings)
        if not session.is_locked():
            return [f"No lock held for namespace {context.namespace}."]

        holder = session.lock_holder()
        if holder is not None and holder != os.getpid() and is_process_alive(holder):
            raise LoopworkError(
                f"Lock for namespace {context.namespace!r} is held by running PID {holder}",
                (
                    "Stop that loop first",
                    "Use `loopwork processes list` to inspect leftover agents",
                ),
            )
        session.release_lock()
        holder_text = str(holder) if holder is not None else "unknown"
        return [f"Released lock for namespace {context.namespace} (PID {holder_text})."]

    def list_processes(self, command: NamespaceCommand) -> list[str]:
        settings = _settings(command.project_root, command.namespace, command.tasks_file)
        context = _context(settings)
        orphans = _detector(settings, ProcessTracker(context)).detect_orphans()
        if not orphans:
            return ["No orphan processes found."]
        lines = [f"Orphan processes: {len(orphans)}"]
        for orphan in orphans:
            lines.append(
                f"{orphan.pid}\t{orphan.classification.value}\t{orphan.age:.0f}s\t"
                f"{orphan.memory / (1024 * 1024):.1f}MB\t{orphan.command[:80]}\t{orphan.reason}",
            )
        return lines

    def clean_processes(self, command: CleanProcessesCommand) -> list[str]:
        settings = _settings(command.project_root, command.namespace, None)
        context = _context(settings)
        orphans = _detector(settings, ProcessTracker(context)).detect_orphans()
        if not orphans:
            return ["No orphan processes found."]

        killer = OrphanKiller(observer=OrphanEventLog(context), log=context.logger)
        options = KillOptions(
            dry_run=command.dry_run,
            force=command.force,
            timeout=command.timeout or settings.orphans.kill_timeout_seconds,
        )
        return _kill_lines(killer.kill(orphans, options))


def _settings(
    project_root: Path | None,
    namespace: str | None,
    tasks_file: Path | None,
) -> Settings:
    settings = Settings.from_env(project_root=project_root, namespace=namespace)
    if tasks_file is not None:
        settings.tasks.tasks_file = tasks_file
    settings.validate()
    return settings


def _context(settings: Settings) -> OrchestrationContext:
    try:
        return OrchestrationContext(
            project_root=settings.project_root,
            namespace=settings.namespace,
            logger=logging.getLogger("loopwork"),
            output_dir=settings.resolved_output_dir,
        )
    except ValueError as error:
        raise LoopworkError(str(error)) from error


def _session(context: OrchestrationContext, settings: Settings) -> SessionStateManager:
    return SessionStateManager(
        context,
        max_lock_attempts=settings.lock.max_attempts,
        lock_grace_seconds=settings.lock.grace_seconds,
    )


def _detector(settings: Settings, tracker: ProcessTracker) -> OrphanDetector:
    return OrphanDetector(
        tracker,
        patterns=(*DEFAULT_ORPHAN_PATTERNS, *settings.orphans.extra_patterns),
        max_age=settings.orphans.min_age_seconds,
    )


def _clean_confirmed_orphans(
    context: OrchestrationContext,
    settings: Settings,
    tracker: ProcessTracker,
) -> KillResult | None:
    orphans = [
        orphan
        for orphan in _detector(settings, tracker).detect_orphans()
        if orphan.classification == OrphanClassification.CONFIRMED
    ]
    if not orphans:
        return None
    logger.info("Cleaning %d confirmed orphan process(es) before start", len(orphans))
    killer = OrphanKiller(observer=OrphanEventLog(context), log=context.logger)
    return killer.kill(orphans, KillOptions(timeout=settings.orphans.kill_timeout_seconds))


def _kill_lines(result: KillResult) -> list[str]:
    lines = []
    for event in result.events:
        detail = event.reason or event.error or ""
        lines.append(f"{event.kind.value}\t{event.pid}\t{event.command[:60]}\t{detail}")
    prefix = "[DRY RUN] " if result.dry_run else ""
    lines.append(
        f"{prefix}Killed: {len(result.killed)} "
        f"Skipped: {len(result.skipped)} Failed: {len(result.failed)}",
    )
    return lines


def _cycle_lines(store: TaskStore) -> list[str]:
    if not isinstance(store, JsonTaskStore):
        return []
    cycle = find_dependency_cycle(store.dependency_edges())
    if cycle is None:
        return []
    return [f"Warning: dependency cycle {' -> '.join(cycle)} (these tasks never run)"]
