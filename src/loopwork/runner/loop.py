"""Single-namespace automation loop: pick a task, run the agent, record the outcome."""

from __future__ import annotations

import signal
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

from loopwork.circuit_breaker import CircuitBreaker, CircuitOpenError
from loopwork.config import AgentSettings
from loopwork.context import OrchestrationContext
from loopwork.errors import LoopworkError, SessionLockedError
from loopwork.runner.backend.base import AgentBackend, AgentRunRequest, AgentRunResult
from loopwork.runner.backend.cli_backend import AgentRunError, read_tail
from loopwork.session.manager import SessionStateManager
from loopwork.tasks.base import TaskStore
from loopwork.tasks.models import Task, TaskFilters

AGENT_OPERATION = "agent"


class StopReason(str, Enum):
    """Why the loop returned."""

    BACKLOG_EMPTY = "backlog_empty"
    MAX_ITERATIONS = "max_iterations"
    STOP_REQUESTED = "stop_requested"
    CIRCUIT_OPEN = "circuit_open"
    STORE_ERROR = "store_error"


class _TaskOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"
    CIRCUIT_OPEN = "circuit_open"
    STORE_ERROR = "store_error"


@dataclass(slots=True)
class LoopSummary:
    """Aggregate loop counters for CLI reporting."""

    iterations: int = 0
    completed: int = 0
    failed: int = 0
    timeouts: int = 0
    last_task_id: str | None = None
    resumed_from: str | None = None
    stop_reason: StopReason | None = None


class AgentExitError(LoopworkError):
    """Agent ran but exited non-zero or timed out."""

    def __init__(self, result: AgentRunResult, timeout_seconds: int) -> None:
        if result.timed_out:
            message = f"Agent timed out after {timeout_seconds}s"
        else:
            message = f"Agent exited with code {result.exit_code}"
        stderr_tail = read_tail(result.stderr_path, limit=500).strip()
        if stderr_tail:
            message = f"{message}: {stderr_tail}"
        super().__init__(message)
        self.result = result


class LoopRunner:
    """Drive the agent over the backlog while holding the namespace lock."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        context: OrchestrationContext,
        store: TaskStore,
        session: SessionStateManager,
        backend: AgentBackend,
        breaker: CircuitBreaker,
        agent: AgentSettings,
        filters: TaskFilters | None = None,
        before_start: Callable[[], object] | None = None,
    ) -> None:
        self.context = context
        self.store = store
        self.session = session
        self.backend = backend
        self.breaker = breaker
        self.agent = agent
        self.filters = filters or TaskFilters()
        self.before_start = before_start
        self._log = context.logger.getChild("loop")
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self, *, signal_name: str = "manual") -> None:
        if not self._stop_requested:
            self._log.warning("Stop requested (%s); finishing current task", signal_name)
        self._stop_requested = True
        self._stop_signal_name = signal_name

    def run(self, *, max_iterations: int | None = None, resume: bool = False) -> LoopSummary:
        """Run until the backlog is empty, ``max_iterations`` is hit, or a stop is requested.

        Raises:
            SessionLockedError: another live loop holds this namespace.
        """

        if not self.session.acquire_lock():
            raise SessionLockedError(self.context.namespace, self.session.lock_holder())
        try:
            with self._signal_handlers():
                if self.before_start is not None:
                    self.before_start()
                return self._run_locked(max_iterations=max_iterations, resume=resume)
        finally:
            self.session.release_lock()

    def _run_locked(self, *, max_iterations: int | None, resume: bool) -> LoopSummary:
        summary = LoopSummary()
        filters = self.filters
        iteration = 0

        if resume:
            snapshot = self.session.load_state()
            if snapshot is not None:
                iteration = snapshot.iteration
                filters = replace(filters, start_from=snapshot.task_ref)
                summary.resumed_from = snapshot.task_ref
                self._log.info(
                    "Resuming from task %s at iteration %d",
                    snapshot.task_ref,
                    snapshot.iteration,
                )
            else:
                self._log.info("No saved state for namespace %s", self.context.namespace)

        while True:
            if self._stop_requested:
                summary.stop_reason = StopReason.STOP_REQUESTED
                break
            if max_iterations is not None and summary.iterations >= max_iterations:
                summary.stop_reason = StopReason.MAX_ITERATIONS
                break

            task = self.store.find_next_task(filters)
            filters = replace(filters, start_from=None)
            if task is None:
                self._log.info("No runnable tasks left")
                self.session.clear_state()
                summary.stop_reason = StopReason.BACKLOG_EMPTY
                break

            iteration += 1
            summary.iterations += 1
            summary.last_task_id = task.id
            outcome = self._run_task(task, iteration=iteration, summary=summary)

            if outcome == _TaskOutcome.STORE_ERROR:
                summary.stop_reason = StopReason.STORE_ERROR
                break
            self.session.save_state(task.id, iteration)
            if outcome == _TaskOutcome.CIRCUIT_OPEN:
                summary.stop_reason = StopReason.CIRCUIT_OPEN
                break
            if outcome == _TaskOutcome.INTERRUPTED:
                summary.stop_reason = StopReason.STOP_REQUESTED
                break

        self._log.info(
            "Loop finished: iterations=%d completed=%d failed=%d reason=%s",
            summary.iterations,
            summary.completed,
            summary.failed,
            summary.stop_reason.value if summary.stop_reason else "unknown",
        )
        return summary

    def _run_task(self, task: Task, *, iteration: int, summary: LoopSummary) -> _TaskOutcome:
        marked = self.store.mark_in_progress(task.id)
        if not marked.success:
            self._log.error("Cannot mark %s in progress: %s", task.id, marked.error)
            return _TaskOutcome.STORE_ERROR

        self._log.info("Iteration %d: running agent on %s (%s)", iteration, task.id, task.title)
        request = AgentRunRequest(
            task_id=task.id,
            prompt=build_prompt(task),
            workdir=self.context.project_root,
            output_dir=self._iteration_dir(task, iteration),
            command_template=self.agent.command_template,
            timeout_seconds=self.agent.timeout_seconds,
            model=self.agent.model,
            shutdown_requested=lambda: self._stop_requested,
            graceful_shutdown_seconds=self.agent.graceful_shutdown_seconds,
        )

        try:
            result = self.breaker.execute(AGENT_OPERATION, lambda: self._invoke(request))
        except CircuitOpenError as error:
            self._log.error("%s", error.message)
            self.store.reset_to_pending(task.id)
            return _TaskOutcome.CIRCUIT_OPEN
        except AgentExitError as error:
            if error.result.timed_out:
                summary.timeouts += 1
            return self._record_failure(task, error.message, summary)
        except AgentRunError as error:
            return self._record_failure(task, str(error), summary)

        if not result.succeeded:
            # Stopped by a shutdown request; the task goes back to the backlog.
            self._log.warning("Agent for %s was interrupted; returning it to pending", task.id)
            self.store.reset_to_pending(task.id)
            return _TaskOutcome.INTERRUPTED

        completed = self.store.mark_completed(
            task.id,
            f"Completed by loopwork (iteration {iteration})",
        )
        if not completed.success:
            self._log.error("Cannot mark %s completed: %s", task.id, completed.error)
            return _TaskOutcome.STORE_ERROR
        summary.completed += 1
        self._log.info("Task %s completed", task.id)
        return _TaskOutcome.COMPLETED

    def _invoke(self, request: AgentRunRequest) -> AgentRunResult:
        result = self.backend.run(request)
        if result.succeeded or self._stop_requested:
            # An agent stopped by the operator is not a dependency failure.
            return result
        raise AgentExitError(result, request.timeout_seconds)

    def _record_failure(self, task: Task, reason: str, summary: LoopSummary) -> _TaskOutcome:
        self._log.warning("Task %s failed: %s", task.id, reason)
        summary.failed += 1
        failed = self.store.mark_failed(task.id, reason)
        if not failed.success:
            self._log.error("Cannot mark %s failed: %s", task.id, failed.error)
            return _TaskOutcome.STORE_ERROR
        return _TaskOutcome.FAILED

    def _iteration_dir(self, task: Task, iteration: int) -> Path:
        base = self.context.output_dir or self.context.state_dir / "runs"
        return base / self.context.session_id / f"{iteration:04d}-{_safe_name(task.id)}"

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        installed = False
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
            installed = True
        except ValueError:
            # Signal handlers can only be installed in main thread.
            pass
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)


def build_prompt(task: Task) -> str:
    """Render the agent prompt for one task."""

    lines = [f"# Task {task.id}: {task.title}", ""]
    if task.parent_id:
        lines.append(f"Parent task: {task.parent_id}")
    if task.depends_on:
        lines.append(f"Depends on (completed): {', '.join(task.depends_on)}")
    if task.feature:
        lines.append(f"Feature: {task.feature}")
    if len(lines) > 2:
        lines.append("")
    lines.append(task.description.strip() or "(no description provided)")
    return "\n".join(lines) + "\n"


def _safe_name(value: str) -> str:
    return "".join(char if char.isalnum() or char in "-_." else "_" for char in value)
