"""Escalating termination of orphan processes."""

from __future__ import annotations

import json
import logging
import os
import signal
import time
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Protocol

from loopwork.context import OrchestrationContext
from loopwork.processes.detector import MIN_USER_PID, OrphanClassification, OrphanProcess

logger = logging.getLogger(__name__)

KillFunction = Callable[[int, int], None]

POLL_INTERVAL_SECONDS = 0.1


class KillOutcome(str, Enum):
    """Per-PID result of a kill attempt."""

    KILLED = "killed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(slots=True, frozen=True)
class KillOptions:
    """Options for one kill batch."""

    dry_run: bool = False
    force: bool = False
    timeout: float = 5.0


@dataclass(slots=True, frozen=True)
class KillEvent:
    """Discrete lifecycle notification for one PID."""

    kind: KillOutcome
    pid: int
    command: str
    reason: str | None = None
    error: str | None = None
    dry_run: bool = False


@dataclass(slots=True)
class KillFailure:
    """PID that could not be terminated."""

    pid: int
    error: str


@dataclass(slots=True)
class KillResult:
    """Aggregated outcome of a kill batch."""

    dry_run: bool = False
    killed: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed: list[KillFailure] = field(default_factory=list)
    events: list[KillEvent] = field(default_factory=list)


class KillObserver(Protocol):
    """Receives kill events synchronously, in batch order."""

    def on_kill_event(self, event: KillEvent) -> None:
        """Handle one event."""


class OrphanEventLog:
    """Observer appending kill events as JSON lines to the state directory."""

    def __init__(self, context: OrchestrationContext) -> None:
        self.context = context
        self.path: Path = context.state_dir / "orphan-events.log"

    def on_kill_event(self, event: KillEvent) -> None:
        self.context.ensure_state_dir()
        payload = asdict(event)
        payload["kind"] = event.kind.value
        payload["namespace"] = self.context.namespace
        payload["at"] = datetime.now(tz=UTC).isoformat()
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False, sort_keys=True) + "\n")


class OrphanKiller:
    """Terminate orphan processes with safety checks and SIGTERM -> SIGKILL escalation."""

    def __init__(
        self,
        *,
        kill: KillFunction = os.kill,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        observer: KillObserver | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._kill = kill
        self._sleep = sleep
        self._clock = clock
        self._observer = observer
        self._log = log or logger

    def kill(
        self,
        orphans: Sequence[OrphanProcess],
        options: KillOptions | None = None,
    ) -> KillResult:
        """Process every candidate in order; one failure never stops the batch."""

        options = options or KillOptions()
        result = KillResult(dry_run=options.dry_run)
        for orphan in orphans:
            self._kill_one(orphan, options=options, result=result)
        return result

    def _kill_one(self, orphan: OrphanProcess, *, options: KillOptions, result: KillResult) -> None:
        pid, command = orphan.pid, orphan.command

        if pid < MIN_USER_PID:
            self._skip(result, orphan, f"System process (PID < {MIN_USER_PID})")
            return
        if orphan.classification == OrphanClassification.SUSPECTED and not options.force:
            self._skip(result, orphan, "Suspected orphan (use force to kill)")
            return

        try:
            if not self._exists(pid):
                self._killed(result, orphan, "Process already exited", dry_run=options.dry_run)
                return
            if options.dry_run:
                self._log.info("[DRY RUN] Would kill PID %d: %s", pid, command)
                self._killed(result, orphan, "Would be killed", dry_run=True)
                return

            self._log.debug("Sending SIGTERM to PID %d: %s", pid, command)
            self._kill(pid, signal.SIGTERM)
            if self._wait_for_exit(pid, options.timeout):
                self._log.info("Killed PID %d: %s", pid, command)
                self._killed(result, orphan, "Terminated")
                return

            self._log.warning("PID %d did not respond to SIGTERM, sending SIGKILL", pid)
            if not self._exists(pid):
                self._killed(result, orphan, "Exited before SIGKILL")
                return
            self._kill(pid, _force_signal())
            self._sleep(POLL_INTERVAL_SECONDS)
            if self._exists(pid):
                self._fail(result, orphan, "Process survived SIGKILL")
                return
            self._log.info("Force killed PID %d: %s", pid, command)
            self._killed(result, orphan, "Force killed")
        except ProcessLookupError:
            self._log.debug("PID %d no longer exists", pid)
            self._killed(result, orphan, "Process already exited", dry_run=options.dry_run)
        except PermissionError:
            self._log.error("Permission denied to kill PID %d: %s", pid, command)
            self._fail(result, orphan, "Permission denied")
        except OSError as error:
            self._log.error("Failed to kill PID %d: %s", pid, error)
            self._fail(result, orphan, str(error))

    def _exists(self, pid: int) -> bool:
        try:
            self._kill(pid, 0)
        except ProcessLookupError:
            return False
        return True

    def _wait_for_exit(self, pid: int, timeout: float) -> bool:
        deadline = self._clock() + timeout
        while self._clock() < deadline:
            if not self._exists(pid):
                return True
            self._sleep(POLL_INTERVAL_SECONDS)
        return not self._exists(pid)

    def _skip(self, result: KillResult, orphan: OrphanProcess, reason: str) -> None:
        self._log.debug("Skipping PID %d: %s", orphan.pid, reason)
        result.skipped.append(orphan.pid)
        event = KillEvent(KillOutcome.SKIPPED, orphan.pid, orphan.command, reason=reason)
        self._emit(result, event)

    def _killed(
        self,
        result: KillResult,
        orphan: OrphanProcess,
        reason: str,
        *,
        dry_run: bool = False,
    ) -> None:
        result.killed.append(orphan.pid)
        self._emit(
            result,
            KillEvent(
                KillOutcome.KILLED,
                orphan.pid,
                orphan.command,
                reason=reason,
                dry_run=dry_run,
            ),
        )

    def _fail(self, result: KillResult, orphan: OrphanProcess, error: str) -> None:
        result.failed.append(KillFailure(pid=orphan.pid, error=error))
        self._emit(result, KillEvent(KillOutcome.FAILED, orphan.pid, orphan.command, error=error))

    def _emit(self, result: KillResult, event: KillEvent) -> None:
        result.events.append(event)
        if self._observer is not None:
            self._observer.on_kill_event(event)


def _force_signal() -> int:
    return getattr(signal, "SIGKILL", signal.SIGTERM)
