"""Detection of agent processes left behind by a dead orchestrator."""

from __future__ import annotations

import os
import re
import shlex
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

import psutil

from loopwork.processes.liveness import is_process_alive
from loopwork.processes.tracker import ProcessTracker, TrackedProcess


DEFAULT_ORPHAN_PATTERNS: tuple[str, ...] = (
    "claude",
    "opencode",
    "codex exec",
    "gemini --prompt",
    "tail -f",
    "zsh -c -l source.*shell-snapshots",
)
ORCHESTRATOR_MARKER = "loopwork"
MIN_USER_PID = 100
PID_REUSE_TOLERANCE_SECONDS = 5.0


class OrphanClassification(str, Enum):
    """How sure the detector is that a process is an orphan."""

    CONFIRMED = "confirmed"
    SUSPECTED = "suspected"


@dataclass(slots=True, frozen=True)
class ProcessSnapshot:
    """Subset of the OS process table the detector needs."""

    pid: int
    ppid: int
    command: str
    create_time: float
    rss: int
    cwd: str | None


@dataclass(slots=True, frozen=True)
class OrphanProcess:
    """Orphan candidate computed fresh on every scan."""

    pid: int
    command: str
    age: float
    memory: int
    cwd: str | None
    classification: OrphanClassification
    reason: str


class OrphanDetector:
    """Classify live processes using the tracker registry plus command patterns."""

    def __init__(  # noqa: PLR0913
        self,
        tracker: ProcessTracker,
        *,
        patterns: Iterable[str] = DEFAULT_ORPHAN_PATTERNS,
        max_age: float = 0.0,
        scan: Callable[[], list[ProcessSnapshot]] | None = None,
        is_alive: Callable[[int], bool] = is_process_alive,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.tracker = tracker
        self.project_root = tracker.context.project_root.resolve()
        self.patterns = tuple(patterns)
        self.max_age = max_age
        self._scan = scan or scan_process_table
        self._is_alive = is_alive
        self._clock = clock
        self._log = tracker.context.logger.getChild("orphans")
        self._matchers = [_compile_pattern(pattern) for pattern in self.patterns]

    def detect_orphans(self) -> list[OrphanProcess]:
        """Scan the process table and return orphan candidates ordered by PID."""

        tracked = {entry.pid: entry for entry in self.tracker.get_tracked_pids()}
        table = {snapshot.pid: snapshot for snapshot in self._scan()}
        protected = _self_and_ancestors(table)
        now = self._clock()

        orphans: list[OrphanProcess] = []
        for snapshot in sorted(table.values(), key=lambda item: item.pid):
            if snapshot.pid < MIN_USER_PID or snapshot.pid in protected:
                continue
            age = max(0.0, now - snapshot.create_time)
            if self.max_age > 0 and age < self.max_age:
                continue

            classified = self._classify(snapshot, tracked=tracked, table=table)
            if classified is None:
                continue
            classification, reason = classified
            if not self._is_alive(snapshot.pid):
                continue
            orphans.append(
                OrphanProcess(
                    pid=snapshot.pid,
                    command=snapshot.command,
                    age=age,
                    memory=snapshot.rss,
                    cwd=snapshot.cwd,
                    classification=classification,
                    reason=reason,
                ),
            )

        self.tracker.prune_dead()
        self._log.debug(
            "Orphan scan: %d candidate(s), %d tracked PID(s)",
            len(orphans),
            len(tracked),
        )
        return orphans

    def _classify(
        self,
        snapshot: ProcessSnapshot,
        *,
        tracked: dict[int, TrackedProcess],
        table: dict[int, ProcessSnapshot],
    ) -> tuple[OrphanClassification, str] | None:
        orchestrator = _orchestrator_ancestor(snapshot, table)
        if orchestrator is not None and self._is_alive(orchestrator.pid):
            # Child of a running loop, whichever namespace it belongs to.
            return None

        entry = tracked.get(snapshot.pid)
        if entry is not None and _is_same_process(entry, snapshot):
            owner = entry.owner_pid
            if owner is not None and owner != snapshot.pid and self._is_alive(owner):
                # Still owned by a running loop.
                return None
            return OrphanClassification.CONFIRMED, "Tracked by loopwork"
        if entry is not None:
            self._log.debug("PID %d was reused since it was tracked; ignoring entry", snapshot.pid)

        if not self._matches(snapshot.command):
            return None
        if snapshot.cwd and _is_within(snapshot.cwd, self.project_root):
            if orchestrator is not None:
                return (
                    OrphanClassification.CONFIRMED,
                    "Loopwork descendant process in project directory",
                )
            return (
                OrphanClassification.SUSPECTED,
                "Matches pattern and runs in project directory but not tracked",
            )
        return (
            OrphanClassification.SUSPECTED,
            "Matches orphan pattern but cwd unknown or outside project",
        )

    def _matches(self, command: str) -> bool:
        return any(matcher(command) for matcher in self._matchers)


def scan_process_table() -> list[ProcessSnapshot]:
    """Read the live process table through psutil."""

    snapshots: list[ProcessSnapshot] = []
    for process in psutil.process_iter(["pid", "ppid", "cmdline", "create_time", "memory_info"]):
        try:
            info = process.info
            cmdline = " ".join(info.get("cmdline") or [])
            if not cmdline:
                continue
            memory = info.get("memory_info")
            try:
                cwd = process.cwd()
            except (psutil.AccessDenied, psutil.ZombieProcess):
                cwd = None
            snapshots.append(
                ProcessSnapshot(
                    pid=int(info["pid"]),
                    ppid=int(info.get("ppid") or 0),
                    command=cmdline,
                    create_time=float(info.get("create_time") or 0.0),
                    rss=int(memory.rss) if memory is not None else 0,
                    cwd=cwd,
                ),
            )
        except (psutil.NoSuchProcess, psutil.AccessDenied, TypeError):
            continue
    return snapshots


def _compile_pattern(pattern: str) -> Callable[[str], bool]:
    if ".*" in pattern:
        regex = re.compile(pattern)
        return lambda command: regex.search(command) is not None
    return lambda command: pattern in command


def _is_within(path: str, root: Path) -> bool:
    try:
        return Path(path).resolve().is_relative_to(root)
    except (OSError, ValueError):
        return False


def _orchestrator_ancestor(
    snapshot: ProcessSnapshot,
    table: dict[int, ProcessSnapshot],
) -> ProcessSnapshot | None:
    visited: set[int] = set()
    current = table.get(snapshot.ppid)
    while current is not None and current.pid > 1 and current.pid not in visited:
        visited.add(current.pid)
        if ORCHESTRATOR_MARKER in current.command:
            return current
        current = table.get(current.ppid)
    return None


def _is_same_process(entry: TrackedProcess, snapshot: ProcessSnapshot) -> bool:
    """Reject registry entries whose PID now belongs to a different process."""

    spawned_at = _parse_timestamp(entry.spawned_at)
    if (
        spawned_at is not None
        and snapshot.create_time > 0
        and snapshot.create_time > spawned_at + PID_REUSE_TOLERANCE_SECONDS
    ):
        return False
    executable = _executable_name(entry.command)
    return executable is None or executable in snapshot.command


def _parse_timestamp(value: str) -> float | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.timestamp()


def _executable_name(command: str) -> str | None:
    try:
        argv = shlex.split(command)
    except ValueError:
        argv = command.split()
    if not argv:
        return None
    return Path(argv[0]).name or None


def _self_and_ancestors(table: dict[int, ProcessSnapshot]) -> set[int]:
    protected = {os.getpid()}
    current = table.get(os.getpid())
    while current is not None and current.ppid not in protected and current.ppid > 0:
        protected.add(current.ppid)
        current = table.get(current.ppid)
    protected.add(os.getppid())
    return protected
