"""Crash-survivable registry of child processes spawned by the loop."""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loopwork.context import OrchestrationContext
from loopwork.fileio import OWNER_ONLY, load_json, write_json
from loopwork.processes.liveness import is_process_alive


@dataclass(slots=True, frozen=True)
class TrackedProcess:
    """One registry entry."""

    pid: int
    command: str
    cwd: str
    spawned_at: str
    owner_pid: int | None = None

    def to_json(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "pid": self.pid,
            "command": self.command,
            "cwd": self.cwd,
            "spawnedAt": self.spawned_at,
        }
        if self.owner_pid is not None:
            payload["ownerPid"] = self.owner_pid
        return payload

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> TrackedProcess:
        owner = payload.get("ownerPid")
        return cls(
            pid=int(payload["pid"]),
            command=str(payload.get("command", "")),
            cwd=str(payload.get("cwd", "")),
            spawned_at=str(payload.get("spawnedAt", "")),
            owner_pid=int(owner) if owner is not None else None,
        )


class ProcessTracker:
    """Registry of spawned PIDs persisted under the namespace state directory.

    Entries are added when an agent process starts and removed when it exits
    normally. If the orchestrator dies first the entry stays behind; that
    leftover is what orphan reconciliation works from.
    """

    def __init__(self, context: OrchestrationContext) -> None:
        self.context = context
        self.registry_path = context.namespaced("spawned-pids", ".json")
        self._log = context.logger.getChild("processes")

    def track_spawned_pid(self, pid: int, command: str, cwd: str | Path) -> None:
        entries = self.get_tracked_pids()
        if any(entry.pid == pid for entry in entries):
            return
        entries.append(
            TrackedProcess(
                pid=pid,
                command=command,
                cwd=str(cwd),
                spawned_at=datetime.now(tz=UTC).isoformat(),
                owner_pid=os.getpid(),
            ),
        )
        self._write(entries)
        self._log.debug("Tracking PID %d: %s", pid, command)

    def untrack_pid(self, pid: int) -> None:
        if not self.registry_path.exists():
            return
        entries = self.get_tracked_pids()
        remaining = [entry for entry in entries if entry.pid != pid]
        if len(remaining) == len(entries):
            return
        self._write(remaining)
        self._log.debug("Untracked PID %d", pid)

    def get_tracked_pids(self) -> list[TrackedProcess]:
        """Return registry entries; unreadable registries read as empty."""

        try:
            payload = load_json(self.registry_path)
            return [TrackedProcess.from_json(item) for item in payload.get("pids", [])]
        except FileNotFoundError:
            return []
        except (OSError, TypeError, KeyError, ValueError, AttributeError) as error:
            self._log.debug("Failed to read tracked PIDs from %s: %s", self.registry_path, error)
            return []

    def is_tracked(self, pid: int) -> bool:
        return any(entry.pid == pid for entry in self.get_tracked_pids())

    def prune_dead(self) -> list[TrackedProcess]:
        """Drop entries whose process no longer exists and return them."""

        entries = self.get_tracked_pids()
        alive = [entry for entry in entries if is_process_alive(entry.pid)]
        dead = [entry for entry in entries if entry not in alive]
        if dead:
            self._write(alive)
            self._log.debug("Pruned %d dead tracked PID(s)", len(dead))
        return dead

    @contextmanager
    def tracking(self, pid: int, command: str, cwd: str | Path) -> Iterator[None]:
        """Keep ``pid`` registered for the duration of the block."""

        self.track_spawned_pid(pid, command, cwd)
        try:
            yield
        finally:
            self.untrack_pid(pid)

    def _write(self, entries: list[TrackedProcess]) -> None:
        self.context.ensure_state_dir()
        write_json(
            self.registry_path,
            {"pids": [entry.to_json() for entry in entries]},
            mode=OWNER_ONLY,
        )
