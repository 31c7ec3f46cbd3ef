"""Namespaced session lock and resumable session snapshot."""

from __future__ import annotations

import os
import shutil
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loopwork.context import OrchestrationContext
from loopwork.errors import SessionLockedError
from loopwork.fileio import OWNER_ONLY, write_text_atomic
from loopwork.processes.liveness import is_process_alive
from loopwork.session.plugin_state import JsonPluginStateStore, PluginStateStore

LOCK_PID_FILE = "pid"

_TASK_REF_KEYS = ("TASK_REF", "LAST_ISSUE")


@dataclass(slots=True, frozen=True)
class SessionSnapshot:
    """Progress marker written after every loop iteration."""

    namespace: str
    task_ref: str
    iteration: int
    output_dir: str
    session_id: str
    saved_at: datetime | None


class SessionStateManager:
    """Single-writer lock, resume snapshot, and plugin state for one namespace.

    The lock is a directory: ``os.mkdir`` either creates it or fails, which
    makes acquisition atomic on every local filesystem. The holder writes its
    PID inside so a later caller can tell a live holder from a crashed one.
    """

    def __init__(
        self,
        context: OrchestrationContext,
        *,
        plugin_store: PluginStateStore | None = None,
        max_lock_attempts: int = 3,
        lock_grace_seconds: float = 10.0,
        is_alive: Callable[[int], bool] = is_process_alive,
    ) -> None:
        self.context = context
        self.namespace = context.namespace
        self.lock_path: Path = context.namespaced("state", ".lock")
        self.state_path: Path = context.namespaced("state")
        self.plugins: PluginStateStore = plugin_store or JsonPluginStateStore(context)
        self.max_lock_attempts = max_lock_attempts
        self.lock_grace_seconds = lock_grace_seconds
        self._is_alive = is_alive
        self._log = context.logger.getChild("session")

    def acquire_lock(self, retry_count: int = 0) -> bool:
        """Take the namespace lock, reclaiming it from a dead holder if needed."""

        if retry_count >= self.max_lock_attempts:
            self._log.error("Failed to acquire lock after %d attempts", retry_count)
            return False

        self.context.ensure_state_dir()
        try:
            os.mkdir(self.lock_path)
        except FileExistsError:
            return self._handle_existing_lock(retry_count)

        (self.lock_path / LOCK_PID_FILE).write_text(str(os.getpid()), "utf-8")
        self._log.debug("Acquired lock %s", self.lock_path)
        return True

    def release_lock(self) -> None:
        """Remove the lock directory; a missing lock is not an error."""

        try:
            shutil.rmtree(self.lock_path)
        except FileNotFoundError:
            return
        except OSError as error:
            self._log.error("Failed to release lock %s: %s", self.lock_path, error)

    def lock_holder(self) -> int | None:
        """PID recorded in the lock, or None if unlocked or unreadable."""

        try:
            return int((self.lock_path / LOCK_PID_FILE).read_text("utf-8").strip())
        except (OSError, ValueError):
            return None

    def is_locked(self) -> bool:
        return self.lock_path.is_dir()

    @contextmanager
    def hold_lock(self) -> Iterator[None]:
        """Hold the lock for the block or raise :class:`SessionLockedError`."""

        if not self.acquire_lock():
            raise SessionLockedError(self.namespace, self.lock_holder())
        try:
            yield
        finally:
            self.release_lock()

    def save_state(self, task_ref: str | int, iteration: int) -> None:
        """Overwrite the namespace snapshot; the file is readable by the owner only.

        Raises ValueError for a reference that would not survive the
        line-based format (empty, padded, or containing control characters).
        """

        ref = str(task_ref)
        if not _is_storable_value(ref):
            raise ValueError(f"Task reference {ref!r} cannot be stored in the session snapshot")
        output_dir = self.context.output_dir or ""
        lines = [
            f"NAMESPACE={self.namespace}",
            f"TASK_REF={ref}",
            f"LAST_ITERATION={iteration}",
            f"LAST_OUTPUT_DIR={output_dir}",
            f"SESSION_ID={self.context.session_id}",
            f"SAVED_AT={datetime.now(tz=UTC).isoformat()}",
        ]
        self.context.ensure_state_dir()
        write_text_atomic(self.state_path, "\n".join(lines) + "\n", mode=OWNER_ONLY)
        self._log.debug(
            "State saved: task=%s iteration=%d -> %s",
            task_ref,
            iteration,
            self.state_path,
        )

    def load_state(self) -> SessionSnapshot | None:
        """Parse the snapshot; missing, partial, or unreadable files yield None."""

        try:
            content = self.state_path.read_text("utf-8")
        except FileNotFoundError:
            return None
        except (OSError, UnicodeDecodeError) as error:
            self._log.warning("Failed to load state %s: %s", self.state_path, error)
            return None

        values = _parse_key_values(content)
        task_ref = next((values[key] for key in _TASK_REF_KEYS if values.get(key)), None)
        iteration_raw = values.get("LAST_ITERATION")
        if task_ref is None or iteration_raw is None:
            return None
        try:
            iteration = int(iteration_raw)
        except ValueError:
            self._log.warning(
                "Ignoring state %s with bad iteration %r",
                self.state_path,
                iteration_raw,
            )
            return None

        return SessionSnapshot(
            namespace=values.get("NAMESPACE", self.namespace),
            task_ref=task_ref,
            iteration=iteration,
            output_dir=values.get("LAST_OUTPUT_DIR", ""),
            session_id=values.get("SESSION_ID", ""),
            saved_at=_parse_datetime(values.get("SAVED_AT")),
        )

    def clear_state(self) -> None:
        try:
            self.state_path.unlink()
        except FileNotFoundError:
            return
        self._log.debug("State cleared")

    def get_plugin_state(self, name: str) -> Any | None:
        return self.plugins.get_plugin_state(name)

    def set_plugin_state(self, name: str, value: Any) -> None:
        self.plugins.set_plugin_state(name, value)

    def delete_plugin_state(self, name: str) -> bool:
        return self.plugins.delete_plugin_state(name)

    def has_plugin_state(self, name: str) -> bool:
        return self.plugins.has_plugin_state(name)

    def list_plugins(self) -> list[str]:
        return self.plugins.list_plugins()

    def _handle_existing_lock(self, retry_count: int) -> bool:
        holder = self.lock_holder()
        if holder is None:
            if self._lock_age() < self.lock_grace_seconds:
                # Holder may still be between mkdir and writing its PID.
                self._log.error("Lock %s exists without a readable PID", self.lock_path)
                return False
            self._log.warning("Removing lock %s without a readable PID", self.lock_path)
        elif holder == os.getpid() or self._is_alive(holder):
            self._log.error("Another loopwork is running (PID: %d)", holder)
            return False
        else:
            self._log.warning("Stale lock found (process %d not running), removing", holder)

        shutil.rmtree(self.lock_path, ignore_errors=True)
        return self.acquire_lock(retry_count + 1)

    def _lock_age(self) -> float:
        try:
            return time.time() - self.lock_path.stat().st_mtime
        except FileNotFoundError:
            return float("inf")


def _parse_key_values(content: str) -> dict[str, str]:
    values: dict[str, str] = {}
    for line in content.splitlines():
        key, separator, value = line.strip().partition("=")
        key, value = key.strip(), value.strip()
        if separator and key and value:
            values[key] = value
    return values


def _is_storable_value(value: str) -> bool:
    if not value or value != value.strip():
        return False
    return not any(ord(char) < 0x20 or ord(char) == 0x7F for char in value)


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
