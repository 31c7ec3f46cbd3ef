"""Shared error taxonomy for loopwork components."""

from __future__ import annotations


class LoopworkError(Exception):
    """Base error carrying operator-facing remediation hints."""

    def __init__(self, message: str, suggestions: tuple[str, ...] = ()) -> None:
        super().__init__(message)
        self.message = message
        self.suggestions = suggestions

    def __str__(self) -> str:
        if not self.suggestions:
            return self.message
        hints = "\n".join(f"  - {hint}" for hint in self.suggestions)
        return f"{self.message}\n{hints}"


class CorruptStateError(LoopworkError):
    """Persisted artifact cannot be parsed and must not be overwritten blindly."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(
            f"Cannot parse state file {path}: {reason}",
            (
                "Inspect the file and fix or remove it",
                "Deleting the file resets the stored state",
            ),
        )
        self.path = path


class SessionLockedError(LoopworkError):
    """Another live process holds the session lock for this namespace."""

    def __init__(self, namespace: str, holder_pid: int | None) -> None:
        holder = str(holder_pid) if holder_pid is not None else "unknown"
        super().__init__(
            f"Namespace {namespace!r} is locked by another loopwork process (PID: {holder})",
            (
                "Wait for the other loop to finish",
                "Use a different namespace to run in parallel",
            ),
        )
        self.namespace = namespace
        self.holder_pid = holder_pid
