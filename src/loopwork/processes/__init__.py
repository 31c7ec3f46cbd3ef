"""Spawned-process tracking and orphan reconciliation."""

from loopwork.processes.detector import (
    DEFAULT_ORPHAN_PATTERNS,
    OrphanClassification,
    OrphanDetector,
    OrphanProcess,
)
from loopwork.processes.killer import (
    KillEvent,
    KillFailure,
    KillObserver,
    KillOptions,
    KillOutcome,
    KillResult,
    OrphanEventLog,
    OrphanKiller,
)
from loopwork.processes.liveness import is_process_alive
from loopwork.processes.tracker import ProcessTracker, TrackedProcess

__all__ = [
    "DEFAULT_ORPHAN_PATTERNS",
    "KillEvent",
    "KillFailure",
    "KillObserver",
    "KillOptions",
    "KillOutcome",
    "KillResult",
    "OrphanClassification",
    "OrphanDetector",
    "OrphanEventLog",
    "OrphanKiller",
    "OrphanProcess",
    "ProcessTracker",
    "TrackedProcess",
    "is_process_alive",
]
