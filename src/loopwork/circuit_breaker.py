"""Failure-threshold isolation for calls into flaky external dependencies.

States per named operation:

- ``closed``: calls pass through; consecutive failures are counted.
- ``open``: calls fail fast with :class:`CircuitOpenError` until the cooldown
  since the last failure has elapsed.
- ``half-open``: entered lazily by the first call after cooldown. Probes run
  one at a time; ``half_open_attempts`` consecutive successes close the
  circuit, any failure reopens it.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import TypeVar

from loopwork.errors import LoopworkError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


@dataclass(slots=True, frozen=True)
class CircuitBreakerConfig:
    """Thresholds shared by all operations of one breaker."""

    max_failures: int = 3
    cooldown_seconds: float = 60.0
    half_open_attempts: int = 1


@dataclass(slots=True)
class CircuitBreakerRecord:
    """Mutable per-operation state."""

    state: CircuitState = CircuitState.CLOSED
    consecutive_failures: int = 0
    last_failure_time: float | None = None
    half_open_successes: int = 0
    probe_in_flight: bool = False
    total_calls: int = 0
    total_successes: int = 0
    total_failures: int = 0
    total_rejections: int = 0


@dataclass(slots=True, frozen=True)
class CircuitBreakerStats:
    """Read-only snapshot for status reporting."""

    name: str
    state: CircuitState
    consecutive_failures: int
    last_failure_time: float | None
    half_open_successes: int
    cooldown_remaining: float
    total_calls: int
    total_successes: int
    total_failures: int
    total_rejections: int


class CircuitOpenError(LoopworkError):
    """Raised instead of invoking an operation while its circuit is open."""

    def __init__(self, name: str, retry_after: float) -> None:
        super().__init__(
            f"Circuit {name!r} is open; retry in {retry_after:.1f}s",
            ("The wrapped dependency failed repeatedly; check its health before retrying",),
        )
        self.name = name
        self.retry_after = retry_after


class CircuitBreaker:
    """Named-operation circuit breaker."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        log: logging.Logger | None = None,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._log = log or logger
        self._records: dict[str, CircuitBreakerRecord] = {}
        self._lock = threading.Lock()

    def execute(self, name: str, operation: Callable[[], T]) -> T:
        """Invoke ``operation`` unless the circuit for ``name`` is open."""

        self._before_call(name)
        try:
            result = operation()
        except Exception:
            self._on_failure(name)
            raise
        except BaseException:
            # Interrupted, not failed: free the half-open slot for the next trial call.
            self._release_half_open_slot(name)
            raise
        self._on_success(name)
        return result

    def get_stats(self, name: str) -> CircuitBreakerStats:
        with self._lock:
            record = self._records.get(name) or CircuitBreakerRecord()
            return self._snapshot(name, record)

    def get_all_stats(self) -> list[CircuitBreakerStats]:
        with self._lock:
            return [self._snapshot(name, record) for name, record in sorted(self._records.items())]

    def reset(self, name: str | None = None) -> None:
        """Force ``closed`` and zero counters for one operation or all of them."""

        with self._lock:
            names = [name] if name is not None else list(self._records)
            for key in names:
                self._records[key] = CircuitBreakerRecord()
                self._log.debug("Circuit breaker %s: manual reset", key)

    def set_config(
        self,
        *,
        max_failures: int | None = None,
        cooldown_seconds: float | None = None,
        half_open_attempts: int | None = None,
    ) -> None:
        """Update thresholds without touching current counters."""

        updates: dict[str, float | int] = {}
        if max_failures is not None:
            updates["max_failures"] = max_failures
        if cooldown_seconds is not None:
            updates["cooldown_seconds"] = cooldown_seconds
        if half_open_attempts is not None:
            updates["half_open_attempts"] = half_open_attempts
        with self._lock:
            self.config = replace(self.config, **updates)

    def _before_call(self, name: str) -> None:
        with self._lock:
            record = self._records.setdefault(name, CircuitBreakerRecord())
            if record.state == CircuitState.OPEN:
                remaining = self._cooldown_remaining(record)
                if remaining > 0:
                    record.total_rejections += 1
                    self._log.debug(
                        "Circuit breaker %s: blocked (cooldown: %.1fs remaining)",
                        name,
                        remaining,
                    )
                    raise CircuitOpenError(name, remaining)
                self._transition(name, record, CircuitState.HALF_OPEN)
                record.half_open_successes = 0
            if record.state == CircuitState.HALF_OPEN:
                if record.probe_in_flight:
                    record.total_rejections += 1
                    raise CircuitOpenError(name, 0.0)
                record.probe_in_flight = True
            record.total_calls += 1

    def _on_success(self, name: str) -> None:
        with self._lock:
            record = self._records[name]
            record.total_successes += 1
            record.consecutive_failures = 0
            if record.state != CircuitState.HALF_OPEN:
                return
            record.probe_in_flight = False
            record.half_open_successes += 1
            if record.half_open_successes >= self.config.half_open_attempts:
                self._transition(name, record, CircuitState.CLOSED)
                record.half_open_successes = 0

    def _release_half_open_slot(self, name: str) -> None:
        with self._lock:
            self._records[name].probe_in_flight = False

    def _on_failure(self, name: str) -> None:
        with self._lock:
            record = self._records[name]
            record.total_failures += 1
            record.consecutive_failures += 1
            record.last_failure_time = self._clock()
            self._log.debug(
                "Circuit breaker %s: failure recorded (%d/%d)",
                name,
                record.consecutive_failures,
                self.config.max_failures,
            )
            if record.state == CircuitState.HALF_OPEN:
                record.probe_in_flight = False
                record.half_open_successes = 0
                self._log.warning("Circuit breaker %s: half-open probe failed, reopening", name)
                self._transition(name, record, CircuitState.OPEN)
                return
            if record.consecutive_failures >= self.config.max_failures:
                self._log.warning(
                    "Circuit breaker %s: failure threshold reached (%d), open for %.1fs",
                    name,
                    self.config.max_failures,
                    self.config.cooldown_seconds,
                )
                self._transition(name, record, CircuitState.OPEN)

    def _transition(self, name: str, record: CircuitBreakerRecord, state: CircuitState) -> None:
        if record.state != state:
            self._log.info("Circuit breaker %s: %s -> %s", name, record.state.value, state.value)
        record.state = state

    def _cooldown_remaining(self, record: CircuitBreakerRecord) -> float:
        if record.state != CircuitState.OPEN or record.last_failure_time is None:
            return 0.0
        elapsed = self._clock() - record.last_failure_time
        return max(0.0, self.config.cooldown_seconds - elapsed)

    def _snapshot(self, name: str, record: CircuitBreakerRecord) -> CircuitBreakerStats:
        return CircuitBreakerStats(
            name=name,
            state=record.state,
            consecutive_failures=record.consecutive_failures,
            last_failure_time=record.last_failure_time,
            half_open_successes=record.half_open_successes,
            cooldown_remaining=self._cooldown_remaining(record),
            total_calls=record.total_calls,
            total_successes=record.total_successes,
            total_failures=record.total_failures,
            total_rejections=record.total_rejections,
        )
