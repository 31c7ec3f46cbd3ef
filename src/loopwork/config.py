"""Runtime configuration for the loop, task stores, and reconciliation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

SUPPORTED_BACKENDS: tuple[str, ...] = ("json", "github")
SUPPORTED_LOG_LEVELS: tuple[str, ...] = ("DEBUG", "INFO", "WARNING", "ERROR")


@dataclass(slots=True)
class TaskStoreSettings:
    """Task backend selection and file-lock tuning."""

    backend: str = "json"
    tasks_file: Path = Path(".specs/tasks/tasks.json")
    tasks_dir: Path | None = None
    lock_timeout_seconds: float = 5.0
    lock_stale_seconds: float = 30.0
    lock_retry_delay_seconds: float = 0.1
    github_repo: str | None = None
    github_max_retries: int = 3
    github_retry_base_seconds: float = 1.0
    github_fallback_to_json: bool = False


@dataclass(slots=True)
class LockSettings:
    """Session lock behavior."""

    max_attempts: int = 3
    grace_seconds: float = 10.0


@dataclass(slots=True)
class CircuitBreakerSettings:
    """Failure isolation thresholds for agent invocations."""

    max_failures: int = 3
    cooldown_seconds: float = 60.0
    half_open_attempts: int = 1


@dataclass(slots=True)
class AgentSettings:
    """External agent CLI invocation settings."""

    command_template: str = "claude -p {prompt}"
    model: str = ""
    timeout_seconds: int = 1_800
    graceful_shutdown_seconds: int = 10


@dataclass(slots=True)
class OrphanSettings:
    """Orphan detection and termination settings."""

    extra_patterns: tuple[str, ...] = ()
    min_age_seconds: float = 0.0
    kill_timeout_seconds: float = 5.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    project_root: Path = Path(".")
    namespace: str = "default"
    output_dir: Path = Path(".loopwork/runs")
    log_level: str = "INFO"
    tasks: TaskStoreSettings = field(default_factory=TaskStoreSettings)
    lock: LockSettings = field(default_factory=LockSettings)
    circuit_breaker: CircuitBreakerSettings = field(default_factory=CircuitBreakerSettings)
    agent: AgentSettings = field(default_factory=AgentSettings)
    orphans: OrphanSettings = field(default_factory=OrphanSettings)

    @classmethod
    def from_env(
        cls,
        project_root: Path | None = None,
        namespace: str | None = None,
    ) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        root = project_root or Path(os.getenv("LOOPWORK_PROJECT_ROOT", "."))
        tasks_dir_raw = os.getenv("LOOPWORK_TASKS_DIR", "").strip()
        return cls(
            project_root=root,
            namespace=namespace or os.getenv("LOOPWORK_NAMESPACE", "default"),
            output_dir=Path(os.getenv("LOOPWORK_OUTPUT_DIR", ".loopwork/runs")),
            log_level=os.getenv("LOOPWORK_LOG_LEVEL", "INFO").strip().upper(),
            tasks=TaskStoreSettings(
                backend=os.getenv("LOOPWORK_BACKEND", "json").strip().lower(),
                tasks_file=Path(os.getenv("LOOPWORK_TASKS_FILE", ".specs/tasks/tasks.json")),
                tasks_dir=Path(tasks_dir_raw) if tasks_dir_raw else None,
                lock_timeout_seconds=float(os.getenv("LOOPWORK_TASKS_LOCK_TIMEOUT_SECONDS", "5")),
                lock_stale_seconds=float(os.getenv("LOOPWORK_TASKS_LOCK_STALE_SECONDS", "30")),
                lock_retry_delay_seconds=float(
                    os.getenv("LOOPWORK_TASKS_LOCK_RETRY_DELAY_SECONDS", "0.1"),
                ),
                github_repo=os.getenv("LOOPWORK_GITHUB_REPO") or None,
                github_max_retries=int(os.getenv("LOOPWORK_GITHUB_MAX_RETRIES", "3")),
                github_retry_base_seconds=float(
                    os.getenv("LOOPWORK_GITHUB_RETRY_BASE_SECONDS", "1.0"),
                ),
                github_fallback_to_json=_env_bool("LOOPWORK_GITHUB_FALLBACK_TO_JSON", False),
            ),
            lock=LockSettings(
                max_attempts=int(os.getenv("LOOPWORK_LOCK_MAX_ATTEMPTS", "3")),
                grace_seconds=float(os.getenv("LOOPWORK_LOCK_GRACE_SECONDS", "10")),
            ),
            circuit_breaker=CircuitBreakerSettings(
                max_failures=int(os.getenv("LOOPWORK_CB_MAX_FAILURES", "3")),
                cooldown_seconds=float(os.getenv("LOOPWORK_CB_COOLDOWN_SECONDS", "60")),
                half_open_attempts=int(os.getenv("LOOPWORK_CB_HALF_OPEN_ATTEMPTS", "1")),
            ),
            agent=AgentSettings(
                command_template=os.getenv("LOOPWORK_AGENT_COMMAND", "claude -p {prompt}"),
                model=os.getenv("LOOPWORK_AGENT_MODEL", ""),
                timeout_seconds=int(os.getenv("LOOPWORK_AGENT_TIMEOUT_SECONDS", "1800")),
                graceful_shutdown_seconds=int(
                    os.getenv("LOOPWORK_AGENT_GRACEFUL_SHUTDOWN_SECONDS", "10"),
                ),
            ),
            orphans=OrphanSettings(
                extra_patterns=_collect_csv("LOOPWORK_ORPHAN_PATTERNS"),
                min_age_seconds=float(os.getenv("LOOPWORK_ORPHAN_MIN_AGE_SECONDS", "0")),
                kill_timeout_seconds=float(
                    os.getenv("LOOPWORK_ORPHAN_KILL_TIMEOUT_SECONDS", "5"),
                ),
            ),
        )

    @property
    def resolved_tasks_file(self) -> Path:
        if self.tasks.tasks_file.is_absolute():
            return self.tasks.tasks_file
        return self.project_root / self.tasks.tasks_file

    @property
    def resolved_output_dir(self) -> Path:
        if self.output_dir.is_absolute():
            return self.output_dir
        return self.project_root / self.output_dir

    def validate(self) -> None:
        """Raise configuration error on unsupported or out-of-range values."""

        if self.tasks.backend not in SUPPORTED_BACKENDS:
            raise ValueError(
                f"Unsupported LOOPWORK_BACKEND: {self.tasks.backend!r}. "
                f"Expected one of: {', '.join(SUPPORTED_BACKENDS)}.",
            )
        if self.log_level not in SUPPORTED_LOG_LEVELS:
            raise ValueError(f"Unsupported LOOPWORK_LOG_LEVEL: {self.log_level!r}.")
        if self.tasks.lock_timeout_seconds <= 0:
            raise ValueError("LOOPWORK_TASKS_LOCK_TIMEOUT_SECONDS must be > 0.")
        if self.tasks.github_max_retries < 0:
            raise ValueError("LOOPWORK_GITHUB_MAX_RETRIES must be >= 0.")
        if self.lock.max_attempts < 1:
            raise ValueError("LOOPWORK_LOCK_MAX_ATTEMPTS must be >= 1.")
        if self.circuit_breaker.max_failures < 1:
            raise ValueError("LOOPWORK_CB_MAX_FAILURES must be >= 1.")
        if self.circuit_breaker.cooldown_seconds < 0:
            raise ValueError("LOOPWORK_CB_COOLDOWN_SECONDS must be >= 0.")
        if self.circuit_breaker.half_open_attempts < 1:
            raise ValueError("LOOPWORK_CB_HALF_OPEN_ATTEMPTS must be >= 1.")
        if self.agent.timeout_seconds <= 0:
            raise ValueError("LOOPWORK_AGENT_TIMEOUT_SECONDS must be > 0.")
        if "{prompt}" not in self.agent.command_template and (
            "{prompt_file}" not in self.agent.command_template
        ):
            raise ValueError(
                "LOOPWORK_AGENT_COMMAND must include {prompt} or {prompt_file}.",
            )
        if self.orphans.kill_timeout_seconds <= 0:
            raise ValueError("LOOPWORK_ORPHAN_KILL_TIMEOUT_SECONDS must be > 0.")


def _collect_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()
    values: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        token = part.strip()
        if not token or token in seen:
            continue
        seen.add(token)
        values.append(token)
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
