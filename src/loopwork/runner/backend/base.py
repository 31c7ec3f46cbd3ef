"""Backend interface for agent invocations."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to run the agent against one task."""

    task_id: str
    prompt: str
    workdir: Path
    output_dir: Path
    command_template: str
    timeout_seconds: int
    model: str = ""
    shutdown_requested: Callable[[], bool] | None = None
    graceful_shutdown_seconds: int | None = None


@dataclass(slots=True)
class AgentRunResult:
    """Execution outcome of one agent invocation."""

    exit_code: int
    timed_out: bool
    stdout_path: Path
    stderr_path: Path
    pid: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out


class AgentBackend(Protocol):
    """Protocol implemented by agent runners."""

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        """Run one invocation and return execution metadata."""
