"""Agent execution backends."""

from loopwork.runner.backend.base import AgentBackend, AgentRunRequest, AgentRunResult
from loopwork.runner.backend.cli_backend import AgentRunError, CliAgentBackend

__all__ = [
    "AgentBackend",
    "AgentRunError",
    "AgentRunRequest",
    "AgentRunResult",
    "CliAgentBackend",
]
