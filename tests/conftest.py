"""Shared test fixtures."""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

import pytest

from loopwork.context import OrchestrationContext

_ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m loopwork.runner.backend.echo_agent --prompt-file {{prompt_file}}"
)


@pytest.fixture(autouse=True)
def _clean_loopwork_env(monkeypatch):
    """Keep developer shell settings out of the tests."""
    for name in list(os.environ):
        if name.startswith("LOOPWORK_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def context(tmp_path: Path) -> OrchestrationContext:
    return OrchestrationContext(
        project_root=tmp_path,
        namespace="test",
        logger=logging.getLogger("loopwork.test"),
    )


@pytest.fixture()
def echo_command() -> str:
    return _ECHO_AGENT_COMMAND_TEMPLATE


@pytest.fixture()
def echo_agent(monkeypatch):
    """Point the agent command at the bundled echo agent."""
    monkeypatch.setenv("LOOPWORK_AGENT_COMMAND", _ECHO_AGENT_COMMAND_TEMPLATE)
    monkeypatch.setenv("LOOPWORK_AGENT_TIMEOUT_SECONDS", "30")
