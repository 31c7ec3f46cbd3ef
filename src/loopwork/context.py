"""Explicit orchestration context threaded into every component."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

STATE_DIR_NAME = ".loopwork"
DEFAULT_NAMESPACE = "default"

_NAMESPACE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


@dataclass(slots=True)
class OrchestrationContext:
    """Filesystem root, namespace, and logger shared by one loop instance."""

    project_root: Path
    namespace: str = DEFAULT_NAMESPACE
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger("loopwork"))
    output_dir: Path | None = None
    session_id: str = field(default_factory=lambda: uuid4().hex[:12])

    def __post_init__(self) -> None:
        if not _NAMESPACE_RE.match(self.namespace):
            raise ValueError(
                f"Invalid namespace {self.namespace!r}: use letters, digits, '.', '_' or '-'.",
            )
        self.project_root = Path(self.project_root)

    @property
    def state_dir(self) -> Path:
        return self.project_root / STATE_DIR_NAME

    def ensure_state_dir(self) -> Path:
        """Create the state directory if needed and return it."""

        self.state_dir.mkdir(parents=True, exist_ok=True)
        return self.state_dir

    def namespaced(self, stem: str, suffix: str = "") -> Path:
        """Return ``<state_dir>/<stem>-<namespace><suffix>``."""

        return self.state_dir / f"{stem}-{self.namespace}{suffix}"
