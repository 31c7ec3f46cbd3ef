"""Namespaced key/value store shared by loop plugins."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Protocol

from loopwork.context import OrchestrationContext
from loopwork.errors import CorruptStateError
from loopwork.fileio import OWNER_ONLY, load_json, write_json


class PluginStateStore(Protocol):
    """Narrow interface injected wherever plugin state is needed.

    There is no per-key locking: callers must hold the session lock.
    """

    def get_plugin_state(self, name: str) -> Any | None:
        """Return the stored value for ``name`` or None."""

    def set_plugin_state(self, name: str, value: Any) -> None:
        """Store a JSON-serializable value for ``name``."""

    def delete_plugin_state(self, name: str) -> bool:
        """Remove ``name``; return True if it existed."""

    def has_plugin_state(self, name: str) -> bool:
        """Return True if ``name`` has a stored value."""

    def list_plugins(self) -> list[str]:
        """Return plugin names with stored values, sorted."""


class JsonPluginStateStore:
    """One JSON object per namespace, top-level keys are plugin names."""

    def __init__(self, context: OrchestrationContext) -> None:
        self.context = context
        self.path: Path = context.namespaced("plugin-state", ".json")
        self._log = context.logger.getChild("plugin_state")

    def get_plugin_state(self, name: str) -> Any | None:
        return self._read().get(name)

    def set_plugin_state(self, name: str, value: Any) -> None:
        document = self._read_for_update()
        document[name] = value
        self._write(document)
        self._log.debug("Plugin state saved for %s", name)

    def delete_plugin_state(self, name: str) -> bool:
        if not self.path.exists():
            return False
        document = self._read_for_update()
        if name not in document:
            return False
        del document[name]
        self._write(document)
        return True

    def has_plugin_state(self, name: str) -> bool:
        return name in self._read()

    def list_plugins(self) -> list[str]:
        return sorted(self._read())

    def _read(self) -> dict[str, Any]:
        try:
            return load_json(self.path)
        except FileNotFoundError:
            return {}
        except (OSError, TypeError, ValueError) as error:
            self._log.warning("Ignoring unreadable plugin state %s: %s", self.path, error)
            return {}

    def _read_for_update(self) -> dict[str, Any]:
        try:
            return load_json(self.path)
        except FileNotFoundError:
            return {}
        except (TypeError, ValueError) as error:
            raise CorruptStateError(str(self.path), str(error)) from error

    def _write(self, document: dict[str, Any]) -> None:
        self.context.ensure_state_dir()
        try:
            write_json(self.path, document, mode=OWNER_ONLY)
        except TypeError as error:
            raise ValueError(f"Plugin state is not JSON-serializable: {error}") from error
