"""Session lock, resume snapshot, and plugin state."""

from loopwork.session.manager import SessionSnapshot, SessionStateManager
from loopwork.session.plugin_state import JsonPluginStateStore, PluginStateStore

__all__ = [
    "JsonPluginStateStore",
    "PluginStateStore",
    "SessionSnapshot",
    "SessionStateManager",
]
