"""In-process publish/subscribe event bus with wildcard patterns and priorities."""

from relaybus.kernel.debug_log import BusLogger, DebugLogWriter
from relaybus.kernel.eventbus import EventBus, Unsubscribe
from relaybus.kernel.plugin_manager import Plugin, PluginLoader, PluginManager
from relaybus.kernel.types import ListenerId, ListenerInfo, SubscribeOptions

__version__ = "0.1.0"

__all__ = [
    "BusLogger",
    "DebugLogWriter",
    "EventBus",
    "ListenerId",
    "ListenerInfo",
    "Plugin",
    "PluginLoader",
    "PluginManager",
    "SubscribeOptions",
    "Unsubscribe",
    "__version__",
]
