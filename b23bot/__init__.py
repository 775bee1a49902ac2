"""
b23bot - event-driven client for a OneBot WebSocket message gateway

Components:
- TransportClient: connection lifecycle, reconnection, echo correlation
- EventRouter: subscriptions and fault-isolated dispatch
- PluginRegistry: runtime plugin lifecycle against the persisted config
- Bot: wires them together and runs the session bootstrap
"""

from .bot import Bot
from .config import BotSettings, ConfigStore, PersistedConfig
from .events import EventRouter, Subscription
from .exceptions import (
    ActionFailedError,
    B23BotError,
    BootstrapError,
    ConfigConsistencyError,
    ConfigError,
    GatewayConnectionError,
    NotConnectedError,
    PluginAlreadyEnabledError,
    PluginError,
    PluginLoadError,
    PluginNotEnabledError,
    PluginNotFoundError,
    ProtocolDecodeError,
)
from .models import (
    BotIdentity,
    ConnectionState,
    ExtendedMessageEvent,
    GroupInfo,
    MessageEvent,
    NoticeEvent,
    OutboundCall,
    RequestEvent,
)
from .plugins import PluginContext, PluginDefinition, PluginRegistry, define_plugin
from .transport import TransportClient

__version__ = "1.0.0"

__all__ = [
    "Bot",
    "BotSettings",
    "ConfigStore",
    "PersistedConfig",
    "EventRouter",
    "Subscription",
    "TransportClient",
    "PluginContext",
    "PluginDefinition",
    "PluginRegistry",
    "define_plugin",
    "BotIdentity",
    "ConnectionState",
    "ExtendedMessageEvent",
    "GroupInfo",
    "MessageEvent",
    "NoticeEvent",
    "OutboundCall",
    "RequestEvent",
    "ActionFailedError",
    "B23BotError",
    "BootstrapError",
    "ConfigConsistencyError",
    "ConfigError",
    "GatewayConnectionError",
    "NotConnectedError",
    "PluginAlreadyEnabledError",
    "PluginError",
    "PluginLoadError",
    "PluginNotEnabledError",
    "PluginNotFoundError",
    "ProtocolDecodeError",
]
