"""
Plugin definition, runtime record and the context handed to setup()
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx

from .. import segment
from ..config import ConfigStore
from ..events import EventHandler, EventRouter, Subscription
from ..models import MessageEvent, SendFunc
from ..segment import extract_text

if TYPE_CHECKING:
    from .manager import PluginRegistry

SetupFunc = Callable[["PluginContext"], Union[None, Awaitable[None]]]


@dataclass
class PluginDefinition:
    """What a plugin module exports"""
    name: str
    version: str
    setup: SetupFunc
    description: str = ""


def define_plugin(name: str, version: str, setup: SetupFunc, description: str = "") -> PluginDefinition:
    """
    Declare a plugin. A plugin module assigns the result to ``plugin``:

        plugin = define_plugin("echo", "1.0.0", setup)
    """
    return PluginDefinition(name=name, version=version, setup=setup, description=description)


class PluginContext:
    """
    Capabilities available to one plugin.

    Every subscription made through on() is recorded here so the registry
    can retract it when the plugin is disabled or reloaded.
    """

    segment = segment

    def __init__(
        self,
        plugin_name: str,
        router: EventRouter,
        store: ConfigStore,
        http: httpx.AsyncClient,
        send: SendFunc,
        registry: Optional["PluginRegistry"] = None,
        status_provider: Optional[Callable[[], Dict[str, Any]]] = None,
    ):
        self.plugin_name = plugin_name
        self.http = http
        self.logger = logging.getLogger(f"b23bot.plugins.{plugin_name}")
        self._router = router
        self._store = store
        self._send = send
        self._registry = registry
        self._status_provider = status_provider
        self._subscriptions: List[Subscription] = []

    # Events

    def on(self, event_name: str, handler: EventHandler) -> Subscription:
        """Subscribe to "message", "message.group", "message.private", "notice" or "request"."""
        subscription = self._router.subscribe(event_name, handler)
        self._subscriptions.append(subscription)
        return subscription

    handle = on

    def off(self, subscription: Subscription) -> bool:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        return self._router.unsubscribe(subscription)

    def retract_all(self) -> int:
        """Unsubscribe everything this plugin registered. Returns the count removed."""
        removed = 0
        for subscription in self._subscriptions:
            if self._router.unsubscribe(subscription):
                removed += 1
        self._subscriptions.clear()
        return removed

    @property
    def subscriptions(self) -> List[Subscription]:
        return list(self._subscriptions)

    # Messaging

    @staticmethod
    def text(event: MessageEvent) -> str:
        """Plain text of a message event, non-text segments dropped."""
        return extract_text(event.message)

    async def send(self, action: str, params: Optional[Dict[str, Any]] = None) -> Any:
        return await self._send(action, params or {})

    # Permissions

    def is_root(self, user_id: int) -> bool:
        return self._store.is_root(user_id)

    def is_admin(self, user_id: int) -> bool:
        return self._store.is_admin(user_id)

    async def add_root(self, user_id: int) -> bool:
        return await self._store.add_root(user_id)

    async def add_admin(self, user_id: int) -> bool:
        return await self._store.add_admin(user_id)

    # Management

    @property
    def plugins(self) -> "PluginRegistry":
        if self._registry is None:
            raise RuntimeError("plugin management is not available in this context")
        return self._registry

    def get_plugin_list(self) -> List[str]:
        return self._store.plugins

    def get_status(self) -> Dict[str, Any]:
        if self._status_provider is None:
            return {}
        return self._status_provider()


@dataclass
class PluginRecord:
    """A loaded plugin"""
    name: str
    version: str
    definition: PluginDefinition
    context: PluginContext
    loaded_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def subscriptions(self) -> List[Subscription]:
        return self.context.subscriptions
