"""
Bot: wires configuration, transport, router and plugin registry together
and runs the session bootstrap after every successful connect.
"""

import asyncio
import logging
import resource
import sys
import time
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from . import segment
from .config import BotSettings, ConfigStore
from .events import EventRouter
from .exceptions import B23BotError, BootstrapError, GatewayConnectionError
from .plugins.base import PluginContext
from .plugins.discovery import PluginFactory
from .plugins.manager import PluginRegistry
from .transport import TransportClient

logger = logging.getLogger(__name__)

USER_AGENT = "b23bot/1.0.0"


async def _log_failed_response(response: httpx.Response) -> None:
    if response.is_error:
        request = response.request
        logger.error(
            f"HTTP request failed: {request.method} {request.url} "
            f"-> {response.status_code} {response.reason_phrase}"
        )


def _peak_memory_mb() -> float:
    """Peak resident set size of this process, in MB."""
    usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # bytes on macOS, kilobytes elsewhere
    if sys.platform == "darwin":
        return usage / 1024 / 1024
    return usage / 1024


class Bot:
    """
    Composition root.

    Lifecycle:
    1. start() - connect; bootstrap runs inside connect
    2. handlers run as frames arrive
    3. stop() - disconnect, retract plugin handlers, close HTTP client
    """

    def __init__(
        self,
        settings: BotSettings,
        store: ConfigStore,
        connector: Optional[Callable[[str], Awaitable[Any]]] = None,
        factories: Optional[Dict[str, PluginFactory]] = None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self.store = store
        self._started_at = time.monotonic()

        self.http = http or httpx.AsyncClient(
            timeout=settings.http_timeout,
            headers={"User-Agent": USER_AGENT},
            event_hooks={"response": [_log_failed_response]},
        )

        self.transport = TransportClient(
            store.host,
            store.port,
            max_reconnect_attempts=settings.max_reconnect_attempts,
            reconnect_delay=settings.reconnect_delay,
            call_timeout=settings.call_timeout,
            connector=connector,
        )
        self.router = EventRouter(send=self.transport.send, group_lookup=self.transport.get_group)
        self.transport.on_event = self.router.route
        self.transport.bootstrap = self.bootstrap

        self.registry = PluginRegistry(
            store,
            self._make_context,
            plugins_dir=settings.plugins_dir,
            factories=factories,
        )

    def _make_context(self, plugin_name: str) -> PluginContext:
        return PluginContext(
            plugin_name,
            router=self.router,
            store=self.store,
            http=self.http,
            send=self.transport.send,
            registry=self.registry,
            status_provider=self.get_status,
        )

    async def bootstrap(self) -> None:
        """
        Session bootstrap, run by the transport after the socket opens:
        login info, group list, root notification, then plugins.
        """
        self.transport.identity = None
        await self.transport.send("get_login_info", {})
        await asyncio.sleep(self.settings.settle_delay)

        identity = self.transport.identity
        if identity is None:
            raise BootstrapError("login info was not received")
        logger.info(f"Welcome, {identity.nickname}! Loading resources...")

        await self.transport.send("get_group_list", {"no_cache": False})
        await self.notify_roots()
        await self.registry.load_all(self.store.plugins)

    async def notify_roots(self) -> None:
        for root_id in self.store.config.root:
            try:
                await self.transport.send("send_private_msg", {
                    "user_id": root_id,
                    "message": [segment.text(self.settings.online_message)],
                })
            except B23BotError as e:
                logger.error(f"Failed to notify root {root_id}: {e}")

    def get_status(self) -> Dict[str, Any]:
        return {
            "uptime": time.monotonic() - self._started_at,
            "peak_memory_mb": _peak_memory_mb(),
            "plugins": self.registry.status(),
            "groups": len(self.transport.groups),
            "connected": self.transport.is_connected,
            "state": self.transport.state.value,
        }

    async def start(self) -> None:
        """Connect; a failed first attempt falls through to the reconnect policy."""
        try:
            await self.transport.connect()
        except GatewayConnectionError as e:
            logger.error(f"Initial connection failed: {e}")
            self.transport.schedule_reconnect()

    async def stop(self) -> None:
        await self.transport.disconnect()
        await self.registry.unload_all()
        await self.http.aclose()
        logger.info("b23bot stopped")

    async def run(self, stop_event: asyncio.Event) -> None:
        """Run until stop_event is set. Exhausted reconnects leave the process idle, not exited."""
        await self.start()
        try:
            await stop_event.wait()
        finally:
            await self.stop()
