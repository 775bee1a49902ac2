"""
Event router: subscriptions and fault-isolated fan-out of gateway events.
"""

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from pydantic import ValidationError

from .models import (
    ExtendedMessageEvent,
    GroupInfo,
    MessageEvent,
    NoticeEvent,
    RequestEvent,
    SendFunc,
)
from .segment import render_segments

logger = logging.getLogger(__name__)

EventHandler = Callable[[Any], Union[None, Awaitable[None]]]
GroupLookup = Callable[[Optional[int]], Optional[GroupInfo]]


@dataclass(frozen=True)
class Subscription:
    """Handle returned by subscribe(); pass it back to unsubscribe()."""
    event_name: str
    handler: EventHandler


class EventRouter:
    """
    Routes decoded gateway frames to subscribed handlers.

    Handlers for one event run sequentially. A handler that raises is logged
    and skipped; the remaining handlers still run and nothing propagates to
    the transport.
    """

    def __init__(self, send: Optional[SendFunc] = None, group_lookup: Optional[GroupLookup] = None):
        self._send = send
        self._group_lookup = group_lookup
        self._handlers: Dict[str, Set[EventHandler]] = {}

    def subscribe(self, event_name: str, handler: EventHandler) -> Subscription:
        self._handlers.setdefault(event_name, set()).add(handler)
        logger.debug(f"Subscribed {getattr(handler, '__qualname__', handler)} to {event_name}")
        return Subscription(event_name, handler)

    def unsubscribe(self, subscription: Union[Subscription, str], handler: Optional[EventHandler] = None) -> bool:
        """
        Remove a handler. Accepts a Subscription or (event_name, handler).
        Returns False if it was not subscribed.
        """
        if isinstance(subscription, Subscription):
            event_name, handler = subscription.event_name, subscription.handler
        else:
            event_name = subscription

        handlers = self._handlers.get(event_name)
        if not handlers or handler not in handlers:
            return False
        handlers.discard(handler)
        if not handlers:
            del self._handlers[event_name]
        return True

    def handler_count(self, event_name: Optional[str] = None) -> int:
        if event_name is not None:
            return len(self._handlers.get(event_name, ()))
        return sum(len(h) for h in self._handlers.values())

    async def dispatch(self, event_name: str, event: Any) -> None:
        handlers = self._handlers.get(event_name)
        if not handlers:
            return

        for handler in list(handlers):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    f"Error in handler {getattr(handler, '__qualname__', handler)} for {event_name}"
                )

    def augment(self, event: MessageEvent) -> ExtendedMessageEvent:
        """Attach reply() bound to the live connection."""
        extended = ExtendedMessageEvent.model_validate(event.model_dump())
        if self._send is not None:
            extended.bind(self._send)
        return extended

    async def route(self, frame: Dict[str, Any]) -> None:
        """Turn an event frame into a typed event and dispatch it."""
        post_type = frame.get("post_type")
        try:
            if post_type == "message":
                await self._route_message(MessageEvent.model_validate(frame))
            elif post_type == "notice":
                await self.dispatch("notice", NoticeEvent.model_validate(frame))
            elif post_type == "request":
                await self.dispatch("request", RequestEvent.model_validate(frame))
        except ValidationError as e:
            logger.error(f"Dropping malformed {post_type} event: {e}")

    async def _route_message(self, event: MessageEvent) -> None:
        if event.is_group:
            group = self._group_lookup(event.group_id) if self._group_lookup else None
            event.group_name = group.group_name if group else str(event.group_id)
            logger.info(
                f"[Group: {event.group_name}({event.group_id}), "
                f"Member: {event.sender.display_name}({event.sender.user_id})] "
                f"{render_segments(event.message)}"
            )
        else:
            logger.info(
                f"[Private: {event.sender.nickname}({event.sender.user_id})] "
                f"{render_segments(event.message)}"
            )

        extended = self.augment(event)
        await self.dispatch("message", extended)
        await self.dispatch(f"message.{event.message_type}", extended)
