"""
Data models for the b23bot client.

Connection bookkeeping lives in plain dataclasses; inbound event payloads
are validated with pydantic so unknown gateway fields pass through intact.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field, PrivateAttr

from .exceptions import NotConnectedError

Segment = Dict[str, Any]
SendFunc = Callable[[str, Dict[str, Any]], Awaitable[Any]]


class ConnectionState(str, Enum):
    """Connection state of the gateway transport."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


@dataclass
class GroupInfo:
    """Cached snapshot of a group the bot has joined."""
    group_id: int
    group_name: str = ""
    member_count: int = 0
    max_member_count: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GroupInfo":
        return cls(
            group_id=int(data["group_id"]),
            group_name=data.get("group_name", ""),
            member_count=int(data.get("member_count", 0)),
            max_member_count=int(data.get("max_member_count", 0)),
        )


@dataclass
class BotIdentity:
    """Account the gateway is logged in as."""
    user_id: int
    nickname: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BotIdentity":
        return cls(user_id=int(data["user_id"]), nickname=data.get("nickname", ""))


@dataclass
class OutboundCall:
    """An action written to the gateway, kept until its response is seen."""
    action: str
    params: Dict[str, Any]
    echo: str
    rendered: Optional[str] = None  # log text of outgoing message segments
    created_at: float = field(default_factory=time.monotonic)

    @property
    def target(self) -> Optional[int]:
        return self.params.get("group_id", self.params.get("user_id"))

    @property
    def is_send_message(self) -> bool:
        return self.action.startswith("send_") and self.action.endswith("_msg")

    def to_frame(self) -> Dict[str, Any]:
        return {"action": self.action, "params": self.params, "echo": self.echo}


class Sender(BaseModel):
    user_id: int = 0
    nickname: str = ""
    card: Optional[str] = None
    role: Optional[str] = None

    class Config:
        extra = "allow"

    @property
    def display_name(self) -> str:
        return self.card or self.nickname


class BaseEvent(BaseModel):
    post_type: str
    self_id: int = 0
    time: int = 0

    class Config:
        extra = "allow"


class MessageEvent(BaseEvent):
    message_type: str
    sub_type: str = ""
    message_id: int
    user_id: int
    message: Union[List[Segment], str] = Field(default_factory=list)
    raw_message: str = ""
    font: int = 0
    sender: Sender = Field(default_factory=Sender)
    message_seq: Optional[int] = None
    group_id: Optional[int] = None
    group_name: Optional[str] = None  # filled from the group cache

    @property
    def is_group(self) -> bool:
        return self.message_type == "group"


class ExtendedMessageEvent(MessageEvent):
    """
    A message event bound to the live connection.

    Only valid for the duration of the handler invocation it was created for.
    """

    _send: Optional[SendFunc] = PrivateAttr(default=None)

    def bind(self, send: SendFunc) -> "ExtendedMessageEvent":
        self._send = send
        return self

    def build_reply(self, segments: List[Union[str, Segment]], quote: bool = False) -> List[Segment]:
        """Build the outgoing segment list for a reply to this event."""
        message: List[Segment] = []
        if quote:
            message.append({"type": "reply", "data": {"id": self.message_id}})
        for item in segments:
            if isinstance(item, str):
                message.append({"type": "text", "data": {"text": item}})
            else:
                message.append(item)
        return message

    async def reply(self, segments: List[Union[str, Segment]], quote: bool = False) -> Any:
        """
        Reply in the conversation this event came from.

        Group messages go to send_group_msg with the original group id,
        private messages to send_private_msg with the original user id.
        Raises NotConnectedError if the link has dropped.
        """
        if self._send is None:
            raise NotConnectedError("event is not bound to a connection")

        params: Dict[str, Any] = {"message": self.build_reply(segments, quote)}
        if self.is_group:
            params["group_id"] = self.group_id
            return await self._send("send_group_msg", params)
        params["user_id"] = self.user_id
        return await self._send("send_private_msg", params)


class NoticeEvent(BaseEvent):
    notice_type: str = ""
    sub_type: str = ""
    user_id: Optional[int] = None
    group_id: Optional[int] = None


class RequestEvent(BaseEvent):
    request_type: str = ""
    sub_type: str = ""
    user_id: Optional[int] = None
    group_id: Optional[int] = None
    comment: str = ""
    flag: str = ""
