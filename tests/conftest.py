"""Shared fixtures: a fake gateway socket and a temporary config document."""

import asyncio
import json
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest
import yaml

from b23bot.config import ConfigStore

REPO_PLUGINS_DIR = Path(__file__).resolve().parents[1] / "plugins"

_CLOSE = object()


class FakeWebSocket:
    """
    In-memory stand-in for a websockets client connection.

    Frames passed to feed() are yielded by async iteration; drop() ends the
    iteration as if the gateway went away. An optional responder maps every
    outbound frame to the frames the gateway would answer with.
    """

    def __init__(self, responder: Optional[Callable[[Dict[str, Any]], List[Any]]] = None):
        self.sent: List[Dict[str, Any]] = []
        self.closed = False
        self.responder = responder
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send(self, data: str) -> None:
        frame = json.loads(data)
        self.sent.append(frame)
        if self.responder is not None:
            for answer in self.responder(frame):
                self.feed(answer)

    def feed(self, frame: Any) -> None:
        if not isinstance(frame, (str, bytes)):
            frame = json.dumps(frame)
        self._incoming.put_nowait(frame)

    def drop(self) -> None:
        self._incoming.put_nowait(_CLOSE)

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(_CLOSE)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        return item

    def actions(self) -> List[str]:
        return [frame["action"] for frame in self.sent]


def gateway_responder(
    user_id: int = 1,
    nickname: str = "b23",
    groups: Optional[List[Dict[str, Any]]] = None,
) -> Callable[[Dict[str, Any]], List[Any]]:
    """Answer outbound actions the way a healthy gateway does."""
    if groups is None:
        groups = [{"group_id": 42, "group_name": "test group", "member_count": 3, "max_member_count": 200}]

    def respond(frame: Dict[str, Any]) -> List[Any]:
        action = frame["action"]
        if action == "get_login_info":
            data: Any = {"user_id": user_id, "nickname": nickname}
        elif action == "get_group_list":
            data = groups
        else:
            data = {"message_id": 1000}
        return [{"echo": frame["echo"], "status": "ok", "retcode": 0, "data": data}]

    return respond


def group_message(text: str, user_id: int = 10001, group_id: int = 42, message_id: int = 7) -> Dict[str, Any]:
    return {
        "post_type": "message",
        "message_type": "group",
        "sub_type": "normal",
        "message_id": message_id,
        "user_id": user_id,
        "group_id": group_id,
        "message": [{"type": "text", "data": {"text": text}}],
        "raw_message": text,
        "font": 0,
        "sender": {"user_id": user_id, "nickname": "alice", "card": ""},
        "self_id": 1,
        "time": 1700000000,
    }


def private_message(text: str, user_id: int = 10001, message_id: int = 8) -> Dict[str, Any]:
    return {
        "post_type": "message",
        "message_type": "private",
        "sub_type": "friend",
        "message_id": message_id,
        "user_id": user_id,
        "message": [{"type": "text", "data": {"text": text}}],
        "raw_message": text,
        "font": 0,
        "sender": {"user_id": user_id, "nickname": "alice"},
        "self_id": 1,
        "time": 1700000000,
    }


def recorder(sink: List[Any]) -> Callable[[Any], None]:
    def handler(event: Any) -> None:
        sink.append(event)
    return handler


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.001)


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "host": "127.0.0.1",
        "port": 3001,
        "root": [10001],
        "admin": [20001],
        "plugins": [],
    }))
    return path


@pytest.fixture
def store(config_path: Path) -> ConfigStore:
    s = ConfigStore(config_path)
    s.load()
    return s


def read_document(path: Path) -> Dict[str, Any]:
    return yaml.safe_load(path.read_text())
