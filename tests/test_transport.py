"""Tests for the gateway transport: framing, correlation and reconnection"""

import asyncio
import logging
import re

import pytest

from b23bot.exceptions import (
    ActionFailedError,
    BootstrapError,
    GatewayConnectionError,
    NotConnectedError,
    ProtocolDecodeError,
)
from b23bot.events import EventRouter
from b23bot.models import ConnectionState
from b23bot.segment import face
from b23bot.transport import TransportClient

from tests.conftest import FakeWebSocket, gateway_responder, group_message, wait_until


class ScriptedConnector:
    """Returns queued sockets in order; raises once the queue is empty."""

    def __init__(self, *sockets):
        self.sockets = list(sockets)
        self.calls = 0

    async def __call__(self, url):
        self.calls += 1
        if not self.sockets:
            raise OSError("connection refused")
        return self.sockets.pop(0)


def make_transport(connector, **kwargs):
    kwargs.setdefault("reconnect_delay", 0)
    return TransportClient("127.0.0.1", 3001, connector=connector, **kwargs)


class TestOutbound:
    @pytest.mark.asyncio
    async def test_send_while_disconnected_raises(self):
        ws = FakeWebSocket()
        transport = make_transport(ScriptedConnector(ws))

        with pytest.raises(NotConnectedError):
            await transport.send("send_private_msg", {"user_id": 1, "message": []})
        assert ws.sent == []

    def test_echo_token_format(self):
        transport = make_transport(ScriptedConnector())

        with_target = transport.make_echo("send_group_msg", {"group_id": 42})
        without_target = transport.make_echo("get_login_info", {})

        assert re.match(r"^send_group_msg_\d+-\d+_42$", with_target)
        assert re.match(r"^get_login_info_\d+-\d+$", without_target)

    def test_echo_tokens_unique_within_same_millisecond(self):
        transport = make_transport(ScriptedConnector())
        tokens = {transport.make_echo("send_private_msg", {"user_id": 5}) for _ in range(50)}
        assert len(tokens) == 50

    @pytest.mark.asyncio
    async def test_send_writes_frame_and_logs_success(self, caplog):
        caplog.set_level(logging.INFO, logger="b23bot.transport")
        ws = FakeWebSocket(gateway_responder())
        transport = make_transport(ScriptedConnector(ws))
        await transport.connect()

        call = await transport.send("send_group_msg", {"group_id": 42, "message": [face("100")]})
        await wait_until(lambda: transport.pending_count == 0)

        assert ws.sent[0] == {
            "action": "send_group_msg",
            "params": {"group_id": 42, "message": [{"type": "face", "data": {"id": "100"}}]},
            "echo": call.echo,
        }
        assert "succeed to send: [Group(42)] {face:100}" in caplog.text
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_call_returns_response_data(self):
        ws = FakeWebSocket(gateway_responder(user_id=99, nickname="bot"))
        transport = make_transport(ScriptedConnector(ws))
        await transport.connect()

        data = await transport.call("get_login_info")

        assert data == {"user_id": 99, "nickname": "bot"}
        assert transport.identity.user_id == 99
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_call_raises_on_failed_status(self):
        def refuse(frame):
            return [{"echo": frame["echo"], "status": "failed", "retcode": 100, "wording": "no"}]

        transport = make_transport(ScriptedConnector(FakeWebSocket(refuse)))
        await transport.connect()

        with pytest.raises(ActionFailedError) as exc_info:
            await transport.call("delete_msg", {"message_id": 1})

        assert exc_info.value.action == "delete_msg"
        assert exc_info.value.retcode == 100
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_call_fails_when_connection_drops(self):
        ws = FakeWebSocket()
        transport = make_transport(ScriptedConnector(ws), max_reconnect_attempts=0)
        await transport.connect()

        pending = asyncio.create_task(transport.call("get_login_info"))
        await wait_until(lambda: len(ws.sent) == 1)
        ws.drop()

        with pytest.raises(NotConnectedError):
            await pending


class TestInbound:
    def test_decode_rejects_garbage(self):
        with pytest.raises(ProtocolDecodeError):
            TransportClient.decode("{not json")
        with pytest.raises(ProtocolDecodeError):
            TransportClient.decode("[1, 2]")
        assert TransportClient.decode(b'{"a": 1}') == {"a": 1}

    @pytest.mark.asyncio
    async def test_bad_frame_is_dropped_and_reading_continues(self):
        received = []

        async def on_event(frame):
            received.append(frame)

        ws = FakeWebSocket()
        transport = make_transport(ScriptedConnector(ws), on_event=on_event)
        await transport.connect()

        ws.feed("not json at all")
        ws.feed(group_message("after"))
        await wait_until(lambda: len(received) == 1)

        assert received[0]["raw_message"] == "after"
        assert transport.stats["decode_errors"] == 1
        assert transport.is_connected
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_meta_events_are_not_dispatched(self):
        received = []

        async def on_event(frame):
            received.append(frame)

        ws = FakeWebSocket()
        transport = make_transport(ScriptedConnector(ws), on_event=on_event)
        await transport.connect()

        ws.feed({"post_type": "meta_event", "meta_event_type": "heartbeat"})
        ws.feed({"post_type": "notice", "notice_type": "poke"})
        await wait_until(lambda: len(received) == 1)

        assert received[0]["post_type"] == "notice"
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_group_list_replaces_cache(self):
        groups = [
            {"group_id": 1, "group_name": "one"},
            {"group_id": 2, "group_name": "two"},
        ]
        ws = FakeWebSocket(gateway_responder(groups=groups))
        transport = make_transport(ScriptedConnector(ws))
        await transport.connect()

        await transport.call("get_group_list", {"no_cache": False})
        assert set(transport.groups) == {1, 2}

        ws.responder = gateway_responder(groups=[{"group_id": 3, "group_name": "three"}])
        await transport.call("get_group_list", {"no_cache": False})
        assert set(transport.groups) == {3}
        assert transport.get_group(3).group_name == "three"
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_response_matched_by_action_prefix_without_pending_entry(self):
        ws = FakeWebSocket()
        transport = make_transport(ScriptedConnector(ws))
        await transport.connect()

        ws.feed({
            "echo": "get_login_info_1700000000000-1",
            "status": "ok",
            "data": {"user_id": 5, "nickname": "late"},
        })
        await wait_until(lambda: transport.identity is not None)

        assert transport.identity.nickname == "late"
        await transport.disconnect()


    @pytest.mark.asyncio
    async def test_frame_with_bad_fields_is_dropped_and_reading_continues(self):
        received = []

        async def on_event(frame):
            received.append(frame)

        first, spare = FakeWebSocket(), FakeWebSocket()
        connector = ScriptedConnector(first, spare)
        transport = make_transport(connector, on_event=on_event)
        await transport.connect()

        first.feed({"echo": "get_login_info_1-1", "status": "ok", "data": {}})
        first.feed({
            "echo": "get_group_list_1-2",
            "status": "ok",
            "data": [{"group_id": 1, "member_count": None}],
        })
        first.feed(group_message("still here"))
        await wait_until(lambda: len(received) == 1)

        assert received[0]["raw_message"] == "still here"
        assert transport.stats["dropped_frames"] == 2
        assert transport.identity is None
        assert connector.calls == 1
        assert transport._ws is first
        assert not first.closed
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_frames_handled_one_at_a_time_in_arrival_order(self):
        seen = []

        async def slow(event):
            if event.raw_message == "first":
                await asyncio.sleep(0.05)
            seen.append(("slow", event.raw_message))

        def fast(event):
            seen.append(("fast", event.raw_message))

        router = EventRouter()
        router.subscribe("message", slow)
        router.subscribe("message", fast)

        ws = FakeWebSocket()
        transport = make_transport(ScriptedConnector(ws), on_event=router.route)
        await transport.connect()

        ws.feed(group_message("first"))
        ws.feed(group_message("second"))
        await wait_until(lambda: len(seen) == 4)

        assert [text for _, text in seen] == ["first", "first", "second", "second"]
        await transport.disconnect()


class TestConnection:
    @pytest.mark.asyncio
    async def test_connect_failure_raises(self):
        transport = make_transport(ScriptedConnector())

        with pytest.raises(GatewayConnectionError):
            await transport.connect()
        assert transport.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_reconnect_gives_up_after_max_attempts(self):
        ws = FakeWebSocket()
        connector = ScriptedConnector(ws)
        transport = make_transport(connector, max_reconnect_attempts=5)
        await transport.connect()

        ws.drop()
        await wait_until(lambda: transport.state == ConnectionState.FAILED)

        assert connector.calls == 6
        assert transport.reconnect_attempts == 6
        await asyncio.sleep(0.01)
        assert connector.calls == 6

    @pytest.mark.asyncio
    async def test_reconnect_succeeds_and_resets_counter(self):
        first, second = FakeWebSocket(), FakeWebSocket()
        transport = make_transport(ScriptedConnector(first, second))
        await transport.connect()

        first.drop()
        await wait_until(lambda: transport.is_connected and transport._ws is second)

        assert transport.reconnect_attempts == 0
        assert transport.stats["reconnections"] == 1
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_disconnect_never_reconnects(self):
        ws = FakeWebSocket()
        connector = ScriptedConnector(ws, FakeWebSocket())
        transport = make_transport(connector)
        await transport.connect()

        await transport.disconnect()
        await asyncio.sleep(0.01)

        assert ws.closed
        assert connector.calls == 1
        assert transport.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_disconnect_cancels_scheduled_reconnect(self):
        ws = FakeWebSocket()
        connector = ScriptedConnector(ws, FakeWebSocket())
        transport = make_transport(connector, reconnect_delay=10)
        await transport.connect()

        ws.drop()
        await wait_until(lambda: transport.state == ConnectionState.RECONNECTING)
        await transport.disconnect()

        assert connector.calls == 1
        assert transport.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_bootstrap_failure_closes_socket(self):
        async def failing_bootstrap():
            raise BootstrapError("no login info")

        ws = FakeWebSocket()
        transport = make_transport(ScriptedConnector(ws), bootstrap=failing_bootstrap)

        with pytest.raises(BootstrapError):
            await transport.connect()

        assert ws.closed
        assert transport.state == ConnectionState.DISCONNECTED
        assert not transport.is_connected

    @pytest.mark.asyncio
    async def test_state_callbacks_see_transitions(self):
        seen = []
        transport = make_transport(ScriptedConnector(FakeWebSocket()))
        transport.register_state_callback(lambda old, new: seen.append(new))

        await transport.connect()
        await transport.disconnect()

        assert seen == [
            ConnectionState.CONNECTING,
            ConnectionState.CONNECTED,
            ConnectionState.DISCONNECTED,
        ]

    @pytest.mark.asyncio
    async def test_only_one_reconnect_in_flight(self):
        connector = ScriptedConnector(FakeWebSocket())
        transport = make_transport(connector, reconnect_delay=0.01)

        transport.schedule_reconnect()
        transport.schedule_reconnect()
        transport.schedule_reconnect()

        assert transport.reconnect_attempts == 1
        assert transport.state == ConnectionState.RECONNECTING

        await wait_until(lambda: transport.is_connected)
        await asyncio.sleep(0.03)

        assert connector.calls == 1
        assert transport.reconnect_attempts == 0
        await transport.disconnect()

    @pytest.mark.asyncio
    async def test_reader_failure_closes_socket_before_reconnecting(self):
        class BrokenSocket(FakeWebSocket):
            async def __anext__(self):
                raise RuntimeError("iterator broke")

        broken, replacement = BrokenSocket(), FakeWebSocket()
        connector = ScriptedConnector(broken, replacement)
        transport = make_transport(connector)
        await transport.connect()

        await wait_until(lambda: transport._ws is replacement and transport.is_connected)

        assert broken.closed
        assert connector.calls == 2
        await transport.disconnect()
