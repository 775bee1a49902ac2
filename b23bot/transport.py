"""
WebSocket transport to the message gateway.

Owns the single upstream socket, the connection state machine with bounded
linear-backoff reconnection, outbound framing and echo-token correlation.
"""

import asyncio
import itertools
import json
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

import websockets
from websockets.exceptions import ConnectionClosed

from .exceptions import (
    ActionFailedError,
    BootstrapError,
    GatewayConnectionError,
    NotConnectedError,
    ProtocolDecodeError,
)
from .models import BotIdentity, ConnectionState, GroupInfo, OutboundCall
from .segment import render_segments

logger = logging.getLogger(__name__)

EventCallback = Callable[[Dict[str, Any]], Awaitable[None]]
BootstrapCallback = Callable[[], Awaitable[None]]
StateCallback = Callable[[ConnectionState, ConnectionState], None]

# Actions whose responses are recognised even after their pending entry expired
KNOWN_ACTIONS = ("get_login_info", "get_group_list", "send_group_msg", "send_private_msg")


async def open_websocket(url: str):
    """Default connector: a websockets client connection."""
    return await websockets.connect(
        url,
        ping_interval=30,
        ping_timeout=10,
        close_timeout=10,
        max_size=None,
    )


class TransportClient:
    """
    Gateway transport with:
    - Explicit connection state (ConnectionState)
    - Automatic reconnection, delay = reconnect_delay * attempt, capped attempts
    - Fire-and-log sends correlated through echo tokens
    - Optional awaited calls on the same pending-call map

    Inbound frames are processed one at a time in arrival order; a slow
    event handler delays every frame behind it.
    """

    def __init__(
        self,
        host: str,
        port: int,
        on_event: Optional[EventCallback] = None,
        bootstrap: Optional[BootstrapCallback] = None,
        max_reconnect_attempts: int = 5,
        reconnect_delay: float = 5.0,
        call_timeout: float = 30.0,
        pending_ttl: float = 60.0,
        connector: Optional[Callable[[str], Awaitable[Any]]] = None,
    ):
        self.host = host
        self.port = port
        self.url = f"ws://{host}:{port}"
        self.on_event = on_event
        self.bootstrap = bootstrap
        self.max_reconnect_attempts = max_reconnect_attempts
        self.reconnect_delay = reconnect_delay
        self.call_timeout = call_timeout
        self.pending_ttl = pending_ttl
        self._connector = connector or open_websocket

        self._ws: Optional[Any] = None
        self._state = ConnectionState.DISCONNECTED
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0
        self._closing = False
        self._seq = itertools.count(1)

        self._pending: Dict[str, OutboundCall] = {}
        self._waiters: Dict[str, asyncio.Future] = {}

        self.identity: Optional[BotIdentity] = None
        self._groups: Dict[int, GroupInfo] = {}
        self.state_callbacks: List[StateCallback] = []

        self.stats = {
            "frames_received": 0,
            "frames_sent": 0,
            "decode_errors": 0,
            "dropped_frames": 0,
            "reconnections": 0,
            "last_connected": None,
        }

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED and self._ws is not None

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def groups(self) -> Dict[int, GroupInfo]:
        return dict(self._groups)

    def get_group(self, group_id: Optional[int]) -> Optional[GroupInfo]:
        if group_id is None:
            return None
        return self._groups.get(group_id)

    def register_state_callback(self, callback: StateCallback) -> None:
        """Register a callback(old_state, new_state) for state changes."""
        self.state_callbacks.append(callback)

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return
        old, self._state = self._state, state
        logger.debug(f"Transport state {old.value} -> {state.value}")
        for callback in self.state_callbacks:
            try:
                callback(old, state)
            except Exception as e:
                logger.error(f"State callback error: {e}")

    # Connection lifecycle

    async def connect(self) -> None:
        """
        Open the socket and run the session bootstrap.

        Raises GatewayConnectionError if the socket cannot be opened and
        BootstrapError if the session cannot be initialised. The reconnect
        counter is reset once both have succeeded.
        """
        if self._ws is not None:
            logger.warning("connect() called while a socket is already open")
            return

        self._closing = False
        self._set_state(ConnectionState.CONNECTING)
        logger.info(f"Connecting to gateway at {self.url}")

        try:
            ws = await self._connector(self.url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._set_state(ConnectionState.DISCONNECTED)
            raise GatewayConnectionError(f"failed to connect to {self.url}: {e}") from e

        self._ws = ws
        self._set_state(ConnectionState.CONNECTED)
        self.stats["last_connected"] = datetime.utcnow()
        logger.info(f"Connected to gateway at {self.url}")
        self._reader_task = asyncio.create_task(self._read_loop(ws))

        if self.bootstrap is not None:
            try:
                await self.bootstrap()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Session bootstrap failed: {e}")
                await self._close_socket()
                self._set_state(ConnectionState.DISCONNECTED)
                if isinstance(e, BootstrapError):
                    raise
                raise BootstrapError(f"session bootstrap failed: {e}") from e

            if self._ws is not ws:
                raise BootstrapError("connection lost during session bootstrap")

        self._reconnect_attempts = 0

    async def disconnect(self) -> None:
        """Close the connection on purpose. Never triggers a reconnect."""
        self._closing = True

        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._close_socket()
        self._fail_pending(NotConnectedError("transport disconnected"))
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info("Disconnected from gateway")

    async def _close_socket(self) -> None:
        # Clearing _ws first tells the reader the close was expected
        ws, self._ws = self._ws, None
        reader, self._reader_task = self._reader_task, None

        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.warning(f"Error while closing socket: {e}")

        if reader is not None and reader is not asyncio.current_task():
            await reader

    def schedule_reconnect(self) -> None:
        """
        Count one reconnect attempt and arm the retry timer.

        Past max_reconnect_attempts the transport moves to FAILED and stops
        retrying. Only one retry is ever in flight.
        """
        if self._closing:
            return
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return

        self._reconnect_attempts += 1
        if self._reconnect_attempts > self.max_reconnect_attempts:
            logger.error(
                f"Reached maximum reconnect attempts ({self.max_reconnect_attempts}), giving up"
            )
            self._set_state(ConnectionState.FAILED)
            return

        delay = self.reconnect_delay * self._reconnect_attempts
        logger.info(
            f"Reconnecting in {delay:.1f}s "
            f"(attempt {self._reconnect_attempts}/{self.max_reconnect_attempts})"
        )
        self._set_state(ConnectionState.RECONNECTING)
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._closing:
            return

        self.stats["reconnections"] += 1
        try:
            await self.connect()
        except GatewayConnectionError as e:
            logger.error(f"Reconnect failed: {e}")
            self._reconnect_task = None
            self._schedule_after_loss()
        else:
            self._reconnect_task = None

    def _schedule_after_loss(self) -> None:
        if not self._closing:
            self._set_state(ConnectionState.DISCONNECTED)
            self.schedule_reconnect()

    # Inbound

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                await self._handle_raw(raw)
        except ConnectionClosed as e:
            logger.warning(f"Gateway connection closed: {e}")
        except OSError as e:
            logger.error(f"Gateway socket error: {e}")
        except Exception:
            logger.exception("Gateway reader stopped unexpectedly")
        finally:
            if ws is self._ws:
                # Unexpected close: nobody cleared the socket before closing it
                logger.warning("Connection to gateway lost")
                self._ws = None
                self._reader_task = None
                try:
                    await ws.close()
                except Exception as e:
                    logger.warning(f"Error while closing socket: {e}")
                self._fail_pending(NotConnectedError("connection to gateway lost"))
                current = self._reconnect_task
                if current is None or current.done():
                    self._schedule_after_loss()
                else:
                    self._set_state(ConnectionState.DISCONNECTED)

    @staticmethod
    def decode(raw: Any) -> Dict[str, Any]:
        """Decode one raw frame into a JSON object."""
        if isinstance(raw, (bytes, bytearray)):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as e:
                raise ProtocolDecodeError(f"frame is not UTF-8: {e}") from e
        try:
            frame = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as e:
            raise ProtocolDecodeError(f"frame is not valid JSON: {e}") from e
        if not isinstance(frame, dict):
            raise ProtocolDecodeError("frame is not a JSON object")
        return frame

    async def _handle_raw(self, raw: Any) -> None:
        self.stats["frames_received"] += 1
        try:
            frame = self.decode(raw)
        except ProtocolDecodeError as e:
            self.stats["decode_errors"] += 1
            logger.error(f"Dropping frame: {e}")
            return
        try:
            await self.handle_frame(frame)
        except Exception:
            self.stats["dropped_frames"] += 1
            logger.exception("Dropping frame that could not be handled")

    async def handle_frame(self, frame: Dict[str, Any]) -> None:
        """Route one decoded frame: responses, heartbeats, then events."""
        if "post_type" not in frame and frame.get("echo"):
            self._handle_response(frame)
            return

        post_type = frame.get("post_type")
        if post_type == "meta_event":
            return

        if post_type in ("message", "notice", "request"):
            if self.on_event is None:
                return
            try:
                await self.on_event(frame)
            except Exception:
                logger.exception(f"Error while dispatching {post_type} frame")
            return

        logger.debug(f"Ignoring frame with post_type={post_type!r}")

    def _handle_response(self, frame: Dict[str, Any]) -> None:
        echo = str(frame["echo"])
        ok = frame.get("status") == "ok"
        call = self._pending.pop(echo, None)

        waiter = self._waiters.pop(echo, None)
        if waiter is not None and not waiter.done():
            if ok:
                waiter.set_result(frame.get("data"))
            else:
                waiter.set_exception(ActionFailedError(
                    call.action if call else echo,
                    str(frame.get("status")),
                    frame.get("retcode"),
                    frame.get("wording") or frame.get("message") or "",
                ))

        action = call.action if call else self._action_from_echo(echo)
        if action is None:
            logger.debug(f"Response for unknown echo {echo}")
            return

        if not ok:
            logger.warning(
                f"Action {action} failed: status={frame.get('status')} "
                f"retcode={frame.get('retcode')} {frame.get('wording') or frame.get('message') or ''}"
            )
            return

        if action == "get_login_info":
            self.identity = BotIdentity.from_dict(frame.get("data") or {})
            logger.info(f"Logged in as {self.identity.nickname}({self.identity.user_id})")
        elif action == "get_group_list":
            groups = {}
            for item in frame.get("data") or []:
                group = GroupInfo.from_dict(item)
                groups[group.group_id] = group
            self._groups = groups
            logger.info(f"Loaded {len(self._groups)} groups")
        elif action in ("send_group_msg", "send_private_msg"):
            target = call.target if call else echo.rsplit("_", 1)[-1]
            rendered = call.rendered if call else ""
            kind = "Group" if action == "send_group_msg" else "Private"
            logger.info(f"succeed to send: [{kind}({target})] {rendered}")

    @staticmethod
    def _action_from_echo(echo: str) -> Optional[str]:
        # Longest first so send_group_msg never matches a shorter prefix
        for action in sorted(KNOWN_ACTIONS, key=len, reverse=True):
            if echo == action or echo.startswith(action + "_"):
                return action
        return None

    # Outbound

    def make_echo(self, action: str, params: Dict[str, Any]) -> str:
        """Echo token: action, epoch milliseconds plus a sequence, and the target id."""
        stamp = f"{int(time.time() * 1000)}-{next(self._seq)}"
        target = params.get("group_id", params.get("user_id"))
        if target is None:
            return f"{action}_{stamp}"
        return f"{action}_{stamp}_{target}"

    def _prepare(self, action: str, params: Optional[Dict[str, Any]]) -> OutboundCall:
        if not self.is_connected:
            raise NotConnectedError(f"cannot send {action}: not connected")

        params = dict(params or {})
        call = OutboundCall(action=action, params=params, echo=self.make_echo(action, params))
        if call.is_send_message:
            call.rendered = render_segments(params.get("message"))
        return call

    async def _transmit(self, call: OutboundCall) -> None:
        self._prune_pending()
        self._pending[call.echo] = call
        try:
            await self._ws.send(json.dumps(call.to_frame(), ensure_ascii=False))
        except (ConnectionClosed, OSError) as e:
            self._pending.pop(call.echo, None)
            raise NotConnectedError(f"connection closed while sending {call.action}") from e
        self.stats["frames_sent"] += 1

    async def send(self, action: str, params: Optional[Dict[str, Any]] = None) -> OutboundCall:
        """
        Send an action without waiting for the gateway's answer.

        The response, if any, is matched through the echo token and logged.
        Raises NotConnectedError when there is no live connection.
        """
        call = self._prepare(action, params)
        await self._transmit(call)
        return call

    async def call(
        self,
        action: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """
        Send an action and wait for its correlated response.

        Returns the response data. Raises ActionFailedError on a non-ok
        status and asyncio.TimeoutError if no response arrives in time.
        """
        call = self._prepare(action, params)
        future = asyncio.get_running_loop().create_future()
        self._waiters[call.echo] = future
        try:
            await self._transmit(call)
            return await asyncio.wait_for(future, timeout or self.call_timeout)
        finally:
            self._waiters.pop(call.echo, None)

    def _prune_pending(self) -> None:
        cutoff = time.monotonic() - self.pending_ttl
        stale = [
            echo for echo, call in self._pending.items()
            if call.created_at < cutoff and echo not in self._waiters
        ]
        for echo in stale:
            del self._pending[echo]

    def _fail_pending(self, error: Exception) -> None:
        for future in self._waiters.values():
            if not future.done():
                future.set_exception(error)
        self._waiters.clear()
        self._pending.clear()

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self.stats,
            "state": self._state.value,
            "groups": len(self._groups),
            "pending_calls": len(self._pending),
            "reconnect_attempts": self._reconnect_attempts,
        }
