"""Duplex websocket client for OneBot v11 implementations (NapCat).

One connection carries two kinds of traffic: unsolicited events pushed by
the server, and responses to commands issued by this client. Commands are
written by a send loop draining a FIFO queue; frames are read by a receive
loop that matches responses to pending requests by their ``echo`` token
and hands events to an event worker. Subscribers run on the worker, in
arrival order, so a handler may await ``request()`` without blocking the
receive loop that reads its response.
"""

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable
from enum import Enum
from typing import Any, Optional

import aiohttp

from trirelay.exceptions import ProtocolError, TransportError
from trirelay.platforms.correlation import PendingRequests

logger = logging.getLogger(__name__)

FrameHandler = Callable[[dict[str, Any]], Awaitable[None]]


class ConnectionState(str, Enum):
    """Lifecycle states of a gateway connection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"


class GatewayClient:
    """Websocket client with correlated command/response support.

    There is no automatic reconnect. After an unexpected closure the client
    stays ``DISCONNECTED`` and callers should treat the transport as
    unavailable.
    """

    def __init__(
        self,
        url: str,
        token: Optional[str] = None,
        request_timeout: float = 5.0,
        show_frames: bool = False,
        connector: Optional[aiohttp.BaseConnector] = None,
    ) -> None:
        """Initialize the client.

        Args:
            url: Websocket URL (``ws://`` or ``wss://``)
            token: Access token sent as a Bearer Authorization header
            request_timeout: Default seconds to wait for a command response
            show_frames: Log every raw frame at INFO level
            connector: Optional aiohttp connector for the session
        """
        self._url = url
        self._token = token
        self._request_timeout = request_timeout
        self._show_frames = show_frames
        self._connector = connector

        self._state = ConnectionState.DISCONNECTED
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._outbound: asyncio.Queue[str] = asyncio.Queue()
        self._events: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._pending = PendingRequests()
        self._send_task: Optional[asyncio.Task] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._event_task: Optional[asyncio.Task] = None
        self._event_handlers: list[FrameHandler] = []
        self._response_handlers: list[FrameHandler] = []
        self._tearing_down = False

    @property
    def state(self) -> ConnectionState:
        """Current connection state."""
        return self._state

    @property
    def is_open(self) -> bool:
        """Check if the connection is open."""
        return self._state == ConnectionState.OPEN

    @property
    def pending(self) -> PendingRequests:
        """Table of commands awaiting a response."""
        return self._pending

    def on_event(self, handler: FrameHandler) -> None:
        """Subscribe to event frames (frames carrying ``post_type``)."""
        self._event_handlers.append(handler)

    def on_response(self, handler: FrameHandler) -> None:
        """Subscribe to response frames not claimed by a pending request."""
        self._response_handlers.append(handler)

    async def connect(self) -> None:
        """Open the websocket and start the send, receive and event loops.

        Raises:
            TransportError: If the connection cannot be established
        """
        if self._state != ConnectionState.DISCONNECTED:
            logger.warning(f"Gateway connection already {self._state.value}")
            return

        self._state = ConnectionState.CONNECTING
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        logger.info(f"Connecting to gateway at {self._url}")

        session = aiohttp.ClientSession(connector=self._connector)
        try:
            self._ws = await session.ws_connect(self._url, headers=headers)
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            await session.close()
            self._state = ConnectionState.DISCONNECTED
            raise TransportError(f"Failed to connect to {self._url}: {e}", platform="qq") from e

        self._session = session
        self._outbound = asyncio.Queue()
        self._events = asyncio.Queue()
        self._state = ConnectionState.OPEN
        self._send_task = asyncio.create_task(self._send_loop(), name="gateway-send")
        self._receive_task = asyncio.create_task(self._receive_loop(), name="gateway-receive")
        self._event_task = asyncio.create_task(self._event_loop(), name="gateway-events")
        logger.info("Gateway connection open")

    def send_command(
        self,
        action: str,
        params: Optional[dict[str, Any]] = None,
        token: Optional[str] = None,
    ) -> bool:
        """Queue a command frame and return immediately.

        Args:
            action: OneBot action name
            params: Action parameters
            token: Correlation token placed in the ``echo`` field

        Returns:
            True if the command was queued
        """
        if not self.is_open:
            logger.warning(f"Cannot send {action}: gateway is {self._state.value}")
            return False

        frame: dict[str, Any] = {"action": action, "params": params or {}}
        if token is not None:
            frame["echo"] = token

        self._outbound.put_nowait(json.dumps(frame, ensure_ascii=False))
        return True

    async def request(
        self,
        action: str,
        params: Optional[dict[str, Any]] = None,
        fallback: Any = None,
        timeout: Optional[float] = None,
        token: Optional[str] = None,
    ) -> Any:
        """Send a command and wait for its response.

        Args:
            action: OneBot action name
            params: Action parameters
            fallback: Returned if no response arrives in time
            timeout: Seconds to wait (default: the client's request timeout)
            token: Correlation token (generated if not given)

        Returns:
            The response frame, or ``fallback``
        """
        if not self.is_open:
            logger.warning(f"Cannot request {action}: gateway is {self._state.value}")
            return fallback

        token = token or self._pending.new_token(action)
        self._pending.register(token, fallback)

        if not self.send_command(action, params, token=token):
            self._pending.resolve(token, fallback)
            return fallback

        if timeout is None:
            timeout = self._request_timeout
        return await self._pending.wait(token, timeout)

    async def close(self, drain_timeout: float = 1.0) -> None:
        """Close the connection, resolving pending requests with their fallbacks.

        Frames already queued are given ``drain_timeout`` seconds to be written.
        """
        if self._state in (ConnectionState.DISCONNECTED, ConnectionState.CLOSING):
            return

        self._state = ConnectionState.CLOSING
        logger.info("Closing gateway connection")

        if self._send_task is not None and not self._send_task.done():
            try:
                await asyncio.wait_for(self._outbound.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Dropping {self._outbound.qsize()} unsent gateway frames")

        await self._teardown("client closed")

    async def get_group_list(self) -> list[dict[str, Any]]:
        """Fetch the groups the account belongs to.

        Returns:
            Group entries (empty if the request failed or timed out)
        """
        response = await self.request("get_group_list", {}, fallback=None)
        if not response or response.get("status") != "ok":
            return []
        data = response.get("data")
        return data if isinstance(data, list) else []

    async def get_stranger_nickname(self, user_id: str) -> str:
        """Look up a user's display name.

        Args:
            user_id: Numeric user id

        Returns:
            The nickname, or ``user_id`` when the lookup fails or times out
        """
        params = {"user_id": int(user_id) if str(user_id).isdigit() else user_id}
        response = await self.request("get_stranger_info", params, fallback=None)
        if response and response.get("status") == "ok":
            nickname = (response.get("data") or {}).get("nickname")
            if nickname:
                return str(nickname)

        logger.warning(f"Falling back to user ID for QQ user {user_id}")
        return str(user_id)

    async def _send_loop(self) -> None:
        try:
            while True:
                frame = await self._outbound.get()
                if self._show_frames:
                    logger.info(f"Gateway frame sent: {frame}")
                await self._ws.send_str(frame)
                self._outbound.task_done()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = TransportError(f"Failed to write gateway frame: {e}", platform="qq")
            logger.error(str(error))
            await self._teardown("send failed")

    async def _receive_loop(self) -> None:
        try:
            async for msg in self._ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._handle_frame(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.error(f"Gateway websocket error: {self._ws.exception()}")
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Gateway receive loop failed: {e}", exc_info=True)

        if self._state == ConnectionState.OPEN:
            logger.warning("Gateway connection closed unexpectedly")
            await self._teardown("connection lost")

    async def _handle_frame(self, raw: str) -> None:
        if self._show_frames:
            logger.info(f"Gateway frame received: {raw}")

        try:
            frame = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.warning(str(ProtocolError(f"Invalid JSON frame: {e}", platform="qq", frame=raw)))
            return

        if not isinstance(frame, dict):
            logger.warning(str(ProtocolError("Frame is not an object", platform="qq", frame=raw)))
            return

        if "post_type" in frame:
            self._events.put_nowait(frame)
        elif "status" in frame:
            echo = frame.get("echo")
            if echo is not None and self._pending.resolve(str(echo), frame):
                return
            await self._dispatch(self._response_handlers, frame)
        else:
            logger.debug(f"Ignoring unrecognized gateway frame: {raw}")

    async def _event_loop(self) -> None:
        while True:
            frame = await self._events.get()
            await self._dispatch(self._event_handlers, frame)

    async def _dispatch(self, handlers: list[FrameHandler], frame: dict[str, Any]) -> None:
        for handler in handlers:
            try:
                await handler(frame)
            except Exception as e:
                logger.error(f"Gateway frame handler failed: {e}", exc_info=True)

    async def _teardown(self, reason: str) -> None:
        if self._tearing_down:
            return
        self._tearing_down = True

        current = asyncio.current_task()
        loops = (self._send_task, self._receive_task, self._event_task)
        tasks = [t for t in loops if t is not None and t is not current]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._send_task = None
        self._receive_task = None
        self._event_task = None

        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                logger.debug(f"Error closing gateway websocket: {e}")
            self._ws = None

        if self._session is not None:
            await self._session.close()
            self._session = None

        self._pending.resolve_all(reason)
        self._state = ConnectionState.DISCONNECTED
        self._tearing_down = False
        logger.info(f"Gateway disconnected: {reason}")
