"""Tests for the OneBot websocket gateway client."""

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import aiohttp
import pytest

from trirelay.exceptions import TransportError
from trirelay.platforms.gateway import ConnectionState, GatewayClient


class FakeWebSocket:
    """Scripted stand-in for aiohttp.ClientWebSocketResponse."""

    def __init__(self):
        self.sent: list[dict] = []
        self.closed = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    def feed(self, payload) -> None:
        """Queue an inbound text frame (dicts are JSON-encoded)."""
        data = payload if isinstance(payload, str) else json.dumps(payload)
        self._incoming.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=data))

    def drop(self) -> None:
        """Simulate the server closing the connection."""
        self._incoming.put_nowait(None)

    async def send_str(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def exception(self):
        return None

    def __aiter__(self):
        return self

    async def __anext__(self):
        msg = await self._incoming.get()
        if msg is None:
            raise StopAsyncIteration
        return msg


async def wait_until(predicate, timeout: float = 1.0) -> None:
    """Poll until ``predicate()`` is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def fake_ws():
    """Provide a fake websocket."""
    return FakeWebSocket()


@pytest.fixture
def fake_session(fake_ws):
    """Provide a fake aiohttp session returning the fake websocket."""
    session = Mock()
    session.ws_connect = AsyncMock(return_value=fake_ws)
    session.close = AsyncMock()
    return session


@pytest.fixture
def patched_session(fake_session):
    """Patch aiohttp.ClientSession as seen by the gateway module."""
    with patch("trirelay.platforms.gateway.aiohttp.ClientSession", return_value=fake_session):
        yield fake_session


class TestGatewayConnect:
    """Tests for connecting and closing."""

    @pytest.mark.asyncio
    async def test_connect_sends_bearer_token(self, patched_session):
        """Test that the access token is sent as an Authorization header."""
        client = GatewayClient("ws://localhost:3001", token="secret")

        await client.connect()
        try:
            assert client.state == ConnectionState.OPEN
            assert client.is_open
            _, kwargs = patched_session.ws_connect.call_args
            assert kwargs["headers"] == {"Authorization": "Bearer secret"}
        finally:
            await client.close()

        assert client.state == ConnectionState.DISCONNECTED
        patched_session.close.assert_awaited()

    @pytest.mark.asyncio
    async def test_connect_failure(self, patched_session):
        """Test that a refused connection raises TransportError."""
        patched_session.ws_connect.side_effect = aiohttp.ClientConnectionError("refused")
        client = GatewayClient("ws://localhost:3001")

        with pytest.raises(TransportError):
            await client.connect()

        assert client.state == ConnectionState.DISCONNECTED
        patched_session.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_send_command_when_closed(self):
        """Test that commands are refused before connecting."""
        client = GatewayClient("ws://localhost:3001")

        assert client.send_command("send_group_msg", {"group_id": "1"}) is False

    @pytest.mark.asyncio
    async def test_request_when_closed_returns_fallback(self):
        """Test that requests resolve to their fallback before connecting."""
        client = GatewayClient("ws://localhost:3001")

        assert await client.request("get_group_list", fallback="fb") == "fb"
        assert len(client.pending) == 0

    @pytest.mark.asyncio
    async def test_close_drains_queued_frames(self, patched_session, fake_ws):
        """Test that frames queued before close are still written."""
        client = GatewayClient("ws://localhost:3001")
        await client.connect()

        client.send_command("send_group_msg", {"group_id": "1", "message": "bye"})
        await client.close()

        assert fake_ws.sent == [
            {"action": "send_group_msg", "params": {"group_id": "1", "message": "bye"}}
        ]
        assert fake_ws.closed


class TestGatewayFrames:
    """Tests for frame dispatch and request correlation."""

    @pytest.mark.asyncio
    async def test_event_dispatch(self, patched_session, fake_ws):
        """Test that event frames reach every subscriber."""
        client = GatewayClient("ws://localhost:3001")
        first, second = [], []

        async def handler_one(frame):
            first.append(frame)

        async def handler_two(frame):
            second.append(frame)

        client.on_event(handler_one)
        client.on_event(handler_two)
        await client.connect()
        try:
            fake_ws.feed({"post_type": "message", "message_id": 1})
            await wait_until(lambda: first and second)
        finally:
            await client.close()

        assert first[0]["message_id"] == 1
        assert second[0]["message_id"] == 1

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_stop_others(self, patched_session, fake_ws):
        """Test that a raising subscriber is isolated."""
        client = GatewayClient("ws://localhost:3001")
        received = []

        async def broken(frame):
            raise RuntimeError("handler bug")

        async def working(frame):
            received.append(frame)

        client.on_event(broken)
        client.on_event(working)
        await client.connect()
        try:
            fake_ws.feed({"post_type": "notice"})
            fake_ws.feed({"post_type": "message"})
            await wait_until(lambda: len(received) == 2)
            assert client.is_open
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_responses_matched_by_echo(self, patched_session, fake_ws):
        """Test that concurrent requests get their own responses out of order."""
        client = GatewayClient("ws://localhost:3001")
        await client.connect()
        try:
            first = asyncio.create_task(client.request("get_status", token="x1"))
            second = asyncio.create_task(client.request("get_group_list", token="x2"))
            await wait_until(lambda: len(fake_ws.sent) == 2)

            assert {frame["echo"] for frame in fake_ws.sent} == {"x1", "x2"}

            fake_ws.feed({"status": "ok", "data": "B", "echo": "x2"})
            fake_ws.feed({"status": "ok", "data": "A", "echo": "x1"})

            assert (await first)["data"] == "A"
            assert (await second)["data"] == "B"
            assert len(client.pending) == 0
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_unmatched_response_goes_to_subscribers(self, patched_session, fake_ws):
        """Test that a response with no waiting request is dispatched."""
        client = GatewayClient("ws://localhost:3001")
        responses = []

        async def on_response(frame):
            responses.append(frame)

        client.on_response(on_response)
        await client.connect()
        try:
            fake_ws.feed({"status": "ok", "retcode": 0, "echo": "unknown"})
            await wait_until(lambda: responses)
        finally:
            await client.close()

        assert responses[0]["echo"] == "unknown"

    @pytest.mark.asyncio
    async def test_request_timeout_returns_fallback(self, patched_session):
        """Test that an unanswered request resolves to its fallback."""
        client = GatewayClient("ws://localhost:3001", request_timeout=0.02)
        await client.connect()
        try:
            result = await client.request("get_stranger_info", {"user_id": 1}, fallback="fb")
            assert result == "fb"
            assert len(client.pending) == 0
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_invalid_json_is_dropped(self, patched_session, fake_ws):
        """Test that malformed frames are skipped without closing the connection."""
        client = GatewayClient("ws://localhost:3001")
        events = []

        async def on_event(frame):
            events.append(frame)

        client.on_event(on_event)
        await client.connect()
        try:
            fake_ws.feed("{not json")
            fake_ws.feed("[1, 2, 3]")
            fake_ws.feed({"post_type": "message", "message_id": 2})
            await wait_until(lambda: events)
            assert client.is_open
        finally:
            await client.close()

        assert events == [{"post_type": "message", "message_id": 2}]

    @pytest.mark.asyncio
    async def test_unexpected_close_resolves_pending(self, patched_session, fake_ws):
        """Test that losing the connection hands pending requests their fallback."""
        client = GatewayClient("ws://localhost:3001", request_timeout=5.0)
        await client.connect()

        waiter = asyncio.create_task(client.request("get_group_list", fallback="gone"))
        await wait_until(lambda: fake_ws.sent)
        fake_ws.drop()

        assert await asyncio.wait_for(waiter, timeout=1.0) == "gone"
        await wait_until(lambda: client.state == ConnectionState.DISCONNECTED)
        assert client.send_command("get_status") is False

    @pytest.mark.asyncio
    async def test_get_stranger_nickname(self, patched_session, fake_ws):
        """Test nickname lookup and its user id fallback."""
        client = GatewayClient("ws://localhost:3001", request_timeout=0.05)
        await client.connect()
        try:
            lookup = asyncio.create_task(client.get_stranger_nickname("10001"))
            await wait_until(lambda: fake_ws.sent)
            frame = fake_ws.sent[0]
            assert frame["action"] == "get_stranger_info"
            assert frame["params"] == {"user_id": 10001}
            fake_ws.feed({"status": "ok", "data": {"nickname": "Bob"}, "echo": frame["echo"]})
            assert await lookup == "Bob"

            assert await client.get_stranger_nickname("10002") == "10002"
        finally:
            await client.close()

    @pytest.mark.asyncio
    async def test_event_handler_can_await_request(self, patched_session, fake_ws):
        """Test that a subscriber awaiting a request gets its response."""
        client = GatewayClient("ws://localhost:3001", request_timeout=2.0)
        names = []

        async def on_event(frame):
            names.append(await client.get_stranger_nickname(str(frame["user_id"])))

        client.on_event(on_event)
        await client.connect()
        try:
            fake_ws.feed({"post_type": "message", "user_id": 10001})
            await wait_until(lambda: fake_ws.sent)
            fake_ws.feed({"status": "ok", "data": {"nickname": "Alice"}, "echo": fake_ws.sent[0]["echo"]})
            await wait_until(lambda: names, timeout=0.5)
        finally:
            await client.close()

        assert names == ["Alice"]

    @pytest.mark.asyncio
    async def test_events_keep_arrival_order(self, patched_session, fake_ws):
        """Test that a slow subscriber does not reorder later events."""
        client = GatewayClient("ws://localhost:3001")
        seen = []

        async def on_event(frame):
            if frame["message_id"] == 1:
                await asyncio.sleep(0.05)
            seen.append(frame["message_id"])

        client.on_event(on_event)
        await client.connect()
        try:
            fake_ws.feed({"post_type": "message", "message_id": 1})
            fake_ws.feed({"post_type": "message", "message_id": 2})
            await wait_until(lambda: len(seen) == 2)
        finally:
            await client.close()

        assert seen == [1, 2]

    @pytest.mark.asyncio
    async def test_close_resolves_pending(self, patched_session, fake_ws):
        """Test that closing hands pending requests their fallback."""
        client = GatewayClient("ws://localhost:3001", request_timeout=5.0)
        await client.connect()

        waiter = asyncio.create_task(client.request("get_group_list", fallback="x"))
        await wait_until(lambda: fake_ws.sent)
        await client.close()

        assert await asyncio.wait_for(waiter, timeout=1.0) == "x"
        assert client.state == ConnectionState.DISCONNECTED
        assert len(client.pending) == 0

    @pytest.mark.asyncio
    async def test_zero_timeout_is_honoured(self, patched_session):
        """Test that an explicit zero timeout does not fall back to the default."""
        client = GatewayClient("ws://localhost:3001", request_timeout=5.0)
        await client.connect()
        try:
            result = await asyncio.wait_for(
                client.request("get_status", fallback="fb", timeout=0), timeout=1.0
            )
            assert result == "fb"
        finally:
            await client.close()
