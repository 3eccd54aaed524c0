"""QQ platform adapter for OneBot v11 implementations (NapCat).

Two connection modes are supported:
- websocket: a single duplex connection through ``GatewayClient``
- http: polling ``/get_group_msg`` with ``httpx``
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Optional

import httpx

from trirelay.exceptions import ConfigurationError, TransportError
from trirelay.platforms.attachments import AttachmentPipeline
from trirelay.platforms.gateway import GatewayClient
from trirelay.platforms.models import (
    DEFAULT_AVATAR_URL,
    AttachmentKind,
    Message,
    MessageSource,
)
from trirelay.platforms.protocol import PlatformAdapter
from trirelay.platforms.richtext import decode_message, resolve_placeholders

logger = logging.getLogger(__name__)


def qq_avatar_url(user_id: Optional[str]) -> str:
    """Avatar URL for a QQ account (the default avatar for unknown users)."""
    if not user_id or user_id == "Unknown":
        return DEFAULT_AVATAR_URL
    return f"https://q1.qlogo.cn/g?b=qq&nk={user_id}&s=640"


class QQAdapter(PlatformAdapter):
    """QQ group adapter speaking the OneBot v11 protocol.

    Configuration:
        - base_url: ``ws://``/``wss://`` for websocket mode, ``http(s)://`` for polling
        - token: OneBot access token
        - group_id: Group to relay
        - polling_interval: Seconds between polls in HTTP mode (default: 2)
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        group_id: str,
        pipeline: Optional[AttachmentPipeline] = None,
        polling_interval: float = 2.0,
        request_timeout: float = 5.0,
        show_frames: bool = False,
    ):
        """Initialize QQ adapter.

        Args:
            base_url: OneBot endpoint
            token: OneBot access token
            group_id: Group to relay
            pipeline: Attachment pipeline for inbound images and files
            polling_interval: Polling interval in seconds (HTTP mode)
            request_timeout: Seconds to wait for command responses
            show_frames: Log raw websocket frames and HTTP responses
        """
        super().__init__(pipeline)

        self._base_url = base_url
        self._token = token
        self._group_id = str(group_id)
        self._polling_interval = polling_interval
        self._request_timeout = request_timeout
        self._show_frames = show_frames

        self._gateway: Optional[GatewayClient] = None
        self._http: Optional[httpx.AsyncClient] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._self_id: Optional[str] = None
        self._last_message_id: Optional[str] = None

    @property
    def source(self) -> MessageSource:
        """The transport this adapter handles."""
        return MessageSource.QQ

    @property
    def use_websocket(self) -> bool:
        """Whether the base URL selects websocket mode."""
        return self._base_url.lower().startswith(("ws://", "wss://"))

    @property
    def gateway(self) -> Optional[GatewayClient]:
        """Gateway client (websocket mode only)."""
        return self._gateway

    async def initialize(self) -> None:
        """Connect to the OneBot endpoint and verify the group.

        Raises:
            ConfigurationError: If base_url, token or group_id is missing
            TransportError: If the endpoint cannot be reached
        """
        if not self._base_url or not self._token or not self._group_id:
            raise ConfigurationError("NapCat configuration is missing or invalid", platform="qq")

        if self.use_websocket:
            logger.info("Using WebSocket protocol for NapCat QQ")
            await self._initialize_websocket()
        else:
            logger.info("Using HTTP protocol for NapCat QQ")
            await self._initialize_http()

        self._initialized = True

    async def _initialize_websocket(self) -> None:
        self._gateway = GatewayClient(
            self._base_url,
            self._token,
            request_timeout=self._request_timeout,
            show_frames=self._show_frames,
        )
        self._gateway.on_event(self._handle_event)
        await self._gateway.connect()

        groups = await self._gateway.get_group_list()
        self._log_group_membership(groups)

    async def _initialize_http(self) -> None:
        self._http = httpx.AsyncClient(
            base_url=self._base_url,
            headers={"Authorization": f"Bearer {self._token}"},
            timeout=self._request_timeout,
        )

        status = await self._post("/get_status", {})
        if status is None:
            await self._http.aclose()
            self._http = None
            raise TransportError("Failed to connect to NapCat HTTP API", platform="qq")

        data = status.get("data") or {}
        if isinstance(data, dict) and data.get("self_id") is not None:
            self._self_id = str(data["self_id"])

        groups = await self._post("/get_group_list", {})
        if groups is not None and isinstance(groups.get("data"), list):
            self._log_group_membership(groups["data"])

    def _log_group_membership(self, groups: list[dict[str, Any]]) -> None:
        if any(str(g.get("group_id")) == self._group_id for g in groups):
            logger.info(f"QQ group {self._group_id} found")
        else:
            logger.warning(f"QQ group {self._group_id} not found in group list")

    async def start_listening(self) -> None:
        """Start receiving group messages."""
        if self._running:
            return

        self._running = True
        if not self.use_websocket:
            self._poll_task = asyncio.create_task(self._poll_loop(), name="qq-poll")
            logger.info("Started HTTP polling for messages")
        else:
            logger.info("WebSocket is already listening for messages")

    async def stop_listening(self) -> None:
        """Stop listening and close the connection."""
        if not self._running and self._gateway is None and self._http is None:
            return

        self._running = False

        if self._poll_task is not None:
            self._poll_task.cancel()
            await asyncio.gather(self._poll_task, return_exceptions=True)
            self._poll_task = None

        if self._gateway is not None:
            await self._gateway.close()
            self._gateway = None
            logger.info("Stopped WebSocket connection")

        if self._http is not None:
            await self._http.aclose()
            self._http = None
            logger.info("Stopped HTTP polling")

    async def health_check(self) -> bool:
        """Check that the connection is usable."""
        if self.use_websocket:
            return self._gateway is not None and self._gateway.is_open
        return self._running and self._http is not None

    # Inbound

    async def _handle_event(self, event: dict[str, Any]) -> None:
        """Handle a websocket event frame."""
        if event.get("post_type") != "message" or event.get("message_type") != "group":
            return
        if str(event.get("group_id")) != self._group_id:
            return
        await self._handle_group_message(event)

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await self._poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error polling QQ messages from group {self._group_id}: {e}")
            await asyncio.sleep(self._polling_interval)

    async def _poll_once(self) -> None:
        response = await self._post("/get_group_msg", {"group_id": self._group_id})
        if response is None:
            return
        if response.get("status") != "ok":
            logger.warning(f"NapCat API returned non-OK status: {response.get('status')}")
            return

        data = response.get("data")
        if isinstance(data, dict):
            data = data.get("messages") if isinstance(data.get("messages"), list) else data.get("list")
        if not isinstance(data, list):
            logger.warning("Unexpected response format from NapCat API")
            return

        for entry in data:
            if entry.get("message_type") != "group" or str(entry.get("group_id")) != self._group_id:
                continue
            await self._handle_group_message(entry)

    async def _handle_group_message(self, event: dict[str, Any]) -> None:
        message_id = event.get("message_id")
        if message_id is None or str(message_id) == self._last_message_id:
            return
        message_id = str(message_id)
        self._last_message_id = message_id

        if event.get("self_id") is not None:
            self._self_id = str(event["self_id"])

        sender = event.get("sender") or {}
        user_id = str(sender.get("user_id") or event.get("user_id") or "Unknown")
        if self._self_id is not None and user_id == self._self_id:
            logger.debug(f"Ignoring own QQ message {message_id}")
            return

        decoded = decode_message(event.get("message"))
        content = await resolve_placeholders(decoded.text, self.get_nickname)

        message = Message(
            id=message_id,
            content=content,
            sender_name=sender.get("card") or sender.get("nickname") or "Unknown",
            sender_id=user_id,
            source=MessageSource.QQ,
            timestamp=_parse_time(event.get("time")),
            avatar_url=qq_avatar_url(user_id),
            image_url=decoded.image_url,
            file_url=decoded.file_url,
            file_name=decoded.file_name,
            file_type=decoded.file_type,
        )
        logger.debug(f"Received message from QQ group {self._group_id}: {message.content}")

        if message.image_url:
            await self.emit_with_attachment(message, AttachmentKind.IMAGE)
        elif message.file_url:
            await self.emit_with_attachment(message, AttachmentKind.FILE)
        else:
            await self.emit(message)

    async def get_nickname(self, user_id: str) -> str:
        """Look up a QQ user's nickname, falling back to the user id."""
        if self._gateway is not None:
            return await self._gateway.get_stranger_nickname(user_id)

        params = {"user_id": int(user_id) if user_id.isdigit() else user_id}
        response = await self._post("/get_stranger_info", params)
        if response and response.get("status") == "ok":
            nickname = (response.get("data") or {}).get("nickname")
            if nickname:
                return str(nickname)

        logger.warning(f"Falling back to user ID for QQ user {user_id}")
        return user_id

    # Outbound

    async def send_message(self, message: Message) -> bool:
        """Send a message to the QQ group.

        The text goes first as ``<user>@<platform>: <content>``, followed by
        the image and file when present.
        """
        try:
            sent = await self._send_group_msg(f"{message.formatted_username()}: {message.content}")

            if message.image_url:
                segment = {"type": "image", "data": {"file": message.image_url}}
                sent = await self._send_group_msg([segment]) and sent

            if message.file_url:
                name = message.file_name or message.file_url.rsplit("/", 1)[-1]
                segment = {"type": "file", "data": {"file": message.file_url, "name": name}}
                sent = await self._send_group_msg([segment]) and sent

            return sent
        except Exception as e:
            logger.error(f"Failed to send message to QQ group {self._group_id}: {e}")
            return False

    async def _send_group_msg(self, content: str | list[dict[str, Any]]) -> bool:
        params = {"group_id": self._group_id, "message": content}

        if self._gateway is not None:
            sent = self._gateway.send_command("send_group_msg", params)
            if sent:
                logger.info(f"Message sent to QQ group {self._group_id} via WebSocket")
            return sent

        response = await self._post("/send_group_msg", params)
        if response is None or response.get("status") != "ok":
            logger.error(f"Failed to send message to QQ group {self._group_id}: {response}")
            return False

        logger.info(f"Message sent to QQ group {self._group_id} via HTTP")
        return True

    async def _post(self, path: str, payload: dict[str, Any]) -> Optional[dict[str, Any]]:
        """POST to the OneBot HTTP API. Returns None on transport failure."""
        if self._http is None:
            logger.warning(f"Cannot call {path}: HTTP client not initialized")
            return None

        try:
            response = await self._http.post(path, json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            error = TransportError(f"NapCat request {path} failed: {e}", platform="qq")
            logger.error(str(error))
            return None

        if self._show_frames:
            logger.info(f"NapCat API response for {path}: {body}")
        return body if isinstance(body, dict) else None


def _parse_time(value: Any) -> datetime:
    try:
        return datetime.fromtimestamp(int(value))
    except (TypeError, ValueError, OverflowError, OSError):
        return datetime.now()
