"""Discord platform adapter using a bot Gateway connection and/or a webhook."""

import asyncio
import json
import logging
import re
from typing import Any, Optional

import httpx

from trirelay.exceptions import ConfigurationError, TransportError
from trirelay.platforms.attachments import AttachmentPipeline
from trirelay.platforms.models import (
    DEFAULT_AVATAR_URL,
    AttachmentKind,
    FileType,
    Message,
    MessageSource,
)
from trirelay.platforms.protocol import PlatformAdapter

logger = logging.getLogger(__name__)

try:
    import discord
    from discord.ext import commands

    DISCORD_AVAILABLE = True
except ImportError:
    DISCORD_AVAILABLE = False
    logger.warning("discord.py not installed. Install with: pip install discord.py")

SEND_ERRORS: tuple[type[BaseException], ...] = (httpx.HTTPError, OSError)
if DISCORD_AVAILABLE:
    SEND_ERRORS += (discord.DiscordException,)

CHANNEL_MENTION = re.compile(r"<#(\d+)>")
USER_MENTION = re.compile(r"<@!?(\d+)>")
ROLE_MENTION = re.compile(r"<@&(\d+)>")

READY_TIMEOUT = 30.0


class DiscordAdapter(PlatformAdapter):
    """Discord adapter.

    Outbound messages go through the webhook when one is configured (so the
    original sender's name and avatar are shown), otherwise through the bot.
    Inbound messages need the bot.

    Configuration:
        - webhook_url: Channel webhook for outbound messages
        - bot_token: Discord bot token
        - guild_id: Guild to relay (empty = any)
        - channel_id: Channel to relay (required for bot sends)
    """

    def __init__(
        self,
        webhook_url: str = "",
        bot_token: str = "",
        guild_id: str = "",
        channel_id: str = "",
        pipeline: Optional[AttachmentPipeline] = None,
    ):
        """Initialize Discord adapter.

        Args:
            webhook_url: Webhook URL for outbound messages
            bot_token: Discord bot token
            guild_id: Guild ID filter
            channel_id: Channel ID filter and bot send target
            pipeline: Attachment pipeline for inbound attachments
        """
        if bot_token and not DISCORD_AVAILABLE:
            raise ImportError(
                "discord.py is required for Discord adapter. "
                "Install with: pip install discord.py"
            )

        super().__init__(pipeline)

        self._webhook_url = webhook_url
        self._bot_token = bot_token
        self._guild_id = int(guild_id) if guild_id else None
        self._channel_id = int(channel_id) if channel_id else None

        self._bot: Optional["commands.Bot"] = None
        self._bot_task: Optional[asyncio.Task] = None
        self._ready_event = asyncio.Event()

    @property
    def source(self) -> MessageSource:
        """The transport this adapter handles."""
        return MessageSource.DISCORD

    async def initialize(self) -> None:
        """Log the bot in and wait for the Gateway handshake.

        Raises:
            ConfigurationError: If neither webhook_url nor bot_token is set
            TransportError: If the bot cannot log in
        """
        if not self._webhook_url and not self._bot_token:
            raise ConfigurationError("Discord configuration is missing or invalid", platform="discord")

        if self._bot_token:
            await self._start_bot()
        else:
            logger.info("No Discord bot token; running in webhook-only mode (no inbound messages)")

        self._initialized = True

    async def _start_bot(self) -> None:
        intents = discord.Intents.default()
        intents.message_content = True
        intents.messages = True
        intents.guilds = True

        self._bot = commands.Bot(command_prefix="!", intents=intents)
        self._bot.add_listener(self._on_ready, "on_ready")
        self._bot.add_listener(self._on_message, "on_message")

        logger.info("Starting Discord bot (Gateway WebSocket)")
        self._ready_event.clear()
        self._bot_task = asyncio.create_task(self._bot.start(self._bot_token), name="discord-bot")
        ready_task = asyncio.create_task(self._ready_event.wait())

        done, _ = await asyncio.wait(
            {self._bot_task, ready_task},
            timeout=READY_TIMEOUT,
            return_when=asyncio.FIRST_COMPLETED,
        )
        ready_task.cancel()

        if self._bot_task in done:
            error = None if self._bot_task.cancelled() else self._bot_task.exception()
            await self._close_bot()
            reason = error or "bot task ended before the Gateway handshake"
            raise TransportError(f"Discord bot failed to start: {reason}", platform="discord") from error

        if not self._ready_event.is_set():
            await self._close_bot()
            raise TransportError(
                f"Discord bot not ready after {READY_TIMEOUT:.0f}s", platform="discord"
            )

    async def _on_ready(self) -> None:
        logger.info(f"Discord bot logged in as {self._bot.user}")
        self._ready_event.set()

    async def start_listening(self) -> None:
        """Begin relaying inbound messages (bot mode only)."""
        if self._running:
            return
        self._running = True
        if self._bot is None:
            logger.info("Discord adapter listening disabled (webhook-only mode)")

    async def stop_listening(self) -> None:
        """Stop relaying and close the bot connection."""
        self._running = False
        await self._close_bot()

    async def _close_bot(self) -> None:
        if self._bot is not None:
            await self._bot.close()
            self._bot = None
            logger.info("Discord bot stopped")
        if self._bot_task is not None:
            await asyncio.gather(self._bot_task, return_exceptions=True)
            self._bot_task = None

    async def health_check(self) -> bool:
        """Check that the bot is connected (webhook-only mode is always healthy)."""
        if self._bot is None:
            return self._initialized
        return self._running and not self._bot.is_closed()

    # Inbound

    def _accepts(self, message: "discord.Message") -> bool:
        if message.author.bot or message.webhook_id is not None:
            return False
        if self._guild_id is not None and (message.guild is None or message.guild.id != self._guild_id):
            return False
        if self._channel_id is not None and message.channel.id != self._channel_id:
            return False
        return True

    async def _on_message(self, dc_message: "discord.Message") -> None:
        if not self._running or not self._accepts(dc_message):
            return

        author = dc_message.author
        message = Message(
            id=str(dc_message.id),
            content=self.translate_mentions(dc_message.content, dc_message.guild),
            sender_name=author.name,
            sender_id=str(author.id),
            source=MessageSource.DISCORD,
            timestamp=dc_message.created_at,
            avatar_url=author.display_avatar.url if author.display_avatar else DEFAULT_AVATAR_URL,
        )
        logger.debug(f"Received message from Discord: {message.content}")

        if not dc_message.attachments:
            await self.emit(message)
            return

        attachment = dc_message.attachments[0]
        content_type = attachment.content_type or ""
        if content_type.startswith("image/") and content_type != "image/gif":
            message.image_url = attachment.url
            await self.emit_with_attachment(message, AttachmentKind.IMAGE)
        else:
            message.file_url = attachment.url
            message.file_name = attachment.filename
            message.file_type = (
                FileType.from_content_type(content_type)
                if content_type
                else FileType.from_filename(attachment.filename)
            )
            await self.emit_with_attachment(message, AttachmentKind.FILE)

    def translate_mentions(self, content: str, guild: Optional[Any] = None) -> str:
        """Replace raw ``<#id>``, ``<@id>`` and ``<@&id>`` mentions with names.

        Unknown ids keep their raw form.
        """
        if not content or self._bot is None:
            return content

        def channel_name(match: re.Match) -> str:
            channel = self._bot.get_channel(int(match.group(1)))
            return f"#{channel.name}" if channel is not None else match.group(0)

        def user_name(match: re.Match) -> str:
            user_id = int(match.group(1))
            member = guild.get_member(user_id) if guild is not None else None
            user = member or self._bot.get_user(user_id)
            if user is None:
                return match.group(0)
            return f"@{getattr(user, 'display_name', None) or user.name}"

        def role_name(match: re.Match) -> str:
            role = guild.get_role(int(match.group(1))) if guild is not None else None
            return f"@{role.name}" if role is not None else match.group(0)

        content = CHANNEL_MENTION.sub(channel_name, content)
        content = USER_MENTION.sub(user_name, content)
        return ROLE_MENTION.sub(role_name, content)

    # Outbound

    async def send_message(self, message: Message) -> bool:
        """Send a message through the webhook, or the bot when no webhook is set."""
        try:
            if self._webhook_url:
                return await self._send_webhook(message)
            if self._bot is not None:
                return await self._send_bot(message)
        except SEND_ERRORS as e:
            logger.error(str(TransportError(f"Failed to send message to Discord: {e}", platform="discord")))
            return False

        logger.warning("Cannot send to Discord: no webhook or bot available")
        return False

    def _embeds(self, message: Message, image_url: Optional[str], file_url: Optional[str]) -> list[dict[str, Any]]:
        embeds: list[dict[str, Any]] = []
        if image_url:
            embeds.append({"image": {"url": image_url}})
        if file_url:
            title = message.file_name or "File"
            if message.file_type is not None:
                title = f"{message.file_type.value.upper()}: {title}"
            embeds.append({"title": title, "url": file_url, "description": f"[Click to download]({file_url})"})
        return embeds

    async def _send_webhook(self, message: Message) -> bool:
        # local files are uploaded; remote ones are linked in embeds
        uploads = [
            path
            for path in (
                AttachmentPipeline.local_path(message.image_url),
                AttachmentPipeline.local_path(message.file_url),
            )
            if path is not None
        ]
        remote_image = None if AttachmentPipeline.local_path(message.image_url) else message.image_url
        remote_file = None if AttachmentPipeline.local_path(message.file_url) else message.file_url

        payload: dict[str, Any] = {
            "content": self.translate_mentions(message.content),
            "username": message.formatted_username(),
            "avatar_url": message.avatar_url or DEFAULT_AVATAR_URL,
        }
        embeds = self._embeds(message, remote_image, remote_file)
        if embeds:
            payload["embeds"] = embeds

        async with httpx.AsyncClient(timeout=60.0) as client:
            if uploads:
                handles = [path.open("rb") for path in uploads]
                try:
                    files = {
                        f"files[{i}]": (path.name, handle)
                        for i, (path, handle) in enumerate(zip(uploads, handles))
                    }
                    response = await client.post(
                        self._webhook_url, data={"payload_json": json.dumps(payload)}, files=files
                    )
                finally:
                    for handle in handles:
                        handle.close()
            else:
                response = await client.post(self._webhook_url, json=payload)
            response.raise_for_status()

        logger.info("Message sent to Discord via webhook")
        return True

    async def _send_bot(self, message: Message) -> bool:
        if self._channel_id is None:
            logger.warning("Cannot send to Discord via bot: channel_id not configured")
            return False

        channel = self._bot.get_channel(self._channel_id) or await self._bot.fetch_channel(self._channel_id)

        files = []
        for url, name in ((message.image_url, None), (message.file_url, message.file_name)):
            path = AttachmentPipeline.local_path(url)
            if path is not None:
                files.append(discord.File(str(path), filename=name or path.name))

        remote_image = None if AttachmentPipeline.local_path(message.image_url) else message.image_url
        remote_file = None if AttachmentPipeline.local_path(message.file_url) else message.file_url
        embeds = [discord.Embed.from_dict(e) for e in self._embeds(message, remote_image, remote_file)]

        content = f"**{message.formatted_username()}**\n{self.translate_mentions(message.content)}"
        kwargs: dict[str, Any] = {"content": content}
        if embeds:
            kwargs["embeds"] = embeds
        if files:
            kwargs["files"] = files
        await channel.send(**kwargs)

        logger.info(f"Message sent to Discord channel {self._channel_id} via bot")
        return True
