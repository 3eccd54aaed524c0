"""Telegram bot platform adapter using long polling."""

import logging
from datetime import datetime
from typing import Any, Optional

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
    from telegram import Update
    from telegram.ext import Application, ContextTypes, MessageHandler, filters
    from telegram.error import TelegramError

    TELEGRAM_AVAILABLE = True
except ImportError:
    TELEGRAM_AVAILABLE = False
    logger.warning(
        "python-telegram-bot not installed. "
        "Install with: pip install python-telegram-bot"
    )


class TelegramAdapter(PlatformAdapter):
    """Telegram bot adapter using long polling.

    Only messages from the configured chat are relayed. Telegram file URLs
    embed the bot token, so inbound attachments are always downloaded
    before the message is emitted and only local copies leave this adapter.

    Configuration:
        - bot_token: Telegram bot token from @BotFather
        - chat_id: Chat to relay
    """

    def __init__(
        self,
        bot_token: str,
        chat_id: str,
        pipeline: Optional[AttachmentPipeline] = None,
        polling_interval: float = 0.0,
    ):
        """Initialize Telegram adapter.

        Args:
            bot_token: Bot token from @BotFather
            chat_id: Chat to relay
            pipeline: Attachment pipeline (one is created if not given)
            polling_interval: Delay between getUpdates calls in seconds
        """
        if not TELEGRAM_AVAILABLE:
            raise ImportError(
                "python-telegram-bot is required for Telegram adapter. "
                "Install with: pip install python-telegram-bot"
            )

        super().__init__(pipeline or AttachmentPipeline())

        self._bot_token = bot_token
        self._chat_id = str(chat_id)
        self._polling_interval = polling_interval

        self._application: Optional[Application] = None
        self._bot_id: Optional[int] = None

    @property
    def source(self) -> MessageSource:
        """The transport this adapter handles."""
        return MessageSource.TELEGRAM

    async def initialize(self) -> None:
        """Build the bot application and verify the token.

        Raises:
            ConfigurationError: If bot_token or chat_id is missing
            TransportError: If Telegram rejects the token or is unreachable
        """
        if not self._bot_token or not self._chat_id:
            raise ConfigurationError("Telegram configuration is missing or invalid", platform="telegram")

        self._application = Application.builder().token(self._bot_token).build()
        self._application.add_handler(MessageHandler(filters.ALL, self._handle_update))

        try:
            await self._application.initialize()
        except TelegramError as e:
            self._application = None
            raise TransportError(f"Failed to initialize Telegram bot: {e}", platform="telegram") from e

        self._bot_id = self._application.bot.id
        self._initialized = True
        logger.info(f"Telegram bot initialized as {self._application.bot.username}")

    async def start_listening(self) -> None:
        """Start long polling."""
        if self._running:
            return

        logger.info("Starting Telegram bot adapter (polling mode)")
        await self._application.start()
        await self._application.updater.start_polling(
            poll_interval=self._polling_interval,
            allowed_updates=Update.ALL_TYPES,
        )
        self._running = True
        logger.info("Telegram bot started successfully")

    async def stop_listening(self) -> None:
        """Stop polling and shut the application down."""
        if self._application is None:
            return

        logger.info("Stopping Telegram bot adapter")
        if self._running:
            await self._application.updater.stop()
            await self._application.stop()
        await self._application.shutdown()

        self._application = None
        self._running = False
        logger.info("Telegram bot stopped")

    async def _handle_update(self, update: "Update", context: "ContextTypes.DEFAULT_TYPE") -> None:
        """Convert an update from the configured chat into a Message."""
        tg_message = update.effective_message
        if tg_message is None or str(tg_message.chat_id) != self._chat_id:
            return

        user = tg_message.from_user
        if user is None or user.is_bot or user.id == self._bot_id:
            return

        message = Message(
            id=str(tg_message.message_id),
            content=tg_message.text or tg_message.caption or "",
            sender_name=user.username or user.full_name or "Unknown",
            sender_id=str(user.id),
            source=MessageSource.TELEGRAM,
            timestamp=tg_message.date or datetime.now(),
            # profile photo URLs embed the bot token
            avatar_url=DEFAULT_AVATAR_URL,
        )

        try:
            kind = await self._attach(tg_message, message)
        except TelegramError as e:
            logger.error(f"Failed to resolve Telegram attachment for message {message.id}: {e}")
            message.image_url = message.file_url = None
            kind = None

        if kind is not None:
            await self._pipeline.localize(message, kind)

        logger.debug(f"Received message from Telegram: {message.content}")
        await self.emit(message)

    async def _attach(self, tg_message: Any, message: Message) -> Optional[AttachmentKind]:
        """Fill in the attachment fields; returns the kind to localize."""
        if tg_message.photo:
            photo = max(tg_message.photo, key=lambda p: p.width * p.height)
            message.image_url = (await photo.get_file()).file_path
            return AttachmentKind.IMAGE

        for attr, file_type in (
            ("animation", FileType.ANIMATION),
            ("video", FileType.VIDEO),
            ("audio", FileType.AUDIO),
            ("voice", FileType.AUDIO),
            ("document", FileType.DOCUMENT),
        ):
            media = getattr(tg_message, attr, None)
            if media is None:
                continue
            message.file_url = (await media.get_file()).file_path
            message.file_name = getattr(media, "file_name", None) or f"{attr}_{media.file_unique_id}"
            message.file_type = file_type
            return AttachmentKind.FILE

        return None

    async def send_message(self, message: Message) -> bool:
        """Send a message to the configured chat.

        The text goes first as ``<user>@<platform>: <content>``, followed by
        the attachment when present. Local files are uploaded from disk.
        """
        if self._application is None:
            logger.warning("Cannot send to Telegram: adapter not initialized")
            return False

        bot = self._application.bot
        try:
            await bot.send_message(
                chat_id=self._chat_id,
                text=f"{message.formatted_username()}: {message.content}",
            )

            if message.image_url:
                await self._send_media(bot.send_photo, "photo", message.image_url)

            if message.file_url:
                sender = {
                    FileType.AUDIO: (bot.send_audio, "audio"),
                    FileType.VIDEO: (bot.send_video, "video"),
                    FileType.ANIMATION: (bot.send_animation, "animation"),
                }.get(message.file_type, (bot.send_document, "document"))
                await self._send_media(*sender, message.file_url, message.file_name)

            logger.info(f"Message sent to Telegram chat {self._chat_id}")
            return True
        except TelegramError as e:
            logger.error(str(TransportError(f"Failed to send message to Telegram: {e}", platform="telegram")))
            return False
        except OSError as e:
            logger.error(f"Failed to read attachment for Telegram: {e}")
            return False

    async def _send_media(
        self, send: Any, field: str, url: str, file_name: Optional[str] = None
    ) -> None:
        kwargs: dict[str, Any] = {"chat_id": self._chat_id}
        path = AttachmentPipeline.local_path(url)
        if path is None:
            kwargs[field] = url
            await send(**kwargs)
            return

        if file_name:
            kwargs["filename"] = file_name
        with path.open("rb") as f:
            kwargs[field] = f
            await send(**kwargs)

    async def health_check(self) -> bool:
        """Check that polling is active."""
        return (
            self._running
            and self._application is not None
            and self._application.updater.running
        )
