"""Platform adapter protocol definition."""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Optional

from trirelay.platforms.attachments import AttachmentPipeline
from trirelay.platforms.models import (
    AttachmentKind,
    AttachmentState,
    Message,
    MessageSource,
)

logger = logging.getLogger(__name__)


class PlatformAdapter(ABC):
    """Abstract base class for transport adapters.

    Each transport (Discord, Telegram, QQ) implements this protocol to
    provide a uniform interface for the relay. Inbound messages are published
    with ``emit`` and consumed through ``receive_messages``.
    """

    def __init__(self, pipeline: Optional[AttachmentPipeline] = None) -> None:
        """Initialize the platform adapter.

        Args:
            pipeline: Attachment pipeline used to localize inbound files
        """
        self._pipeline = pipeline
        self._initialized = False
        self._running = False
        self._message_queue: asyncio.Queue[Message] = asyncio.Queue()
        self._attachment_tasks: set[asyncio.Task] = set()

    @property
    @abstractmethod
    def source(self) -> MessageSource:
        """The transport this adapter handles."""
        ...

    @property
    def is_initialized(self) -> bool:
        """Check if ``initialize`` has completed."""
        return self._initialized

    @property
    def is_listening(self) -> bool:
        """Check if the adapter is currently listening."""
        return self._running

    @property
    def pipeline(self) -> Optional[AttachmentPipeline]:
        """Attachment pipeline, if one is attached."""
        return self._pipeline

    @abstractmethod
    async def initialize(self) -> None:
        """Perform one-time setup.

        Raises:
            ConfigurationError: If required credentials are missing
            TransportError: If the transport cannot be reached
        """
        ...

    @abstractmethod
    async def start_listening(self) -> None:
        """Begin receiving inbound messages. Calling twice is a no-op."""
        ...

    @abstractmethod
    async def stop_listening(self) -> None:
        """Stop receiving and close the transport. Calling twice is a no-op."""
        ...

    @abstractmethod
    async def send_message(self, message: Message) -> bool:
        """Deliver a message originating from another transport.

        Delivery is best effort. Failures are logged and reported through the
        return value; nothing is raised.

        Args:
            message: The message to deliver

        Returns:
            True if the transport accepted the message
        """
        ...

    async def receive_messages(self) -> AsyncIterator[Message]:
        """Receive inbound messages.

        Yields:
            Message objects in the order they were emitted
        """
        while self._running:
            try:
                message = await asyncio.wait_for(self._message_queue.get(), timeout=1.0)
                yield message
            except asyncio.TimeoutError:
                continue

    async def emit(self, message: Message) -> None:
        """Publish an inbound message to the relay.

        Args:
            message: Normalized inbound message
        """
        await self._message_queue.put(message)

    async def emit_with_attachment(self, message: Message, kind: AttachmentKind) -> None:
        """Emit a message now and again once its attachment is localized.

        Without a pipeline the message is emitted once with its remote URL.

        Args:
            message: Normalized inbound message carrying a remote URL
            kind: Which attachment field to localize
        """
        if self._pipeline is None:
            await self.emit(message)
            return

        message.attachment_state = AttachmentState.PENDING
        await self.emit(message)
        self.schedule_attachment(message, kind)

    def schedule_attachment(self, message: Message, kind: AttachmentKind) -> None:
        """Localize a message's attachment in the background and re-emit it.

        The message must already have been emitted with its remote URL. Once
        the pipeline finishes, the same instance is emitted again with its
        local URL or failure note.

        Args:
            message: Message that was just emitted
            kind: Which attachment field to localize
        """
        if self._pipeline is None:
            return

        task = asyncio.create_task(
            self._localize_and_emit(message, kind),
            name=f"attachment-{self.source.value}-{message.id}",
        )
        self._attachment_tasks.add(task)
        task.add_done_callback(self._attachment_tasks.discard)

    async def _localize_and_emit(self, message: Message, kind: AttachmentKind) -> None:
        await self._pipeline.localize(message, kind)
        await self.emit(message)

    async def cancel_attachment_tasks(self) -> None:
        """Cancel in-flight attachment downloads."""
        for task in self._attachment_tasks:
            task.cancel()
        if self._attachment_tasks:
            await asyncio.gather(*self._attachment_tasks, return_exceptions=True)
        self._attachment_tasks.clear()

    async def health_check(self) -> bool:
        """Check if the transport connection is healthy.

        Returns:
            True if healthy, False otherwise

        Default implementation reports whether the adapter is listening.
        Adapters can override to implement specific health checks.
        """
        return self._running
