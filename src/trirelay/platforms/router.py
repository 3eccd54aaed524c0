"""Message relay service fanning messages out across transports."""

import asyncio
import logging
from typing import Any, Optional

from trirelay.audit.logger import AuditLogger
from trirelay.platforms.attachments import AttachmentPipeline
from trirelay.platforms.models import AttachmentState, Message, MessageSource
from trirelay.platforms.protocol import PlatformAdapter

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_CAPACITY = 1000

# Discord's startup blocks until its gateway handshake completes, so it goes last
STARTUP_ORDER = (MessageSource.QQ, MessageSource.TELEGRAM, MessageSource.DISCORD)


class ProcessedIdWindow:
    """Insertion-ordered set of recently relayed message ids.

    When the set grows past ``capacity`` only the most recently inserted
    half is kept. This caps memory; it does not guarantee exact recency.
    """

    def __init__(self, capacity: int = DEFAULT_DEDUP_CAPACITY) -> None:
        if capacity < 2:
            raise ValueError("capacity must be at least 2")
        self.capacity = capacity
        self._ids: dict[str, None] = {}

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, message_id: str) -> bool:
        return message_id in self._ids

    def add(self, message_id: str) -> bool:
        """Record an id.

        Args:
            message_id: Id to record

        Returns:
            False if the id was already present
        """
        if message_id in self._ids:
            return False

        self._ids[message_id] = None
        if len(self._ids) > self.capacity:
            keep = list(self._ids)[-(self.capacity // 2):]
            self._ids = dict.fromkeys(keep)
        return True


class MessageRelay:
    """Relays every inbound message to all other transports.

    The relay:
    1. Manages one adapter per transport
    2. Drops messages whose id was already relayed for that transport
    3. Fans each new message out to every other active transport
    4. Isolates delivery failures per target
    """

    def __init__(
        self,
        dedup_capacity: int = DEFAULT_DEDUP_CAPACITY,
        audit_logger: Optional[AuditLogger] = None,
        pipeline: Optional[AttachmentPipeline] = None,
    ) -> None:
        """Initialize the relay.

        Args:
            dedup_capacity: Size bound of each per-transport id window
            audit_logger: Optional audit log for relay events
            pipeline: Attachment pipeline whose files are removed on stop
        """
        self._adapters: dict[MessageSource, PlatformAdapter] = {}
        self._windows: dict[MessageSource, ProcessedIdWindow] = {}
        self._dedup_capacity = dedup_capacity
        self._dedup_lock = asyncio.Lock()
        self._audit = audit_logger
        self._pipeline = pipeline
        self._tasks: set[asyncio.Task] = set()
        self._running = False

    def register_adapter(self, adapter: PlatformAdapter) -> None:
        """Register a transport adapter.

        Args:
            adapter: The adapter to register

        Raises:
            ValueError: If an adapter for this transport is already registered
        """
        source = adapter.source
        if source in self._adapters:
            raise ValueError(f"Adapter for {source.value} already registered")

        self._adapters[source] = adapter
        logger.info(f"Registered adapter for platform: {source.value}")

    def get_adapter(self, source: MessageSource) -> Optional[PlatformAdapter]:
        """Get the adapter registered for a transport."""
        return self._adapters.get(source)

    @property
    def is_running(self) -> bool:
        """Check if the relay is running."""
        return self._running

    @property
    def active_platforms(self) -> list[str]:
        """Transports whose adapters initialized successfully."""
        return [source.value for source, adapter in self._adapters.items() if adapter.is_initialized]

    def _startup_sequence(self) -> list[PlatformAdapter]:
        ordered = [self._adapters[s] for s in STARTUP_ORDER if s in self._adapters]
        ordered += [a for s, a in self._adapters.items() if s not in STARTUP_ORDER]
        return ordered

    async def initialize_adapters(self) -> list[str]:
        """Initialize registered adapters in startup order.

        An adapter that fails to initialize is logged and skipped.

        Returns:
            Transports that initialized successfully
        """
        for adapter in self._startup_sequence():
            name = adapter.source.value
            if adapter.is_initialized:
                continue
            try:
                logger.info(f"Initializing {name} adapter")
                await adapter.initialize()
            except Exception as e:
                logger.error(f"Failed to initialize {name} adapter: {e}")
                if self._audit:
                    self._audit.log_adapter_error(name, str(e))

        return self.active_platforms

    async def start(self) -> None:
        """Initialize adapters, start listening and spawn listener tasks."""
        if self._running:
            logger.warning("Relay is already running")
            return

        self._running = True
        logger.info("Starting message relay")
        await self.initialize_adapters()

        for adapter in self._startup_sequence():
            if not adapter.is_initialized:
                continue

            name = adapter.source.value
            try:
                await adapter.start_listening()
            except Exception as e:
                logger.error(f"Failed to start listening on {name}: {e}")
                if self._audit:
                    self._audit.log_adapter_error(name, str(e))
                continue

            task = asyncio.create_task(self._listen_to_adapter(adapter), name=f"listen-{name}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            if self._audit:
                self._audit.log_adapter_started(name)
            logger.info(f"Started adapter for {name}")

        active = self.active_platforms
        if self._audit:
            self._audit.log_relay_started(active)
        logger.info(f"Message relay started with {len(active)} active adapters")

    async def stop(self) -> None:
        """Stop listener tasks and adapters, then remove temporary files."""
        if not self._running:
            logger.warning("Relay is not running")
            return

        logger.info("Stopping message relay")
        self._running = False

        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        await self.shutdown()

        if self._audit:
            self._audit.log_relay_stopped()
            self._audit.flush()

        logger.info("Message relay stopped")

    async def shutdown(self) -> None:
        """Stop every adapter, remove temporary files and flush the audit log.

        Used on its own when adapters were initialized without ``start()``.
        """
        for source, adapter in self._adapters.items():
            try:
                await adapter.cancel_attachment_tasks()
                await adapter.stop_listening()
                if self._audit:
                    self._audit.log_adapter_stopped(source.value)
                logger.info(f"Stopped adapter for {source.value}")
            except Exception as e:
                logger.error(f"Failed to stop adapter for {source.value}: {e}")

        if self._pipeline is not None:
            self._pipeline.cleanup_all()

        if self._audit:
            self._audit.flush()

    async def _listen_to_adapter(self, adapter: PlatformAdapter) -> None:
        name = adapter.source.value
        logger.info(f"Listening for messages from {name}")

        try:
            # handled one at a time so each transport's messages keep arrival order
            async for message in adapter.receive_messages():
                if not self._running:
                    break
                await self.handle_message(adapter, message)
        except asyncio.CancelledError:
            logger.info(f"Stopped listening to {name}")
        except Exception as e:
            logger.error(f"Error listening to {name}: {e}", exc_info=True)
            if self._audit:
                self._audit.log_adapter_error(name, str(e))

    async def handle_message(self, origin: PlatformAdapter, message: Message) -> bool:
        """Relay a message received by ``origin`` to every other transport.

        Args:
            origin: Adapter that received the message
            message: The inbound message

        Returns:
            False if the message was a duplicate and was dropped
        """
        source = origin.source

        async with self._dedup_lock:
            window = self._windows.get(source)
            if window is None:
                window = self._windows[source] = ProcessedIdWindow(self._dedup_capacity)
            is_new = window.add(message.id)

        if not is_new:
            logger.debug(f"Dropping duplicate message {message.id} from {source.value}")
            if self._audit:
                self._audit.log_message_duplicate(source.value, message.id)
                if message.attachment_state == AttachmentState.FAILED:
                    self._audit.log_attachment_failed(source.value, message.id, message.file_name)
            return False

        targets = [
            adapter
            for target, adapter in self._adapters.items()
            if target not in (source, message.source) and adapter.is_initialized
        ]
        logger.info(
            f"Relaying message {message.id} from {message.formatted_username()} "
            f"to {[a.source.value for a in targets]}"
        )
        await self._fan_out(message, targets)

        if self._audit:
            self._audit.log_message_relayed(
                source.value,
                message.id,
                message.formatted_username(),
                message.content,
                [a.source.value for a in targets],
            )
        return True

    async def broadcast(self, message: Message) -> dict[str, bool]:
        """Send a locally originated message to every active transport.

        Args:
            message: Message to send (normally with source ``system``)

        Returns:
            Dict mapping transport names to delivery status
        """
        targets = [
            adapter
            for target, adapter in self._adapters.items()
            if target != message.source and adapter.is_initialized
        ]
        return await self._fan_out(message, targets)

    async def _fan_out(self, message: Message, targets: list[PlatformAdapter]) -> dict[str, bool]:
        if not targets:
            return {}

        results = await asyncio.gather(
            *(adapter.send_message(message) for adapter in targets),
            return_exceptions=True,
        )

        delivered: dict[str, bool] = {}
        for adapter, result in zip(targets, results):
            name = adapter.source.value
            if isinstance(result, BaseException):
                logger.error(f"Error sending message {message.id} to {name}: {result}")
                result = False
            delivered[name] = bool(result)
            if not result:
                logger.warning(f"Message {message.id} was not delivered to {name}")
                if self._audit:
                    self._audit.log_delivery_failed(message.source.value, name, message.id)
        return delivered

    def status(self) -> dict[str, dict[str, Any]]:
        """Report per-transport state.

        Returns:
            Dict mapping transport names to initialized/listening/window size
        """
        return {
            source.value: {
                "initialized": adapter.is_initialized,
                "listening": adapter.is_listening,
                "window_size": len(self._windows.get(source, ())),
            }
            for source, adapter in self._adapters.items()
        }

    async def health_check(self) -> dict[str, bool]:
        """Check health of all adapters.

        Returns:
            Dict mapping transport names to health status
        """
        health = {}
        for source, adapter in self._adapters.items():
            try:
                health[source.value] = await adapter.health_check()
            except Exception as e:
                logger.error(f"Health check failed for {source.value}: {e}")
                health[source.value] = False
        return health
