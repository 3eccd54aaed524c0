"""Cross-transport message relaying for trirelay.

This module provides the adapter protocol, the relay that fans messages out
between Discord, Telegram and QQ, the OneBot gateway client and the
attachment pipeline.

Architecture:
    Transport Adapters → Message Relay → every other Transport Adapter

Key Components:
    - PlatformAdapter: Abstract protocol for transport implementations
    - MessageRelay: Dedup and fan-out between adapters
    - GatewayClient: Duplex OneBot websocket with correlated requests
    - AttachmentPipeline: Downloads attachments to temporary local files
"""

from trirelay.platforms.attachments import AttachmentPipeline
from trirelay.platforms.gateway import ConnectionState, GatewayClient
from trirelay.platforms.models import (
    AttachmentKind,
    AttachmentState,
    FileType,
    Message,
    MessageSource,
)
from trirelay.platforms.protocol import PlatformAdapter
from trirelay.platforms.router import MessageRelay, ProcessedIdWindow

__all__ = [
    "AttachmentKind",
    "AttachmentPipeline",
    "AttachmentState",
    "ConnectionState",
    "FileType",
    "GatewayClient",
    "Message",
    "MessageRelay",
    "MessageSource",
    "PlatformAdapter",
    "ProcessedIdWindow",
]
