"""Transport adapter implementations."""

from trirelay.platforms.adapters.discord import DiscordAdapter
from trirelay.platforms.adapters.qq import QQAdapter
from trirelay.platforms.adapters.telegram import TelegramAdapter

__all__ = [
    "DiscordAdapter",
    "QQAdapter",
    "TelegramAdapter",
]
