"""Configuration loading for trirelay."""

from trirelay.config.loader import clear_config_cache, get_config, load_config
from trirelay.config.schema import (
    AttachmentConfig,
    AuditLogConfig,
    Config,
    DebugConfig,
    DiscordConfig,
    QQConfig,
    RelayConfig,
    TelegramConfig,
)

__all__ = [
    "AttachmentConfig",
    "AuditLogConfig",
    "Config",
    "DebugConfig",
    "DiscordConfig",
    "QQConfig",
    "RelayConfig",
    "TelegramConfig",
    "clear_config_cache",
    "get_config",
    "load_config",
]
