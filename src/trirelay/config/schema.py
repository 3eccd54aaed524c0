"""
Pydantic configuration schema for trirelay.

This module defines all configuration models with validation.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from trirelay.storage.paths import get_audit_log_path

# =============================================================================
# Transport Configuration
# =============================================================================


class DiscordConfig(BaseModel):
    """Discord configuration.

    Outbound messages go through the webhook when ``webhook_url`` is set,
    otherwise through the bot. Inbound messages need the bot.
    """

    model_config = ConfigDict(extra="allow")

    enable: bool = True
    webhook_url: str = ""
    bot_token: str = ""
    guild_id: str = ""
    channel_id: str = ""

    def missing_credentials(self) -> list[str]:
        """Names of required settings that are empty."""
        if not self.webhook_url and not self.bot_token:
            return ["webhook_url or bot_token"]
        return []


class TelegramConfig(BaseModel):
    """Telegram bot configuration (long polling)."""

    model_config = ConfigDict(extra="allow")

    enable: bool = True
    bot_token: str = ""
    chat_id: str = ""

    def missing_credentials(self) -> list[str]:
        """Names of required settings that are empty."""
        return [name for name in ("bot_token", "chat_id") if not getattr(self, name)]


class QQConfig(BaseModel):
    """QQ configuration for a OneBot v11 implementation such as NapCat.

    A ``ws://`` or ``wss://`` base URL selects the websocket gateway;
    anything else selects HTTP polling.
    """

    model_config = ConfigDict(extra="allow")

    enable: bool = True
    base_url: str = ""
    token: str = ""
    group_id: str = ""
    polling_interval: float = Field(default=2.0, gt=0)
    request_timeout: float = Field(default=5.0, gt=0)

    @property
    def mode(self) -> Literal["websocket", "http"]:
        """Connection mode implied by the base URL."""
        return "websocket" if self.base_url.startswith(("ws://", "wss://")) else "http"

    def missing_credentials(self) -> list[str]:
        """Names of required settings that are empty."""
        return [name for name in ("base_url", "token", "group_id") if not getattr(self, name)]


# =============================================================================
# Relay Configuration
# =============================================================================


class RelayConfig(BaseModel):
    """Relay orchestration settings."""

    dedup_capacity: int = Field(default=1000, ge=2)


class AttachmentConfig(BaseModel):
    """Attachment download settings."""

    temp_dir: str | None = None
    retention_minutes: int = Field(default=30, ge=1)
    download_timeout: float = Field(default=60.0, gt=0)


class AuditLogConfig(BaseModel):
    """Audit logging configuration."""

    enable: bool = True
    path: str = Field(default_factory=lambda: str(get_audit_log_path()))
    rotation: Literal["daily", "weekly", "size"] = "daily"
    max_size_mb: int = 100
    retention_days: int = Field(default=30, ge=1, le=365)
    compress_old: bool = True
    include_content: bool = False
    buffer_size: int = 100
    flush_interval_seconds: int = 5


class DebugConfig(BaseModel):
    """Debugging switches."""

    show_gateway_frames: bool = False


# =============================================================================
# Root Configuration
# =============================================================================


class Config(BaseModel):
    """
    Root configuration model for trirelay.

    Configuration can be loaded from YAML files and environment variables,
    merged in order of priority.
    """

    model_config = ConfigDict(extra="allow")

    discord: DiscordConfig = Field(default_factory=DiscordConfig)
    telegram: TelegramConfig = Field(default_factory=TelegramConfig)
    qq: QQConfig = Field(default_factory=QQConfig)
    relay: RelayConfig = Field(default_factory=RelayConfig)
    attachments: AttachmentConfig = Field(default_factory=AttachmentConfig)
    audit_log: AuditLogConfig = Field(default_factory=AuditLogConfig)
    debug: DebugConfig = Field(default_factory=DebugConfig)
