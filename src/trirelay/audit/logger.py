"""
Audit logging for relay operations.

This module provides JSON Lines based audit logging for tracking adapter
lifecycle, relayed messages and attachment failures.
"""

import gzip
import hashlib
import json
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any

from trirelay.storage.paths import ensure_directory


class AuditEventType(str, Enum):
    """Types of audit events."""

    # Relay lifecycle
    RELAY_STARTED = "relay_started"
    RELAY_STOPPED = "relay_stopped"

    # Adapter lifecycle
    ADAPTER_STARTED = "adapter_started"
    ADAPTER_STOPPED = "adapter_stopped"
    ADAPTER_ERROR = "adapter_error"

    # Message flow
    MESSAGE_RELAYED = "message_relayed"
    MESSAGE_DUPLICATE = "message_duplicate"
    DELIVERY_FAILED = "delivery_failed"
    ATTACHMENT_FAILED = "attachment_failed"


class AuditLogger:
    """
    JSON Lines based audit logger.

    Logs events to a JSON Lines file with rotation and compression support.
    """

    def __init__(
        self,
        log_path: str | Path,
        enable: bool = True,
        rotation: str = "daily",
        max_size_mb: int = 100,
        retention_days: int = 30,
        compress_old: bool = True,
        include_content: bool = False,
        buffer_size: int = 100,
        flush_interval_seconds: int = 5,
    ) -> None:
        """
        Initialize audit logger.

        Args:
            log_path: Path to audit log file
            enable: Whether logging is enabled
            rotation: Rotation strategy (daily, weekly, size)
            max_size_mb: Maximum log file size in MB before rotation
            retention_days: Days to keep old logs
            compress_old: Whether to compress rotated logs
            include_content: Log message text instead of its hash
            buffer_size: Number of events to buffer before flush
            flush_interval_seconds: Seconds between forced flushes
        """
        self.log_path = Path(log_path).expanduser()
        self.enable = enable
        self.rotation = rotation
        self.max_size_mb = max_size_mb
        self.retention_days = retention_days
        self.compress_old = compress_old
        self.include_content = include_content
        self.buffer_size = buffer_size
        self.flush_interval_seconds = flush_interval_seconds

        # Internal state
        self._buffer: list[dict[str, Any]] = []
        self._last_flush = datetime.now()

        if self.enable:
            ensure_directory(self.log_path.parent)

    @classmethod
    def from_config(cls, config: Any) -> "AuditLogger":
        """
        Create audit logger from configuration.

        Args:
            config: AuditLogConfig instance

        Returns:
            Configured AuditLogger
        """
        return cls(
            log_path=config.path,
            enable=config.enable,
            rotation=config.rotation,
            max_size_mb=config.max_size_mb,
            retention_days=config.retention_days,
            compress_old=config.compress_old,
            include_content=config.include_content,
            buffer_size=config.buffer_size,
            flush_interval_seconds=config.flush_interval_seconds,
        )

    def _hash_text(self, text: str) -> str:
        return hashlib.sha256(text.encode()).hexdigest()

    def _create_event(
        self, event_type: AuditEventType, data: dict[str, Any]
    ) -> dict[str, Any]:
        return {
            "timestamp": datetime.now().isoformat(),
            "event_type": event_type.value,
            **data,
        }

    def _write_event(self, event: dict[str, Any]) -> None:
        if not self.enable:
            return

        self._buffer.append(event)

        # Flush if buffer is full or interval elapsed
        now = datetime.now()
        should_flush = (
            len(self._buffer) >= self.buffer_size
            or (now - self._last_flush).total_seconds() >= self.flush_interval_seconds
        )
        if should_flush:
            self.flush()

    def flush(self) -> None:
        """Flush buffered events to disk."""
        if not self.enable or not self._buffer:
            return

        self._rotate_if_needed()

        with self.log_path.open("a") as f:
            for event in self._buffer:
                f.write(json.dumps(event, ensure_ascii=False) + "\n")

        self._buffer.clear()
        self._last_flush = datetime.now()

    def _rotate_if_needed(self) -> None:
        """Rotate log file if needed based on configuration."""
        if not self.log_path.exists():
            return

        should_rotate = False
        if self.rotation == "size":
            size_mb = self.log_path.stat().st_size / (1024 * 1024)
            should_rotate = size_mb >= self.max_size_mb
        elif self.rotation == "daily":
            mtime = datetime.fromtimestamp(self.log_path.stat().st_mtime)
            should_rotate = mtime.date() < datetime.now().date()
        elif self.rotation == "weekly":
            mtime = datetime.fromtimestamp(self.log_path.stat().st_mtime)
            should_rotate = (datetime.now() - mtime).days >= 7

        if should_rotate:
            self._rotate_log()

    def _rotate_log(self) -> None:
        """Rotate the current log file."""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        rotated_path = self.log_path.parent / f"{self.log_path.stem}_{timestamp}{self.log_path.suffix}"
        self.log_path.rename(rotated_path)

        if self.compress_old:
            compressed_path = rotated_path.with_suffix(rotated_path.suffix + ".gz")
            with rotated_path.open("rb") as f_in, gzip.open(compressed_path, "wb") as f_out:
                f_out.write(f_in.read())
            rotated_path.unlink()

        self._clean_old_logs()

    def _clean_old_logs(self) -> None:
        """Remove logs older than retention period."""
        cutoff = datetime.now() - timedelta(days=self.retention_days)
        pattern = f"{self.log_path.stem}_*{self.log_path.suffix}*"
        for old_log in self.log_path.parent.glob(pattern):
            mtime = datetime.fromtimestamp(old_log.stat().st_mtime)
            if mtime < cutoff:
                old_log.unlink()

    # Convenience methods for logging specific events

    def log_relay_started(self, platforms: list[str]) -> None:
        """Log relay startup with the adapters that initialized."""
        self._write_event(
            self._create_event(AuditEventType.RELAY_STARTED, {"platforms": platforms})
        )

    def log_relay_stopped(self) -> None:
        """Log relay shutdown."""
        self._write_event(self._create_event(AuditEventType.RELAY_STOPPED, {}))

    def log_adapter_started(self, platform: str) -> None:
        """Log an adapter that started listening."""
        self._write_event(
            self._create_event(AuditEventType.ADAPTER_STARTED, {"platform": platform})
        )

    def log_adapter_stopped(self, platform: str) -> None:
        """Log an adapter stop."""
        self._write_event(
            self._create_event(AuditEventType.ADAPTER_STOPPED, {"platform": platform})
        )

    def log_adapter_error(self, platform: str, error: str) -> None:
        """Log an adapter failure."""
        self._write_event(
            self._create_event(
                AuditEventType.ADAPTER_ERROR, {"platform": platform, "error": error}
            )
        )

    def log_message_relayed(
        self,
        source: str,
        message_id: str,
        sender: str,
        content: str,
        targets: list[str],
    ) -> None:
        """Log a message fanned out to other transports."""
        data: dict[str, Any] = {
            "source": source,
            "message_id": message_id,
            "sender": sender,
            "targets": targets,
        }
        if self.include_content:
            data["content"] = content
        else:
            data["content_hash"] = self._hash_text(content)
        self._write_event(self._create_event(AuditEventType.MESSAGE_RELAYED, data))

    def log_message_duplicate(self, source: str, message_id: str) -> None:
        """Log a message dropped because its id was already relayed."""
        self._write_event(
            self._create_event(
                AuditEventType.MESSAGE_DUPLICATE,
                {"source": source, "message_id": message_id},
            )
        )

    def log_delivery_failed(self, source: str, target: str, message_id: str) -> None:
        """Log a target transport that did not accept a message."""
        self._write_event(
            self._create_event(
                AuditEventType.DELIVERY_FAILED,
                {"source": source, "target": target, "message_id": message_id},
            )
        )

    def log_attachment_failed(
        self, source: str, message_id: str, file_name: str | None
    ) -> None:
        """Log an attachment that could not be downloaded."""
        self._write_event(
            self._create_event(
                AuditEventType.ATTACHMENT_FAILED,
                {
                    "source": source,
                    "message_id": message_id,
                    "file_name": file_name,
                },
            )
        )

    def close(self) -> None:
        """Flush remaining events."""
        self.flush()


# Singleton instance
_audit_logger: AuditLogger | None = None


def get_audit_logger(config: Any | None = None) -> AuditLogger:
    """
    Get or create the global audit logger instance.

    Args:
        config: Optional AuditLogConfig for initialization

    Returns:
        AuditLogger instance
    """
    global _audit_logger

    if _audit_logger is None:
        if config is None:
            # Import here to avoid circular dependency
            from trirelay.config.loader import get_config

            config = get_config().audit_log

        _audit_logger = AuditLogger.from_config(config)

    return _audit_logger


def reset_audit_logger() -> None:
    """Drop the global audit logger (flushing it first)."""
    global _audit_logger

    if _audit_logger is not None:
        _audit_logger.close()
    _audit_logger = None
