"""
Audit logging for trirelay.

This package provides JSON Lines audit logging for relay events.
"""

from trirelay.audit.logger import (
    AuditEventType,
    AuditLogger,
    get_audit_logger,
    reset_audit_logger,
)

__all__ = ["AuditEventType", "AuditLogger", "get_audit_logger", "reset_audit_logger"]
