"""Storage utilities for trirelay."""

from trirelay.storage.paths import (
    ensure_directory,
    expand_path,
    get_attachment_temp_dir,
    get_audit_log_path,
    get_global_config_path,
    get_trirelay_home,
)

__all__ = [
    "ensure_directory",
    "expand_path",
    "get_attachment_temp_dir",
    "get_audit_log_path",
    "get_global_config_path",
    "get_trirelay_home",
]
