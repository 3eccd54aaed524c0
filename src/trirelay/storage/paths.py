"""
Path utilities for trirelay.

Provides consistent path resolution for configuration, audit logs and
temporary attachment files.
"""

import os
import tempfile
from pathlib import Path


def get_trirelay_home() -> Path:
    """
    Get the trirelay home directory.

    Resolution order:
    1. TRIRELAY_HOME environment variable
    2. Default: ~/.trirelay

    Returns:
        Path to the trirelay home directory.
    """
    env_home = os.environ.get("TRIRELAY_HOME")
    if env_home:
        return Path(env_home).expanduser().resolve()
    return Path.home() / ".trirelay"


def get_global_config_path() -> Path:
    """
    Get the path to the global configuration file.

    Returns:
        Path to ~/.trirelay/config.yaml
    """
    return get_trirelay_home() / "config.yaml"


def get_audit_log_path() -> Path:
    """
    Get the default audit log path.

    Returns:
        Path to ~/.trirelay/audit.jsonl
    """
    return get_trirelay_home() / "audit.jsonl"


def get_attachment_temp_dir() -> Path:
    """
    Get the process-local directory for downloaded attachments.

    Returns:
        Path to <system temp>/trirelay/attachments
    """
    return Path(tempfile.gettempdir()) / "trirelay" / "attachments"


def expand_path(path: str | Path) -> Path:
    """
    Expand a path string, handling ~ and environment variables.

    Args:
        path: Path string or Path object.

    Returns:
        Expanded and resolved Path.
    """
    if isinstance(path, str):
        path = os.path.expandvars(path)
        path = os.path.expanduser(path)
    return Path(path).resolve()


def ensure_directory(path: Path, mode: int = 0o755) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Args:
        path: Directory path.
        mode: Permission mode for created directories.

    Returns:
        The path (for chaining).
    """
    path.mkdir(parents=True, exist_ok=True, mode=mode)
    return path
