"""
Relay exceptions for trirelay.

Defines the error taxonomy shared by adapters, the gateway client and the
attachment pipeline.
"""

import zlib


class RelayError(Exception):
    """Base exception for relay errors."""

    def __init__(self, message: str, platform: str | None = None):
        super().__init__(message)
        self.platform = platform


class ConfigurationError(RelayError):
    """Required configuration or credentials are missing or invalid.

    Raised by ``PlatformAdapter.initialize``; fatal to that adapter only.
    """

    pass


class TransportError(RelayError):
    """Connecting to or sending over a transport failed."""

    def __init__(
        self,
        message: str,
        platform: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, platform)
        self.status_code = status_code


class ProtocolError(RelayError):
    """A frame was malformed or had an unexpected shape."""

    def __init__(self, message: str, platform: str | None = None, frame: str | None = None):
        super().__init__(message, platform)
        self.frame = frame


class RequestTimeoutError(RelayError):
    """A correlated command did not receive its response in time."""

    def __init__(self, message: str, token: str, timeout: float):
        super().__init__(message)
        self.token = token
        self.timeout = timeout


def error_code(error: BaseException) -> str:
    """
    Compute a short, deterministic code for an error.

    HTTP failures map to ``HTTP<status>``. Anything else maps to the
    CRC32 of the root cause's class name as eight upper-case hex digits.

    Args:
        error: The exception to describe.

    Returns:
        Opaque error code string.
    """
    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return f"HTTP{status}"

    root: BaseException = error
    while root.__cause__ is not None:
        root = root.__cause__

    status = getattr(root, "status_code", None)
    if status is None:
        status = getattr(getattr(root, "response", None), "status_code", None)
    if isinstance(status, int):
        return f"HTTP{status}"

    return f"{zlib.crc32(type(root).__name__.encode('utf-8')):08X}"
