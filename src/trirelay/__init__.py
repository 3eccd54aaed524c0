"""
trirelay - cross-platform chat relay

Keeps a Discord channel, a Telegram chat and a QQ group in sync by relaying
every message to the other two transports.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("trirelay")
except PackageNotFoundError:
    __version__ = "0.1.0"

__all__ = [
    "__version__",
]
