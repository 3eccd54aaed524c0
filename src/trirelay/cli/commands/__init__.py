"""CLI command modules."""

from trirelay.cli.commands import relay

__all__ = ["relay"]
