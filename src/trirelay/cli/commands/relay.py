"""
trirelay start / status / send - Run and inspect the relay.

Usage:
    trirelay start [--config PATH] [--disable-discord] [--disable-telegram] [--disable-qq]
    trirelay status [--config PATH]
    trirelay send TEXT [--config PATH]
"""

import asyncio
import logging
from pathlib import Path
from typing import Annotated, Optional

import typer

from trirelay.audit import get_audit_logger
from trirelay.cli.output import (
    console,
    print_error,
    print_info,
    print_success,
    print_table,
    print_warning,
    setup_logging,
)
from trirelay.config import Config, get_config
from trirelay.exceptions import ConfigurationError
from trirelay.platforms.attachments import AttachmentPipeline
from trirelay.platforms.models import Message, MessageSource
from trirelay.platforms.protocol import PlatformAdapter
from trirelay.platforms.router import MessageRelay
from trirelay.storage.paths import expand_path

logger = logging.getLogger(__name__)

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Configuration file (merged over ~/.trirelay/config.yaml)."),
]
VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging.")]


def _load_config(config_path: Optional[Path]) -> Config:
    try:
        return get_config(config_path=config_path)
    except ConfigurationError as e:
        print_error(str(e))
        raise typer.Exit(1)


def create_pipeline(config: Config) -> AttachmentPipeline:
    """Build the attachment pipeline from configuration."""
    settings = config.attachments
    return AttachmentPipeline(
        temp_dir=expand_path(settings.temp_dir) if settings.temp_dir else None,
        retention_seconds=settings.retention_minutes * 60,
        timeout=settings.download_timeout,
    )


def create_adapters(config: Config, pipeline: AttachmentPipeline) -> list[PlatformAdapter]:
    """Create adapters for every enabled transport.

    Adapters whose SDK is not installed are skipped with a warning. Missing
    credentials are reported later by ``initialize``.

    Args:
        config: trirelay configuration
        pipeline: Shared attachment pipeline

    Returns:
        List of enabled adapters
    """
    adapters: list[PlatformAdapter] = []

    if config.qq.enable:
        from trirelay.platforms.adapters.qq import QQAdapter

        adapters.append(
            QQAdapter(
                base_url=config.qq.base_url,
                token=config.qq.token,
                group_id=config.qq.group_id,
                pipeline=pipeline,
                polling_interval=config.qq.polling_interval,
                request_timeout=config.qq.request_timeout,
                show_frames=config.debug.show_gateway_frames,
            )
        )

    if config.telegram.enable:
        try:
            from trirelay.platforms.adapters.telegram import TelegramAdapter

            adapters.append(
                TelegramAdapter(
                    bot_token=config.telegram.bot_token,
                    chat_id=config.telegram.chat_id,
                    pipeline=pipeline,
                )
            )
        except ImportError as e:
            print_warning(f"Telegram adapter not available: {e}")

    if config.discord.enable:
        try:
            from trirelay.platforms.adapters.discord import DiscordAdapter

            adapters.append(
                DiscordAdapter(
                    webhook_url=config.discord.webhook_url,
                    bot_token=config.discord.bot_token,
                    guild_id=config.discord.guild_id,
                    channel_id=config.discord.channel_id,
                    pipeline=pipeline,
                )
            )
        except ImportError as e:
            print_warning(f"Discord adapter not available: {e}")

    return adapters


def build_relay(config: Config) -> MessageRelay:
    """Create the relay with the pipeline, audit log and enabled adapters."""
    pipeline = create_pipeline(config)
    relay = MessageRelay(
        dedup_capacity=config.relay.dedup_capacity,
        audit_logger=get_audit_logger(config.audit_log),
        pipeline=pipeline,
    )
    for adapter in create_adapters(config, pipeline):
        relay.register_adapter(adapter)
    return relay


async def _run_relay(config: Config) -> None:
    relay = build_relay(config)
    await relay.start()

    active = relay.active_platforms
    if not active:
        await relay.stop()
        print_error("No transport could be started. Check your configuration.")
        raise typer.Exit(1)

    print_success(f"Relay started with {len(active)} transport(s)")
    for name in active:
        console.print(f"  [cyan]•[/cyan] {name}")
    console.print("\n[dim]Press Ctrl+C to stop[/dim]\n")

    try:
        await asyncio.Event().wait()
    finally:
        await relay.stop()
        print_success("Relay stopped")


def start(
    config_path: ConfigOption = None,
    disable_discord: Annotated[bool, typer.Option("--disable-discord", help="Do not start Discord.")] = False,
    disable_telegram: Annotated[bool, typer.Option("--disable-telegram", help="Do not start Telegram.")] = False,
    disable_qq: Annotated[bool, typer.Option("--disable-qq", help="Do not start QQ.")] = False,
    show_gateway_frames: Annotated[
        bool, typer.Option("--show-gateway-frames", help="Log every raw QQ gateway frame.")
    ] = False,
    verbose: VerboseOption = False,
) -> None:
    """Start relaying messages between Discord, Telegram and QQ.

    Runs in the foreground until stopped with Ctrl+C.
    """
    setup_logging(verbose)
    config = _load_config(config_path)

    if disable_discord:
        config.discord.enable = False
    if disable_telegram:
        config.telegram.enable = False
    if disable_qq:
        config.qq.enable = False
    if show_gateway_frames:
        config.debug.show_gateway_frames = True

    try:
        asyncio.run(_run_relay(config))
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped by user[/yellow]")


def status(config_path: ConfigOption = None) -> None:
    """Show which transports are enabled and whether they are configured."""
    config = _load_config(config_path)

    rows = []
    for name, settings, mode in (
        ("qq", config.qq, config.qq.mode),
        ("telegram", config.telegram, "polling"),
        ("discord", config.discord, "bot" if config.discord.bot_token else "webhook"),
    ):
        missing = settings.missing_credentials()
        if not settings.enable:
            state = "[dim]disabled[/dim]"
        elif missing:
            state = f"[red]missing {', '.join(missing)}[/red]"
        else:
            state = "[green]✓ ready[/green]"
        rows.append([name, "yes" if settings.enable else "no", mode, state])

    print_table(["Transport", "Enabled", "Mode", "Configuration"], rows, title="Relay Status")
    print_info(f"Attachments kept for {config.attachments.retention_minutes} minutes")


async def _send_text(config: Config, text: str) -> dict[str, bool]:
    relay = build_relay(config)
    await relay.initialize_adapters()
    try:
        message = Message(content=text, sender_name="system", sender_id="system", source=MessageSource.SYSTEM)
        return await relay.broadcast(message)
    finally:
        await relay.shutdown()


def send(
    text: Annotated[str, typer.Argument(help="Text to send to every transport.")],
    config_path: ConfigOption = None,
    verbose: VerboseOption = False,
) -> None:
    """Send a system message to every configured transport."""
    setup_logging(verbose)
    config = _load_config(config_path)

    results = asyncio.run(_send_text(config, text))
    if not results:
        print_error("No transport could be initialized")
        raise typer.Exit(1)

    for name, delivered in results.items():
        if delivered:
            print_success(f"Sent to {name}")
        else:
            print_error(f"Failed to send to {name}")

    if not all(results.values()):
        raise typer.Exit(1)
