"""
Main Typer application for trirelay CLI.

This module defines the root CLI application and registers all commands.
"""

from typing import Annotated

import typer

from trirelay import __version__
from trirelay.cli.commands import relay
from trirelay.cli.output import print_info

# Create the main Typer app
app = typer.Typer(
    name="trirelay",
    help="Relay one conversation between Discord, Telegram and QQ.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    pretty_exceptions_enable=True,
    pretty_exceptions_show_locals=False,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        print_info(f"trirelay version [green]{__version__}[/green]")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """
    [bold blue]trirelay[/bold blue] - cross-platform chat relay

    Keeps a Discord channel, a Telegram chat and a QQ group in sync.
    """


# Register commands
app.command(name="start")(relay.start)
app.command(name="status")(relay.status)
app.command(name="send")(relay.send)


if __name__ == "__main__":
    app()
