from __future__ import annotations

import typer

from shipit import __version__
from shipit.cli.commands.config_cmd import check_config
from shipit.cli.commands.refs_cmd import refs
from shipit.cli.commands.run_cmd import run

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
)

app.command()(run)
app.command()(refs)
app.command("check-config")(check_config)


def _show_version(value: bool) -> None:
    if value:
        typer.echo(__version__)
        raise typer.Exit(code=0)


@app.callback()
def _main(  # pyright: ignore[reportUnusedFunction]
    version: bool = typer.Option(
        False,
        "--version",
        callback=_show_version,
        is_eager=True,
        help="Show version and exit.",
    ),
) -> None:
    """Build every branch and pull request of a GitHub repository; deploy two of them."""
    del version


def main() -> None:
    app()
