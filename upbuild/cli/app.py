from __future__ import annotations

from pathlib import Path

import typer

from upbuild import __version__
from upbuild.cli.commands.build_cmd import build
from upbuild.cli.commands.marker import marker_app
from upbuild.cli.commands.publish import publish
from upbuild.cli.commands.tick import tick
from upbuild.cli.commands.validate import validate
from upbuild.cli.context import set_config_override
from upbuild.core.errors import ErrorCode


app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich",
)


# Commands
app.command()(tick)
app.command()(build)
app.command()(validate)
app.command()(publish)

# Sub-apps
app.add_typer(marker_app, name="marker")


@app.callback(invoke_without_command=True)
def _main(  # pyright: ignore[reportUnusedFunction]
    version: bool = typer.Option(False, "--version", help="Show version and exit."),
    config: Path | None = typer.Option(
        None,
        "--config",
        help="Path to upbuild.toml (default: $UPBUILD_CONFIG, then ./upbuild.toml)",
    ),
) -> None:
    if version:
        typer.echo(__version__)
        raise typer.Exit(code=0)

    if config is not None:
        try:
            path = config.expanduser().resolve()
        except OSError as e:
            typer.echo(f"error: invalid --config: {e}", err=True)
            raise typer.Exit(code=int(ErrorCode.USER_ERROR))

        if not path.is_file():
            typer.echo(f"error: --config '{path}' does not exist", err=True)
            raise typer.Exit(code=int(ErrorCode.ENV_ERROR))

        set_config_override(path)


def main() -> None:
    app()
