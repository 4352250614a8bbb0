from __future__ import annotations

from typing import NoReturn

import typer

from upbuild.cli.commands._helpers import exit_with_code
from upbuild.cli.context import CLIContext, build_context, require_gh
from upbuild.core.errors import ErrorCode
from upbuild.core.result import Err
from upbuild.output.console import Style
from upbuild.services.errors import OrchestratorError
from upbuild.services.marker import MarkerStore
from upbuild.services.orchestrator import make_marker_store

marker_app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="Inspect or advance the version marker.",
)


def _fail(ctx: CLIContext, error: OrchestratorError) -> NoReturn:
    ctx.console.error(error.message)
    if error.hint:
        ctx.console.print(f"hint: {error.hint}", Style.DIM)
    if error.kind == "input_error":
        exit_with_code(ErrorCode.USER_ERROR)
    if error.kind == "transient_network":
        exit_with_code(ErrorCode.NETWORK_ERROR)
    exit_with_code(ErrorCode.IO_ERROR)


def _store(ctx: CLIContext) -> MarkerStore:
    if ctx.config.marker.backend == "release":
        require_gh(ctx)
    return make_marker_store(
        workspace_root=ctx.workspace_root, config=ctx.config, policy=ctx.policy
    )


@marker_app.command("show")
def show_cmd() -> None:
    """Print the last published version."""
    ctx = build_context()
    current = _store(ctx).read()
    if isinstance(current, Err):
        _fail(ctx, current.error)

    if current.value is None:
        ctx.console.print("(none)", Style.DIM)
        return
    typer.echo(current.value)


@marker_app.command("set")
def set_cmd(
    version: str = typer.Argument(..., help="Version to record (only moves forward)"),
) -> None:
    """Advance the marker to VERSION if it is newer than the current one."""
    ctx = build_context()
    store = _store(ctx)

    advanced = store.compare_and_set(version)
    if isinstance(advanced, Err):
        _fail(ctx, advanced.error)

    if advanced.value:
        ctx.console.success(f"marker: {version}")
        return

    current = store.read()
    shown = current.value if not isinstance(current, Err) else None
    ctx.console.warning(f"marker unchanged: {shown} is not older than {version}")
