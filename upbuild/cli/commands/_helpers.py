"""Shared helpers for CLI commands."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, NoReturn

import typer

from upbuild.core.errors import ErrorCode
from upbuild.output.console import Style

if TYPE_CHECKING:
    from upbuild.cli.context import CLIContext
    from upbuild.services.orchestrator import InvocationReport


def finish(ctx: CLIContext, report: InvocationReport, *, json_output: bool) -> None:
    """Print the report and exit with its code (returns only on success).

    With ``json_output`` the report is the only thing written to stdout.
    """
    if json_output:
        typer.echo(json.dumps(report.to_dict(), indent=2, sort_keys=True))
    else:
        ctx.console.newline()
        ctx.console.print(f"outcome: {report.outcome}", Style.BOLD)
        if report.run_url:
            ctx.console.print(f"run: {report.run_url}", Style.DIM)
        if report.release is not None and report.release.url:
            ctx.console.print(f"release: {report.release.url}", Style.DIM)

    code = report.exit_code
    if not code.is_success:
        raise typer.Exit(code=int(code))


def exit_with_code(code: ErrorCode) -> NoReturn:
    raise typer.Exit(code=int(code))
