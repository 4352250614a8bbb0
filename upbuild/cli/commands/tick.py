from __future__ import annotations

import typer

from upbuild.cli.commands._helpers import finish
from upbuild.cli.context import build_context, require_gh
from upbuild.services.orchestrator import run_tick


def tick(
    dry_run: bool = typer.Option(False, "--dry-run", help="Print actions without dispatching"),
    json_output: bool = typer.Option(False, "--json", help="Print the report as JSON"),
) -> None:
    """Check upstream for a new version and build/publish it (scheduled entry point)."""
    ctx = build_context(json_output=json_output)
    if not dry_run or ctx.config.marker.backend == "release":
        require_gh(ctx)

    report = run_tick(ctx.orchestrator(), dry_run=dry_run)
    finish(ctx, report, json_output=json_output)
