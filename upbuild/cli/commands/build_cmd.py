from __future__ import annotations

import typer

from upbuild.cli.commands._helpers import finish
from upbuild.cli.context import build_context, require_gh
from upbuild.services.orchestrator import run_build


def build(
    repo_url: str | None = typer.Option(
        None, "--repo-url", help="Repository to build (default: [upstream] url)"
    ),
    ref: str | None = typer.Option(
        None, "--ref", help="Branch or tag to build (default: [upstream] default_ref)"
    ),
    strict: bool | None = typer.Option(
        None,
        "--strict/--lenient",
        help="Reject unknown refs instead of falling back to the default ref",
        show_default=False,
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print actions without dispatching"),
    json_output: bool = typer.Option(False, "--json", help="Print the report as JSON"),
) -> None:
    """Manually build and publish a repository ref."""
    ctx = build_context(json_output=json_output)
    if not dry_run:
        require_gh(ctx)

    report = run_build(
        ctx.orchestrator(),
        repository_url=repo_url,
        version_ref=ref,
        strict=strict,
        dry_run=dry_run,
    )
    finish(ctx, report, json_output=json_output)
