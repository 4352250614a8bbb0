from __future__ import annotations

from pathlib import Path

import typer

from upbuild.cli.commands._helpers import exit_with_code, finish
from upbuild.cli.context import build_context, require_gh
from upbuild.core.errors import ErrorCode
from upbuild.services.orchestrator import run_publish


def publish(
    files: list[Path] = typer.Argument(..., help="Artifact files to attach"),
    tag: str = typer.Option(..., "--tag", help="Release tag"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Print actions without publishing"),
    json_output: bool = typer.Option(False, "--json", help="Print the report as JSON"),
) -> None:
    """Publish local artifact files as a release and advance the version marker."""
    ctx = build_context(json_output=json_output)

    missing = [str(p) for p in files if not p.is_file()]
    if missing:
        ctx.console.error(f"file not found: {', '.join(missing)}")
        exit_with_code(ErrorCode.USER_ERROR)

    require_gh(ctx)
    report = run_publish(
        ctx.orchestrator(),
        tag=tag,
        files=[p.resolve() for p in files],
        dry_run=dry_run,
    )
    finish(ctx, report, json_output=json_output)
