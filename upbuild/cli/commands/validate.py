from __future__ import annotations

import typer

from upbuild.cli.commands._helpers import exit_with_code
from upbuild.cli.context import build_context
from upbuild.core.errors import ErrorCode
from upbuild.core.result import Err
from upbuild.output.console import Style
from upbuild.services.validator import validate_build_request


def validate(
    repo_url: str | None = typer.Option(
        None, "--repo-url", help="Repository to check (default: [upstream] url)"
    ),
    ref: str | None = typer.Option(
        None, "--ref", help="Branch or tag to check (default: [upstream] default_ref)"
    ),
    strict: bool | None = typer.Option(
        None,
        "--strict/--lenient",
        help="Reject unknown refs instead of falling back to the default ref",
        show_default=False,
    ),
) -> None:
    """Validate a build request without dispatching anything."""
    ctx = build_context()
    config = ctx.config

    result = validate_build_request(
        workspace_root=ctx.workspace_root,
        repository_url=repo_url or config.upstream.url,
        version_ref=ref or config.upstream.default_ref,
        default_ref=config.upstream.default_ref,
        strict=config.validation.strict_refs if strict is None else strict,
        allowed_hosts=config.validation.allowed_hosts,
        policy=ctx.policy,
        console=ctx.console,
    )
    if isinstance(result, Err):
        ctx.console.error(result.error.message)
        if result.error.hint:
            ctx.console.print(f"hint: {result.error.hint}", Style.DIM)
        if result.error.kind == "transient_network":
            exit_with_code(ErrorCode.NETWORK_ERROR)
        exit_with_code(ErrorCode.USER_ERROR)

    request = result.value.request
    ctx.console.success(f"{request.repository_url} @ {request.version_ref}")
    if result.value.resolution.fell_back:
        ctx.console.print(f"requested: {result.value.resolution.requested}", Style.DIM)
