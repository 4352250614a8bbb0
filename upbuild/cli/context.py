from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

import typer

from upbuild.core.config import CONFIG_ENV_VAR, CONFIG_FILENAME, Config, load_config
from upbuild.core.errors import ErrorCode
from upbuild.core.result import Err
from upbuild.output.console import ConsoleProtocol, RichConsole
from upbuild.services.gh import ensure_gh_auth, ensure_gh_available
from upbuild.services.orchestrator import OrchestratorContext
from upbuild.services.retry import RetryPolicy

# Set by the app callback from --config.
_config_override: Path | None = None


@dataclass(frozen=True, slots=True)
class CLIContext:
    workspace_root: Path
    config_path: Path
    config: Config
    console: ConsoleProtocol

    @property
    def policy(self) -> RetryPolicy:
        return RetryPolicy.from_config(self.config.network)

    def orchestrator(self) -> OrchestratorContext:
        return OrchestratorContext.create(
            workspace_root=self.workspace_root, config=self.config, console=self.console
        )


def set_config_override(path: Path | None) -> None:
    global _config_override
    _config_override = path


def resolve_config_path() -> Path:
    """``--config``, then ``$UPBUILD_CONFIG``, then ``./upbuild.toml``."""
    if _config_override is not None:
        return _config_override.expanduser().resolve()
    env = os.environ.get(CONFIG_ENV_VAR, "").strip()
    if env:
        return Path(env).expanduser().resolve()
    return (Path.cwd() / CONFIG_FILENAME).resolve()


def build_context(*, json_output: bool = False) -> CLIContext:
    """Load configuration and set up the console.

    Relative paths in the config (marker, state dir) resolve against the
    directory holding the config file. With ``json_output`` all human output
    goes to stderr so stdout carries only the JSON report.
    """
    path = resolve_config_path()
    if not path.is_file():
        typer.echo(f"error: config file not found: {path}", err=True)
        raise typer.Exit(code=int(ErrorCode.ENV_ERROR))

    loaded = load_config(path)
    if isinstance(loaded, Err):
        typer.echo(f"error: {loaded.error.message}", err=True)
        raise typer.Exit(code=int(ErrorCode.ENV_ERROR))

    return CLIContext(
        workspace_root=path.parent,
        config_path=path,
        config=loaded.value,
        console=RichConsole(stderr=json_output),
    )


def require_gh(ctx: CLIContext) -> None:
    """Exit with ENV_ERROR unless gh is installed and authenticated."""
    available = ensure_gh_available()
    if isinstance(available, Err):
        ctx.console.error(available.error.pretty())
        raise typer.Exit(code=int(ErrorCode.ENV_ERROR))

    authed = ensure_gh_auth(workspace_root=ctx.workspace_root, policy=ctx.policy)
    if isinstance(authed, Err):
        ctx.console.error(authed.error.pretty())
        raise typer.Exit(code=int(ErrorCode.ENV_ERROR))
