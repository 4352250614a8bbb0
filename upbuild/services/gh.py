from __future__ import annotations

import json
import os
import shutil
from pathlib import Path

from upbuild.core.result import Err, Ok, Result
from upbuild.platform.process import ProcessError
from upbuild.platform.process import run as run_process
from upbuild.services.errors import ErrorKind, OrchestratorError
from upbuild.services.retry import RetryPolicy, is_transient_error, run_with_retry

_NOT_FOUND_MARKERS = (
    "release not found",
    "http 404",
)


def gh_env() -> dict[str, str]:
    env = dict(os.environ)
    # Never block on an interactive prompt inside a scheduled run.
    env["GH_PROMPT_DISABLED"] = "1"
    env["NO_COLOR"] = "1"
    return env


def is_not_found_error(error: ProcessError) -> bool:
    text = f"{error.stderr}\n{error.stdout}".lower()
    return any(marker in text for marker in _NOT_FOUND_MARKERS)


def classify_process_error(
    error: ProcessError,
    *,
    kind: ErrorKind,
    message: str,
    hint: str | None = None,
) -> OrchestratorError:
    """Map a failed command to ``transient_network`` or the caller's ``kind``."""
    detail = error.stderr.strip() or hint
    if is_transient_error(error):
        return OrchestratorError(kind="transient_network", message=message, hint=detail)
    return OrchestratorError(kind=kind, message=message, hint=detail)


def ensure_gh_available() -> Result[None, OrchestratorError]:
    if shutil.which("gh") is None:
        return Err(
            OrchestratorError(
                kind="gh_missing",
                message="gh: missing",
                hint="Install GitHub CLI: https://cli.github.com/",
            )
        )
    return Ok(None)


def ensure_gh_auth(*, workspace_root: Path, policy: RetryPolicy) -> Result[None, OrchestratorError]:
    result = run_process(
        ["gh", "auth", "status"], workspace_root, gh_env(), timeout=policy.timeout_seconds
    )
    if isinstance(result, Err):
        return Err(
            OrchestratorError(
                kind="gh_auth_required",
                message="gh auth required",
                hint="Run: gh auth login (or set GH_TOKEN)",
            )
        )
    return Ok(None)


def gh_read(
    *,
    workspace_root: Path,
    cmd: list[str],
    policy: RetryPolicy,
    kind: ErrorKind,
    message: str,
    hint: str | None = None,
) -> Result[str, OrchestratorError]:
    """Run an idempotent gh command with transient-failure retries."""
    result = run_with_retry(cmd, cwd=workspace_root, policy=policy, env=gh_env())
    if isinstance(result, Err):
        return Err(classify_process_error(result.error, kind=kind, message=message, hint=hint))
    return result


def gh_api_json(
    *,
    workspace_root: Path,
    endpoint: str,
    policy: RetryPolicy,
    kind: ErrorKind = "input_error",
) -> Result[object, OrchestratorError]:
    result = gh_read(
        workspace_root=workspace_root,
        cmd=["gh", "api", endpoint],
        policy=policy,
        kind=kind,
        message=f"gh api failed: {endpoint}",
        hint=endpoint,
    )
    if isinstance(result, Err):
        return result

    try:
        obj: object = json.loads(result.value)
    except json.JSONDecodeError as e:
        return Err(
            OrchestratorError(
                kind=kind,
                message=f"gh api returned invalid JSON: {e}",
                hint=endpoint,
            )
        )
    return Ok(obj)
