from __future__ import annotations

import hashlib
import json
import os
import re
from datetime import UTC, datetime
from pathlib import Path
from time import sleep
from uuid import uuid4

from upbuild.core.result import Err, Ok, Result
from upbuild.core.structured import as_obj_list, as_str_dict, get_int, get_str
from upbuild.output.console import ConsoleProtocol, Style
from upbuild.platform.files import create_exclusive, remove_if_owned, take_over_stale
from upbuild.platform.process import run as run_process
from upbuild.services.errors import OrchestratorError
from upbuild.services.gh import classify_process_error, gh_env, gh_read
from upbuild.services.model import BuildArtifact, BuildRequest, WorkflowRun
from upbuild.services.retry import RetryPolicy

_RUN_LOOKUP_MAX_ATTEMPTS = 10
_RUN_LOOKUP_DELAY_SECONDS = 2.0

_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class DispatchLedger:
    """At most one in-flight dispatch per version ref.

    Each claim is a file under ``<state>/inflight/`` created with O_EXCL, so
    two invocations racing on the same ref cannot both win. A claim older
    than ``ttl_seconds`` belonged to an invocation that died and is taken over.
    Claims carry a token, and ``release`` only removes the ledger's own.
    """

    def __init__(self, state_dir: Path, *, ttl_seconds: float) -> None:
        self.root = state_dir / "inflight"
        self.ttl_seconds = ttl_seconds
        self._tokens: dict[str, str] = {}

    def claim_path(self, version_ref: str) -> Path:
        # Readable prefix plus a digest: refs like "a/b" and "a_b" must not collide.
        digest = hashlib.sha256(version_ref.encode("utf-8")).hexdigest()[:12]
        safe = _UNSAFE_KEY_CHARS.sub("_", version_ref)[:64]
        return self.root / f"{safe}-{digest}.claim"

    def claim(self, version_ref: str) -> Result[bool, OrchestratorError]:
        path = self.claim_path(version_ref)
        token = uuid4().hex
        content = json.dumps(
            {
                "version_ref": version_ref,
                "pid": os.getpid(),
                "token": token,
                "claimed_at": datetime.now(tz=UTC).isoformat(),
            }
        )
        for _ in range(2):
            try:
                if create_exclusive(path, content + "\n"):
                    self._tokens[version_ref] = token
                    return Ok(True)
                if not take_over_stale(path, max_age=self.ttl_seconds):
                    return Ok(False)
            except OSError as e:
                return Err(
                    OrchestratorError(
                        kind="state_error",
                        message=f"cannot record in-flight dispatch: {e}",
                        hint=str(path),
                    )
                )
        return Ok(False)

    def release(self, version_ref: str) -> None:
        token = self._tokens.pop(version_ref, None)
        if token is not None:
            remove_if_owned(self.claim_path(version_ref), token)

    def in_flight(self) -> list[str]:
        if not self.root.is_dir():
            return []
        out: list[str] = []
        for path in sorted(self.root.glob("*.claim")):
            try:
                data = as_str_dict(json.loads(path.read_text(encoding="utf-8")))
            except (OSError, json.JSONDecodeError):
                continue
            ref = get_str(data, "version_ref") if data is not None else None
            if ref is not None:
                out.append(ref)
        return out


def dispatch_build(
    *,
    workspace_root: Path,
    repo: str,
    workflow: str,
    workflow_ref: str,
    request: BuildRequest,
    policy: RetryPolicy,
    console: ConsoleProtocol,
    dry_run: bool,
) -> Result[WorkflowRun, OrchestratorError]:
    """Trigger the build workflow and identify the run it created.

    The workflow must accept ``repository_url``, ``version_ref`` and
    ``request_id`` inputs and put ``request_id`` in its run name, which is
    how the run is told apart from concurrent dispatches.
    """
    request_id = f"upb-{uuid4().hex[:12]}"
    cmd = [
        "gh",
        "workflow",
        "run",
        workflow,
        "--repo",
        repo,
        "--ref",
        workflow_ref,
        "-f",
        f"repository_url={request.repository_url}",
        "-f",
        f"version_ref={request.version_ref}",
        "-f",
        f"request_id={request_id}",
    ]

    console.print(" ".join(cmd[:4]) + " ...", Style.DIM)
    console.print(f"dispatch request_id: {request_id}", Style.DIM)
    if dry_run:
        return Ok(WorkflowRun(id=0, url="(dry-run)", request_id=request_id))

    # Not retried: a dispatch that timed out may still have started a run.
    result = run_process(cmd, workspace_root, gh_env(), timeout=policy.timeout_seconds)
    if isinstance(result, Err):
        return Err(
            classify_process_error(
                result.error,
                kind="build_error",
                message="failed to dispatch build workflow",
            )
        )

    return _resolve_dispatched_run(
        workspace_root=workspace_root,
        repo=repo,
        workflow=workflow,
        workflow_ref=workflow_ref,
        request_id=request_id,
        policy=policy,
    )


def _resolve_dispatched_run(
    *,
    workspace_root: Path,
    repo: str,
    workflow: str,
    workflow_ref: str,
    request_id: str,
    policy: RetryPolicy,
) -> Result[WorkflowRun, OrchestratorError]:
    list_cmd = [
        "gh",
        "run",
        "list",
        "--repo",
        repo,
        "--workflow",
        workflow,
        "--event",
        "workflow_dispatch",
        "--limit",
        "20",
        "--json",
        "databaseId,url,event,headBranch,displayTitle",
    ]

    for attempt in range(_RUN_LOOKUP_MAX_ATTEMPTS):
        listed = gh_read(
            workspace_root=workspace_root,
            cmd=list_cmd,
            policy=policy,
            kind="build_error",
            message="failed to query workflow runs",
        )
        if isinstance(listed, Err):
            return listed

        found = find_dispatched_run(
            payload=listed.value, workflow_ref=workflow_ref, request_id=request_id
        )
        if isinstance(found, Err):
            return found
        if found.value is not None:
            return Ok(found.value)
        if attempt < _RUN_LOOKUP_MAX_ATTEMPTS - 1:
            sleep(_RUN_LOOKUP_DELAY_SECONDS)

    return Err(
        OrchestratorError(
            kind="build_error",
            message="could not identify the dispatched workflow run",
            hint=(
                f"No run title contained request_id={request_id}; check Actions in {repo} "
                "and make sure the workflow's run-name includes inputs.request_id."
            ),
        )
    )


def find_dispatched_run(
    *,
    payload: str,
    workflow_ref: str,
    request_id: str,
) -> Result[WorkflowRun | None, OrchestratorError]:
    try:
        obj: object = json.loads(payload)
    except json.JSONDecodeError as e:
        return Err(
            OrchestratorError(kind="build_error", message=f"invalid JSON from gh run list: {e}")
        )

    raw = as_obj_list(obj)
    if raw is None:
        return Err(OrchestratorError(kind="build_error", message="unexpected gh run list payload"))

    for item in raw:
        d = as_str_dict(item)
        if d is None:
            continue
        if get_str(d, "event") != "workflow_dispatch":
            continue
        if get_str(d, "headBranch") != workflow_ref:
            continue
        title = get_str(d, "displayTitle")
        if title is None or request_id not in title:
            continue
        run_id = get_int(d, "databaseId")
        url = get_str(d, "url")
        if run_id is None or url is None:
            continue
        return Ok(WorkflowRun(id=run_id, url=url, request_id=request_id))

    return Ok(None)


def wait_for_build(
    *,
    workspace_root: Path,
    repo: str,
    run: WorkflowRun,
    policy: RetryPolicy,
    watch_timeout: float,
    console: ConsoleProtocol,
) -> Result[str, OrchestratorError]:
    """Block until the run finishes; Ok(conclusion) only for ``success``.

    ``gh run watch`` exits non-zero both when the build fails and when the
    watch itself breaks, so the terminal conclusion is read back explicitly.
    """
    cmd = ["gh", "run", "watch", str(run.id), "--repo", repo, "--exit-status", "--interval", "15"]
    console.print(" ".join(cmd[:4]) + " ...", Style.DIM)
    watched = run_process(cmd, workspace_root, gh_env(), timeout=watch_timeout)
    if isinstance(watched, Err) and watched.error.timed_out:
        return Err(
            OrchestratorError(
                kind="build_error",
                message=f"build did not finish within {watch_timeout:.0f}s",
                hint=run.url,
            )
        )

    viewed = gh_read(
        workspace_root=workspace_root,
        cmd=["gh", "run", "view", str(run.id), "--repo", repo, "--json", "status,conclusion"],
        policy=policy,
        kind="build_error",
        message=f"failed to read status of run {run.id}",
        hint=run.url,
    )
    if isinstance(viewed, Err):
        return viewed

    try:
        data = as_str_dict(json.loads(viewed.value))
    except json.JSONDecodeError as e:
        return Err(
            OrchestratorError(kind="build_error", message=f"invalid JSON from gh run view: {e}")
        )
    if data is None:
        return Err(OrchestratorError(kind="build_error", message="unexpected gh run view payload"))

    status = get_str(data, "status")
    conclusion = get_str(data, "conclusion")
    if status != "completed":
        return Err(
            OrchestratorError(
                kind="build_error",
                message=f"run {run.id} is not complete (status: {status})",
                hint=run.url,
            )
        )
    if conclusion != "success":
        return Err(
            OrchestratorError(
                kind="build_error",
                message=f"build {conclusion or 'failed'}",
                hint=run.url,
            )
        )
    return Ok(conclusion)


def download_artifacts(
    *,
    workspace_root: Path,
    repo: str,
    run: WorkflowRun,
    artifact: str,
    dest_dir: Path,
    version: str,
    policy: RetryPolicy,
) -> Result[tuple[BuildArtifact, ...], OrchestratorError]:
    """Download the run's named artifact; one BuildArtifact per file, by name."""
    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        return Err(OrchestratorError(kind="build_error", message=f"cannot create {dest_dir}: {e}"))

    downloaded = gh_read(
        workspace_root=workspace_root,
        cmd=[
            "gh",
            "run",
            "download",
            str(run.id),
            "--repo",
            repo,
            "--name",
            artifact,
            "--dir",
            str(dest_dir),
        ],
        policy=policy,
        kind="build_error",
        message=f"failed to download artifact '{artifact}' from run {run.id}",
        hint=run.url,
    )
    if isinstance(downloaded, Err):
        return downloaded

    files = sorted(p for p in dest_dir.rglob("*") if p.is_file())
    if not files:
        return Err(
            OrchestratorError(
                kind="build_error",
                message=f"artifact '{artifact}' is empty",
                hint=run.url,
            )
        )
    return Ok(tuple(BuildArtifact(path=p, version=version) for p in files))
