from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path

from upbuild.core.result import Err, Ok, Result
from upbuild.core.structured import as_str_dict, get_list, get_str
from upbuild.output.console import ConsoleProtocol, Style
from upbuild.platform.files import atomic_write_text, sha256_file
from upbuild.platform.process import run as run_process
from upbuild.services.errors import OrchestratorError
from upbuild.services.gh import classify_process_error, gh_env, is_not_found_error
from upbuild.services.model import BuildArtifact, PublishStatus, Release
from upbuild.services.retry import RetryPolicy, run_with_retry

CHECKSUMS_FILENAME = "SHA256SUMS"


@dataclass(frozen=True, slots=True)
class PublishResult:
    status: PublishStatus
    release: Release


@dataclass(frozen=True, slots=True)
class ExistingRelease:
    url: str
    assets: tuple[str, ...]  # names of fully uploaded assets


def release_exists(
    *,
    workspace_root: Path,
    repo: str,
    tag: str,
    policy: RetryPolicy,
) -> Result[ExistingRelease | None, OrchestratorError]:
    """The release for ``tag`` with its uploaded assets, or None when there is none."""
    cmd = ["gh", "release", "view", tag, "--repo", repo, "--json", "tagName,url,assets"]
    result = run_with_retry(cmd, cwd=workspace_root, policy=policy, env=gh_env())
    if isinstance(result, Err):
        if is_not_found_error(result.error):
            return Ok(None)
        return Err(
            classify_process_error(
                result.error,
                kind="publish_error",
                message=f"cannot check for an existing release {tag}",
            )
        )

    try:
        data = as_str_dict(json.loads(result.value))
    except json.JSONDecodeError:
        data = None
    url = get_str(data, "url") if data is not None else None
    assets: list[str] = []
    for item in (get_list(data, "assets") if data is not None else None) or []:
        asset = as_str_dict(item)
        if asset is None:
            continue
        name = get_str(asset, "name")
        # An interrupted upload leaves the asset in the "starter" state.
        if name and get_str(asset, "state") in (None, "uploaded"):
            assets.append(name)
    return Ok(
        ExistingRelease(
            url=url or f"https://github.com/{repo}/releases/tag/{tag}",
            assets=tuple(assets),
        )
    )


def write_checksums(artifacts: tuple[BuildArtifact, ...], dest: Path) -> Path:
    """Write a ``sha256sum``-compatible file covering every artifact."""
    lines = [f"{sha256_file(a.path)}  {a.name}" for a in artifacts]
    path = dest / CHECKSUMS_FILENAME
    atomic_write_text(path, "\n".join(lines) + "\n")
    return path


def release_notes(*, tag: str, repository_url: str, build_url: str | None) -> str:
    lines = [f"Automated build of {repository_url} at `{tag}`."]
    if build_url:
        lines.append("")
        lines.append(f"Build run: {build_url}")
    return "\n".join(lines) + "\n"


def _upload(
    *,
    workspace_root: Path,
    repo: str,
    tag: str,
    files: list[Path],
    policy: RetryPolicy,
    console: ConsoleProtocol,
) -> Result[str, OrchestratorError]:
    upload_cmd = ["gh", "release", "upload", tag, *[str(p) for p in files], "--repo", repo]
    upload_cmd.append("--clobber")
    console.print(" ".join(upload_cmd[:4]) + " ...", Style.DIM)
    uploaded = run_with_retry(upload_cmd, cwd=workspace_root, policy=policy, env=gh_env())
    if isinstance(uploaded, Err):
        return Err(
            OrchestratorError(
                kind="publish_partial_failure",
                message=f"release {tag} exists but its artifacts were not attached",
                hint=(
                    f"{uploaded.error.stderr.strip() or uploaded.error}\n"
                    f"Finish manually: gh release upload {tag} --repo {repo} --clobber <files>"
                ),
            )
        )
    return uploaded


def publish_release(
    *,
    workspace_root: Path,
    repo: str,
    tag: str,
    title: str,
    notes: str,
    artifacts: tuple[BuildArtifact, ...],
    checksums: bool,
    staging_dir: Path,
    policy: RetryPolicy,
    console: ConsoleProtocol,
    dry_run: bool,
) -> Result[PublishResult, OrchestratorError]:
    """Create the release for ``tag`` and attach ``artifacts`` to it.

    A release that already carries every expected asset is left alone and
    reported as ``already-exists``. A release missing some of them (an
    earlier upload died halfway) gets the artifacts attached and is reported
    as ``completed``. Once the release exists, any failure to attach the
    artifacts is a ``publish_partial_failure``: the tag is public but
    incomplete and someone has to finish the upload by hand.

    New releases are created with ``--latest=false``; the release-backed
    version marker decides which release is latest.
    """
    if not artifacts:
        return Err(
            OrchestratorError(kind="publish_error", message=f"nothing to publish for {tag}")
        )

    missing = [str(a.path) for a in artifacts if not a.path.is_file()]
    if missing:
        return Err(
            OrchestratorError(
                kind="publish_error",
                message="artifact file not found",
                hint=", ".join(missing),
            )
        )

    expected = [a.name for a in artifacts]
    if checksums:
        expected.append(CHECKSUMS_FILENAME)

    existing = release_exists(workspace_root=workspace_root, repo=repo, tag=tag, policy=policy)
    if isinstance(existing, Err):
        return existing
    if existing.value is not None:
        absent = [n for n in expected if n not in existing.value.assets]
        if not absent:
            console.info(f"release {tag} already exists; nothing to publish")
            return Ok(
                PublishResult(
                    status="already-exists",
                    release=Release(
                        tag=tag, artifacts=existing.value.assets, url=existing.value.url
                    ),
                )
            )
        console.warning(
            f"release {tag} exists without {', '.join(absent)}; attaching artifacts"
        )

    files = [a.path for a in artifacts]
    if checksums:
        try:
            files.append(write_checksums(artifacts, staging_dir))
        except OSError as e:
            return Err(
                OrchestratorError(kind="publish_error", message=f"cannot write checksums: {e}")
            )
    names = tuple(p.name for p in files)

    if existing.value is not None:
        if dry_run:
            return Ok(
                PublishResult(
                    status="completed",
                    release=Release(tag=tag, artifacts=names, url=existing.value.url),
                )
            )
        uploaded = _upload(
            workspace_root=workspace_root,
            repo=repo,
            tag=tag,
            files=files,
            policy=policy,
            console=console,
        )
        if isinstance(uploaded, Err):
            return uploaded
        return Ok(
            PublishResult(
                status="completed",
                release=Release(tag=tag, artifacts=names, url=existing.value.url),
            )
        )

    create_cmd = [
        "gh",
        "release",
        "create",
        tag,
        "--repo",
        repo,
        "--title",
        title,
        "--notes",
        notes,
        "--latest=false",
    ]
    console.print(" ".join(create_cmd[:4]) + " ...", Style.DIM)
    if dry_run:
        return Ok(
            PublishResult(
                status="created",
                release=Release(tag=tag, artifacts=names, url="(dry-run)"),
            )
        )

    status: PublishStatus = "created"
    # Not retried: a create that timed out may have succeeded.
    created = run_process(create_cmd, workspace_root, gh_env(), timeout=policy.timeout_seconds)
    if isinstance(created, Err):
        if "already exists" not in created.error.stderr.lower():
            return Err(
                classify_process_error(
                    created.error,
                    kind="publish_error",
                    message=f"failed to create release {tag}",
                )
            )
        # Lost a creation race; the winner may not have uploaded yet.
        console.info(f"release {tag} was created concurrently; attaching artifacts")
        status = "completed"
        url = f"https://github.com/{repo}/releases/tag/{tag}"
    else:
        url = created.value.strip() or f"https://github.com/{repo}/releases/tag/{tag}"

    uploaded = _upload(
        workspace_root=workspace_root,
        repo=repo,
        tag=tag,
        files=files,
        policy=policy,
        console=console,
    )
    if isinstance(uploaded, Err):
        return uploaded

    return Ok(PublishResult(status=status, release=Release(tag=tag, artifacts=names, url=url)))
