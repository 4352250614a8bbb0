"""One invocation of the orchestrator, from trigger to reported outcome.

Entry points:

- ``run_tick``: scheduled check; builds the newest upstream tag if it is
  newer than the version marker.
- ``run_build``: manual trigger for any repository URL and ref.
- ``run_publish``: publish local files under a tag (publisher step alone).

Each returns an ``InvocationReport``; none of them raise for expected
failures.
"""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path

from upbuild.core.config import Config
from upbuild.core.errors import ErrorCode
from upbuild.core.result import Err
from upbuild.output.console import ConsoleProtocol, Style
from upbuild.services.dispatcher import (
    DispatchLedger,
    dispatch_build,
    download_artifacts,
    wait_for_build,
)
from upbuild.services.errors import OrchestratorError
from upbuild.services.lifecycle import BuildRun, BuildState, StepHandler, run_lifecycle
from upbuild.services.marker import FileMarkerStore, MarkerStore, ReleaseMarkerStore
from upbuild.services.model import BuildArtifact, BuildRequest, Outcome, Release
from upbuild.services.publisher import publish_release, release_notes
from upbuild.services.retry import RetryPolicy
from upbuild.services.semver import parse_version
from upbuild.services.validator import check_ref_format, validate_build_request
from upbuild.services.watcher import check_upstream

_OUTCOMES: dict[BuildState, Outcome] = {
    "rejected": "validation-rejected",
    "duplicate": "dispatched",
    "dispatched": "dispatched",
    "build_failed": "build-failed",
    "published": "published",
    "publish_failed": "publish-failed",
}


@dataclass(frozen=True, slots=True)
class OrchestratorContext:
    workspace_root: Path
    config: Config
    console: ConsoleProtocol
    marker_store: MarkerStore
    ledger: DispatchLedger
    policy: RetryPolicy

    @classmethod
    def create(
        cls, *, workspace_root: Path, config: Config, console: ConsoleProtocol
    ) -> OrchestratorContext:
        policy = RetryPolicy.from_config(config.network)
        return cls(
            workspace_root=workspace_root,
            config=config,
            console=console,
            marker_store=make_marker_store(
                workspace_root=workspace_root, config=config, policy=policy
            ),
            ledger=DispatchLedger(
                config.state_dir(workspace_root), ttl_seconds=config.state.claim_ttl_seconds
            ),
            policy=policy,
        )


def make_marker_store(*, workspace_root: Path, config: Config, policy: RetryPolicy) -> MarkerStore:
    if config.marker.backend == "release":
        return ReleaseMarkerStore(
            workspace_root=workspace_root,
            repo=config.build.repo,
            policy=policy,
            include_prereleases=config.upstream.include_prereleases,
        )
    return FileMarkerStore(config.marker_path(workspace_root))


@dataclass(frozen=True, slots=True)
class InvocationReport:
    outcome: Outcome
    message: str
    state: BuildState | None = None
    request: BuildRequest | None = None
    run_url: str | None = None
    release: Release | None = None
    marker: str | None = None
    marker_advanced: bool = False
    error: OrchestratorError | None = None
    warnings: tuple[str, ...] = ()

    @property
    def exit_code(self) -> ErrorCode:
        return exit_code_for(self.outcome, self.error)

    def to_dict(self) -> dict[str, object]:
        return {
            "outcome": self.outcome,
            "message": self.message,
            "state": self.state,
            "request": (
                {
                    "repository_url": self.request.repository_url,
                    "version_ref": self.request.version_ref,
                }
                if self.request is not None
                else None
            ),
            "run_url": self.run_url,
            "release": (
                {
                    "tag": self.release.tag,
                    "artifacts": list(self.release.artifacts),
                    "url": self.release.url,
                }
                if self.release is not None
                else None
            ),
            "marker": self.marker,
            "marker_advanced": self.marker_advanced,
            "error": (
                {"kind": self.error.kind, "message": self.error.message, "hint": self.error.hint}
                if self.error is not None
                else None
            ),
            "warnings": list(self.warnings),
            "exit_code": int(self.exit_code),
        }


def exit_code_for(outcome: Outcome, error: OrchestratorError | None) -> ErrorCode:
    if outcome in ("skipped-no-new-version", "dispatched", "published"):
        return ErrorCode.OK
    kind = error.kind if error is not None else None
    if kind == "transient_network":
        return ErrorCode.NETWORK_ERROR
    if kind in ("state_error", "marker_error"):
        return ErrorCode.IO_ERROR
    if kind in ("gh_missing", "gh_auth_required", "config_error"):
        return ErrorCode.ENV_ERROR
    if outcome == "validation-rejected":
        return ErrorCode.USER_ERROR
    if outcome == "build-failed":
        return ErrorCode.BUILD_ERROR
    return ErrorCode.PUBLISH_ERROR


def run_tick(ctx: OrchestratorContext, *, dry_run: bool = False) -> InvocationReport:
    """Scheduled check. Upstream errors are reported as a skipped tick."""
    upstream = ctx.config.upstream
    ctx.console.header(f"Checking {upstream.url}")

    watched = check_upstream(
        workspace_root=ctx.workspace_root,
        upstream_url=upstream.url,
        include_prereleases=upstream.include_prereleases,
        marker_store=ctx.marker_store,
        policy=ctx.policy,
    )
    if isinstance(watched, Err):
        ctx.console.warning(f"upstream check failed: {watched.error.pretty()}")
        ctx.console.print("will retry on the next scheduled tick", Style.DIM)
        return InvocationReport(
            outcome="skipped-no-new-version",
            message="upstream check failed; retrying on the next tick",
            error=watched.error,
        )

    result = watched.value
    if result.request is None:
        latest = result.latest.tag if result.latest is not None else "none"
        ctx.console.info(f"no new version (upstream latest: {latest}, marker: {result.marker})")
        return InvocationReport(
            outcome="skipped-no-new-version",
            message=f"up to date at {result.marker}" if result.marker else "no release tags",
            marker=result.marker,
        )

    ctx.console.info(
        f"new upstream version {result.request.version_ref} (marker: {result.marker or 'none'})"
    )
    # A detected tag must be built exactly; never soften it to the default ref.
    return _run_pipeline(
        ctx,
        repository_url=result.request.repository_url,
        version_ref=result.request.version_ref,
        strict=True,
        dry_run=dry_run,
    )


def run_build(
    ctx: OrchestratorContext,
    *,
    repository_url: str | None = None,
    version_ref: str | None = None,
    strict: bool | None = None,
    dry_run: bool = False,
) -> InvocationReport:
    """Manual trigger; missing inputs default to the configured upstream."""
    url = repository_url or ctx.config.upstream.url
    ref = version_ref or ctx.config.upstream.default_ref
    ctx.console.header(f"Building {url} @ {ref}")
    return _run_pipeline(
        ctx,
        repository_url=url,
        version_ref=ref,
        strict=ctx.config.validation.strict_refs if strict is None else strict,
        dry_run=dry_run,
    )


def _run_pipeline(
    ctx: OrchestratorContext,
    *,
    repository_url: str,
    version_ref: str,
    strict: bool,
    dry_run: bool,
) -> InvocationReport:
    config = ctx.config
    state_dir = config.state_dir(ctx.workspace_root)
    claimed: list[str] = []

    def start(run: BuildRun) -> BuildRun:
        return run.to("validating")

    def validate_and_dispatch(run: BuildRun) -> BuildRun:
        validated = validate_build_request(
            workspace_root=ctx.workspace_root,
            repository_url=run.repository_url,
            version_ref=run.version_ref,
            default_ref=config.upstream.default_ref,
            strict=strict,
            allowed_hosts=config.validation.allowed_hosts,
            policy=ctx.policy,
            console=ctx.console,
        )
        if isinstance(validated, Err):
            return run.fail("rejected", validated.error)
        request = validated.value.request

        claim = ctx.ledger.claim(request.version_ref)
        if isinstance(claim, Err):
            return run.to("build_failed", request=request, error=claim.error)
        if not claim.value:
            ctx.console.info(f"a build of {request.version_ref} is already in flight")
            return run.to("duplicate", request=request)
        claimed.append(request.version_ref)

        dispatched = dispatch_build(
            workspace_root=ctx.workspace_root,
            repo=config.build.repo,
            workflow=config.build.workflow,
            workflow_ref=config.build.ref,
            request=request,
            policy=ctx.policy,
            console=ctx.console,
            dry_run=dry_run,
        )
        if isinstance(dispatched, Err):
            return run.to("build_failed", request=request, error=dispatched.error)
        ctx.console.print(f"run: {dispatched.value.url}", Style.DIM)
        return run.to("dispatched", request=request, run=dispatched.value)

    def await_build(run: BuildRun) -> BuildRun:
        assert run.request is not None and run.run is not None
        waited = wait_for_build(
            workspace_root=ctx.workspace_root,
            repo=config.build.repo,
            run=run.run,
            policy=ctx.policy,
            watch_timeout=config.network.watch_timeout_seconds,
            console=ctx.console,
        )
        if isinstance(waited, Err):
            return run.fail("build_failed", waited.error)

        downloaded = download_artifacts(
            workspace_root=ctx.workspace_root,
            repo=config.build.repo,
            run=run.run,
            artifact=config.build.artifact,
            dest_dir=state_dir / "artifacts" / run.run.request_id,
            version=run.request.version_ref,
            policy=ctx.policy,
        )
        if isinstance(downloaded, Err):
            return run.fail("build_failed", downloaded.error)
        return run.to("build_succeeded", artifacts=downloaded.value)

    def publish(run: BuildRun) -> BuildRun:
        assert run.request is not None and run.run is not None
        tag = run.request.version_ref
        published = publish_release(
            workspace_root=ctx.workspace_root,
            repo=config.build.repo,
            tag=tag,
            title=config.publish.title_template.format(tag=tag),
            notes=release_notes(
                tag=tag, repository_url=run.request.repository_url, build_url=run.run.url
            ),
            artifacts=run.artifacts,
            checksums=config.publish.checksums,
            staging_dir=state_dir / "staging" / run.run.request_id,
            policy=ctx.policy,
            console=ctx.console,
            dry_run=dry_run,
        )
        if isinstance(published, Err):
            return run.fail("publish_failed", published.error)
        return run.to(
            "published",
            release=published.value.release,
            already_published=published.value.status == "already-exists",
        )

    handlers: dict[BuildState, StepHandler] = {
        "pending": start,
        "validating": validate_and_dispatch,
        "dispatched": await_build,
        "build_succeeded": publish,
    }

    def observe(run: BuildRun) -> None:
        ctx.console.print(f"state: {run.state}", Style.DIM)

    try:
        final = run_lifecycle(
            initial=BuildRun(repository_url=repository_url, version_ref=version_ref),
            handlers=handlers,
            observe=observe,
            stop_at=frozenset({"dispatched"}) if dry_run else frozenset(),
        )
    finally:
        for ref in claimed:
            ctx.ledger.release(ref)

    if final.state == "published" and final.run is not None and not dry_run:
        shutil.rmtree(state_dir / "artifacts" / final.run.request_id, ignore_errors=True)
        shutil.rmtree(state_dir / "staging" / final.run.request_id, ignore_errors=True)

    return _report(ctx, final, dry_run=dry_run)


def _advance_marker(ctx: OrchestratorContext, tag: str) -> tuple[bool, str | None, tuple[str, ...]]:
    """CAS the marker to ``tag``; returns (advanced, marker, warnings)."""
    if parse_version(tag) is None:
        # Branch builds are published but never move the marker.
        current = ctx.marker_store.read()
        return (False, current.value if not isinstance(current, Err) else None, ())

    advanced = ctx.marker_store.compare_and_set(tag)
    if isinstance(advanced, Err):
        msg = f"release published but the version marker was not updated: {advanced.error.pretty()}"
        ctx.console.warning(msg)
        return (False, None, (msg,))

    current = ctx.marker_store.read()
    marker = current.value if not isinstance(current, Err) else None
    if advanced.value:
        ctx.console.print(f"marker: {marker}", Style.DIM)
    else:
        ctx.console.print(f"marker unchanged: {marker} is not older than {tag}", Style.DIM)
    return (advanced.value, marker, ())


def _report(ctx: OrchestratorContext, run: BuildRun, *, dry_run: bool) -> InvocationReport:
    outcome = _OUTCOMES.get(run.state, "build-failed")
    run_url = run.run.url if run.run is not None else None
    error = run.error

    if error is not None:
        if error.kind == "publish_partial_failure":
            ctx.console.error(f"PARTIAL PUBLISH: {error.pretty()}")
        else:
            ctx.console.error(error.pretty())

    if run.state == "published" and run.request is not None:
        tag = run.request.version_ref
        if dry_run:
            advanced, marker, warnings = (False, None, ())
        else:
            advanced, marker, warnings = _advance_marker(ctx, tag)
        if run.already_published:
            message = f"release {tag} already exists"
        else:
            message = f"published {tag}"
            ctx.console.success(message)
        return InvocationReport(
            outcome=outcome,
            message=message,
            state=run.state,
            request=run.request,
            run_url=run_url,
            release=run.release,
            marker=marker,
            marker_advanced=advanced,
            warnings=warnings,
        )

    if run.state == "duplicate":
        message = f"build of {run.version_ref} already dispatched by another invocation"
    elif run.state == "dispatched":
        message = f"dispatched {run.version_ref} (dry run)" if dry_run else "dispatched"
    elif error is not None:
        message = error.message
    else:
        message = run.state

    return InvocationReport(
        outcome=outcome,
        message=message,
        state=run.state,
        request=run.request,
        run_url=run_url,
        release=run.release,
        error=error,
    )


def run_publish(
    ctx: OrchestratorContext,
    *,
    tag: str,
    files: list[Path],
    repository_url: str | None = None,
    dry_run: bool = False,
) -> InvocationReport:
    """Publish ``files`` as release ``tag`` and advance the marker."""
    checked = check_ref_format(tag)
    if isinstance(checked, Err):
        ctx.console.error(checked.error.pretty())
        return InvocationReport(
            outcome="validation-rejected", message=checked.error.message, error=checked.error
        )

    ctx.console.header(f"Publishing {tag}")
    artifacts = tuple(BuildArtifact(path=p, version=tag) for p in files)
    published = publish_release(
        workspace_root=ctx.workspace_root,
        repo=ctx.config.build.repo,
        tag=tag,
        title=ctx.config.publish.title_template.format(tag=tag),
        notes=release_notes(
            tag=tag,
            repository_url=repository_url or ctx.config.upstream.url,
            build_url=None,
        ),
        artifacts=artifacts,
        checksums=ctx.config.publish.checksums,
        staging_dir=ctx.config.state_dir(ctx.workspace_root) / "staging" / f"manual-{tag}",
        policy=ctx.policy,
        console=ctx.console,
        dry_run=dry_run,
    )
    if isinstance(published, Err):
        prefix = "PARTIAL PUBLISH: " if published.error.kind == "publish_partial_failure" else ""
        ctx.console.error(prefix + published.error.pretty())
        return InvocationReport(
            outcome="publish-failed",
            message=published.error.message,
            state="publish_failed",
            error=published.error,
        )

    already = published.value.status == "already-exists"
    if dry_run:
        advanced, marker, warnings = (False, None, ())
    else:
        advanced, marker, warnings = _advance_marker(ctx, tag)
    message = f"release {tag} already exists" if already else f"published {tag}"
    if not already:
        ctx.console.success(message)
    return InvocationReport(
        outcome="published",
        message=message,
        state="published",
        release=published.value.release,
        marker=marker,
        marker_advanced=advanced,
        warnings=warnings,
    )
