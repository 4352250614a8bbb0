from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from upbuild.core.result import Err, Ok, Result
from upbuild.services.errors import OrchestratorError
from upbuild.services.marker import MarkerStore
from upbuild.services.model import BuildRequest
from upbuild.services.refs import list_remote_refs
from upbuild.services.retry import RetryPolicy
from upbuild.services.semver import Version, highest_version, is_newer


@dataclass(frozen=True, slots=True)
class WatchResult:
    latest: Version | None
    marker: str | None
    request: BuildRequest | None

    @property
    def has_new_version(self) -> bool:
        return self.request is not None


def detect_new_version(
    *,
    tags: Iterable[str],
    marker: str | None,
    upstream_url: str,
    include_prereleases: bool = False,
) -> BuildRequest | None:
    """BuildRequest for the highest upstream tag if it is newer than ``marker``.

    The request carries the tag as spelled upstream (``v1.2.0`` stays
    ``v1.2.0``) so it resolves as a ref; comparison is by semver precedence.
    """
    latest = highest_version(tags, include_prereleases=include_prereleases)
    if latest is None:
        return None
    if not is_newer(latest.tag, marker):
        return None
    return BuildRequest(repository_url=upstream_url, version_ref=latest.tag)


def check_upstream(
    *,
    workspace_root: Path,
    upstream_url: str,
    include_prereleases: bool,
    marker_store: MarkerStore,
    policy: RetryPolicy,
) -> Result[WatchResult, OrchestratorError]:
    """One scheduled check: list upstream tags and compare with the marker."""
    refs = list_remote_refs(
        workspace_root=workspace_root, url=upstream_url, policy=policy, tags_only=True
    )
    if isinstance(refs, Err):
        return refs

    marker = marker_store.read()
    if isinstance(marker, Err):
        return marker

    request = detect_new_version(
        tags=refs.value.tags,
        marker=marker.value,
        upstream_url=upstream_url,
        include_prereleases=include_prereleases,
    )
    latest = highest_version(refs.value.tags, include_prereleases=include_prereleases)
    return Ok(WatchResult(latest=latest, marker=marker.value, request=request))
