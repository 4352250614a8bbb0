"""The version marker: the last version this orchestrator published.

The marker lives outside the process so concurrent invocations can share it.
Writers go through ``compare_and_set``, which only ever moves the marker
forward: a slow run finishing with an older version cannot regress it.
"""

from __future__ import annotations

import json
import os
from datetime import UTC, datetime
from pathlib import Path
from time import monotonic, sleep
from typing import Protocol
from uuid import uuid4

from upbuild.core.result import Err, Ok, Result
from upbuild.core.structured import as_obj_list, as_str_dict, get_str
from upbuild.platform.files import (
    atomic_write_text,
    create_exclusive,
    remove_if_owned,
    take_over_stale,
)
from upbuild.services.errors import OrchestratorError
from upbuild.services.gh import classify_process_error, gh_api_json, gh_env
from upbuild.services.retry import RetryPolicy, run_with_retry
from upbuild.services.semver import highest_version, is_newer, parse_version

_LOCK_POLL_SECONDS = 0.05
# A lock holder only reads and rewrites a small file; anything older crashed.
_LOCK_STALE_SECONDS = 60.0


class MarkerStore(Protocol):
    def read(self) -> Result[str | None, OrchestratorError]:
        """Current marker, None if nothing was published yet."""
        ...

    def compare_and_set(self, version: str) -> Result[bool, OrchestratorError]:
        """Advance to ``version`` if it is strictly greater; report whether it moved."""
        ...


def _marker_error(message: str, hint: str | None = None) -> Err[OrchestratorError]:
    return Err(OrchestratorError(kind="marker_error", message=message, hint=hint))


def _check_version(version: str) -> Result[str, OrchestratorError]:
    if parse_version(version) is None:
        return Err(
            OrchestratorError(
                kind="input_error",
                message=f"not a semantic version: {version}",
                hint="Expected MAJOR.MINOR.PATCH, optionally prefixed with 'v'.",
            )
        )
    return Ok(version.strip())


class FileMarkerStore:
    """Marker kept in a JSON file, updated under an exclusive lock file.

    Layout: ``{"version": "1.2.0", "updated_at": "<iso8601>"}``.
    """

    def __init__(self, path: Path, *, lock_timeout: float = 30.0) -> None:
        self.path = path
        self.lock_path = path.with_name(path.name + ".lock")
        self.lock_timeout = lock_timeout

    def read(self) -> Result[str | None, OrchestratorError]:
        if not self.path.exists():
            return Ok(None)
        try:
            obj: object = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            return _marker_error(f"cannot read version marker: {e}", hint=str(self.path))

        data = as_str_dict(obj)
        if data is None:
            return _marker_error("version marker is not a JSON object", hint=str(self.path))
        return Ok(get_str(data, "version"))

    def compare_and_set(self, version: str) -> Result[bool, OrchestratorError]:
        checked = _check_version(version)
        if isinstance(checked, Err):
            return checked

        locked = self._acquire()
        if isinstance(locked, Err):
            return locked
        try:
            current = self.read()
            if isinstance(current, Err):
                return current
            if not is_newer(checked.value, current.value):
                return Ok(False)

            payload = {
                "version": checked.value,
                "updated_at": datetime.now(tz=UTC).isoformat(),
            }
            try:
                atomic_write_text(self.path, json.dumps(payload, indent=2) + "\n")
            except OSError as e:
                return _marker_error(f"cannot write version marker: {e}", hint=str(self.path))
            return Ok(True)
        finally:
            self._release(locked.value)

    def _acquire(self) -> Result[str, OrchestratorError]:
        """Take the lock file; the returned token identifies this holder."""
        deadline = monotonic() + self.lock_timeout
        token = uuid4().hex
        owner = f"{os.getpid()} {token}\n"
        while True:
            try:
                if create_exclusive(self.lock_path, owner):
                    return Ok(token)
                if take_over_stale(self.lock_path, max_age=_LOCK_STALE_SECONDS):
                    continue
            except OSError as e:
                return _marker_error(f"cannot create marker lock: {e}", hint=str(self.lock_path))

            if monotonic() >= deadline:
                return _marker_error(
                    "timed out waiting for the version marker lock",
                    hint=f"Remove {self.lock_path} if no other upbuild process is running.",
                )
            sleep(_LOCK_POLL_SECONDS)

    def _release(self, token: str) -> None:
        remove_if_owned(self.lock_path, token)


class ReleaseMarkerStore:
    """Marker derived from the build repository's published releases.

    ``read`` returns the highest semver tag among non-draft releases, so a
    release can never be "un-published" by a concurrent writer. Advancing
    additionally flags the release as the repository's latest.
    """

    def __init__(
        self,
        *,
        workspace_root: Path,
        repo: str,
        policy: RetryPolicy,
        include_prereleases: bool = False,
    ) -> None:
        self.workspace_root = workspace_root
        self.repo = repo
        self.policy = policy
        self.include_prereleases = include_prereleases

    def read(self) -> Result[str | None, OrchestratorError]:
        tags = self._published_tags()
        if isinstance(tags, Err):
            return tags
        best = highest_version(tags.value, include_prereleases=self.include_prereleases)
        return Ok(best.tag if best is not None else None)

    def compare_and_set(self, version: str) -> Result[bool, OrchestratorError]:
        checked = _check_version(version)
        if isinstance(checked, Err):
            return checked

        tags = self._published_tags()
        if isinstance(tags, Err):
            return tags
        if checked.value not in tags.value:
            return _marker_error(
                f"no published release for {checked.value}",
                hint=f"Publish the release in {self.repo} before advancing the marker.",
            )

        # The candidate is already published; compare against everything else.
        others = [t for t in tags.value if t != checked.value]
        best = highest_version(others, include_prereleases=self.include_prereleases)
        if not is_newer(checked.value, best.tag if best is not None else None):
            return Ok(False)

        cmd = ["gh", "release", "edit", checked.value, "--repo", self.repo, "--latest"]
        result = run_with_retry(cmd, cwd=self.workspace_root, policy=self.policy, env=gh_env())
        if isinstance(result, Err):
            return Err(
                classify_process_error(
                    result.error,
                    kind="marker_error",
                    message=f"cannot mark {checked.value} as latest release",
                )
            )
        return Ok(True)

    def _published_tags(self) -> Result[list[str], OrchestratorError]:
        # TODO: paginate once build repos exceed 100 releases (gh api --paginate --slurp).
        obj = gh_api_json(
            workspace_root=self.workspace_root,
            endpoint=f"repos/{self.repo}/releases?per_page=100",
            policy=self.policy,
            kind="marker_error",
        )
        if isinstance(obj, Err):
            return obj

        raw = as_obj_list(obj.value)
        if raw is None:
            return _marker_error(f"unexpected releases payload: {self.repo}")

        tags: list[str] = []
        for item in raw:
            d = as_str_dict(item)
            if d is None or d.get("draft") is True:
                continue
            tag = get_str(d, "tag_name")
            if tag is not None:
                tags.append(tag)
        return Ok(tags)
