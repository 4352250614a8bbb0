"""Reject malformed build input before anything is dispatched.

Repository URLs must be plain HTTPS clone URLs (``https://<host>/<owner>/<repo>``
with an optional ``.git``). Refs are checked for shape locally and then for
existence with a single ``git ls-remote``. A ref that does not exist falls back
to the configured default ref with a warning unless the strict policy is on.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from upbuild.core.result import Err, Ok, Result
from upbuild.output.console import ConsoleProtocol
from upbuild.services.errors import OrchestratorError
from upbuild.services.model import BuildRequest
from upbuild.services.refs import RemoteRefs, list_remote_refs
from upbuild.services.retry import RetryPolicy

_LABEL = r"[A-Za-z0-9](?:[A-Za-z0-9-]*[A-Za-z0-9])?"
_URL_RE = re.compile(
    rf"^https://(?P<host>{_LABEL}(?:\.{_LABEL})*)(?::(?P<port>\d{{1,5}}))?"
    r"/(?P<owner>[A-Za-z0-9_.-]+)/(?P<repo>[A-Za-z0-9_.-]+)$"
)
_REF_FORBIDDEN = re.compile(r"[\x00-\x20\x7f~^:?*\[\\]")


@dataclass(frozen=True, slots=True)
class RepositoryURL:
    url: str
    host: str
    owner: str
    name: str

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.name}"


@dataclass(frozen=True, slots=True)
class RefResolution:
    requested: str
    resolved: str
    fell_back: bool


@dataclass(frozen=True, slots=True)
class ValidatedRequest:
    request: BuildRequest
    resolution: RefResolution


def _input_error(message: str, hint: str | None = None) -> Err[OrchestratorError]:
    return Err(OrchestratorError(kind="input_error", message=message, hint=hint))


def parse_repository_url(
    url: str, *, allowed_hosts: tuple[str, ...] = ()
) -> Result[RepositoryURL, OrchestratorError]:
    raw = url.strip()
    if not raw:
        return _input_error("repository URL is empty")

    m = _URL_RE.match(raw)
    if m is None:
        return _input_error(
            f"invalid repository URL: {raw}",
            hint="Expected https://<host>/<owner>/<repo> or https://<host>/<owner>/<repo>.git",
        )

    host = m.group("host").lower()
    owner = m.group("owner")
    name = m.group("repo")
    if name.endswith(".git"):
        name = name[: -len(".git")]

    for part in (owner, name):
        if part in ("", ".", ".."):
            return _input_error(f"invalid repository path in URL: {raw}")

    if allowed_hosts and host not in allowed_hosts:
        return _input_error(
            f"repository host not allowed: {host}",
            hint="Allowed hosts: " + ", ".join(allowed_hosts),
        )

    return Ok(RepositoryURL(url=raw, host=host, owner=owner, name=name))


def check_ref_format(ref: str) -> Result[str, OrchestratorError]:
    """Local shape check mirroring the rules of ``git check-ref-format``."""
    r = ref.strip()
    if not r:
        return _input_error("ref is empty")
    if r.startswith("-"):
        return _input_error(f"invalid ref (leading '-'): {r}")
    if r == "@" or "@{" in r:
        return _input_error(f"invalid ref: {r}")
    if ".." in r or "//" in r:
        return _input_error(f"invalid ref: {r}")
    if _REF_FORBIDDEN.search(r):
        return _input_error(f"invalid ref (forbidden character): {r}")
    if r.endswith((".", "/", ".lock")) or r.startswith("/"):
        return _input_error(f"invalid ref: {r}")
    if any(part.startswith(".") for part in r.split("/")):
        return _input_error(f"invalid ref: {r}")
    return Ok(r)


def resolve_version_ref(
    *,
    refs: RemoteRefs,
    requested: str,
    default_ref: str,
    strict: bool,
) -> Result[RefResolution, OrchestratorError]:
    if refs.contains(requested):
        return Ok(RefResolution(requested=requested, resolved=requested, fell_back=False))

    if strict:
        return _input_error(
            f"ref not found: {requested}",
            hint="No branch or tag with that name exists on the repository.",
        )

    if not refs.contains(default_ref):
        return _input_error(
            f"ref not found: {requested} (default ref {default_ref} is missing too)",
        )

    return Ok(RefResolution(requested=requested, resolved=default_ref, fell_back=True))


def validate_build_request(
    *,
    workspace_root: Path,
    repository_url: str,
    version_ref: str,
    default_ref: str,
    strict: bool,
    allowed_hosts: tuple[str, ...],
    policy: RetryPolicy,
    console: ConsoleProtocol,
) -> Result[ValidatedRequest, OrchestratorError]:
    """Turn raw trigger input into a BuildRequest.

    Transient failures while listing refs come back as ``transient_network``;
    everything else that stops validation is ``input_error``.
    """
    parsed = parse_repository_url(repository_url, allowed_hosts=allowed_hosts)
    if isinstance(parsed, Err):
        return parsed

    ref = check_ref_format(version_ref)
    if isinstance(ref, Err):
        return ref

    refs = list_remote_refs(workspace_root=workspace_root, url=parsed.value.url, policy=policy)
    if isinstance(refs, Err):
        return refs

    resolution = resolve_version_ref(
        refs=refs.value,
        requested=ref.value,
        default_ref=default_ref,
        strict=strict,
    )
    if isinstance(resolution, Err):
        return resolution

    if resolution.value.fell_back:
        console.warning(
            f"ref '{resolution.value.requested}' not found on {parsed.value.slug}; "
            f"using default ref '{resolution.value.resolved}'"
        )

    return Ok(
        ValidatedRequest(
            request=BuildRequest(
                repository_url=parsed.value.url,
                version_ref=resolution.value.resolved,
            ),
            resolution=resolution.value,
        )
    )
