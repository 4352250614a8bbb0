"""Typed configuration loading for ``upbuild.toml``.

The file lives at the workspace root. Relative paths inside it (marker file,
state directory) are resolved against that root.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from .result import Err, Ok, Result
from .structured import (
    StrDict,
    as_str_dict,
    get_bool,
    get_float,
    get_int,
    get_str,
    get_str_list,
    get_table,
)

__all__ = [
    "BuildConfig",
    "Config",
    "ConfigError",
    "MarkerBackend",
    "MarkerConfig",
    "NetworkConfig",
    "PublishConfig",
    "StateConfig",
    "UpstreamConfig",
    "ValidationConfig",
    "load_config",
    "CONFIG_FILENAME",
    "CONFIG_ENV_VAR",
]

CONFIG_FILENAME = "upbuild.toml"
CONFIG_ENV_VAR = "UPBUILD_CONFIG"

# -----------------------------------------------------------------------------
# Defaults
# -----------------------------------------------------------------------------

DEFAULT_REF = "main"
DEFAULT_WORKFLOW = "build.yml"
DEFAULT_ARTIFACT = "binary"
DEFAULT_TITLE_TEMPLATE = "{tag}"
DEFAULT_MARKER_PATH = ".upbuild/marker.json"
DEFAULT_STATE_DIR = ".upbuild"

# Remote calls (gh api, git ls-remote, release create/upload)
DEFAULT_TIMEOUT_SECONDS = 60.0
# `gh run watch` blocks for the whole build
DEFAULT_WATCH_TIMEOUT_SECONDS = 4 * 60 * 60.0
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_RETRY_DELAY_SECONDS = 1.0
DEFAULT_RETRY_MAX_DELAY_SECONDS = 30.0
# Longer than the watch timeout so a live invocation never loses its claim.
DEFAULT_CLAIM_TTL_SECONDS = 6 * 60 * 60.0

MarkerBackend = Literal["file", "release"]

_SLUG_RE = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


@dataclass(frozen=True, slots=True)
class ConfigError:
    """Error when config cannot be loaded or parsed."""

    message: str
    path: Path | None = None


@dataclass(frozen=True, slots=True)
class UpstreamConfig:
    """The third-party repository being watched and built."""

    url: str
    default_ref: str = DEFAULT_REF
    include_prereleases: bool = False


@dataclass(frozen=True, slots=True)
class BuildConfig:
    """Repository hosting the build workflow and the published releases."""

    repo: str  # owner/name
    workflow: str = DEFAULT_WORKFLOW
    ref: str = DEFAULT_REF
    artifact: str = DEFAULT_ARTIFACT


@dataclass(frozen=True, slots=True)
class ValidationConfig:
    strict_refs: bool = False
    # Empty means any host.
    allowed_hosts: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class PublishConfig:
    checksums: bool = True
    title_template: str = DEFAULT_TITLE_TEMPLATE


@dataclass(frozen=True, slots=True)
class MarkerConfig:
    backend: MarkerBackend = "file"
    path: str = DEFAULT_MARKER_PATH


@dataclass(frozen=True, slots=True)
class NetworkConfig:
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS
    retry_max_delay_seconds: float = DEFAULT_RETRY_MAX_DELAY_SECONDS
    watch_timeout_seconds: float = DEFAULT_WATCH_TIMEOUT_SECONDS


@dataclass(frozen=True, slots=True)
class StateConfig:
    dir: str = DEFAULT_STATE_DIR
    claim_ttl_seconds: float = DEFAULT_CLAIM_TTL_SECONDS


@dataclass(frozen=True, slots=True)
class Config:
    """Main configuration container."""

    upstream: UpstreamConfig
    build: BuildConfig
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    publish: PublishConfig = field(default_factory=PublishConfig)
    marker: MarkerConfig = field(default_factory=MarkerConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> Config:
        """Create Config from a mapping (parsed TOML).

        Raises:
            ValueError: A required key is missing or a value is out of range.
        """
        upstream: StrDict = get_table(data, "upstream") or {}
        build: StrDict = get_table(data, "build") or {}
        validation: StrDict = get_table(data, "validation") or {}
        publish: StrDict = get_table(data, "publish") or {}
        marker: StrDict = get_table(data, "marker") or {}
        network: StrDict = get_table(data, "network") or {}
        state: StrDict = get_table(data, "state") or {}

        url = get_str(upstream, "url")
        if url is None:
            raise ValueError("missing [upstream] url")

        repo = get_str(build, "repo")
        if repo is None:
            raise ValueError("missing [build] repo")
        if not _SLUG_RE.match(repo):
            raise ValueError(f"[build] repo must be owner/name, got: {repo}")

        backend = get_str(marker, "backend") or "file"
        if backend not in ("file", "release"):
            raise ValueError(f"[marker] backend must be 'file' or 'release', got: {backend}")

        title_template = get_str(publish, "title_template") or DEFAULT_TITLE_TEMPLATE
        if "{tag}" not in title_template:
            raise ValueError("[publish] title_template must contain {tag}")
        try:
            title_template.format(tag="0.0.0")
        except (AttributeError, KeyError, IndexError, ValueError) as e:
            raise ValueError(f"[publish] title_template is not a valid template: {e!r}") from e

        retry_attempts = get_int(network, "retry_attempts")
        if retry_attempts is not None and retry_attempts < 1:
            raise ValueError("[network] retry_attempts must be >= 1")

        include_prereleases = get_bool(upstream, "include_prereleases")
        strict_refs = get_bool(validation, "strict_refs")
        checksums = get_bool(publish, "checksums")

        return cls(
            upstream=UpstreamConfig(
                url=url,
                default_ref=get_str(upstream, "default_ref") or DEFAULT_REF,
                include_prereleases=bool(include_prereleases),
            ),
            build=BuildConfig(
                repo=repo,
                workflow=get_str(build, "workflow") or DEFAULT_WORKFLOW,
                ref=get_str(build, "ref") or DEFAULT_REF,
                artifact=get_str(build, "artifact") or DEFAULT_ARTIFACT,
            ),
            validation=ValidationConfig(
                strict_refs=bool(strict_refs),
                allowed_hosts=tuple(
                    h.lower() for h in (get_str_list(validation, "allowed_hosts") or [])
                ),
            ),
            publish=PublishConfig(
                checksums=True if checksums is None else checksums,
                title_template=title_template,
            ),
            marker=MarkerConfig(
                backend="release" if backend == "release" else "file",
                path=get_str(marker, "path") or DEFAULT_MARKER_PATH,
            ),
            network=NetworkConfig(
                timeout_seconds=get_float(network, "timeout_seconds") or DEFAULT_TIMEOUT_SECONDS,
                retry_attempts=retry_attempts or DEFAULT_RETRY_ATTEMPTS,
                retry_delay_seconds=_float_or(
                    network, "retry_delay_seconds", DEFAULT_RETRY_DELAY_SECONDS
                ),
                retry_max_delay_seconds=_float_or(
                    network, "retry_max_delay_seconds", DEFAULT_RETRY_MAX_DELAY_SECONDS
                ),
                watch_timeout_seconds=get_float(network, "watch_timeout_seconds")
                or DEFAULT_WATCH_TIMEOUT_SECONDS,
            ),
            state=StateConfig(
                dir=get_str(state, "dir") or DEFAULT_STATE_DIR,
                claim_ttl_seconds=get_float(state, "claim_ttl_seconds")
                or DEFAULT_CLAIM_TTL_SECONDS,
            ),
        )

    def state_dir(self, root: Path) -> Path:
        return _under(root, self.state.dir)

    def marker_path(self, root: Path) -> Path:
        return _under(root, self.marker.path)


def _float_or(table: Mapping[str, object], key: str, default: float) -> float:
    # Zero is a legitimate delay, so `or` would be wrong here.
    value = get_float(table, key)
    if value is None:
        return default
    if value < 0:
        raise ValueError(f"[network] {key} must be >= 0")
    return value


def _under(root: Path, rel: str) -> Path:
    p = Path(rel).expanduser()
    if p.is_absolute():
        return p
    return root / p


def _parse_toml(path: Path) -> Result[StrDict, ConfigError]:
    """Parse a TOML file, handling read and parse errors."""
    import tomllib

    try:
        content = path.read_bytes()
        data_obj: object = tomllib.loads(content.decode("utf-8"))
        data = as_str_dict(data_obj)
        if data is None:
            return Err(ConfigError("Config root must be a TOML table", path=path))
        return Ok(data)
    except FileNotFoundError:
        return Err(ConfigError(f"Config file not found: {path}", path=path))
    except PermissionError:
        return Err(ConfigError(f"Permission denied reading: {path}", path=path))
    except tomllib.TOMLDecodeError as e:
        return Err(ConfigError(f"Invalid TOML syntax: {e}", path=path))
    except UnicodeDecodeError as e:
        return Err(ConfigError(f"Error reading config: {e}", path=path))


def load_config(path: Path) -> Result[Config, ConfigError]:
    """Load and parse configuration from a TOML file.

    Args:
        path: Path to upbuild.toml

    Returns:
        Ok(Config) on success, Err(ConfigError) on failure
    """
    result = _parse_toml(path)
    if isinstance(result, Err):
        return result

    try:
        return Ok(Config.from_dict(result.value))
    except (KeyError, TypeError, ValueError) as e:
        return Err(ConfigError(f"Invalid config structure: {e}", path=path))
