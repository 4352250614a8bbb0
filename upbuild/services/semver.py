"""Semantic-version tags as published by upstream projects.

Tags may carry a ``v`` prefix, a pre-release (``-rc.1``) and build metadata
(``+build.5``). Ordering follows SemVer 2.0 precedence: build metadata is
ignored and a pre-release sorts before its release.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from functools import total_ordering

_NUM = r"(0|[1-9]\d*)"
_IDENT = r"(?:0|[1-9]\d*|\d*[A-Za-z-][0-9A-Za-z-]*)"
_TAG_RE = re.compile(
    rf"^[vV]?{_NUM}\.{_NUM}\.{_NUM}"
    rf"(?:-(?P<pre>{_IDENT}(?:\.{_IDENT})*))?"
    r"(?:\+(?P<build>[0-9A-Za-z-]+(?:\.[0-9A-Za-z-]+)*))?$"
)

PreIdent = tuple[int, int, str]


@total_ordering
@dataclass(frozen=True, slots=True, eq=False)
class Version:
    major: int
    minor: int
    patch: int
    prerelease: tuple[str, ...] = ()
    # The tag exactly as found upstream; not part of precedence.
    tag: str = field(default="")

    @property
    def is_prerelease(self) -> bool:
        return bool(self.prerelease)

    @property
    def _key(self) -> tuple[int, int, int, int, tuple[PreIdent, ...]]:
        # Numeric identifiers sort before alphanumeric ones; a release
        # (no pre-release) sorts after every pre-release of the same core.
        pre: tuple[PreIdent, ...] = tuple(
            (0, int(p), "") if p.isdigit() else (1, 0, p) for p in self.prerelease
        )
        return (self.major, self.minor, self.patch, 0 if self.prerelease else 1, pre)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key == other._key

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key < other._key

    def __hash__(self) -> int:
        return hash(self._key)

    def __str__(self) -> str:
        core = f"{self.major}.{self.minor}.{self.patch}"
        if self.prerelease:
            return f"{core}-{'.'.join(self.prerelease)}"
        return core


def parse_version(tag: str) -> Version | None:
    """Parse a tag; None if it is not semver-shaped."""
    m = _TAG_RE.match(tag.strip())
    if m is None:
        return None
    pre = m.group("pre")
    return Version(
        major=int(m.group(1)),
        minor=int(m.group(2)),
        patch=int(m.group(3)),
        prerelease=tuple(pre.split(".")) if pre else (),
        tag=tag.strip(),
    )


def highest_version(tags: Iterable[str], *, include_prereleases: bool = False) -> Version | None:
    """Highest semver tag, ignoring tags that do not parse."""
    best: Version | None = None
    for tag in tags:
        v = parse_version(tag)
        if v is None:
            continue
        if v.is_prerelease and not include_prereleases:
            continue
        if best is None or v > best:
            best = v
    return best


def is_newer(candidate: str, current: str | None) -> bool:
    """True if ``candidate`` is strictly greater than ``current``.

    An absent or unparseable ``current`` is treated as older than anything.
    An unparseable ``candidate`` is never newer.
    """
    cand = parse_version(candidate)
    if cand is None:
        return False
    if current is None:
        return True
    cur = parse_version(current)
    if cur is None:
        return True
    return cand > cur
