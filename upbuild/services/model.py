from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Literal


Outcome = Literal[
    "skipped-no-new-version",
    "dispatched",
    "build-failed",
    "published",
    "publish-failed",
    "validation-rejected",
]

PublishStatus = Literal["created", "completed", "already-exists"]


@dataclass(frozen=True, slots=True)
class BuildRequest:
    """A validated instruction to build ``version_ref`` of ``repository_url``."""

    repository_url: str
    version_ref: str


@dataclass(frozen=True, slots=True)
class BuildArtifact:
    """One file produced by the external build, labelled with its version."""

    path: Path
    version: str

    @property
    def name(self) -> str:
        return self.path.name


@dataclass(frozen=True, slots=True)
class Release:
    tag: str
    artifacts: tuple[str, ...]  # asset names, in upload order
    url: str | None = None


@dataclass(frozen=True, slots=True)
class WorkflowRun:
    id: int
    url: str
    request_id: str
