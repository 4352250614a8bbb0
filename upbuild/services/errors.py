from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

ErrorKind = Literal[
    "input_error",
    "transient_network",
    "build_error",
    "publish_conflict",
    "publish_error",
    "publish_partial_failure",
    "marker_error",
    "state_error",
    "gh_missing",
    "gh_auth_required",
    "config_error",
]


@dataclass(frozen=True, slots=True)
class OrchestratorError:
    """Failure payload shared by every component.

    ``hint`` carries the remote's own message (gh/git stderr) or a
    remediation step for the operator.
    """

    kind: ErrorKind
    message: str
    hint: str | None = None

    def pretty(self) -> str:
        if self.hint:
            return f"{self.message} (hint: {self.hint})"
        return self.message

    @property
    def retryable(self) -> bool:
        return self.kind == "transient_network"
