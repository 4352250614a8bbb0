"""BuildRequest lifecycle.

    pending -> validating -> dispatched -> build_succeeded -> published
                   |              |               |
                   |              v               v
                   |         build_failed    publish_failed
                   +-> rejected
                   +-> duplicate

Terminal states are never left automatically; a failed build or publish is
re-triggered by an operator or by the next scheduled tick.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from typing import Literal

from upbuild.services.errors import OrchestratorError
from upbuild.services.model import BuildArtifact, BuildRequest, Release, WorkflowRun

BuildState = Literal[
    "pending",
    "validating",
    "rejected",
    "duplicate",
    "dispatched",
    "build_succeeded",
    "build_failed",
    "published",
    "publish_failed",
]

TRANSITIONS: Mapping[BuildState, frozenset[BuildState]] = {
    "pending": frozenset({"validating"}),
    "validating": frozenset({"dispatched", "rejected", "duplicate", "build_failed"}),
    "dispatched": frozenset({"build_succeeded", "build_failed"}),
    "build_succeeded": frozenset({"published", "publish_failed"}),
    "rejected": frozenset(),
    "duplicate": frozenset(),
    "build_failed": frozenset(),
    "published": frozenset(),
    "publish_failed": frozenset(),
}

TERMINAL_STATES: frozenset[BuildState] = frozenset(s for s, nxt in TRANSITIONS.items() if not nxt)


@dataclass(frozen=True, slots=True)
class BuildRun:
    """Everything known about one BuildRequest as it moves through the lifecycle."""

    repository_url: str
    version_ref: str
    state: BuildState = "pending"
    request: BuildRequest | None = None
    run: WorkflowRun | None = None
    artifacts: tuple[BuildArtifact, ...] = ()
    release: Release | None = None
    already_published: bool = False
    error: OrchestratorError | None = None
    history: tuple[BuildState, ...] = field(default=("pending",))

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to(self, state: BuildState, **changes: object) -> BuildRun:
        """Move to ``state``, applying field ``changes``.

        Raises:
            ValueError: ``state`` is not reachable from the current state.
        """
        if state not in TRANSITIONS[self.state]:
            raise ValueError(f"invalid lifecycle transition: {self.state} -> {state}")
        history = (*self.history, state)
        return replace(self, state=state, history=history, **changes)  # type: ignore[arg-type]

    def fail(self, state: BuildState, error: OrchestratorError) -> BuildRun:
        return self.to(state, error=error)


StepHandler = Callable[[BuildRun], BuildRun]
Observer = Callable[[BuildRun], None]


def run_lifecycle(
    *,
    initial: BuildRun,
    handlers: Mapping[BuildState, StepHandler],
    observe: Observer | None = None,
    stop_at: frozenset[BuildState] = frozenset(),
) -> BuildRun:
    """Drive ``initial`` until it reaches a terminal state.

    Each handler receives the run in its state and returns it in the next
    one (via ``BuildRun.to``). ``observe`` sees every new state. Runs stop
    early in any state listed in ``stop_at`` (dry runs stop after dispatch).

    Raises:
        ValueError: No handler is registered for a non-terminal state, or a
            handler returned without advancing.
    """
    current = initial
    while not current.is_terminal and current.state not in stop_at:
        handler = handlers.get(current.state)
        if handler is None:
            raise ValueError(f"no handler for lifecycle state: {current.state}")

        nxt = handler(current)
        if nxt.state == current.state:
            raise ValueError(f"lifecycle step did not advance from {current.state}")

        current = nxt
        if observe is not None:
            observe(current)

    return current
