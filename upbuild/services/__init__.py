"""Orchestration services.

Each component (watcher, validator, dispatcher, publisher, marker) is a set
of plain functions returning ``Result``; ``orchestrator`` wires them through
the lifecycle for one invocation.
"""

from upbuild.services.errors import ErrorKind, OrchestratorError
from upbuild.services.model import BuildArtifact, BuildRequest, Outcome, Release, WorkflowRun
from upbuild.services.orchestrator import (
    InvocationReport,
    OrchestratorContext,
    run_build,
    run_publish,
    run_tick,
)

__all__ = [
    # Errors
    "ErrorKind",
    "OrchestratorError",
    # Model
    "BuildArtifact",
    "BuildRequest",
    "Outcome",
    "Release",
    "WorkflowRun",
    # Entry points
    "InvocationReport",
    "OrchestratorContext",
    "run_build",
    "run_publish",
    "run_tick",
]
