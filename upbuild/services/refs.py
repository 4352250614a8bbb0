from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from upbuild.core.result import Err, Ok, Result
from upbuild.services.errors import OrchestratorError
from upbuild.services.gh import classify_process_error
from upbuild.services.retry import RetryPolicy, run_with_retry

_HEADS = "refs/heads/"
_TAGS = "refs/tags/"


@dataclass(frozen=True, slots=True)
class RemoteRefs:
    """Branch and tag names advertised by a remote."""

    branches: frozenset[str]
    tags: frozenset[str]

    def has_branch(self, ref: str) -> bool:
        return _strip(ref, _HEADS) in self.branches

    def has_tag(self, ref: str) -> bool:
        return _strip(ref, _TAGS) in self.tags

    def contains(self, ref: str) -> bool:
        if ref.startswith(_HEADS):
            return self.has_branch(ref)
        if ref.startswith(_TAGS):
            return self.has_tag(ref)
        return ref in self.branches or ref in self.tags


def _strip(ref: str, prefix: str) -> str:
    return ref[len(prefix) :] if ref.startswith(prefix) else ref


def parse_ls_remote(output: str) -> RemoteRefs:
    """Parse ``git ls-remote`` output (``<sha>\\t<refname>`` per line).

    Annotated tags appear twice, once peeled (``^{}``); both collapse to one
    tag name. Other ref namespaces (pull requests, notes) are ignored.
    """
    branches: set[str] = set()
    tags: set[str] = set()
    for line in output.splitlines():
        parts = line.strip().split("\t")
        if len(parts) != 2:
            continue
        name = parts[1].strip()
        if name.startswith(_HEADS):
            branches.add(name[len(_HEADS) :])
        elif name.startswith(_TAGS):
            tag = name[len(_TAGS) :]
            if tag.endswith("^{}"):
                tag = tag[:-3]
            if tag:
                tags.add(tag)
    return RemoteRefs(branches=frozenset(branches), tags=frozenset(tags))


def list_remote_refs(
    *,
    workspace_root: Path,
    url: str,
    policy: RetryPolicy,
    tags_only: bool = False,
) -> Result[RemoteRefs, OrchestratorError]:
    """List a remote's branches and tags without cloning it."""
    cmd = ["git", "ls-remote", "--tags", url]
    if not tags_only:
        cmd.insert(2, "--heads")
    env = dict(os.environ)
    # Fail instead of prompting for credentials on private/missing repos.
    env["GIT_TERMINAL_PROMPT"] = "0"
    result = run_with_retry(cmd, cwd=workspace_root, policy=policy, env=env)
    if isinstance(result, Err):
        return Err(
            classify_process_error(
                result.error,
                kind="input_error",
                message=f"cannot list refs of {url}",
                hint="Check the repository URL and that it is reachable.",
            )
        )
    return Ok(parse_ls_remote(result.value))
