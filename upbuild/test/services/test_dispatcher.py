from __future__ import annotations

import json
import os
import time
import uuid
from collections.abc import Callable
from pathlib import Path

import pytest

from upbuild.core.result import Err, Ok, Result
from upbuild.output.console import MockConsole
from upbuild.platform.process import ProcessError
from upbuild.services import dispatcher as dispatcher_mod
from upbuild.services import retry as retry_mod
from upbuild.services.dispatcher import (
    DispatchLedger,
    dispatch_build,
    download_artifacts,
    find_dispatched_run,
    wait_for_build,
)
from upbuild.services.errors import OrchestratorError
from upbuild.services.model import BuildRequest, WorkflowRun
from upbuild.services.retry import RetryPolicy

_REQUEST = BuildRequest(repository_url="https://github.com/example/project", version_ref="v1.1.0")
_RUN = WorkflowRun(id=42, url="https://github.com/example/builds/actions/runs/42", request_id="r")

Handler = Callable[[list[str]], Result[str, ProcessError]]


def _fail(cmd: list[str], stderr: str, *, returncode: int = 1) -> Err[ProcessError]:
    return Err(ProcessError(tuple(cmd), returncode, "", stderr))


class FakeGh:
    """Routes commands by their first three words to canned handlers."""

    def __init__(self, handlers: dict[str, Handler]) -> None:
        self.handlers = handlers
        self.calls: list[list[str]] = []

    def __call__(
        self,
        cmd: list[str],
        cwd: Path,
        env: dict[str, str] | None = None,
        *,
        timeout: float | None = None,
    ) -> Result[str, ProcessError]:
        del cwd, env, timeout
        self.calls.append(cmd)
        key = " ".join(cmd[:3])
        handler = self.handlers.get(key)
        if handler is None:
            raise AssertionError(f"unexpected command: {cmd}")
        return handler(cmd)

    def commands(self, prefix: str) -> list[list[str]]:
        return [c for c in self.calls if " ".join(c).startswith(prefix)]


@pytest.fixture
def no_sleep(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(retry_mod, "sleep", lambda seconds: None)
    monkeypatch.setattr(dispatcher_mod, "sleep", lambda seconds: None)


def _install(monkeypatch: pytest.MonkeyPatch, fake: FakeGh) -> None:
    monkeypatch.setattr(dispatcher_mod, "run_process", fake)
    monkeypatch.setattr(retry_mod, "run_process", fake)


def _runs_payload(request_id: str, *, run_id: int = 42, branch: str = "main") -> str:
    return json.dumps(
        [
            {
                "databaseId": 7,
                "url": "https://github.com/example/builds/actions/runs/7",
                "event": "workflow_dispatch",
                "headBranch": "main",
                "displayTitle": "build v1.0.0 (upb-other)",
            },
            {
                "databaseId": run_id,
                "url": f"https://github.com/example/builds/actions/runs/{run_id}",
                "event": "workflow_dispatch",
                "headBranch": branch,
                "displayTitle": f"build v1.1.0 ({request_id})",
            },
        ]
    )


class TestDispatchLedger:
    def test_claim_is_exclusive(self, tmp_path: Path) -> None:
        ledger = DispatchLedger(tmp_path, ttl_seconds=60)

        assert ledger.claim("v1.1.0") == Ok(True)
        assert ledger.claim("v1.1.0") == Ok(False)
        assert ledger.claim("v1.2.0") == Ok(True)
        assert ledger.in_flight() == ["v1.1.0", "v1.2.0"]

    def test_release_allows_new_claim(self, tmp_path: Path) -> None:
        ledger = DispatchLedger(tmp_path, ttl_seconds=60)
        ledger.claim("v1.1.0")
        ledger.release("v1.1.0")

        assert ledger.in_flight() == []
        assert ledger.claim("v1.1.0") == Ok(True)

    def test_stale_claim_is_taken_over(self, tmp_path: Path) -> None:
        ledger = DispatchLedger(tmp_path, ttl_seconds=60)
        ledger.claim("main")
        path = ledger.claim_path("main")
        past = time.time() - 3600
        os.utime(path, (past, past))

        assert ledger.claim("main") == Ok(True)

    def test_taken_over_claim_is_not_released_by_old_holder(self, tmp_path: Path) -> None:
        stalled = DispatchLedger(tmp_path, ttl_seconds=60)
        assert stalled.claim("v1.1.0") == Ok(True)
        past = time.time() - 3600
        os.utime(stalled.claim_path("v1.1.0"), (past, past))

        current = DispatchLedger(tmp_path, ttl_seconds=60)
        assert current.claim("v1.1.0") == Ok(True)
        stalled.release("v1.1.0")

        assert current.in_flight() == ["v1.1.0"]
        assert DispatchLedger(tmp_path, ttl_seconds=60).claim("v1.1.0") == Ok(False)

        current.release("v1.1.0")
        assert current.in_flight() == []

    def test_release_without_claim_keeps_file(self, tmp_path: Path) -> None:
        holder = DispatchLedger(tmp_path, ttl_seconds=60)
        holder.claim("v1.1.0")

        DispatchLedger(tmp_path, ttl_seconds=60).release("v1.1.0")

        assert holder.in_flight() == ["v1.1.0"]

    def test_similar_refs_do_not_collide(self, tmp_path: Path) -> None:
        ledger = DispatchLedger(tmp_path, ttl_seconds=60)
        assert ledger.claim_path("feature/a") != ledger.claim_path("feature_a")
        assert ledger.claim("feature/a") == Ok(True)
        assert ledger.claim("feature_a") == Ok(True)

    def test_unwritable_state_dir(self, tmp_path: Path) -> None:
        blocker = tmp_path / "state"
        blocker.write_text("not a directory", encoding="utf-8")
        ledger = DispatchLedger(blocker, ttl_seconds=60)

        result = ledger.claim("v1.1.0")
        assert isinstance(result, Err)
        assert result.error.kind == "state_error"


class TestFindDispatchedRun:
    def test_matches_request_id(self) -> None:
        result = find_dispatched_run(
            payload=_runs_payload("upb-abc"), workflow_ref="main", request_id="upb-abc"
        )
        assert isinstance(result, Ok)
        assert result.value is not None
        assert result.value.id == 42
        assert result.value.request_id == "upb-abc"

    def test_ignores_other_branches(self) -> None:
        result = find_dispatched_run(
            payload=_runs_payload("upb-abc", branch="dev"),
            workflow_ref="main",
            request_id="upb-abc",
        )
        assert result == Ok(None)

    def test_not_yet_visible(self) -> None:
        result = find_dispatched_run(
            payload=_runs_payload("upb-abc"), workflow_ref="main", request_id="upb-zzz"
        )
        assert result == Ok(None)

    def test_invalid_payload(self) -> None:
        result = find_dispatched_run(payload="{oops", workflow_ref="main", request_id="x")
        assert isinstance(result, Err)
        assert result.error.kind == "build_error"


class TestDispatchBuild:
    def _dispatch(
        self, tmp_path: Path, console: MockConsole, *, dry_run: bool = False
    ) -> Result[WorkflowRun, OrchestratorError]:
        return dispatch_build(
            workspace_root=tmp_path,
            repo="example/builds",
            workflow="build.yml",
            workflow_ref="main",
            request=_REQUEST,
            policy=RetryPolicy(attempts=2),
            console=console,
            dry_run=dry_run,
        )

    def test_dispatch_and_resolve_run(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_sleep: None
    ) -> None:
        monkeypatch.setattr(dispatcher_mod, "uuid4", lambda: uuid.UUID(int=0xABC))
        request_id = "upb-000000000000"
        listings = iter(["[]", _runs_payload(request_id)])
        fake = FakeGh(
            {
                "gh workflow run": lambda cmd: Ok(""),
                "gh run list": lambda cmd: Ok(next(listings)),
            }
        )
        _install(monkeypatch, fake)

        result = self._dispatch(tmp_path, MockConsole())

        assert isinstance(result, Ok)
        assert result.value.id == 42
        assert result.value.request_id == request_id

        (run_cmd,) = fake.commands("gh workflow run")
        assert run_cmd[:4] == ["gh", "workflow", "run", "build.yml"]
        assert "repository_url=https://github.com/example/project" in run_cmd
        assert "version_ref=v1.1.0" in run_cmd
        assert f"request_id={request_id}" in run_cmd
        assert len(fake.commands("gh run list")) == 2

    def test_dry_run_calls_nothing(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        fake = FakeGh({})
        _install(monkeypatch, fake)
        console = MockConsole()

        result = self._dispatch(tmp_path, console, dry_run=True)

        assert isinstance(result, Ok)
        assert result.value.url == "(dry-run)"
        assert fake.calls == []
        assert console.find("gh workflow run build.yml")

    def test_dispatch_failure_is_build_error(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_sleep: None
    ) -> None:
        fake = FakeGh(
            {"gh workflow run": lambda cmd: _fail(cmd, "HTTP 422: Workflow does not have trigger")}
        )
        _install(monkeypatch, fake)

        result = self._dispatch(tmp_path, MockConsole())

        assert isinstance(result, Err)
        assert result.error.kind == "build_error"
        assert len(fake.calls) == 1

    def test_dispatch_is_not_retried(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_sleep: None
    ) -> None:
        fake = FakeGh({"gh workflow run": lambda cmd: _fail(cmd, "HTTP 502 Bad Gateway")})
        _install(monkeypatch, fake)

        result = self._dispatch(tmp_path, MockConsole())

        assert isinstance(result, Err)
        assert result.error.kind == "transient_network"
        assert len(fake.calls) == 1

    def test_run_never_appears(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path, no_sleep: None
    ) -> None:
        fake = FakeGh(
            {
                "gh workflow run": lambda cmd: Ok(""),
                "gh run list": lambda cmd: Ok("[]"),
            }
        )
        _install(monkeypatch, fake)

        result = self._dispatch(tmp_path, MockConsole())

        assert isinstance(result, Err)
        assert result.error.kind == "build_error"
        assert "request_id" in (result.error.hint or "")


class TestWaitForBuild:
    def _wait(self, tmp_path: Path) -> Result[str, OrchestratorError]:
        return wait_for_build(
            workspace_root=tmp_path,
            repo="example/builds",
            run=_RUN,
            policy=RetryPolicy(attempts=1),
            watch_timeout=600,
            console=MockConsole(),
        )

    def test_success(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        fake = FakeGh(
            {
                "gh run watch": lambda cmd: Ok(""),
                "gh run view": lambda cmd: Ok('{"status": "completed", "conclusion": "success"}'),
            }
        )
        _install(monkeypatch, fake)

        assert self._wait(tmp_path) == Ok("success")

    def test_failed_build(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        fake = FakeGh(
            {
                "gh run watch": lambda cmd: _fail(cmd, "", returncode=1),
                "gh run view": lambda cmd: Ok('{"status": "completed", "conclusion": "failure"}'),
            }
        )
        _install(monkeypatch, fake)

        result = self._wait(tmp_path)
        assert isinstance(result, Err)
        assert result.error.kind == "build_error"
        assert result.error.message == "build failure"
        assert result.error.hint == _RUN.url

    def test_watch_timeout(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        fake = FakeGh(
            {"gh run watch": lambda cmd: _fail(cmd, "Command timed out after 600s", returncode=-1)}
        )
        _install(monkeypatch, fake)

        result = self._wait(tmp_path)
        assert isinstance(result, Err)
        assert result.error.kind == "build_error"
        assert "did not finish" in result.error.message
        assert fake.commands("gh run view") == []

    def test_still_running(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        fake = FakeGh(
            {
                "gh run watch": lambda cmd: _fail(cmd, "connection reset"),
                "gh run view": lambda cmd: Ok('{"status": "in_progress", "conclusion": ""}'),
            }
        )
        _install(monkeypatch, fake)

        result = self._wait(tmp_path)
        assert isinstance(result, Err)
        assert "not complete" in result.error.message


class TestDownloadArtifacts:
    def test_collects_files(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        dest = tmp_path / "artifacts"

        def download(cmd: list[str]) -> Result[str, ProcessError]:
            out = Path(cmd[cmd.index("--dir") + 1])
            (out / "linux").mkdir(parents=True)
            (out / "tool-linux.tar.gz").write_bytes(b"linux")
            (out / "linux" / "tool.sig").write_bytes(b"sig")
            (out / "tool-macos.zip").write_bytes(b"mac")
            return Ok("")

        fake = FakeGh({"gh run download": download})
        _install(monkeypatch, fake)

        result = download_artifacts(
            workspace_root=tmp_path,
            repo="example/builds",
            run=_RUN,
            artifact="binary",
            dest_dir=dest,
            version="v1.1.0",
            policy=RetryPolicy(attempts=1),
        )

        assert isinstance(result, Ok)
        assert [a.path.relative_to(dest).as_posix() for a in result.value] == [
            "linux/tool.sig",
            "tool-linux.tar.gz",
            "tool-macos.zip",
        ]
        assert all(a.version == "v1.1.0" for a in result.value)
        assert fake.calls[0][fake.calls[0].index("--name") + 1] == "binary"

    def test_empty_artifact(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        _install(monkeypatch, FakeGh({"gh run download": lambda cmd: Ok("")}))

        result = download_artifacts(
            workspace_root=tmp_path,
            repo="example/builds",
            run=_RUN,
            artifact="binary",
            dest_dir=tmp_path / "artifacts",
            version="v1.1.0",
            policy=RetryPolicy(attempts=1),
        )

        assert isinstance(result, Err)
        assert result.error.kind == "build_error"
        assert "empty" in result.error.message

    def test_missing_artifact(self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
        _install(
            monkeypatch,
            FakeGh({"gh run download": lambda cmd: _fail(cmd, "no artifact matches any name")}),
        )

        result = download_artifacts(
            workspace_root=tmp_path,
            repo="example/builds",
            run=_RUN,
            artifact="binary",
            dest_dir=tmp_path / "artifacts",
            version="v1.1.0",
            policy=RetryPolicy(attempts=1),
        )

        assert isinstance(result, Err)
        assert result.error.kind == "build_error"
