from __future__ import annotations

from pathlib import Path

import pytest

from upbuild.core.config import NetworkConfig
from upbuild.core.result import Err, Ok, Result
from upbuild.platform.process import ProcessError
from upbuild.services import retry as retry_mod
from upbuild.services.retry import RetryPolicy, is_transient_error, run_with_retry


def _err(stderr: str, *, returncode: int = 1) -> Err[ProcessError]:
    return Err(ProcessError(("gh", "api", "x"), returncode, "", stderr))


class FakeRun:
    def __init__(self, responses: list[Result[str, ProcessError]]) -> None:
        self.responses = responses
        self.timeouts: list[float | None] = []

    def __call__(
        self,
        cmd: list[str],
        cwd: Path,
        env: dict[str, str] | None = None,
        *,
        timeout: float | None = None,
    ) -> Result[str, ProcessError]:
        del cmd, cwd, env
        self.timeouts.append(timeout)
        return self.responses.pop(0)


@pytest.fixture
def sleeps(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    recorded: list[float] = []
    monkeypatch.setattr(retry_mod, "sleep", recorded.append)
    return recorded


def test_policy_from_config() -> None:
    policy = RetryPolicy.from_config(
        NetworkConfig(
            timeout_seconds=10.0,
            retry_attempts=5,
            retry_delay_seconds=0.5,
            retry_max_delay_seconds=4.0,
        )
    )
    assert policy == RetryPolicy(
        attempts=5, delay_seconds=0.5, max_delay_seconds=4.0, timeout_seconds=10.0
    )


def test_delay_is_exponential_and_capped() -> None:
    policy = RetryPolicy(delay_seconds=1.0, max_delay_seconds=5.0)
    assert [policy.delay_for(i) for i in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]


@pytest.mark.parametrize(
    "stderr",
    [
        "HTTP 503 Service Unavailable",
        "HTTP 429: rate limit exceeded",
        "read: connection reset by peer",
        "net/http: TLS handshake timeout",
        "fatal: unable to access: Could not resolve host: github.com",
        "dial tcp: lookup api.github.com on 127.0.0.53:53: no such host",
    ],
)
def test_transient_errors(stderr: str) -> None:
    assert is_transient_error(_err(stderr).error)


@pytest.mark.parametrize(
    "stderr",
    ["HTTP 404 Not Found", "HTTP 401: Bad credentials", "release not found"],
)
def test_permanent_errors(stderr: str) -> None:
    assert not is_transient_error(_err(stderr).error)


def test_timeout_is_transient() -> None:
    assert is_transient_error(_err("Command timed out after 60s", returncode=-1).error)


def test_retries_until_success(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, sleeps: list[float]
) -> None:
    fake = FakeRun([_err("HTTP 502 Bad Gateway"), _err("HTTP 503"), Ok("done")])
    monkeypatch.setattr(retry_mod, "run_process", fake)
    retried: list[int] = []

    result = run_with_retry(
        ["gh", "api", "x"],
        cwd=tmp_path,
        policy=RetryPolicy(attempts=3, delay_seconds=1.0),
        on_retry=lambda attempt, error: retried.append(attempt),
    )

    assert result == Ok("done")
    assert sleeps == [1.0, 2.0]
    assert retried == [1, 2]


def test_gives_up_after_attempts(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, sleeps: list[float]
) -> None:
    fake = FakeRun([_err("HTTP 503"), _err("HTTP 504 Gateway Timeout")])
    monkeypatch.setattr(retry_mod, "run_process", fake)

    result = run_with_retry(["gh", "api", "x"], cwd=tmp_path, policy=RetryPolicy(attempts=2))

    assert isinstance(result, Err)
    assert "504" in result.error.stderr
    assert len(sleeps) == 1


def test_permanent_failure_is_not_retried(
    monkeypatch: pytest.MonkeyPatch, tmp_path: Path, sleeps: list[float]
) -> None:
    fake = FakeRun([_err("HTTP 404 Not Found"), Ok("unused")])
    monkeypatch.setattr(retry_mod, "run_process", fake)

    result = run_with_retry(["gh", "api", "x"], cwd=tmp_path, policy=RetryPolicy(attempts=3))

    assert isinstance(result, Err)
    assert sleeps == []
    assert len(fake.responses) == 1


def test_timeout_defaults_to_policy(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    fake = FakeRun([Ok(""), Ok("")])
    monkeypatch.setattr(retry_mod, "run_process", fake)

    run_with_retry(["gh"], cwd=tmp_path, policy=RetryPolicy(timeout_seconds=12.0))
    run_with_retry(["gh"], cwd=tmp_path, policy=RetryPolicy(timeout_seconds=12.0), timeout=3.0)

    assert fake.timeouts == [12.0, 3.0]
