"""Bounded retries for remote reads.

Only transient transport failures are retried. A 404, an auth failure or a
validation problem fails on the first attempt.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from time import sleep

from upbuild.core.config import NetworkConfig
from upbuild.core.result import Err, Ok, Result
from upbuild.platform.process import ProcessError
from upbuild.platform.process import run as run_process

_TRANSIENT_MARKERS = (
    "timed out",
    "timeout",
    "connection reset",
    "connection refused",
    "connection timed out",
    "temporarily unavailable",
    "service unavailable",
    "bad gateway",
    "gateway timeout",
    "tls handshake timeout",
    "network is unreachable",
    "could not resolve host",
    "no such host",
    "remote end hung up unexpectedly",
    "early eof",
    "http 429",
    "http 500",
    "http 502",
    "http 503",
    "http 504",
    "rate limit",
)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    attempts: int = 3
    delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    timeout_seconds: float = 60.0

    @classmethod
    def from_config(cls, network: NetworkConfig) -> RetryPolicy:
        return cls(
            attempts=network.retry_attempts,
            delay_seconds=network.retry_delay_seconds,
            max_delay_seconds=network.retry_max_delay_seconds,
            timeout_seconds=network.timeout_seconds,
        )

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt + 1`` (exponential, capped)."""
        return min(self.delay_seconds * (2**attempt), self.max_delay_seconds)


def is_transient_error(error: ProcessError) -> bool:
    if error.timed_out:
        return True
    text = f"{error.stderr}\n{error.stdout}".lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)


def run_with_retry(
    cmd: list[str],
    *,
    cwd: Path,
    policy: RetryPolicy,
    timeout: float | None = None,
    env: dict[str, str] | None = None,
    on_retry: Callable[[int, ProcessError], None] | None = None,
) -> Result[str, ProcessError]:
    """Run ``cmd``, retrying transient failures up to ``policy.attempts`` times.

    The last error is returned once attempts run out or a non-transient
    failure is seen. ``on_retry`` is told about each failed attempt that will
    be retried.
    """
    attempts = max(1, policy.attempts)
    effective_timeout = policy.timeout_seconds if timeout is None else timeout

    last: Err[ProcessError] | None = None
    for attempt in range(attempts):
        result = run_process(cmd, cwd, env, timeout=effective_timeout)
        if isinstance(result, Ok):
            return result

        last = result
        if attempt < attempts - 1 and is_transient_error(result.error):
            if on_retry is not None:
                on_retry(attempt + 1, result.error)
            sleep(policy.delay_for(attempt))
            continue
        return result

    assert last is not None
    return last
