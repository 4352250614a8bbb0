"""Tests for upbuild.platform.process module."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

from upbuild.core.result import Err, Ok
from upbuild.platform.process import ProcessError, run


class TestProcessError:
    def test_str_short_command(self) -> None:
        error = ProcessError(
            command=("gh", "auth", "status"),
            returncode=1,
            stdout="",
            stderr="not logged in",
        )
        assert str(error) == "gh auth status failed (exit 1)"

    def test_str_long_command_truncated(self) -> None:
        error = ProcessError(
            command=("gh", "release", "create", "v1.0.0", "--repo", "a/b"),
            returncode=1,
            stdout="",
            stderr="error",
        )
        assert str(error) == "gh release create ... failed (exit 1)"

    def test_timed_out(self) -> None:
        assert ProcessError(("gh",), -1, "", "Command timed out after 5s").timed_out
        assert not ProcessError(("gh",), 1, "", "Command timed out after 5s").timed_out
        assert not ProcessError(("gh",), -1, "", "No such file or directory").timed_out

    def test_frozen(self) -> None:
        error = ProcessError(("cmd",), 1, "", "")
        with pytest.raises(AttributeError):
            error.returncode = 2  # type: ignore[misc]


class TestRun:
    def test_success_returns_stdout(self, tmp_path: Path) -> None:
        result = run([sys.executable, "-c", "print('hello')"], cwd=tmp_path)

        assert isinstance(result, Ok)
        assert "hello" in result.value

    def test_failure_returns_error(self, tmp_path: Path) -> None:
        result = run(
            [sys.executable, "-c", "import sys; sys.stderr.write('nope'); sys.exit(3)"],
            cwd=tmp_path,
        )

        assert isinstance(result, Err)
        assert result.error.returncode == 3
        assert "nope" in result.error.stderr

    def test_env_is_passed(self, tmp_path: Path) -> None:
        result = run(
            [sys.executable, "-c", "import os; print(os.environ['UPBUILD_TEST_VAR'])"],
            cwd=tmp_path,
            env={"UPBUILD_TEST_VAR": "42", "PATH": ""},
        )

        assert isinstance(result, Ok)
        assert result.value.strip() == "42"

    def test_timeout(self, tmp_path: Path) -> None:
        result = run(
            [sys.executable, "-c", "import time; time.sleep(5)"],
            cwd=tmp_path,
            timeout=0.2,
        )

        assert isinstance(result, Err)
        assert result.error.timed_out

    def test_missing_executable(self, tmp_path: Path) -> None:
        result = run(["upbuild-definitely-not-installed"], cwd=tmp_path)

        assert isinstance(result, Err)
        assert result.error.returncode == -1
