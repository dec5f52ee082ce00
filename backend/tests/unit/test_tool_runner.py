"""Tests for the external tool runner.

Spawns the current interpreter as a stand-in tool so the tests need no
LaTeX or Codex install.
"""

import sys

import pytest

from fastchapter.errors import SpawnError
from fastchapter.services.tool_runner import CommandResult, ToolRunner


@pytest.fixture
def runner():
    return ToolRunner(grace_seconds=0.5)


class TestToolRunner:
    @pytest.mark.asyncio
    async def test_captures_stdout_and_stderr(self, runner, tmp_path):
        script = "import sys; print('hello'); print('oops', file=sys.stderr)"
        result = await runner.run(sys.executable, ["-c", script], tmp_path, timeout_seconds=10)

        assert result.ok
        assert result.exit_code == 0
        assert result.signal is None
        assert result.stdout.strip() == "hello"
        assert result.stderr.strip() == "oops"
        assert result.duration_ms >= 0

    @pytest.mark.asyncio
    async def test_reports_non_zero_exit(self, runner, tmp_path):
        result = await runner.run(sys.executable, ["-c", "import sys; sys.exit(3)"], tmp_path, 10)

        assert not result.ok
        assert result.exit_code == 3
        assert not result.timed_out

    @pytest.mark.asyncio
    async def test_runs_in_working_directory(self, runner, tmp_path):
        result = await runner.run(sys.executable, ["-c", "import os; print(os.getcwd())"], tmp_path, 10)
        assert result.stdout.strip() == str(tmp_path.resolve())

    @pytest.mark.asyncio
    async def test_timeout_terminates_process(self, runner, tmp_path):
        result = await runner.run(
            sys.executable, ["-c", "import time; time.sleep(30)"], tmp_path, timeout_seconds=0.3
        )

        assert result.timed_out
        assert not result.ok
        assert result.exit_code == -1
        assert result.signal in ("SIGTERM", "SIGKILL")
        assert result.duration_ms < 10_000

    @pytest.mark.asyncio
    async def test_missing_binary_raises_spawn_error(self, runner, tmp_path):
        with pytest.raises(SpawnError) as exc_info:
            await runner.run("definitely-not-a-real-tool-xyz", ["--version"], tmp_path, 5)
        assert exc_info.value.command == "definitely-not-a-real-tool-xyz"
        assert "not found" in exc_info.value.reason

    @pytest.mark.asyncio
    async def test_missing_working_directory_is_reported(self, runner, tmp_path):
        missing = tmp_path / "gone"

        with pytest.raises(SpawnError) as exc_info:
            await runner.run(sys.executable, ["-c", "pass"], missing, 5)

        assert exc_info.value.command == sys.executable
        assert exc_info.value.reason == f"working directory not found: {missing}"


class TestCommandResult:
    def test_combined_output(self):
        result = CommandResult(exit_code=0, signal=None, stdout="out", stderr="err", duration_ms=1)
        assert result.combined_output == "out\nerr"

    def test_timed_out_is_not_ok(self):
        result = CommandResult(exit_code=0, signal=None, stdout="", stderr="", duration_ms=1, timed_out=True)
        assert not result.ok
