"""Subprocess runner for external tools (LaTeX compilers, the Codex CLI).

Spawns the executable with stdout/stderr captured as text, buffers output
as it streams in, and resolves once the process exits. A process that
outlives its timeout gets SIGTERM, then SIGKILL after a short grace
period.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

from fastchapter.errors import SpawnError

logger = logging.getLogger(__name__)

# Delay between SIGTERM and SIGKILL
KILL_GRACE_SECONDS = 1.2

_READ_CHUNK_BYTES = 4096

# Longest single line readline() accepts; agent JSON events can be large
_STREAM_LIMIT_BYTES = 16 * 1024 * 1024


@dataclass(slots=True)
class CommandResult:
    """Outcome of one external tool invocation."""

    exit_code: int
    signal: Optional[str]
    stdout: str
    stderr: str
    duration_ms: int
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def combined_output(self) -> str:
        return f"{self.stdout}\n{self.stderr}"


async def drain_stream(stream: Optional[asyncio.StreamReader], chunks: list[str]) -> None:
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await stream.read(_READ_CHUNK_BYTES)
        if not data:
            break
        chunks.append(decoder.decode(data))
    chunks.append(decoder.decode(b"", final=True))


async def terminate_process(
    process: asyncio.subprocess.Process,
    grace_seconds: float = KILL_GRACE_SECONDS,
) -> None:
    """SIGTERM, wait up to grace_seconds, then SIGKILL."""
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
        return
    except asyncio.TimeoutError:
        pass
    try:
        process.kill()
    except ProcessLookupError:
        return
    await process.wait()


async def spawn(
    command: str,
    args: Sequence[str],
    cwd: Path | str | None,
    *,
    stdin: Optional[int] = asyncio.subprocess.DEVNULL,
    env: Optional[Mapping[str, str]] = None,
    limit: int = _STREAM_LIMIT_BYTES,
) -> asyncio.subprocess.Process:
    """Start a process with piped stdout/stderr.

    Raises:
        SpawnError: Binary missing, not executable, or bad working directory.
    """
    if cwd and not Path(cwd).is_dir():
        raise SpawnError(command, f"working directory not found: {cwd}")

    try:
        return await asyncio.create_subprocess_exec(
            command,
            *args,
            cwd=str(cwd) if cwd else None,
            stdin=stdin,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=dict(env) if env is not None else None,
            limit=limit,
        )
    except FileNotFoundError as e:
        raise SpawnError(command, f"{command}: not found") from e
    except OSError as e:
        raise SpawnError(command, str(e)) from e


class ToolRunner:
    """Run external executables with a hard wall-clock timeout."""

    def __init__(self, grace_seconds: float = KILL_GRACE_SECONDS):
        self._grace_seconds = grace_seconds

    async def run(
        self,
        command: str,
        args: Sequence[str],
        cwd: Path | str | None,
        timeout_seconds: float,
    ) -> CommandResult:
        """Run `command args...` in `cwd` and capture its output.

        Args:
            command: Executable name or path.
            args: Command-line arguments.
            cwd: Working directory.
            timeout_seconds: Wall-clock limit before escalating signals.

        Returns:
            CommandResult with exit code, terminating signal and captured text.

        Raises:
            SpawnError: If the process could not be started.
        """
        started = time.monotonic()
        process = await spawn(command, args, cwd)

        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []
        readers = [
            asyncio.create_task(drain_stream(process.stdout, stdout_chunks)),
            asyncio.create_task(drain_stream(process.stderr, stderr_chunks)),
        ]

        timed_out = False
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(f"{command} exceeded {timeout_seconds}s, terminating (pid {process.pid})")
            await terminate_process(process, self._grace_seconds)
        except asyncio.CancelledError:
            await terminate_process(process, self._grace_seconds)
            for reader in readers:
                reader.cancel()
            raise

        # Grandchildren may keep the pipes open after the child died
        _, pending = await asyncio.wait(readers, timeout=self._grace_seconds)
        for reader in pending:
            reader.cancel()

        returncode = process.returncode if process.returncode is not None else -1
        signal_name = None
        if returncode < 0:
            try:
                signal_name = signal.Signals(-returncode).name
            except ValueError:
                signal_name = str(-returncode)
            returncode = -1

        return CommandResult(
            exit_code=returncode,
            signal=signal_name,
            stdout="".join(stdout_chunks),
            stderr="".join(stderr_chunks),
            duration_ms=int((time.monotonic() - started) * 1000),
            timed_out=timed_out,
        )
