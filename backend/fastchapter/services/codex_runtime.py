"""Codex agent runtime.

Wraps the Codex CLI for Write Book sessions:

- `check_codex_availability` probes `--version`, `--help` and
  `login status` to report whether the CLI is installed and logged in.
- `CodexCliRuntime.start_thread` returns a thread bound to the book
  directory. Each `run_streamed` call spawns one
  `codex exec --experimental-json` turn (resuming the thread after the
  first) and yields its JSON events as typed `ThreadEvent` objects.

Turns run sandboxed to the book directory with network access off and
approvals disabled. `AgentTurn.abort()` stops the subprocess; the event
iterator then raises TurnAbortedError.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import sys
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError

from fastchapter.errors import AgentTurnError, SpawnError, TurnAbortedError
from fastchapter.models import CodexAvailability

from .tool_runner import KILL_GRACE_SECONDS, ToolRunner, drain_stream, spawn, terminate_process

logger = logging.getLogger(__name__)

CODEX_COMMAND = os.environ.get("CODEX_COMMAND", "codex")
TOOL_PROBE_TIMEOUT_SECONDS = float(os.environ.get("TOOL_PROBE_TIMEOUT_SECONDS", "15"))

CODEX_INSTALL_HINT = (
    "Install Codex CLI first (for example: npm i -g @openai/codex) "
    "and authenticate with `codex login`."
)

SANDBOX_MODE = "workspace-write"

# Lines of `--help` output kept in the availability report
HELP_PREVIEW_LINES = 16

_ANSI_COLOR = re.compile(r"\x1b\[[0-9;]*m")
_LOGGED_OUT = re.compile(r"(not\s+logged\s+in|logged\s+out)", re.IGNORECASE)
_STDERR_TAIL_CHARS = 4000


def sanitize_log_line(value: Any) -> str:
    """Strip ANSI color codes and carriage returns."""
    return _ANSI_COLOR.sub("", str(value or "")).replace("\r", "")


# ==============================================================================
# Availability
# ==============================================================================


def codex_command_candidates(command: str = CODEX_COMMAND) -> list[str]:
    if sys.platform == "win32" and not command.lower().endswith((".cmd", ".bat", ".exe")):
        return [command, f"{command}.cmd"]
    return [command]


async def check_codex_availability(
    runner: ToolRunner,
    command: str = CODEX_COMMAND,
    timeout_seconds: float = TOOL_PROBE_TIMEOUT_SECONDS,
) -> CodexAvailability:
    """Probe the agent CLI. Never raises; failures are reported in `message`."""
    checked_at = datetime.now(timezone.utc)

    resolved = None
    version_result = None
    last_error = f"Codex CLI is not installed or not available on PATH. {CODEX_INSTALL_HINT}"
    for candidate in codex_command_candidates(command):
        try:
            result = await runner.run(candidate, ["--version"], None, timeout_seconds)
        except SpawnError as e:
            logger.debug(f"Codex candidate {candidate} unavailable: {e.reason}")
            continue
        if result.ok:
            resolved, version_result = candidate, result
            break
        last_error = (result.stderr or result.stdout or f"{candidate} --version failed.").strip()

    if resolved is None or version_result is None:
        return CodexAvailability(
            checked_at=checked_at,
            installed=False,
            authenticated=False,
            message=last_error,
        )

    help_result = await runner.run(resolved, ["--help"], None, timeout_seconds)
    login_result = await runner.run(resolved, ["login", "status"], None, timeout_seconds)

    login_text = sanitize_log_line(f"{login_result.stdout}\n{login_result.stderr}").strip()
    authenticated = login_result.exit_code == 0 and not _LOGGED_OUT.search(login_text)

    version = sanitize_log_line(version_result.stdout or version_result.stderr).strip() or None
    help_preview = "\n".join(
        sanitize_log_line(help_result.stdout or help_result.stderr).split("\n")[:HELP_PREVIEW_LINES]
    ).strip()

    return CodexAvailability(
        checked_at=checked_at,
        installed=True,
        authenticated=authenticated,
        command=resolved,
        version=version,
        help_preview=help_preview,
        login_status=login_text or "No login status output.",
        message=(
            "Codex is installed and authenticated."
            if authenticated
            else "Codex is installed, but no active login was detected."
        ),
    )


# ==============================================================================
# Events
# ==============================================================================


class EventModel(BaseModel):
    """Base for CLI events. Unknown fields are kept so new CLI versions parse."""
    model_config = ConfigDict(extra="allow")


class TurnUsage(EventModel):
    input_tokens: int = 0
    cached_input_tokens: int = 0
    output_tokens: int = 0


class EventError(EventModel):
    message: str = ""


class FileChange(EventModel):
    kind: str = ""
    path: str = ""


class TodoEntry(EventModel):
    text: str = ""
    completed: bool = False


class ThreadItem(EventModel):
    """One agent item: command run, message, file change, reasoning, etc."""

    id: str = ""
    type: str

    # command_execution
    command: str = ""
    aggregated_output: str = ""
    exit_code: Optional[int] = None
    status: str = ""

    # agent_message, reasoning
    text: str = ""

    # file_change
    changes: list[FileChange] = Field(default_factory=list)

    # mcp_tool_call
    server: str = ""
    tool: str = ""
    error: Optional[EventError] = None

    # web_search
    query: str = ""

    # todo_list
    items: list[TodoEntry] = Field(default_factory=list)

    # error
    message: str = ""


class ThreadEvent(EventModel):
    """One JSON line emitted by `codex exec --experimental-json`."""

    type: str
    thread_id: Optional[str] = None
    usage: Optional[TurnUsage] = None
    error: Optional[EventError] = None
    message: Optional[str] = None
    item: Optional[ThreadItem] = None


def parse_thread_event(line: str) -> Optional[ThreadEvent]:
    """Parse one output line. Non-JSON lines return None."""
    text = line.strip()
    if not text:
        return None
    try:
        return ThreadEvent.model_validate(json.loads(text))
    except (ValueError, PydanticValidationError) as e:
        logger.debug(f"Ignoring unparseable agent output line: {e}")
        return None


# ==============================================================================
# Runtime interface
# ==============================================================================


class AgentTurn(ABC):
    """One streamed agent turn."""

    @abstractmethod
    def events(self) -> AsyncIterator[ThreadEvent]:
        """Yield events until the turn ends.

        Raises:
            TurnAbortedError: abort() was called.
            AgentTurnError: The agent process failed.
        """
        ...

    @abstractmethod
    def abort(self) -> None:
        """Stop the turn. Safe to call more than once or after the turn ended."""
        ...


class AgentThread(ABC):
    """A conversation that keeps context across turns."""

    id: Optional[str] = None

    @abstractmethod
    def run_streamed(self, prompt: str) -> AgentTurn:
        ...


class AgentRuntime(ABC):
    """Factory for agent threads plus the availability probe."""

    @abstractmethod
    async def check_availability(self) -> CodexAvailability:
        ...

    @abstractmethod
    def start_thread(
        self,
        working_directory: Path,
        api_key: Optional[str] = None,
        command: Optional[str] = None,
    ) -> AgentThread:
        ...


# ==============================================================================
# Codex CLI implementation
# ==============================================================================


class CodexCliTurn(AgentTurn):
    """A single `codex exec` subprocess."""

    def __init__(
        self,
        thread: "CodexCliThread",
        prompt: str,
        grace_seconds: float = KILL_GRACE_SECONDS,
    ):
        self._thread = thread
        self._prompt = prompt
        self._grace_seconds = grace_seconds
        self._process: Optional[asyncio.subprocess.Process] = None
        self._aborted = False
        self._terminator: Optional[asyncio.Task] = None

    def abort(self) -> None:
        if self._aborted:
            return
        self._aborted = True
        if self._process is not None and self._process.returncode is None:
            self._terminator = asyncio.create_task(
                terminate_process(self._process, self._grace_seconds),
                name="codex_turn_abort",
            )

    async def events(self) -> AsyncIterator[ThreadEvent]:
        if self._aborted:
            raise TurnAbortedError()

        self._process = await spawn(
            self._thread.command,
            self._thread.build_exec_args(),
            self._thread.working_directory,
            stdin=asyncio.subprocess.PIPE,
            env=self._thread.build_env(),
        )
        process = self._process
        logger.debug(f"Started codex turn (pid {process.pid}, thread {self._thread.id})")

        stderr_chunks: list[str] = []
        stderr_reader = asyncio.create_task(drain_stream(process.stderr, stderr_chunks))

        try:
            if process.stdin is not None:
                try:
                    process.stdin.write(self._prompt.encode("utf-8"))
                    await process.stdin.drain()
                except (BrokenPipeError, ConnectionResetError):
                    logger.warning("Codex process closed stdin before the prompt was written")
                finally:
                    process.stdin.close()

            while True:
                raw = await process.stdout.readline()
                if not raw:
                    break
                event = parse_thread_event(raw.decode("utf-8", errors="replace"))
                if event is None:
                    continue
                if event.type == "thread.started" and event.thread_id:
                    self._thread.id = event.thread_id
                yield event
                if self._aborted:
                    break

            if self._aborted:
                await terminate_process(process, self._grace_seconds)
                raise TurnAbortedError()

            await process.wait()
            await asyncio.wait([stderr_reader], timeout=self._grace_seconds)
            if process.returncode != 0:
                stderr_text = sanitize_log_line("".join(stderr_chunks)).strip()
                tail = stderr_text[-_STDERR_TAIL_CHARS:] if stderr_text else ""
                raise AgentTurnError(
                    f"Codex exited with code {process.returncode}" + (f": {tail}" if tail else ".")
                )
        finally:
            if process.returncode is None:
                await terminate_process(process, self._grace_seconds)
            if not stderr_reader.done():
                stderr_reader.cancel()


class CodexCliThread(AgentThread):
    """Codex thread scoped to one working directory."""

    def __init__(
        self,
        command: str,
        working_directory: Path,
        api_key: Optional[str] = None,
        sandbox_mode: str = SANDBOX_MODE,
        network_access_enabled: bool = False,
    ):
        self.id = None
        self.command = command
        self.working_directory = working_directory
        self.api_key = api_key
        self.sandbox_mode = sandbox_mode
        self.network_access_enabled = network_access_enabled

    def build_exec_args(self) -> list[str]:
        """Arguments for one turn. The prompt is written to stdin."""
        args = [
            "exec",
            "--experimental-json",
            "--sandbox", self.sandbox_mode,
            "--cd", str(self.working_directory),
            "--skip-git-repo-check",
            "--config", f"sandbox_workspace_write.network_access={str(self.network_access_enabled).lower()}",
            "--config", 'approval_policy="never"',
        ]
        if self.id:
            args.extend(["resume", self.id])
        return args

    def build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self.api_key:
            env["CODEX_API_KEY"] = self.api_key
        return env

    def run_streamed(self, prompt: str) -> AgentTurn:
        return CodexCliTurn(self, prompt)


class CodexCliRuntime(AgentRuntime):
    """Agent runtime backed by the installed Codex CLI."""

    def __init__(self, runner: ToolRunner, command: str = CODEX_COMMAND):
        self._runner = runner
        self._command = command

    async def check_availability(self) -> CodexAvailability:
        return await check_codex_availability(self._runner, self._command)

    def start_thread(
        self,
        working_directory: Path,
        api_key: Optional[str] = None,
        command: Optional[str] = None,
    ) -> AgentThread:
        return CodexCliThread(command or self._command, working_directory, api_key=api_key)
