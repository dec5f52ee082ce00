"""Test doubles for the compiler runner, transcription backend and agent runtime."""

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

from fastchapter.errors import SpawnError, TurnAbortedError
from fastchapter.models import CodexAvailability
from fastchapter.services.codex_runtime import AgentRuntime, AgentThread, AgentTurn, ThreadEvent
from fastchapter.services.tool_runner import CommandResult
from fastchapter.services.transcription_client import TranscriptionProvider


def ok_result(stdout: str = "", stderr: str = "", exit_code: int = 0, timed_out: bool = False) -> CommandResult:
    return CommandResult(
        exit_code=exit_code,
        signal=None,
        stdout=stdout,
        stderr=stderr,
        duration_ms=5,
        timed_out=timed_out,
    )


class FakeToolRunner:
    """ToolRunner stand-in. `handler(command, args, cwd)` returns a CommandResult.

    Commands listed in `missing` raise SpawnError like an absent binary.
    """

    def __init__(
        self,
        handler: Optional[Callable[[str, list[str], Optional[Path]], CommandResult]] = None,
        missing: Sequence[str] = (),
        delay: float = 0.0,
    ):
        self.handler = handler
        self.missing = set(missing)
        self.delay = delay
        self.calls: list[tuple[str, list[str]]] = []

    async def run(self, command, args, cwd, timeout_seconds) -> CommandResult:
        self.calls.append((command, list(args)))
        if command in self.missing:
            raise SpawnError(command, f"{command}: not found")
        if self.delay and list(args) != ["--version"]:
            await asyncio.sleep(self.delay)
        if self.handler is None:
            return ok_result()
        return self.handler(command, list(args), Path(cwd) if cwd else None)

    def compile_calls(self, command: str) -> list[list[str]]:
        """Calls for `command` other than the `--version` probe."""
        return [args for cmd, args in self.calls if cmd == command and args != ["--version"]]


def latex_handler(fail: bool = False, produce_pdf: bool = True, log: str = "Output written on main.pdf"):
    """Compiler fake that writes the PDF into the -outdir/-output-directory."""

    def handler(command: str, args: list[str], cwd: Optional[Path]) -> CommandResult:
        if args == ["--version"]:
            return ok_result(stdout=f"{command} 4.80")
        if fail:
            return ok_result(stdout="! Undefined control sequence.", exit_code=1)
        out_dir = None
        for arg in args:
            if arg.startswith("-outdir=") or arg.startswith("-output-directory="):
                out_dir = Path(arg.split("=", 1)[1])
        if produce_pdf and out_dir is not None:
            out_dir.mkdir(parents=True, exist_ok=True)
            (out_dir / f"{Path(args[-1]).stem}.pdf").write_bytes(b"%PDF-1.5 fake")
        return ok_result(stdout=log)

    return handler


class FakeTranscriptionProvider(TranscriptionProvider):
    """Scripted transcription backend. Set `error` to make calls fail."""

    def __init__(self, text: str = "Hello from the recording.", error: Optional[Exception] = None):
        self.text = text
        self.error = error
        self.calls: list[dict[str, Any]] = []
        self.gate: Optional[asyncio.Event] = None
        self.checked_keys: list[str] = []
        self.key_error: Optional[Exception] = None

    @property
    def name(self) -> str:
        return "fake"

    @property
    def model(self) -> str:
        return "gpt-4o-transcribe"

    async def transcribe(self, api_key, audio_path, mime_type, prompt=None, language=None) -> str:
        self.calls.append({
            "api_key": api_key,
            "audio_path": audio_path,
            "mime_type": mime_type,
            "prompt": prompt,
        })
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.text

    async def check_api_key(self, api_key: str) -> None:
        self.checked_keys.append(api_key)
        if self.key_error is not None:
            raise self.key_error


class FakeTurn(AgentTurn):
    """Yields scripted events. With `block=True` it waits until aborted."""

    def __init__(self, thread: "FakeThread", prompt: str, events: list[dict], block: bool = False):
        self.thread = thread
        self.prompt = prompt
        self.scripted = events
        self.block = block
        self.aborted = False
        self._abort_event = asyncio.Event()

    def abort(self) -> None:
        self.aborted = True
        self._abort_event.set()

    async def events(self):
        for raw in self.scripted:
            if self.aborted:
                raise TurnAbortedError()
            event = ThreadEvent.model_validate(raw)
            if event.type == "thread.started":
                self.thread.id = event.thread_id
            yield event
            await asyncio.sleep(0)
        if self.block:
            self.thread.runtime.blocked.set()
            await self._abort_event.wait()
        if self.aborted:
            raise TurnAbortedError()


class FakeThread(AgentThread):
    def __init__(self, runtime: "FakeAgentRuntime", working_directory: Path, api_key: Optional[str]):
        self.id = None
        self.runtime = runtime
        self.working_directory = working_directory
        self.api_key = api_key

    def run_streamed(self, prompt: str) -> AgentTurn:
        turn_number = len(self.runtime.turns)
        turn = self.runtime.turn_class(
            self,
            prompt,
            self.runtime.script_for(turn_number),
            block=turn_number in self.runtime.block_on_turns,
        )
        self.runtime.turns.append(turn)
        return turn


class FakeAgentRuntime(AgentRuntime):
    """Agent runtime fake recording prompts and scripting events per turn."""

    def __init__(
        self,
        installed: bool = True,
        authenticated: bool = True,
        scripts: Optional[dict[int, list[dict]]] = None,
        block_on_turns: Sequence[int] = (),
    ):
        self.installed = installed
        self.authenticated = authenticated
        self.scripts = scripts or {}
        self.block_on_turns = set(block_on_turns)
        self.turn_class = FakeTurn
        self.turns: list[FakeTurn] = []
        self.threads: list[FakeThread] = []
        self.blocked = asyncio.Event()

    def script_for(self, turn_number: int) -> list[dict]:
        if turn_number in self.scripts:
            return self.scripts[turn_number]
        events = [
            {"type": "turn.started"},
            {
                "type": "item.completed",
                "item": {"id": f"msg-{turn_number}", "type": "agent_message", "text": f"Done {turn_number}."},
            },
            {
                "type": "turn.completed",
                "usage": {"input_tokens": 10, "cached_input_tokens": 2, "output_tokens": 5},
            },
        ]
        if turn_number == 0:
            events.insert(0, {"type": "thread.started", "thread_id": "thread-abc"})
        return events

    async def check_availability(self) -> CodexAvailability:
        return CodexAvailability(
            checked_at=datetime.now(timezone.utc),
            installed=self.installed,
            authenticated=self.authenticated,
            command="codex" if self.installed else None,
            version="codex-cli 0.50.0" if self.installed else None,
            login_status="Logged in using ChatGPT" if self.authenticated else "Not logged in",
            message=(
                "Codex is installed and authenticated."
                if self.installed
                else "Codex CLI is not installed or not available on PATH."
            ),
        )

    def start_thread(self, working_directory, api_key=None, command=None) -> AgentThread:
        thread = FakeThread(self, working_directory, api_key)
        self.threads.append(thread)
        return thread


async def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    """Poll until predicate() is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(0.01)
