"""Write Book session controller.

A session runs one agent turn per chapter (ascending index) in a single
thread, then one verification turn for main.tex. At most one session is
active per book; starting again while one is queued or running returns
the existing session.

Progress is exposed as an append-only log. Each line gets a monotonically
increasing index; the log keeps only the newest lines, and callers page
through it with `after_log_index`.

Cancellation is cooperative: `cancel` sets a flag and aborts the active
turn. The run loop checks the flag before each chapter and on every
event, and an aborted turn or a set flag always ends as `cancelled`,
never `failed`.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Optional
from uuid import uuid4

from fastchapter.errors import (
    AgentTurnError,
    FastChapterError,
    PreconditionMissingError,
    SessionNotFoundError,
    TurnAbortedError,
)
from fastchapter.models import (
    LogTone,
    SessionLogLine,
    SessionStatus,
    WriteBookSession,
    WriteSessionCancelData,
    WriteSessionSnapshot,
    WriteSessionStart,
)

from .checklist_service import ChecklistService
from .codex_runtime import (
    CODEX_INSTALL_HINT,
    SANDBOX_MODE,
    AgentRuntime,
    AgentThread,
    AgentTurn,
    ThreadEvent,
    ThreadItem,
    sanitize_log_line,
)
from .profile_service import ProfileService
from .project_service import ProjectService
from .prompts import build_chapter_prompt, build_verify_main_tex_prompt, load_prompt_templates

logger = logging.getLogger(__name__)

# Lines kept per session; older lines are dropped first
WRITE_BOOK_LOG_LINE_LIMIT = 2500
# Characters kept per line
WRITE_BOOK_LOG_LINE_LENGTH_LIMIT = 1200
# Lines returned per poll
WRITE_BOOK_POLL_LOG_LIMIT = 200


def append_session_log(session: WriteBookSession, tone: LogTone, text: str) -> None:
    """Split text into lines and append them with fresh indices."""
    lines = [
        sanitize_log_line(line)
        for line in str(text or "").split("\n")
    ]
    lines = [line for line in lines if line.strip()]
    if not lines:
        lines = [""]

    session.touch()
    for line in lines:
        session.logs.append(SessionLogLine(
            index=session.next_log_index,
            at=session.updated_at,
            tone=tone,
            text=line[:WRITE_BOOK_LOG_LINE_LENGTH_LIMIT],
        ))
        session.next_log_index += 1

    overflow = len(session.logs) - WRITE_BOOK_LOG_LINE_LIMIT
    if overflow > 0:
        del session.logs[:overflow]


def build_snapshot(session: WriteBookSession, after_log_index: int = 0) -> WriteSessionSnapshot:
    """Session state plus the next page of logs at or after the cursor."""
    from_index = max(0, int(after_log_index or 0))
    matching = [line for line in session.logs if line.index >= from_index]
    page = matching[:WRITE_BOOK_POLL_LOG_LIMIT]
    has_more = len(matching) > len(page)

    if has_more:
        next_log_index = page[-1].index + 1
    else:
        next_log_index = session.next_log_index

    return WriteSessionSnapshot(
        session_id=session.id,
        status=session.status,
        started_at=session.started_at,
        updated_at=session.updated_at,
        completed_at=session.completed_at,
        thread_id=session.thread_id,
        current_chapter_index=session.current_chapter_index,
        total_chapters=session.total_chapters,
        error=session.error,
        logs=[line.model_copy() for line in page],
        next_log_index=next_log_index,
        has_more_logs=has_more,
    )


class WriteSessionController:
    """Owns every Write Book session in the process.

    Usage:
        controller = WriteSessionController(projects, profiles, checklists, runtime)
        started = await controller.start("alice", book_id)
        snapshot = controller.poll(started.session_id, after_log_index=0)
        controller.cancel(started.session_id)
    """

    def __init__(
        self,
        projects: ProjectService,
        profiles: ProfileService,
        checklists: ChecklistService,
        runtime: AgentRuntime,
        prompts_dir: Optional[Path | str] = None,
    ):
        self.projects = projects
        self.profiles = profiles
        self.checklists = checklists
        self.runtime = runtime
        self.prompts_dir = prompts_dir
        self._sessions: dict[str, WriteBookSession] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._active_turns: dict[str, AgentTurn] = {}
        self._lock = asyncio.Lock()

    def get_session(self, session_id: str) -> WriteBookSession:
        session = self._sessions.get(str(session_id or ""))
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _find_active(self, username: str, book_id: str) -> Optional[WriteBookSession]:
        for session in self._sessions.values():
            if session.username == username and session.book_id == book_id and session.is_active():
                return session
        return None

    async def start(self, username: str, book_id: str) -> WriteSessionStart:
        """Start a session, or return the one already active for this book."""
        async with self._lock:
            active = self._find_active(username, book_id)
            if active is not None:
                logger.info(f"Reusing active Write Book session {active.id} for book {book_id}")
                return WriteSessionStart(session_id=active.id, started_at=active.started_at)

            checklist = await self.checklists.get_checklist(username, book_id)
            session = WriteBookSession(
                id=str(uuid4()),
                username=username,
                book_id=book_id,
                total_chapters=len(checklist.chapters),
            )
            self._sessions[session.id] = session
            append_session_log(session, LogTone.info, f'Queued Write Book session for "{checklist.book_title}".')

            task = asyncio.create_task(self._run(session), name=f"write_session_{session.id}")
            self._tasks[session.id] = task
            task.add_done_callback(lambda t, sid=session.id: self._tasks.pop(sid, None))

        logger.info(f"Queued Write Book session {session.id} for book {book_id}")
        return WriteSessionStart(session_id=session.id, started_at=session.started_at)

    def poll(self, session_id: str, after_log_index: int = 0) -> WriteSessionSnapshot:
        return build_snapshot(self.get_session(session_id), after_log_index)

    def cancel(self, session_id: str) -> WriteSessionCancelData:
        """Request cancellation. Terminal sessions are returned unchanged."""
        session = self.get_session(session_id)
        if session.is_terminal():
            return WriteSessionCancelData(status=session.status)

        session.cancel_requested = True
        append_session_log(session, LogTone.info, "Cancellation requested.")

        turn = self._active_turns.get(session.id)
        if turn is not None:
            turn.abort()

        logger.info(f"Cancellation requested for Write Book session {session.id}")
        return WriteSessionCancelData(status=session.status)

    async def _run(self, session: WriteBookSession) -> None:
        session.mark_running()
        append_session_log(session, LogTone.info, "Write Book session started.")

        try:
            await self._run_chapters(session)
        except asyncio.CancelledError:
            self._finish_cancelled(session)
            raise
        except TurnAbortedError:
            self._finish_cancelled(session)
        except Exception as e:
            if session.is_terminal():
                logger.error(f"Write Book session {session.id} errored after finishing: {e}")
            elif session.cancel_requested:
                self._finish_cancelled(session)
            else:
                message = str(e) or e.__class__.__name__
                if isinstance(e, FastChapterError):
                    logger.error(f"Write Book session {session.id} failed: {message}")
                else:
                    logger.exception(f"Write Book session {session.id} failed unexpectedly")
                session.finish(SessionStatus.failed, error=message)
                append_session_log(session, LogTone.error, message)
        finally:
            self._active_turns.pop(session.id, None)

    def _finish_cancelled(self, session: WriteBookSession) -> None:
        if session.is_terminal():
            return
        session.finish(SessionStatus.cancelled)
        append_session_log(session, LogTone.info, "Write Book process cancelled.")
        logger.info(f"Write Book session {session.id} cancelled")

    def _check_cancelled(self, session: WriteBookSession) -> None:
        if session.cancel_requested:
            raise TurnAbortedError("Write Book session cancelled.")

    async def _run_chapters(self, session: WriteBookSession) -> None:
        self._check_cancelled(session)
        book_root = await self.projects.assert_book_exists(session.username, session.book_id)
        await self.projects.ensure_latex_scaffold(book_root)

        checklist = await self.checklists.get_checklist(session.username, session.book_id)

        availability = await self.runtime.check_availability()
        if not availability.installed:
            hint = None if CODEX_INSTALL_HINT in availability.message else CODEX_INSTALL_HINT
            raise PreconditionMissingError(availability.message, hint=hint)

        append_session_log(
            session,
            LogTone.success if availability.authenticated else LogTone.info,
            f"{availability.version or 'codex'}\n{availability.login_status}".strip(),
        )

        profile = await self.profiles.read_private_profile(session.username)
        api_key = profile.integrations.openai_api_key.strip() or None
        if api_key:
            append_session_log(session, LogTone.info, "Using API key from local profile for Codex session.")
        elif not availability.authenticated:
            raise PreconditionMissingError(
                "No saved API key and Codex login is not active. Run `codex login` before continuing."
            )

        thread = self.runtime.start_thread(book_root, api_key=api_key, command=availability.command)
        templates = await load_prompt_templates(self.prompts_dir)

        if not checklist.chapters:
            raise PreconditionMissingError("No chapters found. Create chapter folders first.")

        session.total_chapters = len(checklist.chapters)
        append_session_log(
            session,
            LogTone.info,
            f"Scoped permissions: sandbox={SANDBOX_MODE}, workingDirectory={book_root}, networkAccessEnabled=false",
        )

        for position, chapter in enumerate(checklist.chapters):
            self._check_cancelled(session)

            session.current_chapter_index = chapter.index
            session.touch()
            prompt = build_chapter_prompt(checklist, chapter, position == 0, templates)

            append_session_log(
                session,
                LogTone.info,
                f"Running Codex for Chapter {chapter.index}/{len(checklist.chapters)} -> {chapter.tex_path}",
            )
            await self._run_turn(session, thread, prompt)

            if thread.id:
                session.thread_id = thread.id
            append_session_log(session, LogTone.success, f"Chapter {chapter.index} turn completed.")

        self._check_cancelled(session)
        append_session_log(session, LogTone.info, "Running final `main.tex` verification step.")
        await self._run_turn(session, thread, build_verify_main_tex_prompt(checklist, templates))
        append_session_log(session, LogTone.success, "Final `main.tex` verification completed.")

        await self.projects.touch_book(session.username, session.book_id)
        self._check_cancelled(session)
        session.finish(SessionStatus.completed)
        append_session_log(session, LogTone.success, "Write Book process completed.")
        logger.info(f"Write Book session {session.id} completed")

    async def _run_turn(self, session: WriteBookSession, thread: AgentThread, prompt: str) -> None:
        """Stream one turn into the session log.

        Raises:
            TurnAbortedError: The turn was aborted by cancel().
            AgentTurnError: The agent reported turn.failed or a stream error.
        """
        command_output_offsets: dict[str, int] = {}
        turn = thread.run_streamed(prompt)
        self._active_turns[session.id] = turn

        # cancel() may have landed between the chapter check and registration
        if session.cancel_requested:
            turn.abort()

        try:
            async with contextlib.aclosing(turn.events()) as events:
                async for event in events:
                    session.touch()
                    if session.cancel_requested:
                        turn.abort()
                    self._handle_event(session, event, command_output_offsets)
        finally:
            self._active_turns.pop(session.id, None)

    def _handle_event(
        self,
        session: WriteBookSession,
        event: ThreadEvent,
        command_output_offsets: dict[str, int],
    ) -> None:
        if event.type == "thread.started":
            session.thread_id = event.thread_id
            append_session_log(session, LogTone.info, f"Thread started: {event.thread_id}")
        elif event.type == "turn.started":
            append_session_log(session, LogTone.info, "Turn started.")
        elif event.type == "turn.completed":
            usage = event.usage
            append_session_log(
                session,
                LogTone.info,
                f"Turn completed. Tokens: in={usage.input_tokens if usage else 0}, "
                f"cached={usage.cached_input_tokens if usage else 0}, "
                f"out={usage.output_tokens if usage else 0}",
            )
        elif event.type == "turn.failed":
            raise AgentTurnError((event.error.message if event.error else "") or "Codex turn failed.")
        elif event.type == "error":
            raise AgentTurnError(event.message or "Codex stream error.")
        elif event.type in ("item.started", "item.updated", "item.completed") and event.item:
            self._log_item_event(session, event.type, event.item, command_output_offsets)

    def _log_item_event(
        self,
        session: WriteBookSession,
        event_type: str,
        item: ThreadItem,
        command_output_offsets: dict[str, int],
    ) -> None:
        if item.type == "command_execution":
            if event_type == "item.started":
                append_session_log(session, LogTone.info, f"$ {item.command}")

            # Only log output that arrived since the previous update
            output = sanitize_log_line(item.aggregated_output)
            previous_length = command_output_offsets.get(item.id, 0)
            if len(output) > previous_length:
                append_session_log(session, LogTone.info, output[previous_length:])
            command_output_offsets[item.id] = len(output)

            if event_type == "item.completed":
                exit_code = item.exit_code if item.exit_code is not None else "unknown"
                tone = LogTone.error if item.status == "failed" else LogTone.info
                append_session_log(session, tone, f"[command {item.status}] exit={exit_code}")
            return

        if event_type != "item.completed":
            return

        if item.type == "agent_message":
            append_session_log(session, LogTone.success, item.text or "[agent message]")
        elif item.type == "file_change":
            files = "\n".join(f"{change.kind}: {change.path}" for change in item.changes)
            append_session_log(
                session,
                LogTone.error if item.status == "failed" else LogTone.info,
                f"[file_change]\n{files}" if files else "[file_change] completed",
            )
        elif item.type == "reasoning":
            append_session_log(session, LogTone.info, f"[reasoning] {item.text}")
        elif item.type == "mcp_tool_call":
            failed = item.status == "failed"
            outcome = f"failed: {(item.error.message if item.error else '') or 'unknown error'}" if failed else item.status
            append_session_log(
                session,
                LogTone.error if failed else LogTone.info,
                f"[mcp] {item.server}/{item.tool}: {outcome}",
            )
        elif item.type == "web_search":
            append_session_log(session, LogTone.info, f"[web_search] {item.query}")
        elif item.type == "todo_list":
            lines = "\n".join(f"{'[x]' if todo.completed else '[ ]'} {todo.text}" for todo in item.items)
            append_session_log(session, LogTone.info, f"[todo]\n{lines}" if lines else "[todo]")
        elif item.type == "error":
            append_session_log(session, LogTone.error, item.message or "Codex error item.")

    async def shutdown(self) -> None:
        """Cancel every active session and wait for the runs to end."""
        for session in list(self._sessions.values()):
            if session.is_active():
                self.cancel(session.id)
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
