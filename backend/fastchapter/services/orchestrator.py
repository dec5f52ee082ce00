"""Process-wide service context.

Builds every service once and shares the build cache, transcription
queue and session controller between requests. The API creates one in
its lifespan; tests install their own with `set_orchestrator`.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastchapter.errors import NotFoundError, PreconditionMissingError
from fastchapter.models import CodexAvailability, CompileResult, OpenAIKeyCheck

from .checklist_service import ChecklistService
from .codex_runtime import AgentRuntime, CodexCliRuntime
from .latex_build_cache import LatexBuildCache, artifact_path
from .profile_service import ProfileService
from .project_service import ProjectService, normalize_relative_path
from .recording_service import RecordingService
from .tool_runner import ToolRunner
from .transcription_client import OpenAITranscriptionProvider, TranscriptionProvider
from .transcription_jobs import TranscriptionQueue
from .write_session_service import WriteSessionController

logger = logging.getLogger(__name__)


class Orchestrator:
    """Owns the long-lived services.

    Args:
        data_dir: Root for user data. Defaults to FASTCHAPTER_DATA_DIR.
        runner: Subprocess runner shared by the build cache and the agent probe.
        transcription_provider: Speech-to-text backend.
        agent_runtime: Agent backend for Write Book sessions.
        prompts_dir: Optional prompt template overrides.
    """

    def __init__(
        self,
        data_dir: Optional[Path] = None,
        runner: Optional[ToolRunner] = None,
        transcription_provider: Optional[TranscriptionProvider] = None,
        agent_runtime: Optional[AgentRuntime] = None,
        prompts_dir: Optional[Path | str] = None,
    ):
        self.runner = runner or ToolRunner()
        self.projects = ProjectService(data_dir)
        self.profiles = ProfileService(self.projects)
        self.build_cache = LatexBuildCache(self.runner)
        self.transcription_provider = transcription_provider or OpenAITranscriptionProvider()
        self.transcriptions = TranscriptionQueue(
            self.projects,
            self.profiles,
            self.transcription_provider,
        )
        self.recordings = RecordingService(self.projects, self.transcriptions)
        self.checklists = ChecklistService(self.projects)
        self.agent_runtime = agent_runtime or CodexCliRuntime(self.runner)
        self.write_sessions = WriteSessionController(
            self.projects,
            self.profiles,
            self.checklists,
            self.agent_runtime,
            prompts_dir=prompts_dir,
        )

    async def compile_book(self, username: str, book_id: str, entry_relative_path: str = "main.tex") -> CompileResult:
        book_root = await self.projects.assert_book_exists(username, book_id)
        await self.projects.ensure_latex_scaffold(book_root)
        return await self.build_cache.compile(book_root, entry_relative_path)

    async def get_pdf_path(self, username: str, book_id: str, entry_relative_path: str = "main.tex") -> Path:
        """Path of the last built PDF for an entrypoint.

        Raises:
            NotFoundError: Nothing has been compiled yet.
        """
        book_root = await self.projects.assert_book_exists(username, book_id)
        entry = normalize_relative_path(entry_relative_path) or "main.tex"
        pdf_path = artifact_path(book_root, entry)
        if not pdf_path.is_file():
            raise NotFoundError(f"No compiled PDF for {entry}. Compile the book first.")
        return pdf_path

    async def check_openai_api_key(self, username: str, api_key: Optional[str] = None) -> OpenAIKeyCheck:
        """Check a pasted key, or the key transcription would use when none is given.

        Raises:
            PreconditionMissingError: No key was given or saved.
            ApiKeyCheckError: OpenAI rejected the key.
        """
        key = (api_key or "").strip() or await self.profiles.resolve_openai_api_key(username)
        if not key:
            raise PreconditionMissingError(
                "No API key found.",
                hint="Paste an OpenAI API key first.",
                code="API_KEY_MISSING",
            )
        await self.transcription_provider.check_api_key(key)
        logger.info(f"OpenAI API key check passed for {username}")
        return OpenAIKeyCheck(
            ok=True,
            checked_at=datetime.now(timezone.utc),
            message="OpenAI API key is valid.",
        )

    async def check_codex_availability(self) -> CodexAvailability:
        return await self.agent_runtime.check_availability()

    async def shutdown(self) -> None:
        """Stop active sessions and let transcription workers finish."""
        await self.write_sessions.shutdown()
        await self.transcriptions.drain()
        logger.info("Orchestrator shut down")


# Module-level singleton instance
_default_orchestrator: Optional[Orchestrator] = None


def get_orchestrator() -> Orchestrator:
    """Get the default orchestrator, creating it on first use."""
    global _default_orchestrator
    if _default_orchestrator is None:
        _default_orchestrator = Orchestrator()
    return _default_orchestrator


def set_orchestrator(orchestrator: Optional[Orchestrator]) -> None:
    """Set the orchestrator instance (for testing)."""
    global _default_orchestrator
    _default_orchestrator = orchestrator
