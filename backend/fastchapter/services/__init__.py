"""Services package for backend business logic."""

from .latex_build_cache import LatexBuildCache, compute_fingerprint
from .orchestrator import Orchestrator, get_orchestrator, set_orchestrator
from .tool_runner import CommandResult, ToolRunner
from .transcription_jobs import TranscriptionJobStore, TranscriptionQueue
from .write_session_service import WriteSessionController

__all__ = [
    "Orchestrator",
    "get_orchestrator",
    "set_orchestrator",
    # Build cache
    "LatexBuildCache",
    "compute_fingerprint",
    "CommandResult",
    "ToolRunner",
    # Transcription
    "TranscriptionJobStore",
    "TranscriptionQueue",
    # Write Book
    "WriteSessionController",
]
