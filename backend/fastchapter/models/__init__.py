"""Backend models package.

Note: keep backend models as the source-of-truth schemas for OpenAPI + frontend types.
"""

from .compile import (
    CompileCacheEntry,
    CompileOutcome,
    CompileRequest,
    CompileResult,
    CompilerKind,
)
from .project import (
    BookSummary,
    ChapterDescriptor,
    ChecklistChapter,
    CheckOpenAIKeyRequest,
    ChecklistCheck,
    CodexAvailability,
    CreateBookRequest,
    CreateUserRequest,
    MAX_TRANSCRIPTION_UPLOAD_BYTES,
    OpenAIKeyCheck,
    ProfileIntegrations,
    PublicIntegrations,
    PublicProfile,
    RecordingFile,
    RecordingKind,
    RecordingListing,
    RenameBookRequest,
    SaveRecordingRequest,
    SaveRecordingResult,
    UpdateProfileRequest,
    UserProfile,
    WriteBookChecklist,
)
from .transcription_job import TranscriptionJob, TranscriptionJobStatus
from .write_session import (
    LogTone,
    SessionLogLine,
    SessionStatus,
    WriteBookSession,
    WriteSessionCancelData,
    WriteSessionSnapshot,
    WriteSessionStart,
)

__all__ = [
    # Build cache
    "CompileCacheEntry",
    "CompileOutcome",
    "CompileRequest",
    "CompileResult",
    "CompilerKind",
    # Books, profiles, recordings
    "BookSummary",
    "ChapterDescriptor",
    "ChecklistChapter",
    "CheckOpenAIKeyRequest",
    "ChecklistCheck",
    "CodexAvailability",
    "CreateBookRequest",
    "CreateUserRequest",
    "MAX_TRANSCRIPTION_UPLOAD_BYTES",
    "OpenAIKeyCheck",
    "ProfileIntegrations",
    "PublicIntegrations",
    "PublicProfile",
    "RecordingFile",
    "RecordingKind",
    "RecordingListing",
    "RenameBookRequest",
    "SaveRecordingRequest",
    "SaveRecordingResult",
    "UpdateProfileRequest",
    "UserProfile",
    "WriteBookChecklist",
    # Transcription jobs
    "TranscriptionJob",
    "TranscriptionJobStatus",
    # Write sessions
    "LogTone",
    "SessionLogLine",
    "SessionStatus",
    "WriteBookSession",
    "WriteSessionCancelData",
    "WriteSessionSnapshot",
    "WriteSessionStart",
]
