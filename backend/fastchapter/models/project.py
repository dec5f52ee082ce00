"""Pydantic models for books, user profiles and recordings."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Optional

from pydantic import BaseModel, Field

from .transcription_job import TranscriptionJob

# OpenAI rejects transcription uploads above this size
MAX_TRANSCRIPTION_UPLOAD_BYTES = 25 * 1024 * 1024


class RecordingKind(str, Enum):
    """Where a recording is filed inside the book."""

    INITIAL_OUTLINE = "initial-outline"
    CHAPTER_RECORDING = "chapter-recording"
    LOOSE_NOTE = "loose-note"


class ProfileIntegrations(BaseModel):
    """Stored integration settings. Never returned to callers as-is."""

    openai_api_key: str = ""
    auto_transcribe: bool = True


class UserProfile(BaseModel):
    """Private profile persisted as users/<user>/profile.json."""

    username: str
    display_name: str = ""
    created_at: datetime
    updated_at: datetime
    integrations: ProfileIntegrations = Field(default_factory=ProfileIntegrations)


class PublicIntegrations(BaseModel):
    has_openai_api_key: bool
    auto_transcribe: bool


class PublicProfile(BaseModel):
    """Profile as shown to the caller (credential redacted)."""

    username: str
    display_name: str
    created_at: datetime
    updated_at: datetime
    integrations: PublicIntegrations


class ChapterDescriptor(BaseModel):
    """A `chapters/chapter-N` folder with its LaTeX file."""

    index: Annotated[int, Field(ge=1)]
    tex_relative_path: str


class BookSummary(BaseModel):
    id: str
    title: str
    created_at: datetime
    updated_at: datetime


# Request schemas
class CreateUserRequest(BaseModel):
    username: Annotated[str, Field(min_length=1)]


class UpdateProfileRequest(BaseModel):
    display_name: Optional[str] = None
    openai_api_key: Optional[str] = None
    auto_transcribe: Optional[bool] = None


class CreateBookRequest(BaseModel):
    title: Annotated[str, Field(min_length=1)]


class RenameBookRequest(BaseModel):
    title: str


class CheckOpenAIKeyRequest(BaseModel):
    """Key to check. When omitted the saved profile key is checked."""

    api_key: Optional[str] = None


class SaveRecordingRequest(BaseModel):
    """Request body for saving a recording.

    `audio_base64` may carry a `data:<mime>;base64,` prefix.
    """

    kind: str = RecordingKind.LOOSE_NOTE.value
    chapter_index: Optional[int] = None
    transcript: str = ""
    audio_base64: Optional[str] = None
    mime_type: Optional[str] = None


# Response schemas
class SaveRecordingResult(BaseModel):
    name: str
    kind: str
    chapter_index: Optional[int] = None
    created_at: datetime
    recording_path: str
    transcription_path: str
    transcription_job: Optional[TranscriptionJob] = None


class RecordingFile(BaseModel):
    file_name: str
    path: str
    created_at: Optional[datetime] = None


class ChecklistCheck(BaseModel):
    id: str
    label: str
    ok: bool
    blocking: bool = False
    details: str


class ChecklistChapter(BaseModel):
    index: int
    tex_path: str
    has_seed_text: bool
    recording_count: int
    transcription_count: int
    has_voice_material: bool
    recording_paths: list[str] = []
    transcription_paths: list[str] = []


class WriteBookChecklist(BaseModel):
    """Readiness report for a Write Book session."""

    generated_at: datetime
    book_title: str
    checks: list[ChecklistCheck]
    minimum_recommended_ready: bool
    initial_outline_recording_paths: list[str] = []
    initial_outline_transcription_paths: list[str] = []
    chapters: list[ChecklistChapter] = []


class OpenAIKeyCheck(BaseModel):
    ok: bool
    checked_at: datetime
    message: str


class CodexAvailability(BaseModel):
    """Result of probing the agent CLI."""

    checked_at: datetime
    installed: bool
    authenticated: bool
    command: Optional[str] = None
    version: Optional[str] = None
    help_preview: str = ""
    login_status: str = ""
    message: str


class RecordingListing(BaseModel):
    """Recordings, transcription files and jobs for one book."""

    recordings: list[RecordingFile] = []
    transcriptions: list[RecordingFile] = []
    jobs: list[TranscriptionJob] = []
