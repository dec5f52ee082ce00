"""Transcription job model for async speech-to-text.

Jobs are persisted as `transcriptions/<base_name>.meta.json` inside the
book and also indexed in memory while the process runs. Status only
moves forward: queued -> in_progress -> completed | failed.

Pydantic v2. Extra fields are forbidden to prevent drift.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from fastchapter.errors import InvalidTransitionError


def _utcnow() -> datetime:
    """Return timezone-aware UTC now."""
    return datetime.now(timezone.utc)


class TranscriptionJobStatus(str, Enum):
    """Transcription job status values."""
    queued = "queued"            # Created and persisted, worker not started
    in_progress = "in_progress"  # Worker running
    completed = "completed"      # Text written to the transcription file
    failed = "failed"            # Failure note appended to the transcription file


_ALLOWED_TRANSITIONS = {
    TranscriptionJobStatus.queued: {TranscriptionJobStatus.in_progress},
    TranscriptionJobStatus.in_progress: {
        TranscriptionJobStatus.completed,
        TranscriptionJobStatus.failed,
    },
    TranscriptionJobStatus.completed: set(),
    TranscriptionJobStatus.failed: set(),
}


class TranscriptionJob(BaseModel):
    """State for one speech-to-text request."""
    model_config = ConfigDict(extra="forbid")

    # Identity
    id: str = Field(description="UUID identifier for this job")
    username: str
    book_id: str
    base_name: str = Field(description="Shared stem of the recording and transcription files")
    model: str = Field(description="Remote transcription model")

    # Status
    status: TranscriptionJobStatus = Field(default=TranscriptionJobStatus.queued)
    error: Optional[str] = Field(default=None, description="Error message if job failed")

    # Artifacts (relative to the book root)
    recording_path: str
    transcription_path: str
    mime_type: str = "audio/webm"
    file_size_bytes: int = Field(default=0, ge=0)

    # Timestamps
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def is_terminal(self) -> bool:
        """Check if job is in a terminal state (no more updates expected)."""
        return self.status in (
            TranscriptionJobStatus.completed,
            TranscriptionJobStatus.failed,
        )

    def transition(self, status: TranscriptionJobStatus, error: Optional[str] = None) -> None:
        """Move to `status`, refusing regressions and skipped steps."""
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Transcription job {self.id} cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        self.error = error or None
        self.updated_at = _utcnow()
