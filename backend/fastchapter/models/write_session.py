"""Write Book session models.

A session drives one agent turn per chapter plus a final verification
turn. It keeps an append-only, capped log that callers page through
with a cursor (`after_log_index`).

Pydantic v2. Extra fields are forbidden to prevent drift.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from fastchapter.errors import InvalidTransitionError


def _utcnow() -> datetime:
    """Return timezone-aware UTC now."""
    return datetime.now(timezone.utc)


class SessionStatus(str, Enum):
    """Write Book session status values."""
    queued = "queued"
    running = "running"
    completed = "completed"
    failed = "failed"
    cancelled = "cancelled"


class LogTone(str, Enum):
    """Severity tag shown next to a log line."""
    info = "info"
    success = "success"
    error = "error"


class SessionLogLine(BaseModel):
    """One line of session output."""
    model_config = ConfigDict(extra="forbid")

    index: int = Field(ge=0, description="Monotonically increasing position in the session log")
    at: datetime
    tone: LogTone
    text: str


class WriteBookSession(BaseModel):
    """In-memory state for a Write Book run.

    Mutated only by the session controller. Becomes terminal exactly once.
    """
    model_config = ConfigDict(extra="forbid")

    # Identity
    id: str
    username: str
    book_id: str

    # Status
    status: SessionStatus = SessionStatus.queued
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    # Progress
    thread_id: Optional[str] = None
    current_chapter_index: Optional[int] = None
    total_chapters: int = Field(default=0, ge=0)

    # Control
    cancel_requested: bool = False

    # Output
    logs: List[SessionLogLine] = Field(default_factory=list)
    next_log_index: int = Field(default=0, ge=0)

    def is_active(self) -> bool:
        """Check if the session still occupies its book."""
        return self.status in (SessionStatus.queued, SessionStatus.running)

    def is_terminal(self) -> bool:
        """Check if session is in a terminal state (no more updates expected)."""
        return not self.is_active()

    def touch(self) -> None:
        self.updated_at = _utcnow()

    def mark_running(self) -> None:
        if self.status != SessionStatus.queued:
            raise InvalidTransitionError(
                f"Session {self.id} cannot start from {self.status.value}"
            )
        self.status = SessionStatus.running
        self.touch()

    def finish(self, status: SessionStatus, error: Optional[str] = None) -> None:
        """Enter a terminal state. Terminal states are final."""
        if status in (SessionStatus.queued, SessionStatus.running):
            raise InvalidTransitionError(f"{status.value} is not a terminal status")
        if self.is_terminal():
            raise InvalidTransitionError(
                f"Session {self.id} already finished as {self.status.value}"
            )
        self.status = status
        self.error = error
        self.completed_at = _utcnow()
        self.updated_at = self.completed_at


class WriteSessionStart(BaseModel):
    """Response data for starting a session."""
    model_config = ConfigDict(extra="forbid")

    session_id: str
    started_at: datetime


class WriteSessionSnapshot(BaseModel):
    """Poll response: status, progress and the next page of logs."""
    model_config = ConfigDict(extra="forbid")

    session_id: str
    status: SessionStatus
    started_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None
    thread_id: Optional[str] = None
    current_chapter_index: Optional[int] = None
    total_chapters: int = 0
    error: Optional[str] = None
    logs: List[SessionLogLine] = Field(default_factory=list)
    next_log_index: int = Field(ge=0, description="Cursor to pass as after_log_index on the next poll")
    has_more_logs: bool = False


class WriteSessionCancelData(BaseModel):
    """Response data for a cancel request."""
    model_config = ConfigDict(extra="forbid")

    ok: bool = True
    status: SessionStatus
