"""Recording storage.

Saves voice recordings (or text-only notes) under `recordings/` and a
matching transcription file under `transcriptions/`, then hands audio to
the transcription queue.
"""

import base64
import binascii
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import aiofiles

from fastchapter.errors import InvalidInputError
from fastchapter.models import (
    RecordingFile,
    RecordingKind,
    RecordingListing,
    SaveRecordingRequest,
    SaveRecordingResult,
)

from .project_service import ProjectService, list_files_recursive, to_relative, write_text
from .transcription_jobs import META_SUFFIX, TranscriptionQueue

logger = logging.getLogger(__name__)

PENDING_TRANSCRIPTION_TEXT = "Transcription pending. If OpenAI key is configured, this will auto-fill soon."
NO_AUDIO_TEXT = "No audio captured. Add manual transcript notes or capture microphone audio."

_DATA_URL_PREFIX = re.compile(r"^data:.*?;base64,")

# mime substring -> file extension, first match wins
_MIME_EXTENSIONS = (
    ("wav", "wav"),
    ("mpeg", "mp3"),
    ("mp3", "mp3"),
    ("mp4", "mp4"),
    ("m4a", "m4a"),
    ("ogg", "ogg"),
)

_EXTENSION_MIMES = {
    ".wav": "audio/wav",
    ".mp3": "audio/mpeg",
    ".mp4": "audio/mp4",
    ".m4a": "audio/m4a",
    ".ogg": "audio/ogg",
    ".webm": "audio/webm",
    ".flac": "audio/flac",
}


def mime_to_extension(mime_type: Optional[str]) -> str:
    if not mime_type:
        return "webm"
    for needle, extension in _MIME_EXTENSIONS:
        if needle in mime_type:
            return extension
    return "webm"


def extension_to_mime(path: Path) -> str:
    return _EXTENSION_MIMES.get(path.suffix.lower(), "application/octet-stream")


def normalize_kind(kind: Optional[str]) -> str:
    cleaned = re.sub(r"[^a-z0-9_-]", "-", str(kind or RecordingKind.LOOSE_NOTE.value).lower())
    return re.sub(r"-+", "-", cleaned)


def recording_subdirectory(kind: str, chapter_index: Optional[int]) -> str:
    """Folder (relative to recordings/ and transcriptions/) for a recording kind."""
    if kind == RecordingKind.INITIAL_OUTLINE.value:
        return "initial-outline"
    if kind == RecordingKind.CHAPTER_RECORDING.value:
        chapter_number = chapter_index if chapter_index and chapter_index > 0 else 1
        return f"chapters/chapter-{chapter_number}"
    return "miscellaneous"


def decode_audio(audio_base64: str) -> bytes:
    """Decode base64 audio, tolerating a data URL prefix."""
    cleaned = _DATA_URL_PREFIX.sub("", audio_base64.strip())
    try:
        return base64.b64decode(cleaned, validate=False)
    except (binascii.Error, ValueError) as e:
        raise InvalidInputError(f"Audio payload is not valid base64: {e}") from e


def _created_at_from_name(file_name: str) -> Optional[datetime]:
    prefix = Path(file_name).name.split("-", 1)[0]
    if not prefix.isdigit():
        return None
    try:
        return datetime.fromtimestamp(int(prefix) / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


class RecordingService:
    """Save and list recordings for a book."""

    def __init__(self, projects: ProjectService, transcriptions: TranscriptionQueue):
        self.projects = projects
        self.transcriptions = transcriptions

    async def save_recording(
        self,
        username: str,
        book_id: str,
        request: SaveRecordingRequest,
    ) -> SaveRecordingResult:
        """Write the recording and its transcription file, queueing a job for audio."""
        book_root = await self.projects.assert_book_exists(username, book_id)

        created_at = datetime.now(timezone.utc)
        timestamp_ms = int(created_at.timestamp() * 1000)
        kind = normalize_kind(request.kind)
        chapter_label = f"-chapter-{request.chapter_index}" if request.chapter_index else ""
        base_name = f"{timestamp_ms}-{kind}{chapter_label}"
        subdirectory = recording_subdirectory(kind, request.chapter_index)

        has_audio = bool(request.audio_base64)
        if has_audio:
            recording_file = f"{base_name}.{mime_to_extension(request.mime_type)}"
        else:
            recording_file = f"{base_name}.txt"
        recording_absolute_path = book_root / "recordings" / subdirectory / recording_file
        recording_absolute_path.parent.mkdir(parents=True, exist_ok=True)

        if has_audio:
            async with aiofiles.open(recording_absolute_path, "wb") as f:
                await f.write(decode_audio(request.audio_base64))
        else:
            await write_text(recording_absolute_path, NO_AUDIO_TEXT)

        transcription_absolute_path = book_root / "transcriptions" / subdirectory / f"{base_name}.txt"
        transcription_absolute_path.parent.mkdir(parents=True, exist_ok=True)
        transcript_text = request.transcript.strip()
        await write_text(transcription_absolute_path, f"{transcript_text or PENDING_TRANSCRIPTION_TEXT}\n")

        recording_path = to_relative(book_root, recording_absolute_path)
        transcription_path = to_relative(book_root, transcription_absolute_path)

        job = None
        if has_audio:
            job = await self.transcriptions.enqueue(
                username,
                book_id,
                base_name,
                recording_path,
                transcription_path,
                mime_type=request.mime_type or extension_to_mime(recording_absolute_path),
                prompt=transcript_text or None,
            )

        await self.projects.touch_book(username, book_id)
        logger.info(f"Saved recording {recording_path} (audio={has_audio}, job={job.id if job else None})")

        return SaveRecordingResult(
            name=base_name,
            kind=kind,
            chapter_index=request.chapter_index or None,
            created_at=created_at,
            recording_path=recording_path,
            transcription_path=transcription_path,
            transcription_job=job,
        )

    async def list_recordings(self, username: str, book_id: str) -> RecordingListing:
        """Recordings newest first, transcription files, and transcription jobs."""
        book_root = await self.projects.assert_book_exists(username, book_id)

        recordings = [
            RecordingFile(
                file_name=relative_path,
                path=f"recordings/{relative_path}",
                created_at=_created_at_from_name(relative_path),
            )
            for relative_path in list_files_recursive(book_root / "recordings")
        ]
        recordings.sort(
            key=lambda r: r.created_at or datetime.min.replace(tzinfo=timezone.utc),
            reverse=True,
        )

        transcriptions = [
            RecordingFile(file_name=relative_path, path=f"transcriptions/{relative_path}")
            for relative_path in list_files_recursive(book_root / "transcriptions")
            if not relative_path.endswith(META_SUFFIX)
        ]
        transcriptions.sort(key=lambda t: t.file_name, reverse=True)

        jobs = await self.transcriptions.list_jobs(username, book_id)
        return RecordingListing(recordings=recordings, transcriptions=transcriptions, jobs=jobs)
