"""Transcription job queue.

Jobs are created when a recording with audio is saved and the owner has
both a credential and auto-transcribe enabled. Each job is persisted as
`transcriptions/<base_name>.meta.json` on every status change and kept
in an in-memory index until it finishes. Listing merges both, so jobs
from earlier runs stay visible.

Status only moves forward: queued -> in_progress -> completed | failed.
Workers run as background tasks and never raise into the caller; any
failure becomes a `failed` status plus a note in the transcription file.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError

from fastchapter.errors import FastChapterError, UploadTooLargeError
from fastchapter.models import (
    MAX_TRANSCRIPTION_UPLOAD_BYTES,
    TranscriptionJob,
    TranscriptionJobStatus,
)

from .profile_service import ProfileService
from .project_service import (
    ProjectService,
    read_json,
    read_text_or_empty,
    resolve_inside,
    write_json,
    write_text,
)
from .transcription_client import TranscriptionProvider

logger = logging.getLogger(__name__)

TRANSCRIPTIONS_DIR = "transcriptions"
META_SUFFIX = ".meta.json"

EMPTY_TRANSCRIPTION_TEXT = "[Empty transcription returned by OpenAI]"


def meta_path_for(book_root: Path, base_name: str) -> Path:
    return book_root / TRANSCRIPTIONS_DIR / f"{base_name}{META_SUFFIX}"


def append_failure_note(existing: str, message: str, heading: str = "Automatic transcription failed") -> str:
    """Keep prior content and add a visible failure block after it."""
    return f"{existing.strip()}\n\n{heading}:\n{message}\n".lstrip()


class TranscriptionJobStore:
    """Index of active jobs plus every job's on-disk meta file.

    Thread-safe via an asyncio lock for the index. `save` writes the meta
    file first and then indexes a copy of the job, so the index never
    holds a status that is not also on disk. Terminal jobs leave the
    index once their final state is written; their meta file is the
    record from then on.
    """

    def __init__(self):
        self._jobs: dict[str, TranscriptionJob] = {}
        self._lock = asyncio.Lock()

    async def save(self, job: TranscriptionJob, book_root: Path) -> None:
        """Persist the job's meta file, then update the index."""
        meta_path = meta_path_for(book_root, job.base_name)
        meta_path.parent.mkdir(parents=True, exist_ok=True)
        await write_json(meta_path, job.model_dump(mode="json"))
        async with self._lock:
            if job.is_terminal():
                self._jobs.pop(job.id, None)
                logger.debug(f"Released finished transcription job {job.id} from the index")
            else:
                self._jobs[job.id] = job.model_copy()

    async def list_in_memory(self, username: str, book_id: str) -> list[TranscriptionJob]:
        async with self._lock:
            return [
                job.model_copy() for job in self._jobs.values()
                if job.username == username and job.book_id == book_id
            ]

    async def list_persisted(self, book_root: Path) -> list[TranscriptionJob]:
        """Load every readable meta file under the book's transcriptions folder."""
        transcriptions_root = book_root / TRANSCRIPTIONS_DIR
        if not transcriptions_root.is_dir():
            return []

        jobs = []
        for meta_path in sorted(transcriptions_root.rglob(f"*{META_SUFFIX}")):
            try:
                raw = await read_json(meta_path)
                jobs.append(TranscriptionJob.model_validate(raw))
            except (OSError, ValueError, PydanticValidationError) as e:
                logger.warning(f"Skipping malformed transcription metadata {meta_path}: {e}")
        return jobs

    def __len__(self) -> int:
        """Return total number of jobs in the index."""
        return len(self._jobs)


class TranscriptionQueue:
    """Create, run and list transcription jobs.

    Usage:
        queue = TranscriptionQueue(projects, profiles, OpenAITranscriptionProvider())
        job = await queue.enqueue(...)
        await queue.drain()
    """

    def __init__(
        self,
        projects: ProjectService,
        profiles: ProfileService,
        provider: TranscriptionProvider,
        store: Optional[TranscriptionJobStore] = None,
    ):
        self.projects = projects
        self.profiles = profiles
        self.provider = provider
        self.store = store or TranscriptionJobStore()
        self._workers: set[asyncio.Task] = set()

    async def enqueue(
        self,
        username: str,
        book_id: str,
        base_name: str,
        recording_path: str,
        transcription_path: str,
        mime_type: str = "audio/webm",
        prompt: Optional[str] = None,
        language: Optional[str] = None,
    ) -> Optional[TranscriptionJob]:
        """Create a job for a saved recording and start its worker.

        Returns:
            A snapshot of the queued job, or None when the owner has no credential or
            has auto-transcribe turned off.
        """
        profile = await self.profiles.read_private_profile(username)
        if not profile.integrations.auto_transcribe:
            logger.debug(f"Auto-transcribe disabled for {username}, skipping {base_name}")
            return None

        api_key = await self.profiles.resolve_openai_api_key(username)
        if not api_key:
            logger.debug(f"No OpenAI key for {username}, skipping {base_name}")
            return None

        book_root = await self.projects.assert_book_exists(username, book_id)
        recording_absolute_path = resolve_inside(book_root, recording_path)
        try:
            file_size_bytes = recording_absolute_path.stat().st_size
        except OSError:
            file_size_bytes = 0

        job = TranscriptionJob(
            id=str(uuid4()),
            username=profile.username,
            book_id=book_id,
            base_name=base_name,
            model=self.provider.model,
            recording_path=recording_path,
            transcription_path=transcription_path,
            mime_type=mime_type or "audio/webm",
            file_size_bytes=file_size_bytes,
        )
        await self.store.save(job, book_root)
        logger.info(f"Queued transcription job {job.id} for {recording_path} ({file_size_bytes} bytes)")

        task = asyncio.create_task(
            self._run(job, book_root, api_key, prompt, language),
            name=f"transcription_{job.id}",
        )
        self._workers.add(task)
        task.add_done_callback(self._workers.discard)
        return job.model_copy()

    async def _run(
        self,
        job: TranscriptionJob,
        book_root: Path,
        api_key: str,
        prompt: Optional[str],
        language: Optional[str],
    ) -> None:
        """Worker body. Every status change is persisted before the next step."""
        transcription_absolute_path = resolve_inside(book_root, job.transcription_path)
        failure_heading = "Automatic transcription failed"

        try:
            job.transition(TranscriptionJobStatus.in_progress)
            await self.store.save(job, book_root)

            # Checked before any network call
            if job.file_size_bytes > MAX_TRANSCRIPTION_UPLOAD_BYTES:
                failure_heading = "Automatic transcription skipped"
                raise UploadTooLargeError(job.file_size_bytes, MAX_TRANSCRIPTION_UPLOAD_BYTES)

            text = await self.provider.transcribe(
                api_key,
                resolve_inside(book_root, job.recording_path),
                job.mime_type,
                prompt=prompt,
                language=language,
            )
            normalized = str(text or "").strip() or EMPTY_TRANSCRIPTION_TEXT
            await write_text(transcription_absolute_path, f"{normalized}\n")

            job.transition(TranscriptionJobStatus.completed)
            await self.store.save(job, book_root)
            logger.info(f"Transcription job {job.id} completed")

        except asyncio.CancelledError:
            raise
        except Exception as e:
            message = str(getattr(e, "message", None) or e)
            if isinstance(e, FastChapterError):
                logger.error(f"Transcription job {job.id} failed: {message}")
            else:
                logger.exception(f"Transcription job {job.id} failed unexpectedly")
            if job.is_terminal():
                return

            existing = await read_text_or_empty(transcription_absolute_path)
            await write_text(
                transcription_absolute_path,
                append_failure_note(existing, message, failure_heading),
            )
            if job.status == TranscriptionJobStatus.queued:
                job.transition(TranscriptionJobStatus.in_progress)
            job.transition(TranscriptionJobStatus.failed, error=message)
            await self.store.save(job, book_root)

        await self.projects.touch_book(job.username, job.book_id)

    async def list_jobs(self, username: str, book_id: str) -> list[TranscriptionJob]:
        """Persisted and in-memory jobs for a book, newest update first.

        The in-memory copy wins unless the meta file already shows a
        finished job, which happens when a worker ends between the two reads.
        """
        book_root = await self.projects.assert_book_exists(username, book_id)

        active = await self.store.list_in_memory(username, book_id)
        merged: dict[str, TranscriptionJob] = {}
        for job in await self.store.list_persisted(book_root):
            merged[job.id] = job
        for job in active:
            persisted = merged.get(job.id)
            if persisted is None or not persisted.is_terminal():
                merged[job.id] = job

        return sorted(merged.values(), key=lambda j: j.updated_at, reverse=True)

    async def get_job(self, username: str, book_id: str, job_id: str) -> Optional[TranscriptionJob]:
        for job in await self.list_jobs(username, book_id):
            if job.id == job_id:
                return job
        return None

    async def drain(self) -> None:
        """Wait for every running worker to finish."""
        while self._workers:
            await asyncio.gather(*list(self._workers), return_exceptions=True)
