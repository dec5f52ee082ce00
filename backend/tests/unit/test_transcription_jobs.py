"""Tests for the transcription job queue.

Tests cover:
- Enqueue policy (credential, auto-transcribe, env fallback)
- Worker outcomes (completed, empty text, provider failure, oversize)
- Durable status: meta file written at every step, and an interrupted write
  leaves the previous state readable
- Forward-only status transitions
- Listing merge of persisted and in-memory jobs (restart recovery)
- Index holds copies of active jobs only
"""

import asyncio
import json
from datetime import datetime
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio

from fakes import FakeTranscriptionProvider, wait_for
from fastchapter.errors import InvalidTransitionError, TranscriptionError
from fastchapter.models import (
    MAX_TRANSCRIPTION_UPLOAD_BYTES,
    TranscriptionJob,
    TranscriptionJobStatus,
    UpdateProfileRequest,
)
from fastchapter.services.transcription_jobs import (
    EMPTY_TRANSCRIPTION_TEXT,
    TranscriptionJobStore,
    TranscriptionQueue,
    append_failure_note,
    meta_path_for,
)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def provider():
    return FakeTranscriptionProvider(text="  Chapter one starts with a storm.  ")


@pytest.fixture
def queue(projects, profiles, provider):
    return TranscriptionQueue(projects, profiles, provider)


@pytest.fixture
def book_root(projects, book):
    return projects.book_root("alice", book.id)


@pytest_asyncio.fixture
async def with_key(profiles):
    await profiles.update_profile("alice", UpdateProfileRequest(openai_api_key="sk-test"))


def write_recording(book_root, base_name: str, size: int = 1024) -> tuple[str, str]:
    """Create an audio file and its pending transcription file."""
    recording = book_root / "recordings" / "miscellaneous" / f"{base_name}.webm"
    recording.parent.mkdir(parents=True, exist_ok=True)
    with open(recording, "wb") as f:
        f.truncate(size)

    transcription = book_root / "transcriptions" / "miscellaneous" / f"{base_name}.txt"
    transcription.parent.mkdir(parents=True, exist_ok=True)
    transcription.write_text("Transcription pending.\n")

    return (
        f"recordings/miscellaneous/{base_name}.webm",
        f"transcriptions/miscellaneous/{base_name}.txt",
    )


async def enqueue(queue, book, book_root, base_name="1700000000000-loose-note", size=1024, prompt=None):
    recording_path, transcription_path = write_recording(book_root, base_name, size)
    return await queue.enqueue(
        "alice",
        book.id,
        base_name,
        recording_path,
        transcription_path,
        mime_type="audio/webm",
        prompt=prompt,
    )


def read_meta(book_root, base_name="1700000000000-loose-note") -> dict:
    return json.loads(meta_path_for(book_root, base_name).read_text())


# =============================================================================
# Enqueue Policy Tests
# =============================================================================


class TestEnqueuePolicy:
    @pytest.mark.asyncio
    async def test_no_credential_creates_no_job(self, queue, provider, book, book_root):
        job = await enqueue(queue, book, book_root)

        assert job is None
        assert not meta_path_for(book_root, "1700000000000-loose-note").exists()
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_auto_transcribe_off_creates_no_job(self, queue, profiles, book, book_root):
        await profiles.update_profile(
            "alice", UpdateProfileRequest(openai_api_key="sk-test", auto_transcribe=False)
        )

        assert await enqueue(queue, book, book_root) is None

    @pytest.mark.asyncio
    async def test_environment_key_is_used_as_fallback(self, queue, provider, book, book_root, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-env")

        job = await enqueue(queue, book, book_root)
        await queue.drain()

        assert job is not None
        assert provider.calls[0]["api_key"] == "sk-env"

    @pytest.mark.asyncio
    async def test_enqueue_returns_queued_snapshot(self, queue, book, book_root, with_key):
        job = await enqueue(queue, book, book_root, size=2048)

        assert job.status == TranscriptionJobStatus.queued
        assert job.model == "gpt-4o-transcribe"
        assert job.file_size_bytes == 2048
        assert job.base_name == "1700000000000-loose-note"
        assert read_meta(book_root)["id"] == job.id
        await queue.drain()


# =============================================================================
# Worker Tests
# =============================================================================


class TestWorker:
    @pytest.mark.asyncio
    async def test_successful_transcription(self, queue, provider, book, book_root, with_key):
        job = await enqueue(queue, book, book_root, prompt="storm, lighthouse")
        await queue.drain()

        stored = await queue.get_job("alice", book.id, job.id)
        assert stored.status == TranscriptionJobStatus.completed
        assert stored.error is None
        assert read_meta(book_root)["status"] == "completed"

        text = (book_root / "transcriptions" / "miscellaneous" / "1700000000000-loose-note.txt").read_text()
        assert text == "Chapter one starts with a storm.\n"

        call = provider.calls[0]
        assert call["api_key"] == "sk-test"
        assert call["mime_type"] == "audio/webm"
        assert call["prompt"] == "storm, lighthouse"
        assert call["audio_path"].name == "1700000000000-loose-note.webm"

    @pytest.mark.asyncio
    async def test_in_progress_is_persisted_before_the_call(self, queue, provider, book, book_root, with_key):
        provider.gate = asyncio.Event()
        job = await enqueue(queue, book, book_root)

        await wait_for(lambda: len(provider.calls) == 1)
        assert read_meta(book_root)["status"] == "in_progress"
        assert (await queue.get_job("alice", book.id, job.id)).status == TranscriptionJobStatus.in_progress

        provider.gate.set()
        await queue.drain()
        assert read_meta(book_root)["status"] == "completed"

    @pytest.mark.asyncio
    async def test_empty_text_writes_placeholder(self, queue, provider, book, book_root, with_key):
        provider.text = "   "
        await enqueue(queue, book, book_root)
        await queue.drain()

        text = (book_root / "transcriptions" / "miscellaneous" / "1700000000000-loose-note.txt").read_text()
        assert text == f"{EMPTY_TRANSCRIPTION_TEXT}\n"
        assert read_meta(book_root)["status"] == "completed"

    @pytest.mark.asyncio
    async def test_provider_failure_marks_failed_and_appends_note(self, queue, provider, book, book_root, with_key):
        provider.error = TranscriptionError("OpenAI transcription failed (429): rate limit exceeded.")
        job = await enqueue(queue, book, book_root)
        await queue.drain()

        stored = await queue.get_job("alice", book.id, job.id)
        assert stored.status == TranscriptionJobStatus.failed
        assert "429" in stored.error

        text = (book_root / "transcriptions" / "miscellaneous" / "1700000000000-loose-note.txt").read_text()
        assert text.startswith("Transcription pending.")
        assert "Automatic transcription failed:\nOpenAI transcription failed (429)" in text

        meta = read_meta(book_root)
        assert meta["status"] == "failed"
        assert "429" in meta["error"]

    @pytest.mark.asyncio
    async def test_unexpected_error_still_fails_job(self, queue, provider, book, book_root, with_key):
        provider.error = RuntimeError("socket exploded")
        job = await enqueue(queue, book, book_root)
        await queue.drain()

        stored = await queue.get_job("alice", book.id, job.id)
        assert stored.status == TranscriptionJobStatus.failed
        assert stored.error == "socket exploded"

    @pytest.mark.asyncio
    async def test_oversized_recording_is_skipped_without_network_call(
        self, queue, provider, book, book_root, with_key
    ):
        job = await enqueue(queue, book, book_root, size=MAX_TRANSCRIPTION_UPLOAD_BYTES + 1)
        await queue.drain()

        assert provider.calls == []
        stored = await queue.get_job("alice", book.id, job.id)
        assert stored.status == TranscriptionJobStatus.failed
        assert "25 MB" in stored.error

        text = (book_root / "transcriptions" / "miscellaneous" / "1700000000000-loose-note.txt").read_text()
        assert "Automatic transcription skipped:" in text

    @pytest.mark.asyncio
    async def test_worker_touches_book(self, queue, projects, book, book_root, with_key):
        def updated_at() -> datetime:
            return datetime.fromisoformat(json.loads((book_root / "book.json").read_text())["updated_at"])

        before = updated_at()
        await enqueue(queue, book, book_root)
        await queue.drain()

        assert updated_at() > before


# =============================================================================
# Status Transition Tests
# =============================================================================


class TestStatusTransitions:
    def make_job(self) -> TranscriptionJob:
        return TranscriptionJob(
            id="job-1",
            username="alice",
            book_id="book-1",
            base_name="1700000000000-loose-note",
            model="gpt-4o-transcribe",
            recording_path="recordings/miscellaneous/1700000000000-loose-note.webm",
            transcription_path="transcriptions/miscellaneous/1700000000000-loose-note.txt",
        )

    def test_forward_path(self):
        job = self.make_job()
        job.transition(TranscriptionJobStatus.in_progress)
        job.transition(TranscriptionJobStatus.completed)
        assert job.is_terminal()

    def test_cannot_skip_in_progress(self):
        job = self.make_job()
        with pytest.raises(InvalidTransitionError):
            job.transition(TranscriptionJobStatus.completed)

    def test_terminal_is_final(self):
        job = self.make_job()
        job.transition(TranscriptionJobStatus.in_progress)
        job.transition(TranscriptionJobStatus.failed, error="boom")

        for status in TranscriptionJobStatus:
            with pytest.raises(InvalidTransitionError):
                job.transition(status)
        assert job.error == "boom"

    def test_cannot_move_backwards(self):
        job = self.make_job()
        job.transition(TranscriptionJobStatus.in_progress)
        with pytest.raises(InvalidTransitionError):
            job.transition(TranscriptionJobStatus.queued)


class TestFailureNote:
    def test_note_follows_existing_content(self):
        note = append_failure_note("Pending.\n", "boom")
        assert note == "Pending.\n\nAutomatic transcription failed:\nboom\n"

    def test_note_on_empty_file(self):
        assert append_failure_note("", "boom", "Automatic transcription skipped") == (
            "Automatic transcription skipped:\nboom\n"
        )


# =============================================================================
# Listing Tests
# =============================================================================


class TestListJobs:
    @pytest.mark.asyncio
    async def test_jobs_survive_restart(self, projects, profiles, provider, book, book_root, with_key):
        first = TranscriptionQueue(projects, profiles, provider)
        job = await enqueue(first, book, book_root)
        await first.drain()

        restarted = TranscriptionQueue(projects, profiles, provider)
        jobs = await restarted.list_jobs("alice", book.id)

        assert [j.id for j in jobs] == [job.id]
        assert jobs[0].status == TranscriptionJobStatus.completed

    @pytest.mark.asyncio
    async def test_in_memory_copy_wins(self, queue, provider, book, book_root, with_key):
        provider.gate = asyncio.Event()
        job = await enqueue(queue, book, book_root)
        await wait_for(lambda: len(provider.calls) == 1)

        # Simulate a stale meta file left by an older write
        meta_path = meta_path_for(book_root, job.base_name)
        stale = json.loads(meta_path.read_text())
        stale["status"] = "queued"
        meta_path.write_text(json.dumps(stale))

        jobs = await queue.list_jobs("alice", book.id)
        assert jobs[0].status == TranscriptionJobStatus.in_progress

        provider.gate.set()
        await queue.drain()

    @pytest.mark.asyncio
    async def test_sorted_by_update_newest_first(self, queue, book, book_root, with_key):
        older = await enqueue(queue, book, book_root, base_name="1700000000000-loose-note")
        await queue.drain()
        newer = await enqueue(queue, book, book_root, base_name="1700000005000-loose-note")
        await queue.drain()

        jobs = await queue.list_jobs("alice", book.id)
        assert [j.id for j in jobs] == [newer.id, older.id]

    @pytest.mark.asyncio
    async def test_malformed_meta_is_skipped(self, queue, book, book_root, with_key):
        await enqueue(queue, book, book_root)
        await queue.drain()
        (book_root / "transcriptions" / "broken.meta.json").write_text("{not json")

        restarted = TranscriptionQueue(queue.projects, queue.profiles, queue.provider)
        jobs = await restarted.list_jobs("alice", book.id)

        assert len(jobs) == 1

    @pytest.mark.asyncio
    async def test_finished_meta_beats_stale_in_memory_copy(self, queue, book, book_root, with_key):
        job = make_store_job(book_id=book.id)
        job.transition(TranscriptionJobStatus.in_progress)
        await queue.store.save(job, book_root)

        # Worker finished after the index was read
        meta_path = meta_path_for(book_root, job.base_name)
        finished = json.loads(meta_path.read_text())
        finished["status"] = "completed"
        meta_path.write_text(json.dumps(finished))

        jobs = await queue.list_jobs("alice", book.id)
        assert jobs[0].status == TranscriptionJobStatus.completed


# =============================================================================
# Store Tests
# =============================================================================


def make_store_job(book_id: str = "book-1") -> TranscriptionJob:
    return TranscriptionJob(
        id="job-1",
        username="alice",
        book_id=book_id,
        base_name="x",
        model="gpt-4o-transcribe",
        recording_path="recordings/x.webm",
        transcription_path="transcriptions/x.txt",
    )


class TestJobStore:
    @pytest.mark.asyncio
    async def test_store_len_counts_indexed_jobs(self, book_root):
        store = TranscriptionJobStore()
        job = make_store_job()
        await store.save(job, book_root)

        assert len(store) == 1
        assert meta_path_for(book_root, "x").is_file()

    @pytest.mark.asyncio
    async def test_index_holds_a_copy(self, book_root):
        store = TranscriptionJobStore()
        job = make_store_job()
        await store.save(job, book_root)

        job.transition(TranscriptionJobStatus.in_progress)

        indexed = await store.list_in_memory("alice", "book-1")
        assert indexed[0].status == TranscriptionJobStatus.queued
        assert read_meta(book_root, "x")["status"] == "queued"

    @pytest.mark.asyncio
    async def test_finished_jobs_leave_the_index(self, queue, book, book_root, with_key):
        job = await enqueue(queue, book, book_root)
        assert len(queue.store) == 1

        await queue.drain()

        assert len(queue.store) == 0
        assert (await queue.get_job("alice", book.id, job.id)).status == TranscriptionJobStatus.completed

    @pytest.mark.asyncio
    async def test_interrupted_meta_write_keeps_job_recoverable(
        self, projects, profiles, provider, book, book_root, with_key
    ):
        first = TranscriptionQueue(projects, profiles, provider)
        job = await enqueue(first, book, book_root)

        # Every later meta write dies before it lands on the real file
        with patch("aiofiles.os.replace", AsyncMock(side_effect=OSError("No space left on device"))):
            await first.drain()

        assert provider.calls == []
        assert read_meta(book_root)["status"] == "queued"
        assert not list((book_root / "transcriptions").glob(".*.tmp"))

        restarted = TranscriptionQueue(projects, profiles, provider)
        jobs = await restarted.list_jobs("alice", book.id)

        assert [j.id for j in jobs] == [job.id]
        assert jobs[0].status == TranscriptionJobStatus.queued
