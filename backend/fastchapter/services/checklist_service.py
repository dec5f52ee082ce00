"""Write Book readiness checklist.

Reports which chapters have voice material and seed text, whether any
initial-outline material exists, and whether the book meets the minimum
recommended bar for a Write Book session. No check is blocking.
"""

from datetime import datetime, timezone

from fastchapter.models import ChecklistChapter, ChecklistCheck, WriteBookChecklist

from .project_service import ProjectService, list_files_recursive, read_text_or_empty, resolve_inside
from .transcription_jobs import META_SUFFIX


def has_path_prefix(candidate: str, prefix: str) -> bool:
    """True when `candidate` equals `prefix` or lies below it."""
    clean_candidate = candidate.replace("\\", "/")
    clean_prefix = prefix.replace("\\", "/").strip("/")
    if not clean_prefix:
        return bool(clean_candidate)
    return clean_candidate == clean_prefix or clean_candidate.startswith(f"{clean_prefix}/")


class ChecklistService:
    def __init__(self, projects: ProjectService):
        self.projects = projects

    async def get_checklist(self, username: str, book_id: str) -> WriteBookChecklist:
        book_root = await self.projects.assert_book_exists(username, book_id)
        await self.projects.ensure_latex_scaffold(book_root)

        book_title = await self.projects.read_book_title(book_root)
        chapters = self.projects.list_chapter_descriptors(book_root)

        recording_entries = list_files_recursive(book_root / "recordings")
        transcription_entries = [
            entry for entry in list_files_recursive(book_root / "transcriptions")
            if not entry.endswith(META_SUFFIX)
        ]

        outline_recordings = [
            f"recordings/{entry}" for entry in recording_entries
            if has_path_prefix(entry, "initial-outline")
        ]
        outline_transcriptions = [
            f"transcriptions/{entry}" for entry in transcription_entries
            if has_path_prefix(entry, "initial-outline")
        ]
        outline_count = len(outline_recordings) + len(outline_transcriptions)

        diagnostics = []
        for chapter in chapters:
            folder = f"chapters/chapter-{chapter.index}"
            recording_paths = [
                f"recordings/{entry}" for entry in recording_entries if has_path_prefix(entry, folder)
            ]
            transcription_paths = [
                f"transcriptions/{entry}" for entry in transcription_entries if has_path_prefix(entry, folder)
            ]
            tex_content = await read_text_or_empty(resolve_inside(book_root, chapter.tex_relative_path))

            diagnostics.append(ChecklistChapter(
                index=chapter.index,
                tex_path=chapter.tex_relative_path,
                has_seed_text=bool(tex_content.strip()),
                recording_count=len(recording_paths),
                transcription_count=len(transcription_paths),
                has_voice_material=bool(recording_paths or transcription_paths),
                recording_paths=recording_paths,
                transcription_paths=transcription_paths,
            ))

        missing_voice = [str(c.index) for c in diagnostics if not c.has_voice_material]
        missing_seed = [str(c.index) for c in diagnostics if not c.has_seed_text]

        checks = [
            ChecklistCheck(
                id="initial-outline-material",
                label="Initial outline material",
                ok=outline_count > 0,
                details=(
                    f"{outline_count} initial-outline file(s) detected."
                    if outline_count
                    else "No initial-outline recordings/transcriptions found yet."
                ),
            ),
            ChecklistCheck(
                id="chapters-exist",
                label="Chapter folders",
                ok=bool(diagnostics),
                details=(
                    f"{len(diagnostics)} chapter folder(s) detected."
                    if diagnostics
                    else "No chapters found. Create at least one chapter before writing."
                ),
            ),
            ChecklistCheck(
                id="chapter-voice-material",
                label="Voice material per chapter",
                ok=not missing_voice and bool(diagnostics),
                details=(
                    "Every chapter has recordings or transcriptions."
                    if not missing_voice
                    else f"Missing chapter voice material for: {', '.join(missing_voice)}."
                ),
            ),
            ChecklistCheck(
                id="chapter-seed-text",
                label="Chapter seed text exists",
                ok=not missing_seed and bool(diagnostics),
                details=(
                    "Each chapter .tex file has some content."
                    if not missing_seed
                    else f"Empty chapter tex files: {', '.join(missing_seed)}."
                ),
            ),
        ]

        return WriteBookChecklist(
            generated_at=datetime.now(timezone.utc),
            book_title=book_title,
            checks=checks,
            minimum_recommended_ready=bool(diagnostics) and outline_count > 0 and not missing_voice,
            initial_outline_recording_paths=outline_recordings,
            initial_outline_transcription_paths=outline_transcriptions,
            chapters=diagnostics,
        )
