"""Tests for Write Book prompt building."""

from datetime import datetime, timezone

import pytest

from fastchapter.models import ChecklistChapter, WriteBookChecklist
from fastchapter.services.prompts import (
    MAX_OUTLINE_OVERVIEW_LINES,
    PromptTemplates,
    apply_prompt_variables,
    build_chapter_prompt,
    build_verify_main_tex_prompt,
    format_chapter_overview,
    format_initial_outline_overview,
    load_prompt_templates,
)


def make_chapter(index: int, transcriptions=None) -> ChecklistChapter:
    transcriptions = transcriptions or []
    return ChecklistChapter(
        index=index,
        tex_path=f"chapters/chapter-{index}/chapter-{index}.tex",
        has_seed_text=True,
        recording_count=0,
        transcription_count=len(transcriptions),
        has_voice_material=bool(transcriptions),
        transcription_paths=transcriptions,
    )


@pytest.fixture
def checklist():
    return WriteBookChecklist(
        generated_at=datetime.now(timezone.utc),
        book_title="Voice First",
        checks=[],
        minimum_recommended_ready=True,
        initial_outline_transcription_paths=["transcriptions/initial-outline/1-initial-outline.txt"],
        chapters=[
            make_chapter(1, ["transcriptions/chapters/chapter-1/1-chapter-recording-chapter-1.txt"]),
            make_chapter(2),
        ],
    )


class TestApplyPromptVariables:
    def test_replaces_known_and_blanks_unknown(self):
        result = apply_prompt_variables("{{BOOK_TITLE}} / {{ CHAPTER_INDEX }} / {{MISSING}}", {
            "BOOK_TITLE": "Voice First",
            "CHAPTER_INDEX": "2",
        })
        assert result == "Voice First / 2 / "

    def test_lowercase_braces_are_left_alone(self):
        assert apply_prompt_variables("{{lower}}", {"lower": "x"}) == "{{lower}}"


class TestOverviews:
    def test_chapter_overview(self, checklist):
        overview = format_chapter_overview(checklist.chapters)
        assert overview.splitlines()[0] == (
            "- Chapter 1: chapters/chapter-1/chapter-1.tex | recordings=0 | transcriptions=1"
        )

    def test_empty_chapter_overview(self):
        assert format_chapter_overview([]) == "- (no chapters found)"

    def test_outline_overview_is_capped(self, checklist):
        checklist.initial_outline_transcription_paths = [f"t/{i}.txt" for i in range(60)]
        lines = format_initial_outline_overview(checklist).splitlines()
        assert len(lines) == MAX_OUTLINE_OVERVIEW_LINES


class TestDefaultPrompts:
    def test_first_chapter_prompt(self, checklist):
        prompt = build_chapter_prompt(checklist, checklist.chapters[0], True)

        assert prompt.startswith('You are drafting the book "Voice First"')
        assert "Write Chapter 1 now." in prompt
        assert "- Target LaTeX file: chapters/chapter-1/chapter-1.tex" in prompt
        assert "- transcriptions/chapters/chapter-1/1-chapter-recording-chapter-1.txt" in prompt
        assert "- transcriptions/initial-outline/1-initial-outline.txt" in prompt

    def test_next_chapter_prompt(self, checklist):
        prompt = build_chapter_prompt(checklist, checklist.chapters[1], False)

        assert prompt.startswith("Continue in the same thread and write Chapter 2.")
        assert "- (none found)" in prompt

    def test_verify_prompt(self, checklist):
        prompt = build_verify_main_tex_prompt(checklist)

        assert prompt.startswith('Final verification step for "Voice First".')
        assert "Open and validate `main.tex`." in prompt
        assert "- Chapter 2: chapters/chapter-2/chapter-2.tex" in prompt


class TestTemplateOverrides:
    @pytest.mark.asyncio
    async def test_templates_are_loaded_from_directory(self, tmp_path, checklist):
        (tmp_path / "book-context.md").write_text("Book: {{BOOK_TITLE}} ({{TOTAL_CHAPTERS}} chapters)\n")
        (tmp_path / "write-first-chapter.md").write_text("Write {{CHAPTER_FILE}}\n")

        templates = await load_prompt_templates(tmp_path)
        prompt = build_chapter_prompt(checklist, checklist.chapters[0], True, templates)

        assert prompt == "Book: Voice First (2 chapters)\n\nWrite chapters/chapter-1/chapter-1.tex"
        assert templates.next_chapter == ""

    @pytest.mark.asyncio
    async def test_missing_directory_uses_defaults(self, tmp_path, checklist):
        templates = await load_prompt_templates(tmp_path / "missing")
        assert templates == PromptTemplates()

    def test_verify_template(self, checklist):
        templates = PromptTemplates(verify_main_tex="Check {{MAIN_TEX_FILE}} for {{BOOK_TITLE}}")
        assert build_verify_main_tex_prompt(checklist, templates) == "Check main.tex for Voice First"
