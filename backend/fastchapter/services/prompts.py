"""Prompt templates for Write Book sessions.

Contains prompts for:
1. Chapter turns - the first chapter opens the thread, later chapters continue it
2. Verification turn - reconcile main.tex against the chapter files

Each prompt has a built-in default. Markdown templates in CODEX_PROMPTS_DIR
override them, with `{{VARIABLE}}` placeholders filled from the checklist.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fastchapter.models import ChecklistChapter, WriteBookChecklist

from .project_service import MAIN_TEX_FILE, read_text_or_empty

CODEX_PROMPTS_DIR = os.environ.get("CODEX_PROMPTS_DIR", "")

PROMPT_FILES = {
    "book_context": "book-context.md",
    "first_chapter": "write-first-chapter.md",
    "next_chapter": "write-next-chapter.md",
    "verify_main_tex": "verify-main-tex.md",
}

# Outline files listed in a chapter prompt
MAX_OUTLINE_OVERVIEW_LINES = 40

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Z0-9_]+)\s*\}\}")


@dataclass
class PromptTemplates:
    """Override templates. Empty strings fall back to the built-in prompts."""

    book_context: str = ""
    first_chapter: str = ""
    next_chapter: str = ""
    verify_main_tex: str = ""


async def load_prompt_templates(prompts_dir: Optional[Path | str] = None) -> PromptTemplates:
    """Read override templates. Missing files leave the default in place."""
    root = prompts_dir if prompts_dir is not None else CODEX_PROMPTS_DIR
    if not root:
        return PromptTemplates()

    root_path = Path(root)
    values = {}
    for field_name, file_name in PROMPT_FILES.items():
        values[field_name] = (await read_text_or_empty(root_path / file_name)).strip()
    return PromptTemplates(**values)


def apply_prompt_variables(template: str, variables: dict[str, str]) -> str:
    """Fill `{{NAME}}` placeholders. Unknown names become empty strings."""
    return _PLACEHOLDER.sub(lambda m: str(variables.get(m.group(1), "")), template or "")


def _bullet_list(items: list[str]) -> str:
    if not items:
        return "- (none found)"
    return "\n".join(f"- {item}" for item in items)


def format_chapter_overview(chapters: list[ChecklistChapter]) -> str:
    if not chapters:
        return "- (no chapters found)"
    return "\n".join(
        f"- Chapter {c.index}: {c.tex_path} | recordings={c.recording_count} | transcriptions={c.transcription_count}"
        for c in chapters
    )


def format_initial_outline_overview(checklist: WriteBookChecklist) -> str:
    lines = [
        *(f"- {item}" for item in checklist.initial_outline_transcription_paths),
        *(f"- {item}" for item in checklist.initial_outline_recording_paths),
    ]
    if not lines:
        return "- (none found)"
    return "\n".join(lines[:MAX_OUTLINE_OVERVIEW_LINES])


# ==============================================================================
# Chapter Prompts
# ==============================================================================


def _default_first_chapter_prompt(book_title: str, chapter: ChecklistChapter, variables: dict[str, str]) -> str:
    return "\n".join([
        f'You are drafting the book "{book_title}" inside this workspace.',
        "",
        "Context:",
        variables["CHAPTER_OVERVIEW"],
        "",
        "Initial outline material:",
        variables["INITIAL_OUTLINE_FILES"],
        "",
        f"Write Chapter {chapter.index} now.",
        f"- Target LaTeX file: {chapter.tex_path}",
        "- Use transcriptions as the source of truth for facts and claims.",
        "- Keep LaTeX valid and keep existing project structure intact.",
        "- Write directly into the target file.",
        "- If evidence is missing, keep prose conservative and avoid inventing facts.",
        "",
        "Chapter transcriptions:",
        variables["CHAPTER_TRANSCRIPTIONS"],
        "",
        "Chapter recordings:",
        variables["CHAPTER_RECORDINGS"],
        "",
        "After writing, return a short summary of what you changed.",
    ])


def _default_next_chapter_prompt(chapter: ChecklistChapter, variables: dict[str, str]) -> str:
    return "\n".join([
        f"Continue in the same thread and write Chapter {chapter.index}.",
        f"- Target LaTeX file: {chapter.tex_path}",
        "- Keep continuity with the previous chapters.",
        "- Use chapter transcriptions as source truth.",
        "- Write directly into the target file and keep LaTeX valid.",
        "",
        "Chapter transcriptions:",
        variables["CHAPTER_TRANSCRIPTIONS"],
        "",
        "Chapter recordings:",
        variables["CHAPTER_RECORDINGS"],
        "",
        "Then return a short summary.",
    ])


def build_chapter_prompt(
    checklist: WriteBookChecklist,
    chapter: ChecklistChapter,
    is_first_chapter: bool,
    templates: Optional[PromptTemplates] = None,
) -> str:
    """Build the prompt for one chapter turn.

    Args:
        checklist: Readiness report the session was started from.
        chapter: Chapter being written.
        is_first_chapter: True for the turn that opens the thread.
        templates: Optional overrides loaded from CODEX_PROMPTS_DIR.

    Returns:
        Book context (if a template exists) followed by the task prompt.
    """
    templates = templates or PromptTemplates()
    variables = {
        "BOOK_TITLE": checklist.book_title,
        "CHAPTER_INDEX": str(chapter.index),
        "CHAPTER_FILE": chapter.tex_path,
        "TOTAL_CHAPTERS": str(len(checklist.chapters)),
        "CHAPTER_OVERVIEW": format_chapter_overview(checklist.chapters),
        "CHAPTER_TRANSCRIPTIONS": _bullet_list(chapter.transcription_paths),
        "CHAPTER_RECORDINGS": _bullet_list(chapter.recording_paths),
        "INITIAL_OUTLINE_FILES": format_initial_outline_overview(checklist),
    }

    book_context = (
        apply_prompt_variables(templates.book_context, variables) if templates.book_context else ""
    )

    task_template = templates.first_chapter if is_first_chapter else templates.next_chapter
    if task_template:
        task_prompt = apply_prompt_variables(task_template, variables)
    elif is_first_chapter:
        task_prompt = _default_first_chapter_prompt(checklist.book_title, chapter, variables)
    else:
        task_prompt = _default_next_chapter_prompt(chapter, variables)

    return "\n\n".join(part for part in (book_context, task_prompt) if part)


# ==============================================================================
# Verification Prompt
# ==============================================================================


def build_verify_main_tex_prompt(
    checklist: WriteBookChecklist,
    templates: Optional[PromptTemplates] = None,
) -> str:
    """Build the final turn that checks main.tex includes against chapter files."""
    templates = templates or PromptTemplates()
    chapter_overview = format_chapter_overview(checklist.chapters)

    if templates.verify_main_tex:
        return apply_prompt_variables(templates.verify_main_tex, {
            "BOOK_TITLE": checklist.book_title,
            "TOTAL_CHAPTERS": str(len(checklist.chapters)),
            "CHAPTER_OVERVIEW": chapter_overview,
            "MAIN_TEX_FILE": MAIN_TEX_FILE,
        })

    return "\n".join([
        f'Final verification step for "{checklist.book_title}".',
        "",
        f"Open and validate `{MAIN_TEX_FILE}`.",
        "- Ensure chapter includes match existing chapter files.",
        "- Ensure cover/back page includes are intact.",
        "- Keep LaTeX structure consistent and valid.",
        f"- If mismatches exist, fix `{MAIN_TEX_FILE}` directly.",
        "",
        "Chapter map:",
        chapter_overview,
        "",
        "Return a concise summary of any fixes.",
    ])
