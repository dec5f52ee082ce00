"""Project service: users, books, chapters and the LaTeX scaffold on disk.

Layout under the data directory:

    users/<user>/profile.json
    users/<user>/books/<book_id>/book.json
    users/<user>/books/<book_id>/main.tex
    users/<user>/books/<book_id>/chapters/chapter-N/chapter-N.tex
"""

import json
import logging
import os
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os

from fastchapter.errors import BookNotFoundError, InvalidInputError, PathEscapeError
from fastchapter.models import BookSummary, ChapterDescriptor

logger = logging.getLogger(__name__)

# Default data directory (can be overridden via environment variable)
DATA_DIR = Path(os.environ.get("FASTCHAPTER_DATA_DIR", Path.home() / ".fastchapter"))

USERS_DIR = "users"
BOOKS_DIR = "books"
BOOK_META_FILE = "book.json"
MAIN_TEX_FILE = "main.tex"

_CHAPTER_FOLDER = re.compile(r"^chapter-(\d+)$")


def normalize_user_name(value: str | None) -> str:
    """Lowercase and reduce a user name to [a-z0-9_-]."""
    cleaned = re.sub(r"[^a-z0-9_-]", "-", str(value or "").strip().lower())
    return re.sub(r"-+", "-", cleaned).strip("-")


def normalize_relative_path(value: str | None) -> str:
    """Use forward slashes and drop leading slashes."""
    return str(value or "").strip().replace("\\", "/").lstrip("/")


def resolve_inside(root: Path, candidate_relative_path: str) -> Path:
    """Resolve a relative path, refusing anything outside `root`.

    Raises:
        PathEscapeError: If the resolved path is not below root.
    """
    root_path = root.resolve()
    candidate = (root_path / candidate_relative_path).resolve()
    if candidate == root_path or root_path in candidate.parents:
        return candidate
    raise PathEscapeError(candidate_relative_path)


def to_relative(root: Path, absolute_path: Path) -> str:
    return absolute_path.relative_to(root).as_posix()


async def read_json(path: Path) -> Any:
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        return json.loads(await f.read())


async def write_json(path: Path, data: Any) -> None:
    """Write JSON through a temp file so readers never see a truncated file."""
    payload = json.dumps(data, indent=2)
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
            await f.write(payload)
        await aiofiles.os.replace(tmp_path, path)
    except BaseException:
        if tmp_path.exists():
            await aiofiles.os.remove(tmp_path)
        raise


async def read_text_or_empty(path: Path) -> str:
    try:
        async with aiofiles.open(path, "r", encoding="utf-8") as f:
            return await f.read()
    except OSError:
        return ""


async def write_text(path: Path, content: str) -> None:
    async with aiofiles.open(path, "w", encoding="utf-8") as f:
        await f.write(content)


def build_chapter_tex(title: str) -> str:
    return f"\\chapter{{{title}}}\n\nWrite this chapter by voice first, then refine.\n"


def build_main_tex(chapters: list[ChapterDescriptor]) -> str:
    """Render the master include file for the given chapters."""
    if chapters:
        chapter_inputs = [f"\\input{{{chapter.tex_relative_path}}}" for chapter in chapters]
    else:
        chapter_inputs = ["% No chapters yet. Add one from the workspace."]

    return "\n".join([
        "\\documentclass[12pt]{book}",
        "\\usepackage[utf8]{inputenc}",
        "\\usepackage[T1]{fontenc}",
        "\\usepackage{graphicx}",
        "\\usepackage{hyperref}",
        "",
        "\\begin{document}",
        "",
        "% Cover",
        "\\input{cover-page.tex}",
        "",
        "% Front matter + auto TOC",
        "\\frontmatter",
        "\\tableofcontents",
        "",
        "% Main content",
        "\\mainmatter",
        *chapter_inputs,
        "",
        "% Back matter",
        "\\backmatter",
        "\\input{back-page.tex}",
        "",
        "\\end{document}",
        "",
    ])


class ProjectService:
    """Filesystem operations for users and books."""

    def __init__(self, data_dir: Path | None = None):
        """Initialize the project service.

        Args:
            data_dir: Base directory for user data. Defaults to FASTCHAPTER_DATA_DIR.
        """
        self.data_dir = Path(data_dir or DATA_DIR)

    def user_root(self, username: str) -> Path:
        return self.data_dir / USERS_DIR / username

    def books_root(self, username: str) -> Path:
        return self.user_root(username) / BOOKS_DIR

    def book_root(self, username: str, book_id: str) -> Path:
        # book_id comes from callers; keep it a single path segment
        return resolve_inside(self.books_root(username), book_id)

    async def ensure_user(self, username_raw: str) -> str:
        """Create the user directory tree. Returns the normalized name."""
        username = normalize_user_name(username_raw)
        if not username:
            raise InvalidInputError("Please provide a valid local username.")
        self.books_root(username).mkdir(parents=True, exist_ok=True)
        return username

    async def assert_book_exists(self, username: str, book_id: str) -> Path:
        """Return the book root or raise BookNotFoundError."""
        book_root = self.book_root(username, book_id)
        if not (book_root / BOOK_META_FILE).is_file():
            raise BookNotFoundError(book_id)
        return book_root

    async def create_book(self, username: str, title_raw: str) -> BookSummary:
        title = str(title_raw or "").strip()
        if not title:
            raise InvalidInputError("Book title cannot be empty.")

        username = await self.ensure_user(username)
        book_id = str(uuid.uuid4())
        book_root = self.book_root(username, book_id)
        (book_root / "chapters").mkdir(parents=True, exist_ok=True)
        (book_root / "recordings").mkdir(exist_ok=True)
        (book_root / "transcriptions").mkdir(exist_ok=True)

        now = datetime.now(timezone.utc)
        summary = BookSummary(id=book_id, title=title, created_at=now, updated_at=now)
        await write_json(book_root / BOOK_META_FILE, summary.model_dump(mode="json"))
        await self.ensure_latex_scaffold(book_root)

        logger.info(f"Created book {book_id} for user {username}")
        return summary

    async def read_book_title(self, book_root: Path) -> str:
        try:
            meta = await read_json(book_root / BOOK_META_FILE)
        except (OSError, ValueError):
            return "Untitled Book"
        title = meta.get("title") if isinstance(meta, dict) else None
        if isinstance(title, str) and title.strip():
            return title.strip()
        return "Untitled Book"

    async def list_books(self, username_raw: str) -> list[BookSummary]:
        """Books for a user, most recently updated first.

        Folders without a readable book.json are skipped.
        """
        username = await self.ensure_user(username_raw)
        books = []
        for entry in self.books_root(username).iterdir():
            if not entry.is_dir():
                continue
            try:
                books.append(BookSummary.model_validate(await read_json(entry / BOOK_META_FILE)))
            except (OSError, ValueError) as e:
                logger.warning(f"Skipping book folder {entry.name}: {e}")
        books.sort(key=lambda b: b.updated_at, reverse=True)
        return books

    async def rename_book(self, username: str, book_id: str, title_raw: str) -> BookSummary:
        title = str(title_raw or "").strip()
        if not title:
            raise InvalidInputError("Title cannot be empty.")

        book_root = await self.assert_book_exists(username, book_id)
        meta_path = book_root / BOOK_META_FILE
        summary = BookSummary.model_validate(await read_json(meta_path))
        summary.title = title
        summary.updated_at = datetime.now(timezone.utc)
        await write_json(meta_path, summary.model_dump(mode="json"))

        logger.info(f"Renamed book {book_id} to {title!r}")
        return summary

    async def touch_book(self, username: str, book_id: str) -> None:
        """Bump book.json updated_at. Missing or malformed metadata is left alone."""
        meta_path = self.book_root(username, book_id) / BOOK_META_FILE
        try:
            meta = await read_json(meta_path)
        except (OSError, ValueError):
            return
        meta["updated_at"] = datetime.now(timezone.utc).isoformat()
        await write_json(meta_path, meta)

    def list_chapter_descriptors(self, book_root: Path) -> list[ChapterDescriptor]:
        """Chapters sorted by ascending index."""
        chapters_root = book_root / "chapters"
        chapters_root.mkdir(parents=True, exist_ok=True)

        chapters = []
        for entry in chapters_root.iterdir():
            if not entry.is_dir():
                continue
            match = _CHAPTER_FOLDER.match(entry.name)
            if not match or int(match.group(1)) < 1:
                continue
            chapters.append(ChapterDescriptor(
                index=int(match.group(1)),
                tex_relative_path=f"chapters/{entry.name}/{entry.name}.tex",
            ))
        chapters.sort(key=lambda c: c.index)
        return chapters

    async def refresh_main_tex(self, book_root: Path) -> None:
        chapters = self.list_chapter_descriptors(book_root)
        await write_text(book_root / MAIN_TEX_FILE, build_main_tex(chapters))

    async def ensure_latex_scaffold(self, book_root: Path) -> None:
        """Create cover/back pages and main.tex if they are missing."""
        (book_root / "chapters").mkdir(parents=True, exist_ok=True)

        cover_path = book_root / "cover-page.tex"
        if not cover_path.exists():
            await write_text(
                cover_path,
                "\\begin{titlepage}\n  \\centering\n  {\\Huge Fast Chapter Draft\\par}\n\\end{titlepage}\n",
            )

        back_path = book_root / "back-page.tex"
        if not back_path.exists():
            await write_text(back_path, "% Back page placeholder\n")

        if not (book_root / MAIN_TEX_FILE).exists():
            await self.refresh_main_tex(book_root)

    async def create_chapter(self, username: str, book_id: str) -> ChapterDescriptor:
        """Add the next chapter folder and refresh main.tex."""
        book_root = await self.assert_book_exists(username, book_id)
        await self.ensure_latex_scaffold(book_root)

        existing = self.list_chapter_descriptors(book_root)
        next_index = existing[-1].index + 1 if existing else 1
        folder = f"chapter-{next_index}"
        chapter_dir = book_root / "chapters" / folder
        chapter_dir.mkdir(parents=True, exist_ok=True)
        await write_text(chapter_dir / f"{folder}.tex", build_chapter_tex(f"Chapter {next_index}"))

        await self.refresh_main_tex(book_root)
        await self.touch_book(username, book_id)
        return ChapterDescriptor(index=next_index, tex_relative_path=f"chapters/{folder}/{folder}.tex")


def list_files_recursive(root_dir: Path) -> list[str]:
    """All regular files below root_dir as posix paths relative to it."""
    if not root_dir.is_dir():
        return []
    return sorted(
        path.relative_to(root_dir).as_posix()
        for path in root_dir.rglob("*")
        if path.is_file()
    )
