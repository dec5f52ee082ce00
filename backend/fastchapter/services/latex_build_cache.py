"""LaTeX build cache: fingerprinted, single-flight PDF compilation.

For each (book, entrypoint) key the cache remembers the fingerprint of
the last successful build. A compile request:

1. validates the entrypoint (.tex, exists inside the book),
2. fingerprints every compile-relevant file (path|size|mtime, sorted),
3. joins an in-flight build for the same key if there is one,
4. returns the cached artifact if fingerprint and file still match,
5. otherwise runs the compiler into `.fastchapter-build/`.

Entries live for the process lifetime only; a cold start recompiles once.
At most one build per key runs at a time, since two compilers writing
the same output directory corrupt the PDF.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastchapter.errors import (
    ArtifactMissingError,
    CompileFailedError,
    EntrypointNotFoundError,
    InvalidEntrypointError,
    NoCompilerFoundError,
    SpawnError,
)
from fastchapter.models import CompileCacheEntry, CompileOutcome, CompileResult, CompilerKind

from .project_service import normalize_relative_path, resolve_inside
from .tool_runner import ToolRunner

logger = logging.getLogger(__name__)

LATEX_BUILD_DIR = ".fastchapter-build"
LATEX_COMPILE_TIMEOUT_SECONDS = float(os.environ.get("LATEX_COMPILE_TIMEOUT_SECONDS", "600"))
TOOL_PROBE_TIMEOUT_SECONDS = float(os.environ.get("TOOL_PROBE_TIMEOUT_SECONDS", "15"))

# Characters of compiler output kept for diagnostics
LATEX_LOG_TAIL_LIMIT = 12000

LATEX_RELEVANT_EXTENSIONS = frozenset({
    ".tex", ".sty", ".cls", ".bib", ".bst",
    ".png", ".jpg", ".jpeg", ".pdf", ".svg", ".eps",
})
LATEX_IGNORED_DIRS = frozenset({
    LATEX_BUILD_DIR,
    "recordings",
    "transcriptions",
    ".git",
    "node_modules",
})


@dataclass(frozen=True, slots=True)
class CompilerSpec:
    kind: CompilerKind
    command: str


# Probe order: preferred first
COMPILER_CANDIDATES = (
    CompilerSpec(CompilerKind.latexmk, "latexmk"),
    CompilerSpec(CompilerKind.pdflatex, "pdflatex"),
)


def trim_log_tail(output: str | None, limit: int = LATEX_LOG_TAIL_LIMIT) -> str:
    """Keep the last `limit` characters of trimmed output."""
    text = str(output or "").strip()
    if len(text) <= limit:
        return text
    return text[-limit:]


def collect_fingerprint_files(book_root: Path) -> list[str]:
    """Sorted `relative_path|size|mtime_ms` descriptors of compile-relevant files."""
    descriptors = []
    for current_dir, dir_names, file_names in os.walk(book_root):
        # Prune ignored subtrees in place so os.walk never descends into them
        dir_names[:] = [d for d in dir_names if d not in LATEX_IGNORED_DIRS]
        for name in file_names:
            if Path(name).suffix.lower() not in LATEX_RELEVANT_EXTENSIONS:
                continue
            absolute_path = Path(current_dir) / name
            try:
                stats = absolute_path.stat()
            except FileNotFoundError:
                continue
            relative_path = absolute_path.relative_to(book_root).as_posix()
            mtime_ms = round(stats.st_mtime_ns / 1_000_000)
            descriptors.append(f"{relative_path}|{stats.st_size}|{mtime_ms}")

    descriptors.sort()
    return descriptors


def compute_fingerprint(book_root: Path, entry_relative_path: str) -> str:
    """Digest of the entrypoint name plus every compile-relevant file."""
    digest = hashlib.sha1()
    digest.update(f"entry:{entry_relative_path}\n".encode("utf-8"))
    for descriptor in collect_fingerprint_files(book_root):
        digest.update(f"{descriptor}\n".encode("utf-8"))
    return digest.hexdigest()


def build_compile_args(kind: CompilerKind, entry_relative_path: str, build_root: Path) -> list[str]:
    """Non-interactive, halt-on-first-error command line for a compiler."""
    if kind == CompilerKind.latexmk:
        return [
            "-pdf",
            "-interaction=nonstopmode",
            "-file-line-error",
            "-halt-on-error",
            f"-outdir={build_root}",
            entry_relative_path,
        ]
    return [
        "-interaction=nonstopmode",
        "-file-line-error",
        "-halt-on-error",
        f"-output-directory={build_root}",
        entry_relative_path,
    ]


def artifact_path(book_root: Path, entry_relative_path: str) -> Path:
    """Where the compiler writes the PDF for an entrypoint."""
    return book_root / LATEX_BUILD_DIR / f"{Path(entry_relative_path).stem}.pdf"


@dataclass(slots=True)
class _CacheSlot:
    entry: Optional[CompileCacheEntry] = None
    in_flight: Optional[asyncio.Task] = None


@dataclass(slots=True)
class _Execution:
    duration_ms: int
    log_tail: str


class LatexBuildCache:
    """Process-lifetime registry of builds keyed by (book root, entrypoint).

    Usage:
        cache = LatexBuildCache(ToolRunner())
        result = await cache.compile(book_root, "main.tex")
    """

    def __init__(
        self,
        runner: ToolRunner,
        compile_timeout_seconds: float = LATEX_COMPILE_TIMEOUT_SECONDS,
        probe_timeout_seconds: float = TOOL_PROBE_TIMEOUT_SECONDS,
    ):
        self._runner = runner
        self._compile_timeout_seconds = compile_timeout_seconds
        self._probe_timeout_seconds = probe_timeout_seconds
        self._slots: dict[tuple[str, str], _CacheSlot] = {}
        self._compiler: Optional[CompilerSpec] = None
        self._compiler_probe: Optional[asyncio.Task] = None

    def get_entry(self, book_root: Path, entry_relative_path: str) -> Optional[CompileCacheEntry]:
        slot = self._slots.get(self._key(book_root, entry_relative_path))
        return slot.entry if slot else None

    def is_building(self, book_root: Path, entry_relative_path: str) -> bool:
        slot = self._slots.get(self._key(book_root, entry_relative_path))
        return bool(slot and slot.in_flight and not slot.in_flight.done())

    @staticmethod
    def _key(book_root: Path, entry_relative_path: str) -> tuple[str, str]:
        return (str(book_root.resolve()), entry_relative_path)

    async def detect_compiler(self) -> CompilerSpec:
        """Probe latexmk then pdflatex. Successful detection is memoized."""
        if self._compiler is not None:
            return self._compiler
        if self._compiler_probe is None or self._compiler_probe.done():
            self._compiler_probe = asyncio.create_task(self._probe_compilers())
        try:
            self._compiler = await asyncio.shield(self._compiler_probe)
        finally:
            if self._compiler is None and self._compiler_probe.done():
                # Failed detections are retried on the next request
                self._compiler_probe = None
        return self._compiler

    async def _probe_compilers(self) -> CompilerSpec:
        for candidate in COMPILER_CANDIDATES:
            try:
                check = await self._runner.run(
                    candidate.command, ["--version"], None, self._probe_timeout_seconds
                )
            except SpawnError:
                logger.debug(f"{candidate.command} not available")
                continue
            if check.ok:
                logger.info(f"Using LaTeX compiler {candidate.command}")
                return candidate
        raise NoCompilerFoundError()

    async def compile(self, book_root: Path, entry_relative_path: str = "main.tex") -> CompileResult:
        """Compile an entrypoint, reusing the cached PDF when nothing changed.

        Raises:
            InvalidEntrypointError: Entry is not a .tex file.
            EntrypointNotFoundError: Entry does not exist.
            NoCompilerFoundError: Neither latexmk nor pdflatex responds.
            CompileFailedError: Compiler exited non-zero (carries the log tail).
            ArtifactMissingError: Compiler succeeded without producing the PDF.
        """
        entry = normalize_relative_path(entry_relative_path or "main.tex") or "main.tex"
        if not entry.lower().endswith(".tex"):
            raise InvalidEntrypointError("LaTeX compile entry must be a .tex file.")

        entry_absolute_path = resolve_inside(book_root, entry)
        if not entry_absolute_path.is_file():
            raise EntrypointNotFoundError(entry)

        fingerprint = await asyncio.to_thread(compute_fingerprint, book_root, entry)

        # No await between the in-flight check and registering a new build
        key = self._key(book_root, entry)
        slot = self._slots.setdefault(key, _CacheSlot())

        if slot.in_flight is not None and not slot.in_flight.done():
            logger.debug(f"Joining in-flight build for {entry}")
            return await asyncio.shield(slot.in_flight)

        pdf_path = artifact_path(book_root, entry)
        output_relative_path = pdf_path.relative_to(book_root).as_posix()

        if slot.entry is not None and slot.entry.fingerprint == fingerprint and pdf_path.is_file():
            return CompileResult(
                outcome=CompileOutcome.cached,
                compiler_kind=slot.entry.compiler_kind,
                entry_relative_path=entry,
                output_relative_path=output_relative_path,
                duration_ms=0,
                generated_at=slot.entry.generated_at,
                log_tail=slot.entry.log_tail,
            )

        task = asyncio.create_task(
            self._build(slot, book_root, entry, fingerprint, pdf_path, output_relative_path),
            name=f"latex_build_{entry}",
        )
        slot.in_flight = task
        task.add_done_callback(lambda t: self._release(slot, t))
        return await asyncio.shield(task)

    @staticmethod
    def _release(slot: _CacheSlot, task: asyncio.Task) -> None:
        if slot.in_flight is task:
            slot.in_flight = None
        if not task.cancelled():
            # Mark the exception retrieved; awaiting callers still receive it
            task.exception()

    async def _build(
        self,
        slot: _CacheSlot,
        book_root: Path,
        entry: str,
        fingerprint: str,
        pdf_path: Path,
        output_relative_path: str,
    ) -> CompileResult:
        build_root = book_root / LATEX_BUILD_DIR
        build_root.mkdir(parents=True, exist_ok=True)

        compiler = await self.detect_compiler()
        logger.info(f"Compiling {entry} with {compiler.kind.value} in {book_root}")
        execution = await self._run_compiler(compiler, book_root, entry, build_root)

        if not pdf_path.is_file():
            raise ArtifactMissingError(output_relative_path)

        generated_at = datetime.now(timezone.utc)
        slot.entry = CompileCacheEntry(
            fingerprint=fingerprint,
            compiler_kind=compiler.kind,
            log_tail=execution.log_tail,
            generated_at=generated_at,
        )
        logger.info(f"Compiled {entry} in {execution.duration_ms}ms")

        return CompileResult(
            outcome=CompileOutcome.built,
            compiler_kind=compiler.kind,
            entry_relative_path=entry,
            output_relative_path=output_relative_path,
            duration_ms=execution.duration_ms,
            generated_at=generated_at,
            log_tail=execution.log_tail,
        )

    async def _run_compiler(
        self,
        compiler: CompilerSpec,
        book_root: Path,
        entry: str,
        build_root: Path,
    ) -> _Execution:
        args = build_compile_args(compiler.kind, entry, build_root)
        first = await self._runner.run(compiler.command, args, book_root, self._compile_timeout_seconds)
        results = [first]

        # pdflatex needs a second pass to resolve cross-references
        if compiler.kind == CompilerKind.pdflatex and first.ok:
            results.append(
                await self._runner.run(compiler.command, args, book_root, self._compile_timeout_seconds)
            )

        final = results[-1]
        log_tail = trim_log_tail("\n".join(r.combined_output for r in results))
        if not final.ok:
            if final.timed_out:
                log_tail = trim_log_tail(
                    f"{log_tail}\nTimed out after {self._compile_timeout_seconds:.0f}s."
                )
            raise CompileFailedError(compiler.kind.value, final.exit_code, log_tail)

        return _Execution(
            duration_ms=sum(r.duration_ms for r in results),
            log_tail=log_tail,
        )
