"""LaTeX build cache models.

A cache entry is keyed by (user, book, entrypoint) and replaced wholesale
after every successful build. Entries live for the process lifetime only.

Pydantic v2. Extra fields are forbidden to prevent drift.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field


def _utcnow() -> datetime:
    """Return timezone-aware UTC now."""
    return datetime.now(timezone.utc)


class CompilerKind(str, Enum):
    """Compiler variant that produced an artifact."""
    latexmk = "latexmk"    # Preferred, single pass
    pdflatex = "pdflatex"  # Fallback, two passes for cross-references


class CompileOutcome(str, Enum):
    """How a compile request was satisfied."""
    cached = "cached"  # Fingerprint matched and artifact still on disk
    built = "built"    # Compiler ran (possibly shared with a concurrent caller)


class CompileCacheEntry(BaseModel):
    """Last successful build for a (book, entrypoint) key."""
    model_config = ConfigDict(extra="forbid")

    fingerprint: str = Field(description="Digest of compile-relevant files + entrypoint")
    compiler_kind: CompilerKind = Field(description="Compiler that produced the artifact")
    log_tail: str = Field(default="", description="Bounded tail of compiler output")
    generated_at: datetime = Field(
        default_factory=_utcnow,
        description="Timestamp of the build"
    )


class CompileResult(BaseModel):
    """Result returned to compile callers."""
    model_config = ConfigDict(extra="forbid")

    outcome: CompileOutcome
    compiler_kind: CompilerKind
    entry_relative_path: str
    output_relative_path: str = Field(description="Artifact path relative to the book root")
    duration_ms: int = Field(ge=0)
    generated_at: datetime
    log_tail: str = ""

    @computed_field
    @property
    def cached(self) -> bool:
        return self.outcome == CompileOutcome.cached


class CompileRequest(BaseModel):
    """Request body for POST .../compile."""
    model_config = ConfigDict(extra="forbid")

    entry_relative_path: str = Field(default="main.tex", description="Entrypoint relative to book root")
