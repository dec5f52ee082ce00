"""Domain error hierarchy.

Every failure surfaced by the build cache, the transcription queue and
the write-book controller is one of these. The top-level classes form
the taxonomy used by the API layer to pick a status code:

- InvalidInputError: bad entrypoint, empty name. Never retried.
- PreconditionMissingError: no compiler, no credential, agent missing.
  Carries a remediation hint.
- ExternalFailureError: compiler exit, remote API error, agent turn.
- ResourceLimitError: oversized upload, rejected before any network call.
- NotFoundError: unknown book, session or file.
"""

from __future__ import annotations


class FastChapterError(Exception):
    """Base exception for backend operations."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class InvalidInputError(FastChapterError):
    """Request rejected synchronously. Fix the input."""

    code = "INVALID_INPUT"


class PreconditionMissingError(FastChapterError):
    """A required tool, credential or login is missing.

    Non-retryable until the user acts on `hint`.
    """

    code = "PRECONDITION_MISSING"

    def __init__(self, message: str, hint: str | None = None, code: str | None = None):
        super().__init__(message, code)
        self.hint = hint

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message}\n{self.hint}"
        return self.message


class ExternalFailureError(FastChapterError):
    """An external tool or service reported a failure."""

    code = "EXTERNAL_FAILURE"


class ResourceLimitError(FastChapterError):
    """Input exceeds a fixed local limit."""

    code = "RESOURCE_LIMIT"


class NotFoundError(FastChapterError):
    """Referenced entity does not exist."""

    code = "NOT_FOUND"


# Input


class InvalidEntrypointError(InvalidInputError):
    code = "INVALID_ENTRYPOINT"


class PathEscapeError(InvalidInputError):
    """Raised when a relative path resolves outside the project root."""

    code = "PATH_ESCAPE"

    def __init__(self, candidate: str):
        self.candidate = candidate
        super().__init__("Path escapes project boundary.")


class InvalidTransitionError(FastChapterError):
    """Status change that would move a job backwards or out of a terminal state."""

    code = "INVALID_TRANSITION"


# Not found


class EntrypointNotFoundError(NotFoundError):
    code = "ENTRYPOINT_NOT_FOUND"

    def __init__(self, entry_relative_path: str):
        self.entry_relative_path = entry_relative_path
        super().__init__(f"LaTeX entry file not found: {entry_relative_path}")


class BookNotFoundError(NotFoundError):
    code = "BOOK_NOT_FOUND"

    def __init__(self, book_id: str):
        self.book_id = book_id
        super().__init__(f"Book not found: {book_id}")


class SessionNotFoundError(NotFoundError):
    code = "SESSION_NOT_FOUND"

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__("Write Book session not found.")


# Preconditions


class NoCompilerFoundError(PreconditionMissingError):
    code = "NO_COMPILER_FOUND"

    def __init__(self):
        super().__init__(
            "No LaTeX compiler found.",
            hint="Install TeX with latexmk (recommended) or pdflatex and ensure it is on PATH.",
        )


class SpawnError(PreconditionMissingError):
    """External executable could not be started (missing binary, permissions)."""

    code = "SPAWN_FAILED"

    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start '{command}': {reason}")


# External failures


class CompileFailedError(ExternalFailureError):
    code = "COMPILE_FAILED"

    def __init__(self, compiler_kind: str, exit_code: int, log_tail: str):
        self.compiler_kind = compiler_kind
        self.exit_code = exit_code
        self.log_tail = log_tail
        super().__init__(f"LaTeX compile failed ({compiler_kind}, code {exit_code}).\n{log_tail}")


class ArtifactMissingError(ExternalFailureError):
    code = "ARTIFACT_MISSING"

    def __init__(self, output_relative_path: str):
        self.output_relative_path = output_relative_path
        super().__init__(f"Compilation finished but PDF was not produced: {output_relative_path}")


class TranscriptionError(ExternalFailureError):
    code = "TRANSCRIPTION_FAILED"


class ApiKeyCheckError(ExternalFailureError):
    """OpenAI rejected the key or could not be reached while checking it."""

    code = "API_KEY_CHECK_FAILED"


class AgentTurnError(ExternalFailureError):
    code = "AGENT_TURN_FAILED"


class TurnAbortedError(FastChapterError):
    """The in-flight agent turn stopped because abort() was called.

    Not a failure: the controller maps it to the cancelled outcome.
    """

    code = "TURN_ABORTED"

    def __init__(self, message: str = "Agent turn aborted."):
        super().__init__(message)


# Resource limits


class UploadTooLargeError(ResourceLimitError):
    code = "UPLOAD_TOO_LARGE"

    def __init__(self, file_size: int, max_size: int):
        self.file_size = file_size
        self.max_size = max_size
        super().__init__(
            f"Recording exceeds {max_size // (1024 * 1024)} MB. "
            "Split the audio into smaller chunks before transcribing."
        )
