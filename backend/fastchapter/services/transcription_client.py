"""Speech-to-text providers.

Defines the interface the transcription queue talks to and the OpenAI
implementation backed by the audio transcriptions endpoint.
"""

import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import aiofiles
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI

from fastchapter.errors import (
    ApiKeyCheckError,
    ExternalFailureError,
    TranscriptionError,
    UploadTooLargeError,
)
from fastchapter.models import MAX_TRANSCRIPTION_UPLOAD_BYTES

logger = logging.getLogger(__name__)

OPENAI_TRANSCRIPTION_MODEL = os.environ.get("OPENAI_TRANSCRIPTION_MODEL", "gpt-4o-transcribe")
OPENAI_TRANSCRIPTION_TIMEOUT_SECONDS = float(
    os.environ.get("OPENAI_TRANSCRIPTION_TIMEOUT_SECONDS", str(20 * 60))
)
KEY_CHECK_TIMEOUT_SECONDS = 30.0


class TranscriptionProvider(ABC):
    """Base interface for speech-to-text backends."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier."""
        ...

    @property
    @abstractmethod
    def model(self) -> str:
        """Model recorded on every job this provider handles."""
        ...

    @abstractmethod
    async def transcribe(
        self,
        api_key: str,
        audio_path: Path,
        mime_type: str,
        prompt: Optional[str] = None,
        language: Optional[str] = None,
    ) -> str:
        """Return the transcript text for one audio file.

        Raises:
            UploadTooLargeError: File exceeds the upload ceiling (checked locally).
            TranscriptionError: Remote service rejected or failed the request.
        """
        ...

    @abstractmethod
    async def check_api_key(self, api_key: str) -> None:
        """Verify the credential with a cheap authenticated call.

        Raises:
            ApiKeyCheckError: The key was rejected or the service was unreachable.
        """
        ...


class OpenAITranscriptionProvider(TranscriptionProvider):
    """OpenAI audio transcriptions provider.

    A client is built per call because the credential is per user.
    """

    def __init__(
        self,
        model: str = OPENAI_TRANSCRIPTION_MODEL,
        timeout: float = OPENAI_TRANSCRIPTION_TIMEOUT_SECONDS,
    ):
        self._model = model
        self._timeout = timeout

    @property
    def name(self) -> str:
        return "openai"

    @property
    def model(self) -> str:
        return self._model

    async def transcribe(
        self,
        api_key: str,
        audio_path: Path,
        mime_type: str,
        prompt: Optional[str] = None,
        language: Optional[str] = None,
    ) -> str:
        async with aiofiles.open(audio_path, "rb") as f:
            audio_bytes = await f.read()

        if len(audio_bytes) > MAX_TRANSCRIPTION_UPLOAD_BYTES:
            raise UploadTooLargeError(len(audio_bytes), MAX_TRANSCRIPTION_UPLOAD_BYTES)

        options = {}
        if prompt:
            options["prompt"] = prompt
        if language:
            options["language"] = language

        client = AsyncOpenAI(api_key=api_key, timeout=self._timeout, max_retries=0)
        try:
            response = await client.audio.transcriptions.create(
                model=self._model,
                file=(audio_path.name, audio_bytes, mime_type or "audio/webm"),
                response_format="json",
                **options,
            )
        except APITimeoutError as e:
            raise TranscriptionError(
                f"OpenAI transcription timed out after {self._timeout:.0f}s."
            ) from e
        except APIConnectionError as e:
            raise TranscriptionError(f"Failed to connect to OpenAI: {e}") from e
        except APIStatusError as e:
            self._handle_api_error(e)
        finally:
            await client.close()

        return parse_transcription_response(response)

    async def check_api_key(self, api_key: str) -> None:
        """List models with the key; any rejection raises ApiKeyCheckError."""
        client = AsyncOpenAI(api_key=api_key, timeout=KEY_CHECK_TIMEOUT_SECONDS, max_retries=0)
        try:
            await client.models.list()
        except APITimeoutError as e:
            raise ApiKeyCheckError("OpenAI API key test failed: request timed out.") from e
        except APIConnectionError as e:
            raise ApiKeyCheckError(f"OpenAI API key test failed: could not connect ({e}).") from e
        except APIStatusError as e:
            self._handle_api_error(e, ApiKeyCheckError, "OpenAI API key test failed")
        finally:
            await client.close()

    def _handle_api_error(
        self,
        error: APIStatusError,
        error_class: type[ExternalFailureError] = TranscriptionError,
        prefix: str = "OpenAI transcription failed",
    ) -> None:
        """Convert OpenAI API errors to the caller's error type."""
        status_code = error.status_code
        message = str(error.message) if hasattr(error, "message") else str(error)

        if status_code in (401, 403):
            raise error_class(
                f"{prefix} ({status_code}): invalid or unauthorized API key."
            ) from error

        if status_code == 413:
            raise error_class(f"{prefix} (413): recording too large.") from error

        if status_code == 429:
            raise error_class(f"{prefix} (429): rate limit exceeded. {message}") from error

        raise error_class(f"{prefix} ({status_code}): {message}") from error


def parse_transcription_response(response: Any) -> str:
    """Text of a transcription response, or the serialised body when it has none."""
    if isinstance(response, str):
        return response.strip()

    text = getattr(response, "text", None)
    if isinstance(text, str):
        return text.strip()

    if hasattr(response, "model_dump_json"):
        return response.model_dump_json().strip()
    return ""
