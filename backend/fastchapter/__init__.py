"""FastChapter backend: build cache, transcription jobs and Write Book sessions."""

__version__ = "0.1.0"
