"""HTTP API for the FastChapter backend."""
