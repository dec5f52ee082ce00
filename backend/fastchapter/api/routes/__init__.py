"""API routes package."""

from . import books, health, recordings, users, write_session

__all__ = ["books", "health", "recordings", "users", "write_session"]
