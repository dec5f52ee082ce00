"""Shared FastAPI dependencies."""

from fastchapter.services.orchestrator import Orchestrator, get_orchestrator


def orchestrator() -> Orchestrator:
    return get_orchestrator()


async def resolve_username(username: str) -> str:
    """Normalize the `{username}` path segment and make sure the user tree exists."""
    return await get_orchestrator().projects.ensure_user(username)
