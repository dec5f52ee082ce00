"""Write Book session endpoints.

Start a session for a book, poll it with a log cursor, or cancel it.
"""

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from fastchapter.api.dependencies import orchestrator, resolve_username
from fastchapter.api.response import success_response
from fastchapter.services.orchestrator import Orchestrator

router = APIRouter(prefix="/api", tags=["Write Book"])


@router.get("/users/{username}/books/{book_id}/write-session/checklist")
async def get_checklist(
    book_id: str,
    username: str = Depends(resolve_username),
    orch: Orchestrator = Depends(orchestrator),
) -> JSONResponse:
    """Readiness report for a Write Book session."""
    checklist = await orch.checklists.get_checklist(username, book_id)
    return JSONResponse(content=success_response(checklist.model_dump(mode="json")))


@router.get("/codex/availability")
async def get_codex_availability(orch: Orchestrator = Depends(orchestrator)) -> JSONResponse:
    """Whether the agent CLI is installed and logged in."""
    availability = await orch.check_codex_availability()
    return JSONResponse(content=success_response(availability.model_dump(mode="json")))


@router.post("/users/{username}/books/{book_id}/write-session", status_code=202)
async def start_write_session(
    book_id: str,
    username: str = Depends(resolve_username),
    orch: Orchestrator = Depends(orchestrator),
) -> JSONResponse:
    """Start a session, or return the one already active for the book."""
    started = await orch.write_sessions.start(username, book_id)
    return JSONResponse(
        status_code=202,
        content=success_response(started.model_dump(mode="json")),
    )


@router.get("/write-sessions/{session_id}")
async def poll_write_session(
    session_id: str,
    after: int = Query(default=0, ge=0, description="Log cursor from the previous poll"),
    orch: Orchestrator = Depends(orchestrator),
) -> JSONResponse:
    """Session status plus up to 200 log lines at or after `after`."""
    snapshot = orch.write_sessions.poll(session_id, after)
    return JSONResponse(content=success_response(snapshot.model_dump(mode="json")))


@router.post("/write-sessions/{session_id}/cancel")
async def cancel_write_session(
    session_id: str,
    orch: Orchestrator = Depends(orchestrator),
) -> JSONResponse:
    """Request cancellation of an active session."""
    result = orch.write_sessions.cancel(session_id)
    return JSONResponse(content=success_response(result.model_dump(mode="json")))
