"""Recording and transcription job endpoints."""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from fastchapter.api.dependencies import orchestrator, resolve_username
from fastchapter.api.exceptions import parse_body
from fastchapter.api.response import success_response
from fastchapter.models import SaveRecordingRequest
from fastchapter.services.orchestrator import Orchestrator

router = APIRouter(prefix="/api/users/{username}/books/{book_id}", tags=["Recordings"])


@router.post("/recordings", status_code=201)
async def save_recording(
    book_id: str,
    request: Request,
    username: str = Depends(resolve_username),
    orch: Orchestrator = Depends(orchestrator),
) -> JSONResponse:
    """Save a recording; audio is queued for transcription when the profile allows it."""
    body = await parse_body(request, SaveRecordingRequest)
    result = await orch.recordings.save_recording(username, book_id, body)
    return JSONResponse(
        status_code=201,
        content=success_response(result.model_dump(mode="json")),
    )


@router.get("/recordings")
async def list_recordings(
    book_id: str,
    username: str = Depends(resolve_username),
    orch: Orchestrator = Depends(orchestrator),
) -> JSONResponse:
    """List recordings, transcription files and transcription jobs."""
    listing = await orch.recordings.list_recordings(username, book_id)
    return JSONResponse(content=success_response(listing.model_dump(mode="json")))


@router.get("/transcription-jobs")
async def list_transcription_jobs(
    book_id: str,
    username: str = Depends(resolve_username),
    orch: Orchestrator = Depends(orchestrator),
) -> JSONResponse:
    """List transcription jobs, newest update first."""
    jobs = await orch.transcriptions.list_jobs(username, book_id)
    return JSONResponse(content=success_response([j.model_dump(mode="json") for j in jobs]))
