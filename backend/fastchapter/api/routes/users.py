"""User and profile endpoints."""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from fastchapter.api.dependencies import orchestrator, resolve_username
from fastchapter.api.exceptions import parse_body
from fastchapter.api.response import success_response
from fastchapter.models import CheckOpenAIKeyRequest, CreateUserRequest, UpdateProfileRequest
from fastchapter.services.orchestrator import Orchestrator

router = APIRouter(prefix="/api/users", tags=["Users"])


@router.post("", status_code=201)
async def create_user(request: Request, orch: Orchestrator = Depends(orchestrator)) -> JSONResponse:
    """Create the user directory tree and default profile."""
    body = await parse_body(request, CreateUserRequest)
    username = await orch.projects.ensure_user(body.username)
    profile = await orch.profiles.get_profile(username)
    return JSONResponse(
        status_code=201,
        content=success_response(profile.model_dump(mode="json")),
    )


@router.get("/{username}/profile")
async def get_profile(
    username: str = Depends(resolve_username),
    orch: Orchestrator = Depends(orchestrator),
) -> JSONResponse:
    """Get the public profile (credential redacted)."""
    profile = await orch.profiles.get_profile(username)
    return JSONResponse(content=success_response(profile.model_dump(mode="json")))


@router.put("/{username}/profile")
async def update_profile(
    request: Request,
    username: str = Depends(resolve_username),
    orch: Orchestrator = Depends(orchestrator),
) -> JSONResponse:
    """Update display name, OpenAI key or the auto-transcribe preference."""
    body = await parse_body(request, UpdateProfileRequest)
    profile = await orch.profiles.update_profile(username, body)
    return JSONResponse(content=success_response(profile.model_dump(mode="json")))


@router.post("/{username}/profile/openai-key/check")
async def check_openai_key(
    request: Request,
    username: str = Depends(resolve_username),
    orch: Orchestrator = Depends(orchestrator),
) -> JSONResponse:
    """Check a pasted OpenAI key, or the saved one when the body has none."""
    body = await parse_body(request, CheckOpenAIKeyRequest, allow_empty=True)
    result = await orch.check_openai_api_key(username, body.api_key)
    return JSONResponse(content=success_response(result.model_dump(mode="json")))
