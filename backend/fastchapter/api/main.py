"""FastAPI application setup."""

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from fastchapter import __version__
from fastchapter.api.exceptions import ValidationError
from fastchapter.api.response import error_response
from fastchapter.api.routes import books, health, recordings, users, write_session
from fastchapter.errors import (
    ExternalFailureError,
    FastChapterError,
    InvalidInputError,
    InvalidTransitionError,
    NotFoundError,
    PreconditionMissingError,
    ResourceLimitError,
)
from fastchapter.services.orchestrator import get_orchestrator

logger = logging.getLogger(__name__)

DEFAULT_CORS_ORIGINS = [
    "http://localhost:5173",
    "http://localhost:5174",
    "http://127.0.0.1:5173",
    "http://127.0.0.1:5174",
]


def _cors_origins() -> list[str]:
    raw = os.environ.get("CORS_ORIGINS", "")
    origins = [origin.strip() for origin in raw.split(",") if origin.strip()]
    return origins or DEFAULT_CORS_ORIGINS


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler."""
    # Startup
    orchestrator = get_orchestrator()
    app.state.orchestrator = orchestrator
    logger.info(f"FastChapter backend started (data dir {orchestrator.projects.data_dir})")
    yield
    # Shutdown
    await orchestrator.shutdown()


app = FastAPI(
    title="FastChapter API",
    description="Backend API for voice-first book writing: LaTeX builds, transcription and Write Book sessions",
    version=__version__,
    lifespan=lifespan,
)

# CORS middleware for frontend dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _domain_error(status_code: int, exc: FastChapterError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_response(exc.code, exc.message, getattr(exc, "hint", None)),
    )


# Exception handlers
@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    """Handle request body validation errors."""
    return JSONResponse(
        status_code=400,
        content=error_response("VALIDATION_ERROR", exc.message),
    )


@app.exception_handler(InvalidInputError)
async def invalid_input_handler(request: Request, exc: InvalidInputError) -> JSONResponse:
    """Bad entrypoint, empty name, path escape."""
    return _domain_error(400, exc)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    """Unknown book, session, entrypoint or artifact."""
    return _domain_error(404, exc)


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(request: Request, exc: InvalidTransitionError) -> JSONResponse:
    return _domain_error(409, exc)


@app.exception_handler(PreconditionMissingError)
async def precondition_handler(request: Request, exc: PreconditionMissingError) -> JSONResponse:
    """Missing compiler, credential or agent login."""
    return _domain_error(412, exc)


@app.exception_handler(ResourceLimitError)
async def resource_limit_handler(request: Request, exc: ResourceLimitError) -> JSONResponse:
    """Oversized upload."""
    return _domain_error(413, exc)


@app.exception_handler(ExternalFailureError)
async def external_failure_handler(request: Request, exc: ExternalFailureError) -> JSONResponse:
    """Compiler exit, remote API error, agent turn failure."""
    return _domain_error(502, exc)


@app.exception_handler(FastChapterError)
async def fastchapter_error_handler(request: Request, exc: FastChapterError) -> JSONResponse:
    logger.error(f"Unhandled backend error on {request.url.path}: {exc}")
    return _domain_error(500, exc)


# Register routes
app.include_router(health.router)
app.include_router(users.router)
app.include_router(books.router)
app.include_router(recordings.router)
app.include_router(write_session.router)
