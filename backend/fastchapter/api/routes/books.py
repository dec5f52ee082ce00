"""Book, chapter and LaTeX compile endpoints."""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import FileResponse, JSONResponse

from fastchapter.api.dependencies import orchestrator, resolve_username
from fastchapter.api.exceptions import parse_body
from fastchapter.api.response import success_response
from fastchapter.models import CompileRequest, CreateBookRequest, RenameBookRequest
from fastchapter.services.orchestrator import Orchestrator

router = APIRouter(prefix="/api/users/{username}/books", tags=["Books"])


@router.get("")
async def list_books(
    username: str = Depends(resolve_username),
    orch: Orchestrator = Depends(orchestrator),
) -> JSONResponse:
    """List books, most recently updated first."""
    books = await orch.projects.list_books(username)
    return JSONResponse(content=success_response([book.model_dump(mode="json") for book in books]))


@router.post("", status_code=201)
async def create_book(
    request: Request,
    username: str = Depends(resolve_username),
    orch: Orchestrator = Depends(orchestrator),
) -> JSONResponse:
    """Create a book with an empty LaTeX scaffold."""
    body = await parse_body(request, CreateBookRequest)
    book = await orch.projects.create_book(username, body.title)
    return JSONResponse(
        status_code=201,
        content=success_response(book.model_dump(mode="json")),
    )


@router.patch("/{book_id}")
async def rename_book(
    book_id: str,
    request: Request,
    username: str = Depends(resolve_username),
    orch: Orchestrator = Depends(orchestrator),
) -> JSONResponse:
    """Change a book title."""
    body = await parse_body(request, RenameBookRequest)
    book = await orch.projects.rename_book(username, book_id, body.title)
    return JSONResponse(content=success_response(book.model_dump(mode="json")))


@router.post("/{book_id}/chapters", status_code=201)
async def create_chapter(
    book_id: str,
    username: str = Depends(resolve_username),
    orch: Orchestrator = Depends(orchestrator),
) -> JSONResponse:
    """Add the next chapter folder and refresh main.tex."""
    chapter = await orch.projects.create_chapter(username, book_id)
    return JSONResponse(
        status_code=201,
        content=success_response(chapter.model_dump(mode="json")),
    )


@router.post("/{book_id}/compile")
async def compile_book(
    book_id: str,
    request: Request,
    username: str = Depends(resolve_username),
    orch: Orchestrator = Depends(orchestrator),
) -> JSONResponse:
    """Compile an entrypoint (default main.tex), reusing the cached PDF when unchanged."""
    body = await parse_body(request, CompileRequest, allow_empty=True)
    result = await orch.compile_book(username, book_id, body.entry_relative_path)
    return JSONResponse(content=success_response(result.model_dump(mode="json")))


@router.get("/{book_id}/compile/pdf")
async def get_compiled_pdf(
    book_id: str,
    entry: str = "main.tex",
    username: str = Depends(resolve_username),
    orch: Orchestrator = Depends(orchestrator),
) -> FileResponse:
    """Return the last compiled PDF for an entrypoint."""
    pdf_path = await orch.get_pdf_path(username, book_id, entry)
    return FileResponse(pdf_path, media_type="application/pdf", filename=pdf_path.name)
