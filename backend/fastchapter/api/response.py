"""Response envelope helpers for consistent API responses."""

from typing import Any

from pydantic import BaseModel


class ErrorDetail(BaseModel):
    """Error detail structure."""

    code: str
    message: str
    hint: str | None = None


class ApiResponse(BaseModel):
    """Standard API response envelope."""

    data: Any | None = None
    error: ErrorDetail | None = None


def success_response(data: Any) -> dict[str, Any]:
    """Create a success response envelope."""
    return {"data": data, "error": None}


def error_response(code: str, message: str, hint: str | None = None) -> dict[str, Any]:
    """Create an error response envelope."""
    error: dict[str, Any] = {"code": code, "message": message}
    if hint:
        error["hint"] = hint
    return {"data": None, "error": error}
