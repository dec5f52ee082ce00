"""Custom exception classes for the API."""

from typing import Any, TypeVar

from fastapi import Request
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


class ValidationError(Exception):
    """Raised when a request body fails validation."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


async def parse_body(request: Request, model: type[ModelT], allow_empty: bool = False) -> ModelT:
    """Validate the JSON body against `model`.

    Raises:
        ValidationError: Body is not JSON or does not match the model.
    """
    raw = await request.body()
    if not raw.strip():
        if allow_empty:
            return model()
        raise ValidationError("Request body is required.")

    try:
        body: Any = await request.json()
    except ValueError as e:
        raise ValidationError(f"Request body is not valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object.")

    try:
        return model(**body)
    except PydanticValidationError as e:
        raise ValidationError(str(e)) from e
