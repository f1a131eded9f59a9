"""Response envelope helpers for consistent API responses."""

from typing import Any

from fastapi.responses import JSONResponse
from pydantic import BaseModel


class ErrorDetail(BaseModel):
    """Error detail structure."""

    code: str
    message: str


class ApiResponse(BaseModel):
    """Standard API response envelope."""

    data: Any | None = None
    error: ErrorDetail | None = None


def success_response(data: Any) -> dict[str, Any]:
    """Create a success response envelope."""
    return {"data": data, "error": None}


def error_response(code: str, message: str) -> dict[str, Any]:
    """Create an error response envelope."""
    return {"data": None, "error": {"code": code, "message": message}}


def envelope(status_code: int, data: Any) -> JSONResponse:
    """Success envelope with a non-default status code (202, 409 no-op...)."""
    return JSONResponse(status_code=status_code, content=success_response(data))


def error_json(status_code: int, code: str, message: str) -> JSONResponse:
    """Error envelope as a ready JSONResponse."""
    return JSONResponse(status_code=status_code, content=error_response(code, message))
