"""
Error taxonomy for the API.

Every error is an ``HTTPException`` so route code raises them exactly like
FastAPI's own exception; the handlers in ``main`` render them as
``{"success": false, "message": ..., "details"?: [...], "code"?: ...}``.
"""
from typing import Dict, List, Optional

from fastapi import HTTPException


class AppError(HTTPException):
    status_code = 500
    default_message = "Server error"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[List[str]] = None,
        code: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        super().__init__(
            status_code=self.status_code,
            detail=message or self.default_message,
            headers=headers,
        )
        self.details = details
        self.code = code


class ValidationError(AppError):
    status_code = 400
    default_message = "Validation failed"


class ConflictError(AppError):
    status_code = 400
    default_message = "Email already in use"


class InvalidCredentials(AppError):
    status_code = 400
    default_message = "Invalid email or password"


class InvalidState(AppError):
    status_code = 400
    default_message = "Operation not allowed in the current state"


class Unauthorized(AppError):
    status_code = 401
    default_message = "Could not validate credentials"


class Forbidden(AppError):
    status_code = 403
    default_message = "Forbidden"


class NotFound(AppError):
    status_code = 404
    default_message = "Not found"


class ConcurrentModification(AppError):
    status_code = 409
    default_message = "The record was modified by another request. Please retry."


class TooManyRequests(AppError):
    status_code = 429
    default_message = "Too many requests, please try again later."


class ServerError(AppError):
    status_code = 500
    default_message = "Something went wrong!"


def error_body(exc: HTTPException) -> dict:
    body = {"success": False, "message": exc.detail}
    details = getattr(exc, "details", None)
    if details:
        body["details"] = details
    code = getattr(exc, "code", None)
    if code:
        body["code"] = code
    return body


def pydantic_messages(errors) -> List[str]:
    """Flatten pydantic error dicts into ``"field: message"`` strings."""
    messages = []
    for err in errors:
        loc = [str(p) for p in err.get("loc", ()) if p != "body"]
        field = ".".join(loc)
        msg = err.get("msg", "Invalid value")
        messages.append(f"{field}: {msg}" if field else msg)
    return messages
