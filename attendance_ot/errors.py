from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code if status_code is not None else type(self).status_code
        self.code = code or type(self).default_code
        self.message = message


class ValidationError(ApiError):
    """Missing or malformed input."""

    status_code = 422
    default_code = "VALIDATION_ERROR"


class ConflictError(ApiError):
    """Duplicate open session or a conflicting terminal action."""

    status_code = 409
    default_code = "CONFLICT"


class NotFoundError(ApiError):
    status_code = 404
    default_code = "NOT_FOUND"


class PermissionDeniedError(ApiError):
    """Role violation or a mutation inside a locked payroll period."""

    status_code = 403
    default_code = "FORBIDDEN"


class StateError(ApiError):
    """The requested transition is not valid from the current state."""

    status_code = 409
    default_code = "INVALID_STATE"


class InfrastructureError(ApiError):
    """Storage or network failure. Never raised for business rule violations."""

    status_code = 503
    default_code = "INFRASTRUCTURE_ERROR"


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)
