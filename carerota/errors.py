from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details


class ValidationError(ApiError):
    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(422, "VALIDATION_ERROR", message, details)


class NotFoundError(ApiError):
    def __init__(self, message: str):
        super().__init__(404, "NOT_FOUND", message)


class AlreadyProcessedError(ApiError):
    """The record's status changed underneath the caller. Re-fetch, never blindly retry."""

    def __init__(self, message: str, *, current_status: str | None = None):
        details = {"current_status": current_status} if current_status is not None else None
        super().__init__(409, "ALREADY_PROCESSED", message, details)
        self.current_status = current_status


class ConflictError(ApiError):
    """Revert blocked because the target entry was written after the request was applied."""

    def __init__(self, message: str, *, applied_at: datetime | None, modified_at: datetime | None):
        super().__init__(
            409,
            "REVERT_CONFLICT",
            message,
            {
                "applied_at": applied_at.isoformat() if applied_at else None,
                "modified_at": modified_at.isoformat() if modified_at else None,
            },
        )
        self.applied_at = applied_at
        self.modified_at = modified_at


class DuplicateRequestError(ApiError):
    def __init__(self, message: str, *, existing_id: int):
        super().__init__(409, "DUPLICATE_REQUEST", message, {"existing_id": existing_id})
        self.existing_id = existing_id


class StorageError(ApiError):
    def __init__(self, message: str = "Storage operation failed."):
        super().__init__(503, "STORAGE_ERROR", message)


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    payload: dict[str, Any] = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    if details:
        payload["error"]["details"] = details
    return JSONResponse(status_code=status_code, content=payload)
