"""
Error taxonomy and JSON error envelope for the Scavenger Hunt API.

Every error leaving the API has the same shape:

    {"error": "...", "statusCode": 409, "timestamp": "...", "code": "...",
     "details": "...", "requestId": "..."}

`details`, `code` and `requestId` are omitted when empty.
"""

import json
import logging
import sqlite3
from typing import Any, Optional

from fastapi.responses import JSONResponse
from pydantic import ValidationError

from cloudinary_client import CloudinaryError, CloudinaryTimeoutError
from config import config
from database import utc_now_iso

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
}


class APIError(Exception):
    """Base class for errors that map to an HTTP response."""

    status_code = 500
    code = "INTERNAL_ERROR"
    default_message = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        details: Any = None,
        retry_after: Optional[int] = None,
        context: Optional[dict] = None,
    ):
        self.message = message or self.default_message
        self.details = details
        self.retry_after = retry_after
        self.context = context or {}
        super().__init__(self.message)


class InvalidRequestError(APIError):
    status_code = 400
    code = "INVALID_REQUEST"
    default_message = "Invalid request"


class ValidationFailedError(APIError):
    status_code = 422
    code = "VALIDATION_ERROR"
    default_message = "Input validation failed"


class TeamCodeInvalidError(APIError):
    status_code = 401
    code = "TEAM_CODE_INVALID"
    default_message = "That code didn't work. Check with your host."


class InvalidTokenError(APIError):
    status_code = 401
    code = "INVALID_TOKEN"
    default_message = "Invalid or malformed team lock token."


class TeamMismatchError(APIError):
    status_code = 403
    code = "TEAM_MISMATCH"
    default_message = "Team lock does not match the requested team."


class NotFoundError(APIError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Not found"


class TeamLockConflictError(APIError):
    status_code = 409
    code = "TEAM_LOCK_CONFLICT"

    def __init__(self, remaining_ttl_seconds: int):
        hours = -(-remaining_ttl_seconds // 3600)  # ceiling division
        super().__init__(
            f"You're already checked in with another team for the next {hours}h.",
            context={"remainingTtlSeconds": remaining_ttl_seconds},
        )
        self.remaining_ttl_seconds = remaining_ttl_seconds


class PayloadTooLargeError(APIError):
    status_code = 413
    code = "PAYLOAD_TOO_LARGE"
    default_message = "Payload too large"


class TeamLockExpiredError(APIError):
    status_code = 419
    code = "TEAM_LOCK_EXPIRED"
    default_message = "Your team session has expired. Please re-enter your team code."


class RateLimitedError(APIError):
    status_code = 429
    code = "RATE_LIMITED"
    default_message = "Too many attempts. Please try again later."


class StorageError(APIError):
    status_code = 500
    code = "STORAGE_ERROR"
    default_message = "Storage operation failed. Please try again."


class UpstreamError(APIError):
    status_code = 502
    code = "UPSTREAM_ERROR"

    def __init__(self, service: str = "Upstream service", details: Any = None):
        super().__init__(f"{service} is unavailable", details=details)
        self.service = service


class ServiceUnavailableError(APIError):
    status_code = 503
    code = "SERVICE_UNAVAILABLE"
    default_message = "Service temporarily unavailable"


class UpstreamTimeoutError(APIError):
    status_code = 504
    code = "UPSTREAM_TIMEOUT"

    def __init__(self, service: str = "Upstream service", details: Any = None):
        super().__init__(f"{service} timeout", details=details)
        self.service = service


def classify_exception(exc: Exception) -> APIError:
    """Map an arbitrary exception onto the error taxonomy."""
    if isinstance(exc, APIError):
        return exc
    if isinstance(exc, ValidationError):
        return ValidationFailedError(details=exc.errors(include_url=False))
    if isinstance(exc, sqlite3.Error):
        return StorageError(details=str(exc))
    if isinstance(exc, CloudinaryTimeoutError):
        return UpstreamTimeoutError("Image service", details=str(exc))
    if isinstance(exc, CloudinaryError):
        return UpstreamError("Image service", details=str(exc))
    return APIError(details=str(exc))


def _format_details(details: Any) -> Optional[str]:
    if details is None or details == "":
        return None
    if isinstance(details, str):
        return details
    return json.dumps(details, default=str)


def build_error_body(
    error: APIError,
    request_id: Optional[str] = None,
) -> dict:
    """Build the JSON error envelope for an APIError."""
    body = {
        "error": error.message,
        "statusCode": error.status_code,
        "timestamp": utc_now_iso(),
        "code": error.code,
    }
    body.update(error.context)

    details = _format_details(error.details)
    # Internal details never leave a production server
    if details and not (error.status_code == 500 and config.is_production):
        body["details"] = details
    if request_id:
        body["requestId"] = request_id
    return body


def error_response(error: APIError, request_id: Optional[str] = None) -> JSONResponse:
    """Render an APIError as a JSONResponse with the standard headers."""
    headers = dict(NO_CACHE_HEADERS)
    if request_id:
        headers["X-Request-ID"] = request_id
    if error.status_code in (429, 503):
        headers["Retry-After"] = str(error.retry_after or 60)

    return JSONResponse(
        status_code=error.status_code,
        content=build_error_body(error, request_id),
        headers=headers,
    )
