"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Provides:
    • Domain-specific exception classes shared by server and client
    • Retry classification used by the SyncEngine
    • Consistent JSON error response format
    • Automatic logging of unhandled errors

═══════════════════════════════════════════════════════════════════════════
TAXONOMY
═══════════════════════════════════════════════════════════════════════════

    Error                      HTTP   Retried by the field client?
    ─────────────────────────  ────   ─────────────────────────────────
    ValidationError            422    never (client-fixable)
    NotFoundError              404    never
    AuthorizationError         403    never
    ConflictError              409    yes (server already retried once)
    RateLimitError             429    yes
    TransientError             503    yes, with exponential backoff
    NotificationPublishError   —      never surfaces to the caller

Usage:
    from safehaven.core.errors import NotFoundError, ValidationError

    raise NotFoundError("Shelter", shelter_id="S1")
    raise ValidationError.from_errors(["Invalid shelter status: closed"])
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from safehaven.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class SafeHavenError(Exception):
    """Base exception for all application errors."""

    retryable: bool = False

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.error_code,
            "message": self.message,
            "status": self.status_code,
            "details": self.details,
        }


class ValidationError(SafeHavenError):
    """Input validation failed (422). Carries every violated constraint."""

    def __init__(self, message: str, *, errors: Optional[List[str]] = None, **details: Any):
        self.errors: List[str] = list(errors or [message])
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details={"errors": self.errors, **details},
        )

    @classmethod
    def from_errors(cls, errors: List[str], **details: Any) -> "ValidationError":
        if len(errors) == 1:
            message = errors[0]
        else:
            message = f"{len(errors)} validation errors"
        return cls(message, errors=errors, **details)


class NotFoundError(SafeHavenError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class AuthorizationError(SafeHavenError):
    """Actor is not allowed to perform the operation (403)."""

    def __init__(self, message: str = "Permission denied", **details: Any):
        super().__init__(
            message=message,
            status_code=403,
            error_code="PERMISSION_DENIED",
            details=details,
        )


class ConflictError(SafeHavenError):
    """Concurrent-update rejection from the record store (409)."""

    retryable = True

    def __init__(self, resource: str, record_id: str, message: str = "", **details: Any):
        super().__init__(
            message=message or f"{resource} {record_id} was modified concurrently",
            status_code=409,
            error_code="CONFLICT",
            details={"resource": resource, "id": record_id, **details},
        )


class RateLimitError(SafeHavenError):
    """Rate limit exceeded (429)."""

    retryable = True

    def __init__(self, message: str = "Rate limit exceeded", retry_after: int = 60):
        super().__init__(
            message=message,
            status_code=429,
            error_code="RATE_LIMIT_EXCEEDED",
            details={"retry_after_seconds": retry_after},
        )


class TransientError(SafeHavenError):
    """Timeout, refused connection or 5xx from the server (503)."""

    retryable = True

    def __init__(self, message: str = "Service temporarily unavailable", **details: Any):
        super().__init__(
            message=message,
            status_code=503,
            error_code="TRANSIENT_ERROR",
            details=details,
        )


class NotificationPublishError(SafeHavenError):
    """Notification could not be published. Logged, never raised to callers."""

    def __init__(self, topic: str, message: str = ""):
        super().__init__(
            message=f"Publish to '{topic}' failed: {message}",
            status_code=500,
            error_code="NOTIFICATION_PUBLISH_ERROR",
            details={"topic": topic},
        )


def is_retryable(exc: BaseException) -> bool:
    """
    Decide whether the field client should retry after ``exc``.

    Domain errors carry their own flag; anything that is not a
    SafeHavenError (socket errors, timeouts, bugs in a transport) is
    treated as transient so the mutation is never lost.
    """
    if isinstance(exc, SafeHavenError):
        return exc.retryable
    return True


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    # Include request path in non-production
    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(SafeHavenError)
    async def handle_safehaven_error(request: Request, exc: SafeHavenError):
        level = logging.WARNING if exc.status_code < 500 else logging.ERROR
        logger.log(
            level,
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        response = _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )
        if isinstance(exc, RateLimitError):
            response.headers["Retry-After"] = str(exc.details["retry_after_seconds"])
        return response

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = []
        for err in exc.errors():
            location = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
            errors.append(f"{location or 'body'}: {err.get('msg')}")
        logger.warning("Request validation failed: %s", errors)
        return _build_error_response(
            422, "VALIDATION_ERROR", errors[0] if len(errors) == 1 else f"{len(errors)} validation errors",
            {"errors": errors}, request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        return _build_error_response(
            500, "INTERNAL_ERROR", message, request=request,
        )
