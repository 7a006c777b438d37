"""
Request middleware — correlation IDs, timing, per-request log line.

Field clients send the queued mutation's ``local_id`` as ``X-Request-ID``,
so a replayed mutation shows up under the same id on every attempt and
the server log can be joined with the client's failed list.

Provides:
    • X-Request-ID echo (generated when the caller sent none)
    • X-Process-Time header
    • One log entry per request, tagged with the calling actor
"""

from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from safehaven.core.logging_config import set_request_context

logger = logging.getLogger(__name__)

_QUIET_PREFIXES = ("/docs", "/redoc", "/openapi", "/favicon")
_PROBE_PATHS = ("/health/live", "/health/ready")


def _log_level(path: str, status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    if path in _PROBE_PATHS:
        return logging.DEBUG
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:16]
        actor_id = request.headers.get("X-Actor-Id", "anonymous")
        path = request.url.path

        set_request_context(
            request_id=request_id,
            actor_id=actor_id,
            endpoint=path,
            method=request.method,
        )
        start = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.error(
                "%s %s → 500 (%.1fms) [%s]",
                request.method, path, duration_ms, actor_id,
                extra={"duration_ms": duration_ms, "status_code": 500, "endpoint": path},
            )
            raise
        finally:
            elapsed_ms = (time.perf_counter() - start) * 1000

        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = f"{elapsed_ms:.1f}ms"

        if not path.startswith(_QUIET_PREFIXES):
            logger.log(
                _log_level(path, response.status_code),
                "%s %s → %d (%.1fms) [%s]",
                request.method, path, response.status_code, elapsed_ms, actor_id,
                extra={
                    "duration_ms": elapsed_ms,
                    "status_code": response.status_code,
                    "endpoint": path,
                },
            )

        set_request_context()
        return response
