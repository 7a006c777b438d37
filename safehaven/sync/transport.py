"""
transport.py — How the SyncEngine replays a mutation against the server.

    MutationKind         HTTP call                                   Server operation
    ─────────────────    ─────────────────────────────────────────   ─────────────────────────────
    status_update        PUT  /api/v1/shelters/{id}/status           StatusReconciler.apply_status_update
    alert_create         POST /api/v1/alerts                         AlertLifecycleManager.create
    alert_acknowledge    POST /api/v1/alerts/{id}/acknowledge        AlertLifecycleManager.acknowledge
    alert_resolve        POST /api/v1/alerts/{id}/resolve            AlertLifecycleManager.resolve
    alert_update         PATCH /api/v1/alerts/{id}                   AlertLifecycleManager.update_description

Both transports return the authoritative record and raise the shared
error classes, so the engine classifies failures the same way whether it
talks HTTP or calls the services in-process:

    HTTP status      raised
    ─────────────    ──────────────────
    400, 422         ValidationError
    401, 403         AuthorizationError
    404              NotFoundError
    409              ConflictError
    429              RateLimitError
    5xx, timeout,    TransientError
    network error
"""

from __future__ import annotations

import abc
import logging
import math
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Dict, Optional, Tuple

import httpx

from safehaven.alerts.lifecycle import AlertLifecycleManager
from safehaven.core.config import settings
from safehaven.core.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    RateLimitError,
    SafeHavenError,
    TransientError,
    ValidationError,
)
from safehaven.core.identity import ActorContext
from safehaven.shelters.reconciler import StatusReconciler
from safehaven.sync.models import MutationKind, PendingMutation

logger = logging.getLogger(__name__)


class SyncTransport(abc.ABC):

    @abc.abstractmethod
    async def apply(self, mutation: PendingMutation) -> Dict[str, Any]:
        """Apply one mutation. Returns the authoritative record."""

    async def close(self) -> None:
        return None


# ═══════════════════════════════════════════════════════════════════════════
# HTTP
# ═══════════════════════════════════════════════════════════════════════════

class HttpSyncTransport(SyncTransport):
    """
    Usage:
        transport = HttpSyncTransport("https://api.example.org", actor)
        record = await transport.apply(mutation)
        await transport.close()
    """

    def __init__(
        self,
        base_url: str,
        actor: ActorContext,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = settings.SERVER_CALL_TIMEOUT_SECONDS,
    ):
        self.base_url = base_url.rstrip("/")
        self.actor = actor
        self.timeout_seconds = timeout_seconds
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
            )
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    def _request_for(self, mutation: PendingMutation) -> Tuple[str, str, Dict[str, Any]]:
        target = mutation.target_id
        if mutation.kind == MutationKind.STATUS_UPDATE:
            return "PUT", f"/api/v1/shelters/{target}/status", mutation.payload
        if mutation.kind == MutationKind.ALERT_CREATE:
            return "POST", "/api/v1/alerts", {**mutation.payload, "alert_id": target}
        if mutation.kind == MutationKind.ALERT_ACKNOWLEDGE:
            return "POST", f"/api/v1/alerts/{target}/acknowledge", mutation.payload
        if mutation.kind == MutationKind.ALERT_RESOLVE:
            return "POST", f"/api/v1/alerts/{target}/resolve", mutation.payload
        if mutation.kind == MutationKind.ALERT_UPDATE:
            return "PATCH", f"/api/v1/alerts/{target}", mutation.payload
        raise ValidationError(f"Unsupported mutation kind: {mutation.kind}")

    async def apply(self, mutation: PendingMutation) -> Dict[str, Any]:
        method, path, body = self._request_for(mutation)
        headers = {
            "X-Actor-Id": self.actor.actor_id,
            "X-Actor-Role": self.actor.role.value,
            "X-Request-ID": mutation.local_id,
        }
        client = await self._get_client()
        try:
            response = await client.request(method, path, json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise TransientError(f"{method} {path} timed out", local_id=mutation.local_id) from e
        except httpx.TransportError as e:
            raise TransientError(f"{method} {path} failed: {e}", local_id=mutation.local_id) from e

        if response.is_success:
            return response.json().get("data", {})
        raise error_from_response(response)


def _retry_after_seconds(response: httpx.Response, details: Dict[str, Any]) -> int:
    """Retry-After as delay-seconds or HTTP-date; falls back to the error body."""
    fallback = int(details.get("retry_after_seconds") or 60)
    raw = response.headers.get("Retry-After")
    if not raw:
        return fallback
    raw = raw.strip()
    if raw.isdigit():
        return int(raw)
    try:
        when = parsedate_to_datetime(raw)
    except (TypeError, ValueError):
        return fallback
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0, math.ceil((when - datetime.now(timezone.utc)).total_seconds()))


def error_from_response(response: httpx.Response) -> SafeHavenError:
    """Rebuild the server's typed error from an error response."""
    try:
        error = response.json().get("error", {})
    except ValueError:
        error = {}
    message = error.get("message") or f"HTTP {response.status_code}"
    details = error.get("details") or {}
    status = response.status_code

    if status in (400, 422):
        return ValidationError.from_errors(details.get("errors") or [message])
    if status in (401, 403):
        return AuthorizationError(message)
    if status == 404:
        return NotFoundError(details.get("resource", "Record"))
    if status == 409:
        return ConflictError(details.get("resource", "Record"), str(details.get("id", "")), message)
    if status == 429:
        return RateLimitError(message, retry_after=_retry_after_seconds(response, details))
    return TransientError(message, http_status=status)


# ═══════════════════════════════════════════════════════════════════════════
# In-process (tests, single-node deployments)
# ═══════════════════════════════════════════════════════════════════════════

class InProcessTransport(SyncTransport):
    """Calls the server services directly, skipping HTTP."""

    def __init__(
        self,
        reconciler: StatusReconciler,
        lifecycle: AlertLifecycleManager,
        actor: ActorContext,
    ):
        self.reconciler = reconciler
        self.lifecycle = lifecycle
        self.actor = actor

    async def apply(self, mutation: PendingMutation) -> Dict[str, Any]:
        target = mutation.target_id
        if mutation.kind == MutationKind.STATUS_UPDATE:
            status = await self.reconciler.apply_status_update(target, mutation.payload)
            return status.to_dict()
        if mutation.kind == MutationKind.ALERT_CREATE:
            alert = await self.lifecycle.create(
                {**mutation.payload, "alert_id": target}, created_by=self.actor.actor_id,
            )
        elif mutation.kind == MutationKind.ALERT_ACKNOWLEDGE:
            alert = await self.lifecycle.acknowledge(target, self.actor.actor_id)
        elif mutation.kind == MutationKind.ALERT_RESOLVE:
            alert = await self.lifecycle.resolve(target, self.actor.actor_id)
        elif mutation.kind == MutationKind.ALERT_UPDATE:
            alert = await self.lifecycle.update_description(
                target, mutation.payload, self.actor.actor_id,
            )
        else:
            raise ValidationError(f"Unsupported mutation kind: {mutation.kind}")
        return alert.to_dict()
