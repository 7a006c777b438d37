"""
Shared FastAPI dependencies: service container, actor identity, rate limit.

The actor arrives in ``X-Actor-Id`` / ``X-Actor-Role`` headers set by the
external auth layer in front of this service. No credentials are
checked here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from fastapi import Depends, Header, Request

from safehaven.alerts.lifecycle import AlertLifecycleManager
from safehaven.core.errors import AuthorizationError
from safehaven.core.identity import ActorContext, ActorRole
from safehaven.core.rate_limit import RateLimiter
from safehaven.notifications.bus import NotificationBus
from safehaven.shelters.reconciler import StatusReconciler
from safehaven.store.base import RecordStore


@dataclass
class Services:
    """Everything the routes need, built once in the app lifespan."""
    reconciler: StatusReconciler
    lifecycle: AlertLifecycleManager
    limiter: RateLimiter
    bus: NotificationBus
    stores: Dict[str, RecordStore] = field(default_factory=dict)
    redis_client: Optional[Any] = None


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_actor(
    x_actor_id: Optional[str] = Header(None),
    x_actor_role: Optional[str] = Header(None),
) -> ActorContext:
    if not x_actor_id or not x_actor_id.strip():
        raise AuthorizationError("Missing actor identity (X-Actor-Id)")
    try:
        role = ActorRole(x_actor_role) if x_actor_role else ActorRole.SHELTER_OPERATOR
    except ValueError:
        raise AuthorizationError(f"Unknown actor role: {x_actor_role}", role=x_actor_role)
    return ActorContext(actor_id=x_actor_id.strip(), role=role)


async def rate_limited_actor(
    actor: ActorContext = Depends(get_actor),
    services: Services = Depends(get_services),
) -> ActorContext:
    """Actor for mutating calls, after spending one unit of their quota."""
    await services.limiter.enforce(actor.actor_id)
    return actor
