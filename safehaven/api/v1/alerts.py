"""
FastAPI route: Shelter alerts and their lifecycle.

Provides endpoints to:
    POST /api/v1/alerts                    — raise an alert (idempotent with alert_id)
    GET  /api/v1/alerts                    — list, filter by shelter/status/priority
    GET  /api/v1/alerts/open               — open alerts
    GET  /api/v1/alerts/critical           — open alerts at critical priority
    GET  /api/v1/alerts/{id}               — one alert
    POST /api/v1/alerts/{id}/acknowledge   — open → acknowledged
    POST /api/v1/alerts/{id}/resolve       — open/acknowledged → resolved
    PATCH /api/v1/alerts/{id}               — edit the description (nothing else)

Acknowledge and resolve act as the calling actor. Replays of either are
answered with the current state and a 200.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from safehaven.alerts.models import AlertPriority, AlertStatus
from safehaven.api.v1.deps import Services, get_services, rate_limited_actor
from safehaven.core.errors import ValidationError
from safehaven.core.identity import ActorContext

router = APIRouter(prefix="/api/v1/alerts", tags=["alerts"])


# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------

class AlertCreateRequest(BaseModel):
    """Alert creation. ``alert_id`` is optional; supplying it makes retries safe."""
    model_config = ConfigDict(extra="allow")

    alert_id: Optional[str] = Field(None, examples=["5b0e4c1e-3f65-4c8f-9d3a-0f7c1f0e2a11"])
    shelter_id: Optional[str] = Field(None, examples=["S1"])
    type: Optional[str] = Field(None, examples=["medical_emergency"])
    priority: Optional[str] = Field(None, examples=["critical"])
    title: Optional[str] = Field(None, examples=["Insulin needed"])
    description: Optional[str] = Field(None, examples=["Two diabetic evacuees, no insulin on site"])


class AlertUpdateRequest(BaseModel):
    """Description edit. Other keys are passed through so they can be refused."""
    model_config = ConfigDict(extra="allow")

    description: Optional[str] = Field(None, examples=["Insulin delivered, still need test strips"])


# ---------------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------------

def _parse_status(value: Optional[str]) -> Optional[AlertStatus]:
    if value is None:
        return None
    try:
        return AlertStatus(value.lower())
    except ValueError:
        valid = [s.value for s in AlertStatus]
        raise ValidationError(f"Invalid alert status '{value}'. Must be one of: {valid}")


def _parse_priority(value: Optional[str]) -> Optional[AlertPriority]:
    if value is None:
        return None
    try:
        return AlertPriority(value.lower())
    except ValueError:
        valid = [p.value for p in AlertPriority]
        raise ValidationError(f"Invalid alert priority '{value}'. Must be one of: {valid}")


def _listing(alerts) -> Dict[str, Any]:
    return {"data": [a.to_dict() for a in alerts], "count": len(alerts)}


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("", status_code=201, summary="Raise an alert for a shelter")
async def create_alert(
    body: AlertCreateRequest,
    actor: ActorContext = Depends(rate_limited_actor),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    alert = await services.lifecycle.create(
        body.model_dump(exclude_unset=True), created_by=actor.actor_id,
    )
    return {"data": alert.to_dict()}


@router.get("", summary="List alerts, newest first")
async def list_alerts(
    shelter_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None, examples=["open"]),
    priority: Optional[str] = Query(None, examples=["critical"]),
    limit: Optional[int] = Query(None, ge=1, le=500),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    alerts = await services.lifecycle.list_alerts(
        shelter_id=shelter_id,
        status=_parse_status(status),
        priority=_parse_priority(priority),
        limit=limit,
    )
    return _listing(alerts)


@router.get("/open", summary="Open alerts")
async def open_alerts(
    limit: Optional[int] = Query(None, ge=1, le=500),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return _listing(await services.lifecycle.open_alerts(limit))


@router.get("/critical", summary="Open alerts at critical priority")
async def critical_alerts(
    limit: Optional[int] = Query(None, ge=1, le=500),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return _listing(await services.lifecycle.critical_alerts(limit))


@router.get("/{alert_id}", summary="Get one alert")
async def get_alert(
    alert_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    alert = await services.lifecycle.get(alert_id)
    return {"data": alert.to_dict()}


@router.post("/{alert_id}/acknowledge", summary="Acknowledge an alert")
async def acknowledge_alert(
    alert_id: str,
    actor: ActorContext = Depends(rate_limited_actor),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    alert = await services.lifecycle.acknowledge(alert_id, actor.actor_id)
    return {"data": alert.to_dict()}


@router.post("/{alert_id}/resolve", summary="Resolve an alert")
async def resolve_alert(
    alert_id: str,
    actor: ActorContext = Depends(rate_limited_actor),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    alert = await services.lifecycle.resolve(alert_id, actor.actor_id)
    return {"data": alert.to_dict()}


@router.patch("/{alert_id}", summary="Edit an alert's description")
async def update_alert(
    alert_id: str,
    body: AlertUpdateRequest,
    actor: ActorContext = Depends(rate_limited_actor),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    alert = await services.lifecycle.update_description(
        alert_id, body.model_dump(exclude_unset=True), actor.actor_id,
    )
    return {"data": alert.to_dict()}
