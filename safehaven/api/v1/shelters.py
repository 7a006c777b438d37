"""
FastAPI route: Shelter records and status updates.

Provides endpoints to:
    POST   /api/v1/shelters               — register a shelter
    GET    /api/v1/shelters               — list shelters (optionally by state)
    GET    /api/v1/shelters/{id}          — current authoritative record
    PUT    /api/v1/shelters/{id}/status   — sparse status update
    DELETE /api/v1/shelters/{id}          — retire (soft delete to offline)

Request schemas are deliberately loose: field-level rules live in
``safehaven.core.validation`` so every violation is reported at once,
for HTTP and in-process callers alike.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, ConfigDict, Field

from safehaven.api.v1.deps import Services, get_services, rate_limited_actor
from safehaven.core.errors import ValidationError
from safehaven.core.identity import ActorContext
from safehaven.shelters.models import OperationalState

router = APIRouter(prefix="/api/v1/shelters", tags=["shelters"])


# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------

class ShelterCreateRequest(BaseModel):
    """A new shelter. Capacity maximum is required."""
    model_config = ConfigDict(extra="allow")

    shelter_id: Optional[str] = Field(None, examples=["S1"])
    name: Optional[str] = Field(None, examples=["Riverside Community Centre"])
    location: Optional[Dict[str, Any]] = Field(
        None, examples=[{"latitude": 29.95, "longitude": -90.07, "address": "12 Levee Rd"}],
    )
    contact: Optional[Dict[str, Any]] = Field(
        None, examples=[{"phone": "+15045550100", "email": "ops@riverside.org"}],
    )
    capacity: Optional[Dict[str, Any]] = Field(None, examples=[{"current": 0, "maximum": 120}])
    resources: Optional[Dict[str, Any]] = None
    operational_state: Optional[str] = Field(None, examples=["available"])
    urgent_needs: Optional[List[Any]] = None


class StatusUpdateRequest(BaseModel):
    """Sparse update: only the fields present are changed."""
    model_config = ConfigDict(extra="allow")

    capacity: Optional[Dict[str, Any]] = Field(None, examples=[{"current": 60}])
    resources: Optional[Dict[str, Any]] = Field(None, examples=[{"water": "critical"}])
    operational_state: Optional[str] = Field(None, examples=["limited"])
    urgent_needs: Optional[List[Any]] = Field(None, examples=[["insulin", "blankets"]])


def _parse_state(value: Optional[str]) -> Optional[OperationalState]:
    if value is None:
        return None
    try:
        return OperationalState(value.lower())
    except ValueError:
        valid = [s.value for s in OperationalState]
        raise ValidationError(f"Invalid operational state '{value}'. Must be one of: {valid}")


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post("", status_code=201, summary="Register a shelter")
async def create_shelter(
    body: ShelterCreateRequest,
    actor: ActorContext = Depends(rate_limited_actor),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    status = await services.reconciler.create_shelter(
        body.model_dump(exclude_unset=True), operator_id=actor.actor_id,
    )
    return {"data": status.to_dict()}


@router.get("", summary="List shelters, most recently updated first")
async def list_shelters(
    operational_state: Optional[str] = Query(None, examples=["available"]),
    limit: Optional[int] = Query(None, ge=1, le=500),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    shelters = await services.reconciler.list_shelters(_parse_state(operational_state), limit)
    return {"data": [s.to_dict() for s in shelters], "count": len(shelters)}


@router.get("/{shelter_id}", summary="Get a shelter's authoritative status")
async def get_shelter(
    shelter_id: str,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    status = await services.reconciler.get_shelter(shelter_id)
    return {"data": status.to_dict()}


@router.put("/{shelter_id}/status", summary="Apply a sparse status update")
async def update_status(
    shelter_id: str,
    body: StatusUpdateRequest,
    actor: ActorContext = Depends(rate_limited_actor),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    status = await services.reconciler.apply_status_update(
        shelter_id, body.model_dump(exclude_unset=True),
    )
    return {"data": status.to_dict()}


@router.delete("/{shelter_id}", summary="Retire a shelter (set offline)")
async def retire_shelter(
    shelter_id: str,
    actor: ActorContext = Depends(rate_limited_actor),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    status = await services.reconciler.retire_shelter(shelter_id)
    return {"data": status.to_dict()}
