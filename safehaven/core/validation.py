"""
Shared validation — turns raw payloads into typed domain objects.

Every validator collects *all* violations before raising, so a field
operator fixing a rejected update sees the whole list at once:

    >>> validate_status_update({"capacity": {"current": 120, "maximum": 100},
    ...                         "operational_state": "closed"})
    ValidationError: 2 validation errors
        - Current capacity cannot exceed maximum capacity
        - Invalid operational state: closed

The same functions run on the field client (before a mutation is
queued) and on the server (before it is applied), so a payload that
passes locally is only rejected remotely if the stored record makes it
invalid (e.g. a new ``current`` above the stored ``maximum``).
"""

from __future__ import annotations

import uuid
from typing import Any, Dict, List, Mapping, Optional

from safehaven.alerts.models import AlertInput, AlertPriority, AlertType
from safehaven.core.errors import ValidationError
from safehaven.shelters.models import (
    RESOURCE_NAMES,
    Capacity,
    ContactInfo,
    Location,
    OperationalState,
    ResourceLevel,
    Resources,
    ShelterStatus,
    StatusPatch,
)

_OPERATIONAL_STATES = [s.value for s in OperationalState]
_RESOURCE_LEVELS = [r.value for r in ResourceLevel]
_ALERT_TYPES = [t.value for t in AlertType]
_ALERT_PRIORITIES = [p.value for p in AlertPriority]


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _non_empty_str(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


# ═══════════════════════════════════════════════════════════════════════════
# Field-group checks (append to ``errors``, return the parsed value)
# ═══════════════════════════════════════════════════════════════════════════

def _check_capacity(raw: Any, errors: List[str], *, require_maximum: bool = False) -> Dict[str, int]:
    parsed: Dict[str, int] = {}
    if not isinstance(raw, Mapping):
        errors.append("Capacity must be an object")
        return parsed

    unknown = set(raw) - {"current", "maximum"}
    for key in sorted(unknown):
        errors.append(f"Unknown capacity field: {key}")

    for key in ("current", "maximum"):
        if key not in raw:
            continue
        value = raw[key]
        if not _is_int(value) or value < 0:
            errors.append(f"{key.capitalize()} capacity must be a non-negative integer")
        else:
            parsed[key] = value

    if require_maximum:
        if "maximum" not in raw:
            errors.append("Maximum capacity is required")
        elif parsed.get("maximum") == 0:
            errors.append("Maximum capacity must be a positive integer")

    if "current" in parsed and "maximum" in parsed and parsed["current"] > parsed["maximum"]:
        errors.append("Current capacity cannot exceed maximum capacity")
    return parsed


def _check_resources(raw: Any, errors: List[str]) -> Dict[str, ResourceLevel]:
    parsed: Dict[str, ResourceLevel] = {}
    if not isinstance(raw, Mapping):
        errors.append("Resources must be an object")
        return parsed

    for name, level in raw.items():
        if name not in RESOURCE_NAMES:
            errors.append(f"Invalid resource type: {name}")
            continue
        if level not in _RESOURCE_LEVELS:
            errors.append(
                f"Invalid resource status for {name}: {level} "
                f"(expected one of {', '.join(_RESOURCE_LEVELS)})"
            )
            continue
        parsed[name] = ResourceLevel(level)
    return parsed


def _check_operational_state(raw: Any, errors: List[str]) -> Optional[OperationalState]:
    if raw not in _OPERATIONAL_STATES:
        errors.append(
            f"Invalid operational state: {raw} "
            f"(expected one of {', '.join(_OPERATIONAL_STATES)})"
        )
        return None
    return OperationalState(raw)


def _check_urgent_needs(raw: Any, errors: List[str]) -> Optional[List[str]]:
    if not isinstance(raw, list):
        errors.append("Urgent needs must be a list")
        return None
    needs: List[str] = []
    for need in raw:
        if not _non_empty_str(need):
            errors.append("Each urgent need must be a non-empty string")
            return None
        needs.append(need.strip())
    return needs


# ═══════════════════════════════════════════════════════════════════════════
# Status updates
# ═══════════════════════════════════════════════════════════════════════════

_STATUS_FIELDS = {"capacity", "resources", "operational_state", "urgent_needs"}


def validate_status_update(payload: Mapping[str, Any]) -> StatusPatch:
    """
    Validate a sparse status update and build a StatusPatch.

    Raises
    ------
    ValidationError
        Listing every violated constraint.
    """
    errors: List[str] = []
    if not isinstance(payload, Mapping):
        raise ValidationError.from_errors(["Status update must be an object"])

    for key in sorted(set(payload) - _STATUS_FIELDS):
        errors.append(f"Unknown status field: {key}")

    patch = StatusPatch()
    if payload.get("capacity") is not None:
        capacity = _check_capacity(payload["capacity"], errors)
        patch.capacity_current = capacity.get("current")
        patch.capacity_maximum = capacity.get("maximum")
    if payload.get("resources") is not None:
        patch.resources = _check_resources(payload["resources"], errors)
    if payload.get("operational_state") is not None:
        patch.operational_state = _check_operational_state(payload["operational_state"], errors)
    if payload.get("urgent_needs") is not None:
        patch.urgent_needs = _check_urgent_needs(payload["urgent_needs"], errors)

    if not errors and patch.is_empty:
        errors.append("Status update contains no fields")

    if errors:
        raise ValidationError.from_errors(errors)
    return patch


def check_capacity_invariant(capacity: Capacity) -> None:
    """Enforce ``0 <= current <= maximum`` on a merged record."""
    if capacity.current > capacity.maximum:
        raise ValidationError.from_errors([
            f"Current capacity ({capacity.current}) cannot exceed "
            f"maximum capacity ({capacity.maximum})"
        ])


# ═══════════════════════════════════════════════════════════════════════════
# Shelter creation
# ═══════════════════════════════════════════════════════════════════════════

def validate_shelter_creation(payload: Mapping[str, Any], *, operator_id: Optional[str] = None) -> ShelterStatus:
    """Validate a new shelter and build its initial record (version 1)."""
    errors: List[str] = []
    if not isinstance(payload, Mapping):
        raise ValidationError.from_errors(["Shelter must be an object"])

    name = payload.get("name")
    if not _non_empty_str(name):
        errors.append("Shelter name is required and must be a non-empty string")

    capacity = _check_capacity(payload.get("capacity", {}), errors, require_maximum=True)

    location = None
    raw_location = payload.get("location")
    if raw_location is not None:
        if not isinstance(raw_location, Mapping):
            errors.append("Location must be an object")
        else:
            lat, lon = raw_location.get("latitude"), raw_location.get("longitude")
            address = raw_location.get("address", "")
            location_errors = []
            if not _is_number(lat) or not -90 <= lat <= 90:
                location_errors.append("Valid latitude is required (-90 to 90)")
            if not _is_number(lon) or not -180 <= lon <= 180:
                location_errors.append("Valid longitude is required (-180 to 180)")
            if not isinstance(address, str):
                location_errors.append("Address must be a string")
            errors.extend(location_errors)
            if not location_errors:
                location = Location(latitude=lat, longitude=lon, address=address)

    contact = None
    raw_contact = payload.get("contact")
    if raw_contact is not None:
        if not isinstance(raw_contact, Mapping):
            errors.append("Contact info must be an object")
        elif not _non_empty_str(raw_contact.get("phone")) or not _non_empty_str(raw_contact.get("email")):
            errors.append("Contact phone and email are required")
        else:
            contact = ContactInfo(phone=raw_contact["phone"], email=raw_contact["email"])

    resources: Dict[str, ResourceLevel] = {}
    if payload.get("resources") is not None:
        resources = _check_resources(payload["resources"], errors)

    state = OperationalState.AVAILABLE
    if payload.get("operational_state") is not None:
        state = _check_operational_state(payload["operational_state"], errors) or state

    urgent_needs: List[str] = []
    if payload.get("urgent_needs") is not None:
        urgent_needs = _check_urgent_needs(payload["urgent_needs"], errors) or []

    if errors:
        raise ValidationError.from_errors(errors)

    return ShelterStatus(
        shelter_id=payload.get("shelter_id") or str(uuid.uuid4()),
        name=name.strip(),
        capacity=Capacity(current=capacity.get("current", 0), maximum=capacity["maximum"]),
        resources=Resources(**resources),
        operational_state=state,
        urgent_needs=urgent_needs,
        location=location,
        operator_id=operator_id,
        contact=contact,
    )


# ═══════════════════════════════════════════════════════════════════════════
# Alerts
# ═══════════════════════════════════════════════════════════════════════════

def validate_alert_input(payload: Mapping[str, Any]) -> AlertInput:
    """Validate an alert creation request."""
    errors: List[str] = []
    if not isinstance(payload, Mapping):
        raise ValidationError.from_errors(["Alert must be an object"])

    if not _non_empty_str(payload.get("shelter_id")):
        errors.append("Shelter ID is required")
    if not _non_empty_str(payload.get("title")):
        errors.append("Alert title is required and must be a non-empty string")
    if not _non_empty_str(payload.get("description")):
        errors.append("Alert description is required and must be a non-empty string")
    if payload.get("type") not in _ALERT_TYPES:
        errors.append(f"Alert type must be one of: {', '.join(_ALERT_TYPES)}")
    if payload.get("priority") not in _ALERT_PRIORITIES:
        errors.append(f"Alert priority must be one of: {', '.join(_ALERT_PRIORITIES)}")

    alert_id = payload.get("alert_id")
    if alert_id is not None and not _non_empty_str(alert_id):
        errors.append("Alert ID must be a non-empty string when supplied")

    if errors:
        raise ValidationError.from_errors(errors)

    return AlertInput(
        shelter_id=payload["shelter_id"].strip(),
        type=AlertType(payload["type"]),
        priority=AlertPriority(payload["priority"]),
        title=payload["title"].strip(),
        description=payload["description"].strip(),
        alert_id=alert_id,
    )


def validate_alert_edit(payload: Mapping[str, Any]) -> str:
    """Only the description of an existing alert may change. Returns it stripped."""
    if not isinstance(payload, Mapping):
        raise ValidationError.from_errors(["Alert update must be an object"])

    errors: List[str] = []
    frozen = sorted(key for key in payload if key != "description")
    if frozen:
        errors.append(f"Alert fields cannot be changed after creation: {', '.join(frozen)}")
    if not _non_empty_str(payload.get("description")):
        errors.append("Alert description is required and must be a non-empty string")
    if errors:
        raise ValidationError.from_errors(errors)
    return payload["description"].strip()


def require_actor(actor_id: Any, role: str = "Responder") -> str:
    """Acknowledge/resolve need a non-empty actor id."""
    if not _non_empty_str(actor_id):
        raise ValidationError.from_errors([f"{role} ID is required"])
    return actor_id
