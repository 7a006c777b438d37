"""
models.py — Shelter status data structures.

Defines:
    • OperationalState — shelter availability states
    • ResourceLevel    — ordered severity scale for supplies
    • Capacity, Resources, Location, ContactInfo
    • ShelterStatus    — the authoritative, server-owned record
    • StatusPatch      — a typed sparse update
    • merge_status     — the sparse merge used by the reconciler

═══════════════════════════════════════════════════════════════════════════
SPARSE MERGE
═══════════════════════════════════════════════════════════════════════════

A StatusPatch only carries the fields the operator actually changed.
Merging copies those fields onto the record and leaves every other
field untouched, down to individual capacity and resource entries:

    record   capacity={current:50, maximum:100}  resources.water=adequate
    patch    capacity={current:60}
    result   capacity={current:60, maximum:100}  resources.water=adequate

Folding a list of patches left-to-right over a record gives the same
result as applying them one at a time; the reconciler relies on this
when replayed mutations arrive in queue order.
"""

from __future__ import annotations

import copy
import functools
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class OperationalState(str, Enum):
    """Shelter availability. ``offline`` doubles as the soft-delete state."""
    AVAILABLE = "available"
    LIMITED   = "limited"
    FULL      = "full"
    EMERGENCY = "emergency"
    OFFLINE   = "offline"


class ResourceLevel(str, Enum):
    """Supply level, ordered by severity (adequate < low < critical < unavailable)."""
    ADEQUATE    = "adequate"
    LOW         = "low"
    CRITICAL    = "critical"
    UNAVAILABLE = "unavailable"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    def is_worse_than(self, other: "ResourceLevel") -> bool:
        return self.severity > other.severity


_SEVERITY: Dict[ResourceLevel, int] = {
    ResourceLevel.ADEQUATE: 0,
    ResourceLevel.LOW: 1,
    ResourceLevel.CRITICAL: 2,
    ResourceLevel.UNAVAILABLE: 3,
}

RESOURCE_NAMES = ("food", "water", "medical", "bedding")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Capacity:
    current: int = 0
    maximum: int = 0

    @property
    def occupancy_rate(self) -> float:
        if self.maximum == 0:
            return 0.0
        return self.current / self.maximum

    def to_dict(self) -> Dict[str, int]:
        return {"current": self.current, "maximum": self.maximum}


@dataclass
class Resources:
    food: ResourceLevel = ResourceLevel.ADEQUATE
    water: ResourceLevel = ResourceLevel.ADEQUATE
    medical: ResourceLevel = ResourceLevel.ADEQUATE
    bedding: ResourceLevel = ResourceLevel.ADEQUATE

    def worst(self) -> ResourceLevel:
        """Most severe level across all supplies."""
        return max(
            (getattr(self, name) for name in RESOURCE_NAMES),
            key=lambda level: level.severity,
        )

    def to_dict(self) -> Dict[str, str]:
        return {name: getattr(self, name).value for name in RESOURCE_NAMES}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Resources":
        return cls(**{
            name: ResourceLevel(data[name])
            for name in RESOURCE_NAMES if name in data
        })


@dataclass
class Location:
    latitude: float
    longitude: float
    address: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latitude": self.latitude,
            "longitude": self.longitude,
            "address": self.address,
        }


@dataclass
class ContactInfo:
    phone: str = ""
    email: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"phone": self.phone, "email": self.email}


@dataclass
class ShelterStatus:
    """
    Authoritative shelter record.

    Attributes
    ----------
    shelter_id : str
        Unique id; the record store key.
    capacity : Capacity
        Occupancy; invariant ``0 <= current <= maximum``.
    resources : Resources
        Per-supply severity levels.
    operational_state : OperationalState
        ``offline`` marks a retired shelter; records are never hard-deleted.
    urgent_needs : list of str
        Free-text needs, replaced wholesale when updated.
    version : int
        Bumped on every accepted update; the store's compare-and-set key.
    last_updated : datetime
        Stamped by the reconciler on every accepted update.
    """
    shelter_id: str
    name: str = ""
    capacity: Capacity = field(default_factory=Capacity)
    resources: Resources = field(default_factory=Resources)
    operational_state: OperationalState = OperationalState.AVAILABLE
    urgent_needs: List[str] = field(default_factory=list)
    location: Optional[Location] = None
    operator_id: Optional[str] = None
    contact: Optional[ContactInfo] = None
    version: int = 1
    last_updated: datetime = field(default_factory=_now)
    created_at: datetime = field(default_factory=_now)

    @property
    def is_retired(self) -> bool:
        return self.operational_state == OperationalState.OFFLINE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shelter_id": self.shelter_id,
            "name": self.name,
            "capacity": self.capacity.to_dict(),
            "resources": self.resources.to_dict(),
            "operational_state": self.operational_state.value,
            "urgent_needs": list(self.urgent_needs),
            "location": self.location.to_dict() if self.location else None,
            "operator_id": self.operator_id,
            "contact": self.contact.to_dict() if self.contact else None,
            "version": self.version,
            "last_updated": _iso(self.last_updated),
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ShelterStatus":
        location = data.get("location")
        contact = data.get("contact")
        capacity = data.get("capacity") or {}
        return cls(
            shelter_id=data["shelter_id"],
            name=data.get("name", ""),
            capacity=Capacity(
                current=int(capacity.get("current", 0)),
                maximum=int(capacity.get("maximum", 0)),
            ),
            resources=Resources.from_dict(data.get("resources") or {}),
            operational_state=OperationalState(
                data.get("operational_state", OperationalState.AVAILABLE.value)
            ),
            urgent_needs=list(data.get("urgent_needs") or []),
            location=Location(**location) if location else None,
            operator_id=data.get("operator_id"),
            contact=ContactInfo(**contact) if contact else None,
            version=int(data.get("version", 1)),
            last_updated=_parse_dt(data.get("last_updated")) or _now(),
            created_at=_parse_dt(data.get("created_at")) or _now(),
        )


@dataclass
class StatusPatch:
    """
    A validated sparse update. ``None`` / empty means "leave untouched".

    Built by ``safehaven.core.validation.validate_status_update`` from a
    raw payload; never constructed from unchecked input.
    """
    capacity_current: Optional[int] = None
    capacity_maximum: Optional[int] = None
    resources: Dict[str, ResourceLevel] = field(default_factory=dict)
    operational_state: Optional[OperationalState] = None
    urgent_needs: Optional[List[str]] = None

    @property
    def is_empty(self) -> bool:
        return not self.field_paths()

    def field_paths(self) -> List[str]:
        """Flat dotted paths of every field this patch touches."""
        paths: List[str] = []
        if self.capacity_current is not None:
            paths.append("capacity.current")
        if self.capacity_maximum is not None:
            paths.append("capacity.maximum")
        paths.extend(f"resources.{name}" for name in self.resources)
        if self.operational_state is not None:
            paths.append("operational_state")
        if self.urgent_needs is not None:
            paths.append("urgent_needs")
        return paths

    def to_payload(self) -> Dict[str, Any]:
        """Wire shape, the inverse of validation."""
        payload: Dict[str, Any] = {}
        capacity: Dict[str, int] = {}
        if self.capacity_current is not None:
            capacity["current"] = self.capacity_current
        if self.capacity_maximum is not None:
            capacity["maximum"] = self.capacity_maximum
        if capacity:
            payload["capacity"] = capacity
        if self.resources:
            payload["resources"] = {k: v.value for k, v in self.resources.items()}
        if self.operational_state is not None:
            payload["operational_state"] = self.operational_state.value
        if self.urgent_needs is not None:
            payload["urgent_needs"] = list(self.urgent_needs)
        return payload


# ═══════════════════════════════════════════════════════════════════════════
# Sparse Merge
# ═══════════════════════════════════════════════════════════════════════════

def merge_status(status: ShelterStatus, patch: StatusPatch) -> ShelterStatus:
    """
    Copy the fields present in ``patch`` onto a copy of ``status``.

    Pure: neither argument is modified. Version and timestamps are left
    to the caller.
    """
    merged = copy.deepcopy(status)
    if patch.capacity_current is not None:
        merged.capacity.current = patch.capacity_current
    if patch.capacity_maximum is not None:
        merged.capacity.maximum = patch.capacity_maximum
    for name, level in patch.resources.items():
        setattr(merged.resources, name, level)
    if patch.operational_state is not None:
        merged.operational_state = patch.operational_state
    if patch.urgent_needs is not None:
        merged.urgent_needs = list(patch.urgent_needs)
    return merged


def fold_patches(status: ShelterStatus, patches: Iterable[StatusPatch]) -> ShelterStatus:
    """Apply ``patches`` left-to-right."""
    return functools.reduce(merge_status, patches, status)
