"""
models.py — Alert data structures and the lifecycle state machine.

Defines:
    • AlertType     — what kind of help a shelter is asking for
    • AlertPriority — escalation level, fixed at creation
    • AlertStatus   — lifecycle state
    • ALLOWED_TRANSITIONS — the state machine
    • AlertInput    — validated creation request
    • Alert         — the server-owned record

═══════════════════════════════════════════════════════════════════════════
LIFECYCLE
═══════════════════════════════════════════════════════════════════════════

    ┌────────┐  acknowledge   ┌──────────────┐   resolve   ┌──────────┐
    │  open  │ ─────────────► │ acknowledged │ ──────────► │ resolved │
    └────────┘                └──────────────┘             └──────────┘
         │                          resolve                     ▲
         └──────────────────────────────────────────────────────┘

Status only moves forward (rank increases). A request for a transition
the machine does not allow is answered with the current record rather
than an error, because the field client replays mutations at least once
and a late duplicate must never rewind a newer state.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


# ═══════════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════════

class AlertType(str, Enum):
    CAPACITY_FULL          = "capacity_full"
    RESOURCE_CRITICAL      = "resource_critical"
    MEDICAL_EMERGENCY      = "medical_emergency"
    SECURITY_ISSUE         = "security_issue"
    INFRASTRUCTURE_PROBLEM = "infrastructure_problem"
    GENERAL_ASSISTANCE     = "general_assistance"


class AlertPriority(str, Enum):
    """Escalation level — ``rank`` enables comparison."""
    LOW      = "low"
    MEDIUM   = "medium"
    HIGH     = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


class AlertStatus(str, Enum):
    OPEN         = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED     = "resolved"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return not ALLOWED_TRANSITIONS[self]


_PRIORITY_RANK: Dict[AlertPriority, int] = {
    AlertPriority.LOW: 1,
    AlertPriority.MEDIUM: 2,
    AlertPriority.HIGH: 3,
    AlertPriority.CRITICAL: 4,
}

_STATUS_RANK: Dict[AlertStatus, int] = {
    AlertStatus.OPEN: 0,
    AlertStatus.ACKNOWLEDGED: 1,
    AlertStatus.RESOLVED: 2,
}


# ═══════════════════════════════════════════════════════════════════════════
# State Machine
# ═══════════════════════════════════════════════════════════════════════════

ALLOWED_TRANSITIONS: Dict[AlertStatus, FrozenSet[AlertStatus]] = {
    AlertStatus.OPEN: frozenset({AlertStatus.ACKNOWLEDGED, AlertStatus.RESOLVED}),
    AlertStatus.ACKNOWLEDGED: frozenset({AlertStatus.RESOLVED}),
    AlertStatus.RESOLVED: frozenset(),
}


def can_transition(current: AlertStatus, target: AlertStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


# ═══════════════════════════════════════════════════════════════════════════
# Data Structures
# ═══════════════════════════════════════════════════════════════════════════

def _generate_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class AlertInput:
    """A validated alert creation request."""
    shelter_id: str
    type: AlertType
    priority: AlertPriority
    title: str
    description: str
    alert_id: Optional[str] = None  # client-supplied id makes replays idempotent


@dataclass
class Alert:
    """
    Alert record.

    ``priority`` is fixed at creation. ``sort_timestamp`` is the creation
    time in epoch milliseconds and orders every listing newest-first.
    """
    shelter_id: str
    type: AlertType
    priority: AlertPriority
    title: str
    description: str
    created_by: str
    alert_id: str = field(default_factory=_generate_id)
    status: AlertStatus = AlertStatus.OPEN
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_now)
    sort_timestamp: int = 0

    def __post_init__(self) -> None:
        if not self.sort_timestamp:
            self.sort_timestamp = int(self.created_at.timestamp() * 1000)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "alert_id": self.alert_id,
            "shelter_id": self.shelter_id,
            "type": self.type.value,
            "priority": self.priority.value,
            "title": self.title,
            "description": self.description,
            "status": self.status.value,
            "created_by": self.created_by,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": (
                self.acknowledged_at.isoformat() if self.acknowledged_at else None
            ),
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
            "created_at": self.created_at.isoformat(),
            "sort_timestamp": self.sort_timestamp,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Alert":
        return cls(
            alert_id=data["alert_id"],
            shelter_id=data["shelter_id"],
            type=AlertType(data["type"]),
            priority=AlertPriority(data["priority"]),
            title=data["title"],
            description=data["description"],
            status=AlertStatus(data["status"]),
            created_by=data["created_by"],
            acknowledged_by=data.get("acknowledged_by"),
            acknowledged_at=_parse_dt(data.get("acknowledged_at")),
            resolved_at=_parse_dt(data.get("resolved_at")),
            created_at=_parse_dt(data["created_at"]),
            sort_timestamp=int(data.get("sort_timestamp", 0)),
        )
