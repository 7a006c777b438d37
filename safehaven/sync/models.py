"""
models.py — Field client sync data structures.

Defines:
    • MutationKind     — which server call a queued mutation replays as
    • PendingMutation  — an unconfirmed local change, durable in the queue
    • FailedMutation   — a mutation surfaced to the user for attention
    • FieldSyncState   — local_only / in_flight / confirmed per field
    • SyncCycleReport  — outcome of one SyncEngine pass
    • SyncStatus       — snapshot shown in the client UI

═══════════════════════════════════════════════════════════════════════════
MUTATION LIFECYCLE (client side)
═══════════════════════════════════════════════════════════════════════════

    enqueue ──► pending ──(server ack)──────────────► removed
                  │  ▲
    transient     │  │ retry_count < max_retries: wait next_attempt_at
    failure ──────┘  │
                  │
                  ├──(retry_count == max_retries)──► failed: retries_exhausted
                  ├──(validation / 404 / 403)──────► failed: rejected
                  └──(older than the age limit)────► failed: stale

    failed ──(user: retry_failed)──► pending (retry_count reset)
    failed ──(user: discard_failed)──► gone
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from safehaven.core.config import settings


class MutationKind(str, Enum):
    STATUS_UPDATE     = "status_update"
    ALERT_CREATE      = "alert_create"
    ALERT_ACKNOWLEDGE = "alert_acknowledge"
    ALERT_RESOLVE     = "alert_resolve"
    ALERT_UPDATE      = "alert_update"


class FailureReason(str, Enum):
    REJECTED          = "rejected"           # validation, not found, permission
    RETRIES_EXHAUSTED = "retries_exhausted"
    STALE             = "stale"


class FieldSyncState(str, Enum):
    LOCAL_ONLY = "local_only"   # edited locally, not yet sent
    IN_FLIGHT  = "in_flight"    # sent, awaiting acknowledgment
    CONFIRMED  = "confirmed"    # matches the authoritative record


def _generate_id() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_dt(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass
class PendingMutation:
    """
    One queued change. ``target_id`` is a shelter id for status updates
    and an alert id for every alert kind; for ``alert_create`` the alert id
    is the mutation's own ``local_id`` so replays are idempotent.
    """
    kind: MutationKind
    target_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    local_id: str = field(default_factory=_generate_id)
    created_at: datetime = field(default_factory=_now)
    retry_count: int = 0
    max_retries: int = settings.SYNC_MAX_RETRIES
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def is_due(self, now: Optional[datetime] = None) -> bool:
        if self.next_attempt_at is None:
            return True
        return self.next_attempt_at <= (now or _now())

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or _now()) - self.created_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "local_id": self.local_id,
            "kind": self.kind.value,
            "target_id": self.target_id,
            "payload": self.payload,
            "created_at": self.created_at.isoformat(),
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "next_attempt_at": _iso(self.next_attempt_at),
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PendingMutation":
        return cls(
            local_id=data["local_id"],
            kind=MutationKind(data["kind"]),
            target_id=data["target_id"],
            payload=dict(data.get("payload") or {}),
            created_at=_parse_dt(data["created_at"]),
            retry_count=int(data.get("retry_count", 0)),
            max_retries=int(data.get("max_retries", settings.SYNC_MAX_RETRIES)),
            next_attempt_at=_parse_dt(data.get("next_attempt_at")),
            last_error=data.get("last_error"),
        )


@dataclass
class FailedMutation:
    """A mutation that needs the user's attention."""
    mutation: PendingMutation
    reason: FailureReason
    failed_at: datetime = field(default_factory=_now)
    last_error: Optional[str] = None

    @property
    def local_id(self) -> str:
        return self.mutation.local_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.mutation.to_dict(),
            "reason": self.reason.value,
            "failed_at": self.failed_at.isoformat(),
            "last_error": self.last_error,
        }


@dataclass
class SyncCycleReport:
    """Outcome of one sync pass."""
    cycle_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    online: bool = False
    attempted: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    expired: int = 0
    started_at: datetime = field(default_factory=_now)
    duration_ms: float = 0.0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "online": self.online,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "retried": self.retried,
            "failed": self.failed,
            "skipped": self.skipped,
            "expired": self.expired,
            "started_at": self.started_at.isoformat(),
            "duration_ms": round(self.duration_ms, 1),
            "errors": self.errors,
        }


@dataclass
class SyncStatus:
    is_online: bool
    pending_count: int
    failed_count: int
    last_sync_time: Optional[datetime]
    auto_sync_running: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_online": self.is_online,
            "pending_count": self.pending_count,
            "failed_count": self.failed_count,
            "last_sync_time": _iso(self.last_sync_time),
            "auto_sync_running": self.auto_sync_running,
        }
