"""
reconciler.py — Applies status mutations to authoritative shelter records.

═══════════════════════════════════════════════════════════════════════════
APPLY FLOW
═══════════════════════════════════════════════════════════════════════════

    payload
       │
       ▼
    ┌──────────────────────┐   every violation collected
    │ 1. validate          │ ─────────────────────────────► ValidationError
    └─────────┬────────────┘
              ▼
    ┌──────────────────────┐   unknown id
    │ 2. read record       │ ─────────────────────────────► NotFoundError
    └─────────┬────────────┘
              ▼
    ┌──────────────────────┐   current > maximum after merge
    │ 3. sparse merge      │ ─────────────────────────────► ValidationError
    └─────────┬────────────┘
              ▼
    ┌──────────────────────┐   version moved underneath us
    │ 4. conditional write │ ── 1st time: re-read, goto 3
    │    (version = seen)  │ ── 2nd time: ─────────────────► ConflictError
    └─────────┬────────────┘
              ▼
    ┌──────────────────────┐
    │ 5. publish           │   shelter.updated, best-effort
    └──────────────────────┘

Replaying the same payload is harmless: the merge of a field set onto a
record that already holds it yields the same field values, so the field
client can deliver a mutation more than once.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from safehaven.core.errors import ConflictError, NotFoundError
from safehaven.core.validation import (
    check_capacity_invariant,
    validate_shelter_creation,
    validate_status_update,
)
from safehaven.notifications.publisher import SHELTER_UPDATED, NotificationPublisher
from safehaven.shelters.models import (
    OperationalState,
    ShelterStatus,
    StatusPatch,
    merge_status,
)
from safehaven.store.base import RecordStore

logger = logging.getLogger(__name__)

# One fresh read + re-apply after a concurrent-update rejection
CONFLICT_RETRIES = 1


class StatusReconciler:
    """
    Server-side owner of ShelterStatus records.

    Usage:
        reconciler = StatusReconciler(shelter_store, publisher)
        status = await reconciler.apply_status_update("S1", {"capacity": {"current": 60}})
    """

    def __init__(self, store: RecordStore, publisher: NotificationPublisher):
        self.store = store
        self.publisher = publisher

    # ── Reads ──

    async def get_shelter(self, shelter_id: str) -> ShelterStatus:
        record = await self.store.get(shelter_id)
        if record is None:
            raise NotFoundError("Shelter", shelter_id=shelter_id)
        return ShelterStatus.from_dict(record)

    async def list_shelters(
        self,
        operational_state: Optional[OperationalState] = None,
        limit: Optional[int] = None,
    ) -> List[ShelterStatus]:
        criteria = {"operational_state": operational_state.value} if operational_state else None
        records = await self.store.query(criteria, sort_key="last_updated", limit=limit)
        return [ShelterStatus.from_dict(r) for r in records]

    # ── Writes ──

    async def create_shelter(
        self,
        payload: Mapping[str, Any],
        *,
        operator_id: Optional[str] = None,
    ) -> ShelterStatus:
        """Create a shelter record (version 1). Shelters are created once."""
        status = validate_shelter_creation(payload, operator_id=operator_id)
        await self.store.put(status.to_dict(), if_absent=True)
        logger.info(
            "Shelter %s created (%s, capacity %d)",
            status.shelter_id, status.name, status.capacity.maximum,
            extra={"shelter_id": status.shelter_id},
        )
        await self._publish(status)
        return status

    async def apply_status_update(
        self,
        shelter_id: str,
        payload: Mapping[str, Any],
    ) -> ShelterStatus:
        """
        Validate and sparse-merge ``payload`` into the shelter record.

        Returns
        -------
        ShelterStatus
            The new authoritative record.

        Raises
        ------
        ValidationError
            Payload invalid, or the merged capacity breaks the invariant.
        NotFoundError
            Unknown shelter.
        ConflictError
            The record changed concurrently twice in a row.
        """
        patch = validate_status_update(payload)
        return await self.apply_patch(shelter_id, patch)

    async def apply_patch(self, shelter_id: str, patch: StatusPatch) -> ShelterStatus:
        for attempt in range(CONFLICT_RETRIES + 1):
            current = await self.get_shelter(shelter_id)
            merged = merge_status(current, patch)
            check_capacity_invariant(merged.capacity)

            merged.version = current.version + 1
            merged.last_updated = datetime.now(timezone.utc)
            changes = _changed_fields(merged)

            try:
                record = await self.store.update(
                    shelter_id, changes, conditions={"version": current.version},
                )
            except ConflictError:
                if attempt < CONFLICT_RETRIES:
                    logger.info(
                        "Concurrent update on shelter %s (version %d), re-reading",
                        shelter_id, current.version,
                        extra={"shelter_id": shelter_id},
                    )
                    continue
                raise
            break

        status = ShelterStatus.from_dict(record)
        logger.info(
            "Shelter %s updated to version %d: %s",
            shelter_id, status.version, ", ".join(patch.field_paths()),
            extra={"shelter_id": shelter_id, "version": status.version},
        )
        await self._publish(status)
        return status

    async def retire_shelter(self, shelter_id: str) -> ShelterStatus:
        """Soft delete: shelters are never removed, only taken offline."""
        return await self.apply_patch(
            shelter_id, StatusPatch(operational_state=OperationalState.OFFLINE),
        )

    async def _publish(self, status: ShelterStatus) -> None:
        await self.publisher.publish(
            SHELTER_UPDATED,
            status.to_dict(),
            attributes={
                "shelter_id": status.shelter_id,
                "operational_state": status.operational_state.value,
            },
        )


def _changed_fields(status: ShelterStatus) -> Dict[str, Any]:
    """Top-level record fields a status update may write."""
    record = status.to_dict()
    return {
        key: record[key]
        for key in (
            "capacity", "resources", "operational_state",
            "urgent_needs", "version", "last_updated",
        )
    }
