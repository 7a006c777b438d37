"""
lifecycle.py — Alert creation, transitions and read projections.

═══════════════════════════════════════════════════════════════════════════
TRANSITION RULES
═══════════════════════════════════════════════════════════════════════════

    Call          From            Result                        Publishes
    ───────────   ─────────────   ───────────────────────────   ──────────────────
    create        —               open, fresh id                alert.created
    create        (id exists)     stored alert, unchanged       —
    acknowledge   open            acknowledged (+by, +at)       alert.acknowledged
    acknowledge   acknowledged    unchanged                     —
    acknowledge   resolved        unchanged                     —
    resolve       open            resolved (+at, +by if given)  alert.resolved
    resolve       acknowledged    resolved (+at)                alert.resolved
    resolve       resolved        unchanged                     —
    update        any             new description               alert.updated
    update        same text       unchanged                     —

"Unchanged" answers are deliberate: the field client delivers every
mutation at least once, so duplicates and late arrivals must read as
success without moving the status backwards.

Each transition is written with ``conditions={"status": <seen>}``. If a
concurrent writer moved the alert first, the store rejects the write;
the manager re-reads once and evaluates the rules again against the
fresh state.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from safehaven.alerts.models import (
    Alert,
    AlertPriority,
    AlertStatus,
    can_transition,
)
from safehaven.core.errors import ConflictError, NotFoundError
from safehaven.core.validation import require_actor, validate_alert_edit, validate_alert_input
from safehaven.notifications.publisher import (
    ALERT_ACKNOWLEDGED,
    ALERT_CREATED,
    ALERT_RESOLVED,
    ALERT_UPDATED,
    NotificationPublisher,
)
from safehaven.store.base import RecordStore

logger = logging.getLogger(__name__)

CONFLICT_RETRIES = 1

_TOPIC_FOR_STATUS: Dict[AlertStatus, str] = {
    AlertStatus.ACKNOWLEDGED: ALERT_ACKNOWLEDGED,
    AlertStatus.RESOLVED: ALERT_RESOLVED,
}


class AlertLifecycleManager:
    """
    Usage:
        manager = AlertLifecycleManager(alert_store, publisher)
        alert = await manager.create({...}, created_by="op-1")
        await manager.acknowledge(alert.alert_id, "responder-7")
        await manager.resolve(alert.alert_id)
    """

    def __init__(self, store: RecordStore, publisher: NotificationPublisher):
        self.store = store
        self.publisher = publisher

    # ═══════════════════════════════════════════════════════════════════════
    # Creation
    # ═══════════════════════════════════════════════════════════════════════

    async def create(self, payload: Mapping[str, Any], *, created_by: str) -> Alert:
        """
        Create an open alert.

        A client-supplied ``alert_id`` that already exists returns the
        stored alert without a second ``alert.created``; replays of a
        queued create are therefore harmless.
        """
        alert_input = validate_alert_input(payload)
        creator = require_actor(created_by, role="Creator")

        if alert_input.alert_id:
            existing = await self.store.get(alert_input.alert_id)
            if existing is not None:
                logger.info(
                    "Alert %s already exists, returning stored record",
                    alert_input.alert_id, extra={"alert_id": alert_input.alert_id},
                )
                return Alert.from_dict(existing)

        alert_kwargs: Dict[str, Any] = {}
        if alert_input.alert_id:
            alert_kwargs["alert_id"] = alert_input.alert_id
        alert = Alert(
            shelter_id=alert_input.shelter_id,
            type=alert_input.type,
            priority=alert_input.priority,
            title=alert_input.title,
            description=alert_input.description,
            created_by=creator,
            **alert_kwargs,
        )

        try:
            await self.store.put(alert.to_dict(), if_absent=True)
        except ConflictError:
            # Lost a race with a concurrent replay of the same create
            return await self.get(alert.alert_id)

        logger.info(
            "Alert %s created for shelter %s [%s/%s]: %s",
            alert.alert_id, alert.shelter_id, alert.type.value,
            alert.priority.value, alert.title,
            extra={"alert_id": alert.alert_id, "shelter_id": alert.shelter_id},
        )
        await self._publish(ALERT_CREATED, alert)
        return alert

    # ═══════════════════════════════════════════════════════════════════════
    # Transitions
    # ═══════════════════════════════════════════════════════════════════════

    async def acknowledge(self, alert_id: str, responder_id: str) -> Alert:
        """open → acknowledged. Any later state is returned unchanged."""
        responder = require_actor(responder_id)

        def changes(alert: Alert, now: datetime) -> Dict[str, Any]:
            return {
                "status": AlertStatus.ACKNOWLEDGED.value,
                "acknowledged_by": responder,
                "acknowledged_at": now.isoformat(),
            }

        return await self._transition(alert_id, AlertStatus.ACKNOWLEDGED, changes)

    async def resolve(self, alert_id: str, resolver_id: Optional[str] = None) -> Alert:
        """open/acknowledged → resolved. Resolved is terminal."""
        resolver = require_actor(resolver_id, role="Resolver") if resolver_id is not None else None

        def changes(alert: Alert, now: datetime) -> Dict[str, Any]:
            fields: Dict[str, Any] = {
                "status": AlertStatus.RESOLVED.value,
                "resolved_at": now.isoformat(),
            }
            if resolver and not alert.acknowledged_by:
                fields["acknowledged_by"] = resolver
            return fields

        return await self._transition(alert_id, AlertStatus.RESOLVED, changes)

    async def _transition(
        self,
        alert_id: str,
        target: AlertStatus,
        build_changes: Callable[[Alert, datetime], Dict[str, Any]],
    ) -> Alert:
        for attempt in range(CONFLICT_RETRIES + 1):
            alert = await self.get(alert_id)

            if not can_transition(alert.status, target):
                logger.info(
                    "Alert %s is %s; %s is a no-op",
                    alert_id, alert.status.value, target.value,
                    extra={"alert_id": alert_id},
                )
                return alert

            fields = build_changes(alert, datetime.now(timezone.utc))
            try:
                record = await self.store.update(
                    alert_id, fields, conditions={"status": alert.status.value},
                )
            except ConflictError:
                if attempt < CONFLICT_RETRIES:
                    logger.info(
                        "Alert %s changed concurrently, re-evaluating %s",
                        alert_id, target.value, extra={"alert_id": alert_id},
                    )
                    continue
                raise

            updated = Alert.from_dict(record)
            logger.info(
                "Alert %s %s → %s",
                alert_id, alert.status.value, updated.status.value,
                extra={"alert_id": alert_id, "shelter_id": updated.shelter_id},
            )
            await self._publish(_TOPIC_FOR_STATUS[target], updated)
            return updated

        raise ConflictError("Alert", alert_id)  # pragma: no cover

    # ═══════════════════════════════════════════════════════════════════════
    # Edits
    # ═══════════════════════════════════════════════════════════════════════

    async def update_description(
        self,
        alert_id: str,
        payload: Mapping[str, Any],
        editor_id: str,
    ) -> Alert:
        """
        Replace the description. Type, priority, title and status never
        change through this path.

        Resending the same text returns the alert unchanged without
        publishing, so a replayed edit is harmless.
        """
        description = validate_alert_edit(payload)
        editor = require_actor(editor_id, role="Editor")

        for attempt in range(CONFLICT_RETRIES + 1):
            alert = await self.get(alert_id)
            if alert.description == description:
                return alert
            try:
                record = await self.store.update(
                    alert_id,
                    {"description": description},
                    conditions={"description": alert.description},
                )
            except ConflictError:
                if attempt < CONFLICT_RETRIES:
                    continue
                raise

            updated = Alert.from_dict(record)
            logger.info(
                "Alert %s description edited by %s", alert_id, editor,
                extra={"alert_id": alert_id, "shelter_id": updated.shelter_id},
            )
            await self._publish(ALERT_UPDATED, updated)
            return updated

        raise ConflictError("Alert", alert_id)  # pragma: no cover

    # ═══════════════════════════════════════════════════════════════════════
    # Read Projections (newest first)
    # ═══════════════════════════════════════════════════════════════════════

    async def get(self, alert_id: str) -> Alert:
        record = await self.store.get(alert_id)
        if record is None:
            raise NotFoundError("Alert", alert_id=alert_id)
        return Alert.from_dict(record)

    async def list_alerts(
        self,
        *,
        shelter_id: Optional[str] = None,
        status: Optional[AlertStatus] = None,
        priority: Optional[AlertPriority] = None,
        limit: Optional[int] = None,
    ) -> List[Alert]:
        criteria: Dict[str, Any] = {}
        if shelter_id:
            criteria["shelter_id"] = shelter_id
        if status:
            criteria["status"] = status.value
        if priority:
            criteria["priority"] = priority.value
        records = await self.store.query(
            criteria or None, sort_key="sort_timestamp", descending=True, limit=limit,
        )
        return [Alert.from_dict(r) for r in records]

    async def by_shelter(self, shelter_id: str, limit: Optional[int] = None) -> List[Alert]:
        return await self.list_alerts(shelter_id=shelter_id, limit=limit)

    async def by_status(self, status: AlertStatus, limit: Optional[int] = None) -> List[Alert]:
        return await self.list_alerts(status=status, limit=limit)

    async def by_priority(self, priority: AlertPriority, limit: Optional[int] = None) -> List[Alert]:
        return await self.list_alerts(priority=priority, limit=limit)

    async def open_alerts(self, limit: Optional[int] = None) -> List[Alert]:
        return await self.by_status(AlertStatus.OPEN, limit)

    async def critical_alerts(self, limit: Optional[int] = None) -> List[Alert]:
        """Open alerts at critical priority."""
        return await self.list_alerts(
            status=AlertStatus.OPEN, priority=AlertPriority.CRITICAL, limit=limit,
        )

    async def _publish(self, topic: str, alert: Alert) -> None:
        await self.publisher.publish(
            topic,
            alert.to_dict(),
            attributes={
                "alert_id": alert.alert_id,
                "shelter_id": alert.shelter_id,
                "alert_type": alert.type.value,
                "priority": alert.priority.value,
            },
        )
