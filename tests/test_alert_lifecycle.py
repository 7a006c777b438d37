"""
test_alert_lifecycle.py — Alert creation, transitions and projections.

Covers:
    • Creation (validation, alert.created, idempotent client alert_id)
    • Acknowledge / resolve, including replays and late duplicates
    • Description edits (alert.updated, frozen fields, idempotent replay)
    • Monotonic status: no transition ever moves an alert backwards
    • Conflict re-evaluation against the fresh record
    • Newest-first listings with filters and limits

Run with:
    pytest tests/test_alert_lifecycle.py -v
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from safehaven.alerts.lifecycle import AlertLifecycleManager
from safehaven.alerts.models import Alert, AlertPriority, AlertStatus, AlertType
from safehaven.core.errors import ConflictError, NotFoundError, ValidationError
from safehaven.notifications.bus import InMemoryNotificationBus
from safehaven.notifications.publisher import (
    ALERT_ACKNOWLEDGED,
    ALERT_CREATED,
    ALERT_RESOLVED,
    ALERT_UPDATED,
    NotificationPublisher,
)
from safehaven.store.memory import InMemoryRecordStore


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

def _make_manager():
    store = InMemoryRecordStore("Alert", "alert_id")
    bus = InMemoryNotificationBus()
    manager = AlertLifecycleManager(store, NotificationPublisher(bus, timeout_seconds=0.5))
    return manager, store, bus


def _payload(**overrides) -> dict:
    payload = {
        "shelter_id": "S1",
        "type": "medical_emergency",
        "priority": "critical",
        "title": "Insulin needed",
        "description": "Two diabetic evacuees, no insulin on site",
    }
    payload.update(overrides)
    return payload


def _stored_alert(alert_id: str, minutes_ago: int, **overrides) -> dict:
    fields = dict(
        alert_id=alert_id,
        shelter_id="S1",
        type=AlertType.GENERAL_ASSISTANCE,
        priority=AlertPriority.MEDIUM,
        title=alert_id,
        description="seeded",
        created_by="op-1",
        created_at=datetime.now(timezone.utc) - timedelta(minutes=minutes_ago),
    )
    fields.update(overrides)
    return Alert(**fields).to_dict()


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Creation
# ═══════════════════════════════════════════════════════════════════════════

class TestCreate:

    @pytest.mark.asyncio
    async def test_creates_open_alert(self):
        manager, store, bus = _make_manager()
        alert = await manager.create(_payload(), created_by="op-1")

        assert alert.status == AlertStatus.OPEN
        assert alert.created_by == "op-1"
        assert alert.acknowledged_by is None
        assert (await store.get(alert.alert_id))["status"] == "open"

        [message] = bus.messages_for(ALERT_CREATED)
        assert message.attributes == {
            "alert_id": alert.alert_id,
            "shelter_id": "S1",
            "alert_type": "medical_emergency",
            "priority": "critical",
        }

    @pytest.mark.asyncio
    async def test_fresh_ids(self):
        manager, _, _ = _make_manager()
        first = await manager.create(_payload(), created_by="op-1")
        second = await manager.create(_payload(), created_by="op-1")
        assert first.alert_id != second.alert_id

    @pytest.mark.asyncio
    async def test_invalid_input_stores_nothing(self):
        manager, store, bus = _make_manager()
        with pytest.raises(ValidationError) as exc_info:
            await manager.create(_payload(priority="urgent", title=""), created_by="op-1")
        assert len(exc_info.value.errors) == 2
        assert len(store) == 0
        assert bus.messages == []

    @pytest.mark.asyncio
    async def test_creator_required(self):
        manager, _, _ = _make_manager()
        with pytest.raises(ValidationError):
            await manager.create(_payload(), created_by="")

    @pytest.mark.asyncio
    async def test_replayed_create_is_idempotent(self):
        manager, store, bus = _make_manager()
        first = await manager.create(_payload(alert_id="client-1"), created_by="op-1")
        replay = await manager.create(
            _payload(alert_id="client-1", title="Changed title"), created_by="op-1",
        )

        assert replay.alert_id == first.alert_id == "client-1"
        assert replay.title == "Insulin needed"
        assert len(store) == 1
        assert len(bus.messages_for(ALERT_CREATED)) == 1

    @pytest.mark.asyncio
    async def test_replay_after_acknowledge_keeps_status(self):
        manager, _, _ = _make_manager()
        await manager.create(_payload(alert_id="client-1"), created_by="op-1")
        await manager.acknowledge("client-1", "r1")
        replay = await manager.create(_payload(alert_id="client-1"), created_by="op-1")
        assert replay.status == AlertStatus.ACKNOWLEDGED


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Transitions
# ═══════════════════════════════════════════════════════════════════════════

class TestTransitions:

    @pytest.mark.asyncio
    async def test_acknowledge_records_responder(self):
        manager, _, bus = _make_manager()
        alert = await manager.create(_payload(), created_by="op-1")
        acked = await manager.acknowledge(alert.alert_id, "r1")

        assert acked.status == AlertStatus.ACKNOWLEDGED
        assert acked.acknowledged_by == "r1"
        assert acked.acknowledged_at is not None
        assert len(bus.messages_for(ALERT_ACKNOWLEDGED)) == 1

    @pytest.mark.asyncio
    async def test_duplicate_acknowledge_is_noop(self):
        manager, _, bus = _make_manager()
        alert = await manager.create(_payload(), created_by="op-1")
        first = await manager.acknowledge(alert.alert_id, "r1")
        second = await manager.acknowledge(alert.alert_id, "r2")

        assert second.acknowledged_by == "r1"
        assert second.acknowledged_at == first.acknowledged_at
        assert len(bus.messages_for(ALERT_ACKNOWLEDGED)) == 1

    @pytest.mark.asyncio
    async def test_resolve_from_open_sets_acknowledged_by(self):
        manager, _, bus = _make_manager()
        alert = await manager.create(_payload(), created_by="op-1")
        resolved = await manager.resolve(alert.alert_id, "r9")

        assert resolved.status == AlertStatus.RESOLVED
        assert resolved.resolved_at is not None
        assert resolved.acknowledged_by == "r9"
        assert len(bus.messages_for(ALERT_RESOLVED)) == 1

    @pytest.mark.asyncio
    async def test_resolve_without_resolver(self):
        manager, _, _ = _make_manager()
        alert = await manager.create(_payload(), created_by="op-1")
        resolved = await manager.resolve(alert.alert_id)
        assert resolved.status == AlertStatus.RESOLVED
        assert resolved.acknowledged_by is None

    @pytest.mark.asyncio
    async def test_resolve_keeps_original_responder(self):
        manager, _, _ = _make_manager()
        alert = await manager.create(_payload(), created_by="op-1")
        await manager.acknowledge(alert.alert_id, "r1")
        resolved = await manager.resolve(alert.alert_id, "r2")
        assert resolved.acknowledged_by == "r1"

    @pytest.mark.asyncio
    async def test_resolved_is_terminal(self):
        manager, _, bus = _make_manager()
        alert = await manager.create(_payload(), created_by="op-1")
        resolved = await manager.resolve(alert.alert_id, "r1")
        bus.clear()

        late_ack = await manager.acknowledge(alert.alert_id, "r2")
        again = await manager.resolve(alert.alert_id, "r3")

        assert late_ack.status == AlertStatus.RESOLVED
        assert again.resolved_at == resolved.resolved_at
        assert again.acknowledged_by == "r1"
        assert bus.messages == []

    @pytest.mark.asyncio
    async def test_unknown_alert(self):
        manager, _, _ = _make_manager()
        with pytest.raises(NotFoundError) as exc_info:
            await manager.acknowledge("ghost", "r1")
        assert exc_info.value.details["alert_id"] == "ghost"

    @pytest.mark.asyncio
    async def test_responder_required(self):
        manager, _, _ = _make_manager()
        alert = await manager.create(_payload(), created_by="op-1")
        with pytest.raises(ValidationError):
            await manager.acknowledge(alert.alert_id, "")

    @pytest.mark.asyncio
    async def test_status_never_regresses(self):
        manager, store, _ = _make_manager()
        alert = await manager.create(_payload(), created_by="op-1")
        operations = [
            lambda: manager.acknowledge(alert.alert_id, "r1"),
            lambda: manager.acknowledge(alert.alert_id, "r2"),
            lambda: manager.resolve(alert.alert_id, "r1"),
            lambda: manager.acknowledge(alert.alert_id, "r3"),
            lambda: manager.resolve(alert.alert_id),
        ]
        rank = AlertStatus.OPEN.rank
        for operation in operations:
            result = await operation()
            assert result.status.rank >= rank
            rank = result.status.rank
        assert (await store.get(alert.alert_id))["status"] == "resolved"


class TestCriticalAlertScenario:

    @pytest.mark.asyncio
    async def test_create_ack_duplicate_resolve_late_ack(self):
        manager, _, bus = _make_manager()
        alert = await manager.create(_payload(), created_by="op-1")

        assert [a.alert_id for a in await manager.critical_alerts()] == [alert.alert_id]

        await manager.acknowledge(alert.alert_id, "r1")
        await manager.acknowledge(alert.alert_id, "r1")
        assert await manager.critical_alerts() == []

        await manager.resolve(alert.alert_id)
        final = await manager.acknowledge(alert.alert_id, "r2")

        assert final.status == AlertStatus.RESOLVED
        assert final.acknowledged_by == "r1"
        assert [m.topic for m in bus.messages] == [
            ALERT_CREATED, ALERT_ACKNOWLEDGED, ALERT_RESOLVED,
        ]


class TestDescriptionEdits:

    @pytest.mark.asyncio
    async def test_edit_publishes_update(self):
        manager, _, bus = _make_manager()
        alert = await manager.create(_payload(), created_by="op-1")
        await manager.acknowledge(alert.alert_id, "r1")
        bus.clear()

        updated = await manager.update_description(
            alert.alert_id, {"description": "  Insulin delivered, need test strips "}, "op-1",
        )

        assert updated.description == "Insulin delivered, need test strips"
        assert updated.status == AlertStatus.ACKNOWLEDGED
        assert updated.priority == AlertPriority.CRITICAL
        [message] = bus.messages
        assert message.topic == ALERT_UPDATED
        assert message.payload["data"]["description"] == "Insulin delivered, need test strips"

    @pytest.mark.asyncio
    async def test_same_text_is_noop(self):
        manager, _, bus = _make_manager()
        alert = await manager.create(_payload(), created_by="op-1")
        bus.clear()

        again = await manager.update_description(
            alert.alert_id, {"description": alert.description}, "op-1",
        )

        assert again.to_dict() == alert.to_dict()
        assert bus.messages == []

    @pytest.mark.asyncio
    async def test_other_fields_are_frozen(self):
        manager, _, bus = _make_manager()
        alert = await manager.create(_payload(), created_by="op-1")
        bus.clear()

        with pytest.raises(ValidationError) as exc_info:
            await manager.update_description(
                alert.alert_id, {"priority": "low", "description": ""}, "op-1",
            )

        assert len(exc_info.value.details["errors"]) == 2
        assert "priority" in exc_info.value.details["errors"][0]
        assert (await manager.get(alert.alert_id)).priority == AlertPriority.CRITICAL
        assert bus.messages == []

    @pytest.mark.asyncio
    async def test_editor_required_and_unknown_alert(self):
        manager, _, _ = _make_manager()
        alert = await manager.create(_payload(), created_by="op-1")
        with pytest.raises(ValidationError):
            await manager.update_description(alert.alert_id, {"description": "x"}, "")
        with pytest.raises(NotFoundError):
            await manager.update_description("ghost", {"description": "x"}, "op-1")

    @pytest.mark.asyncio
    async def test_concurrent_edit_retries_once(self):
        manager, store, _ = _make_manager()
        alert = await manager.create(_payload(), created_by="op-1")
        real_update = store.update
        calls = {"n": 0}

        async def racing_update(record_id, fields, conditions=None):
            calls["n"] += 1
            if calls["n"] == 1:
                await real_update(record_id, {"description": "someone else's text"})
            return await real_update(record_id, fields, conditions)

        store.update = racing_update
        result = await manager.update_description(alert.alert_id, {"description": "mine"}, "op-2")

        assert calls["n"] == 2
        assert result.description == "mine"


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Concurrency
# ═══════════════════════════════════════════════════════════════════════════

class TestConflicts:

    @pytest.mark.asyncio
    async def test_conflict_re_evaluates_against_fresh_state(self):
        manager, store, bus = _make_manager()
        alert = await manager.create(_payload(), created_by="op-1")
        bus.clear()
        real_update = store.update
        calls = {"n": 0}

        async def racing_update(record_id, fields, conditions=None):
            calls["n"] += 1
            if calls["n"] == 1:
                # Another responder acknowledges first
                await real_update(record_id, {"status": "acknowledged", "acknowledged_by": "r0"})
            return await real_update(record_id, fields, conditions)

        store.update = racing_update
        result = await manager.acknowledge(alert.alert_id, "r1")

        assert calls["n"] == 1
        assert result.status == AlertStatus.ACKNOWLEDGED
        assert result.acknowledged_by == "r0"
        assert bus.messages == []

    @pytest.mark.asyncio
    async def test_conflict_then_resolve_still_applies(self):
        manager, store, _ = _make_manager()
        alert = await manager.create(_payload(), created_by="op-1")
        real_update = store.update
        calls = {"n": 0}

        async def racing_update(record_id, fields, conditions=None):
            calls["n"] += 1
            if calls["n"] == 1:
                await real_update(record_id, {"status": "acknowledged", "acknowledged_by": "r0"})
            return await real_update(record_id, fields, conditions)

        store.update = racing_update
        result = await manager.resolve(alert.alert_id, "r1")

        assert calls["n"] == 2
        assert result.status == AlertStatus.RESOLVED
        assert result.acknowledged_by == "r0"

    @pytest.mark.asyncio
    async def test_repeated_conflict_propagates(self):
        manager, store, _ = _make_manager()
        alert = await manager.create(_payload(), created_by="op-1")

        async def always_conflict(record_id, fields, conditions=None):
            raise ConflictError("Alert", record_id)

        store.update = always_conflict
        with pytest.raises(ConflictError):
            await manager.resolve(alert.alert_id)


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Projections
# ═══════════════════════════════════════════════════════════════════════════

class TestProjections:

    async def _seed(self, store):
        await store.put(_stored_alert("oldest", 30))
        await store.put(_stored_alert("middle", 20, priority=AlertPriority.CRITICAL))
        await store.put(_stored_alert("newest", 10, shelter_id="S2"))
        await store.put(_stored_alert(
            "closed", 5, status=AlertStatus.RESOLVED, priority=AlertPriority.CRITICAL,
        ))

    @pytest.mark.asyncio
    async def test_newest_first(self):
        manager, store, _ = _make_manager()
        await self._seed(store)
        alerts = await manager.list_alerts()
        assert [a.alert_id for a in alerts] == ["closed", "newest", "middle", "oldest"]

    @pytest.mark.asyncio
    async def test_limit(self):
        manager, store, _ = _make_manager()
        await self._seed(store)
        assert [a.alert_id for a in await manager.list_alerts(limit=2)] == ["closed", "newest"]

    @pytest.mark.asyncio
    async def test_filters(self):
        manager, store, _ = _make_manager()
        await self._seed(store)
        assert [a.alert_id for a in await manager.by_shelter("S2")] == ["newest"]
        assert [a.alert_id for a in await manager.by_status(AlertStatus.RESOLVED)] == ["closed"]
        assert [a.alert_id for a in await manager.by_priority(AlertPriority.CRITICAL)] == [
            "closed", "middle",
        ]
        assert [a.alert_id for a in await manager.open_alerts()] == ["newest", "middle", "oldest"]
        assert [a.alert_id for a in await manager.critical_alerts()] == ["middle"]

    @pytest.mark.asyncio
    async def test_get(self):
        manager, store, _ = _make_manager()
        await self._seed(store)
        assert (await manager.get("middle")).priority == AlertPriority.CRITICAL
        with pytest.raises(NotFoundError):
            await manager.get("absent")
