"""
test_record_store.py — Record Store backends.

Both backends run the same contract tests: create-once, conditional
update, sparse field merge, filtered and sorted queries. The SQL backend
runs against a throwaway SQLite file through aiosqlite.

Run with:
    pytest tests/test_record_store.py -v
"""

from __future__ import annotations

import pytest
import pytest_asyncio

from safehaven.core.database import build_engine, build_session_factory, close_db, init_db
from safehaven.core.errors import ConflictError, NotFoundError
from safehaven.store.base import matches, sort_and_limit
from safehaven.store.memory import InMemoryRecordStore
from safehaven.store.sql import SqlRecordStore


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture(params=["memory", "sql"])
async def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryRecordStore("Alert", "alert_id")
        return
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'records.db'}", echo=False)
    await init_db(engine)
    yield SqlRecordStore(build_session_factory(engine), "alerts", "Alert", "alert_id")
    await close_db(engine)


def _record(alert_id: str, status: str = "open", ts: int = 0, shelter_id: str = "S1") -> dict:
    return {"alert_id": alert_id, "status": status, "sort_timestamp": ts, "shelter_id": shelter_id}


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Helpers
# ═══════════════════════════════════════════════════════════════════════════

class TestHelpers:

    def test_matches_empty_criteria(self):
        assert matches({"a": 1}, None)
        assert matches({"a": 1}, {})

    def test_matches_all_keys(self):
        assert matches({"a": 1, "b": 2}, {"a": 1, "b": 2})
        assert not matches({"a": 1, "b": 2}, {"a": 1, "b": 3})
        assert not matches({"a": 1}, {"c": None, "a": 2})

    def test_sort_and_limit(self):
        records = [{"t": 1}, {"t": 3}, {"t": 2}]
        assert [r["t"] for r in sort_and_limit(records, "t", True, 2)] == [3, 2]
        assert [r["t"] for r in sort_and_limit(records, "t", False, None)] == [1, 2, 3]


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Contract (both backends)
# ═══════════════════════════════════════════════════════════════════════════

class TestRecordStoreContract:

    @pytest.mark.asyncio
    async def test_get_missing_returns_none(self, store):
        assert await store.get("nope") is None

    @pytest.mark.asyncio
    async def test_put_then_get(self, store):
        await store.put(_record("a1"))
        assert (await store.get("a1"))["status"] == "open"

    @pytest.mark.asyncio
    async def test_put_if_absent_conflicts(self, store):
        await store.put(_record("a1"), if_absent=True)
        with pytest.raises(ConflictError):
            await store.put(_record("a1", status="resolved"), if_absent=True)
        assert (await store.get("a1"))["status"] == "open"

    @pytest.mark.asyncio
    async def test_update_merges_fields(self, store):
        await store.put(_record("a1", ts=5))
        updated = await store.update("a1", {"status": "acknowledged", "acknowledged_by": "r1"})
        assert updated["status"] == "acknowledged"
        assert updated["acknowledged_by"] == "r1"
        assert updated["sort_timestamp"] == 5
        assert await store.get("a1") == updated

    @pytest.mark.asyncio
    async def test_update_missing_raises_not_found(self, store):
        with pytest.raises(NotFoundError) as exc_info:
            await store.update("ghost", {"status": "resolved"})
        assert exc_info.value.details["alert_id"] == "ghost"

    @pytest.mark.asyncio
    async def test_conditional_update(self, store):
        await store.put(_record("a1"))
        await store.update("a1", {"status": "acknowledged"}, conditions={"status": "open"})
        with pytest.raises(ConflictError):
            await store.update("a1", {"status": "acknowledged"}, conditions={"status": "open"})
        assert (await store.get("a1"))["status"] == "acknowledged"

    @pytest.mark.asyncio
    async def test_query_filter_sort_limit(self, store):
        await store.put(_record("a1", ts=1))
        await store.put(_record("a2", ts=3, status="resolved"))
        await store.put(_record("a3", ts=2))
        await store.put(_record("a4", ts=4, shelter_id="S2"))

        newest = await store.query(sort_key="sort_timestamp", limit=2)
        assert [r["alert_id"] for r in newest] == ["a4", "a2"]

        open_s1 = await store.query(
            {"status": "open", "shelter_id": "S1"}, sort_key="sort_timestamp",
        )
        assert [r["alert_id"] for r in open_s1] == ["a3", "a1"]

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, store):
        await store.put(_record("a1"))
        record = await store.get("a1")
        record["status"] = "tampered"
        assert (await store.get("a1"))["status"] == "open"

    @pytest.mark.asyncio
    async def test_ping(self, store):
        assert await store.ping() is True


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: SQL specifics
# ═══════════════════════════════════════════════════════════════════════════

class TestSqlRecordStore:

    @pytest.mark.asyncio
    async def test_collections_are_isolated(self, tmp_path):
        engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'iso.db'}", echo=False)
        await init_db(engine)
        sessions = build_session_factory(engine)
        shelters = SqlRecordStore(sessions, "shelters", "Shelter", "shelter_id")
        alerts = SqlRecordStore(sessions, "alerts", "Alert", "alert_id")
        try:
            await shelters.put({"shelter_id": "X", "name": "Gym"})
            await alerts.put({"alert_id": "X", "title": "Leak"})
            assert (await shelters.get("X"))["name"] == "Gym"
            assert (await alerts.get("X"))["title"] == "Leak"
            assert len(await shelters.query()) == 1
        finally:
            await close_db(engine)

    @pytest.mark.asyncio
    async def test_survives_reopen(self, tmp_path):
        url = f"sqlite+aiosqlite:///{tmp_path / 'durable.db'}"
        engine = build_engine(url, echo=False)
        await init_db(engine)
        store = SqlRecordStore(build_session_factory(engine), "alerts", "Alert", "alert_id")
        await store.put(_record("a1"))
        await close_db(engine)

        engine = build_engine(url, echo=False)
        try:
            store = SqlRecordStore(build_session_factory(engine), "alerts", "Alert", "alert_id")
            assert (await store.get("a1"))["alert_id"] == "a1"
        finally:
            await close_db(engine)
