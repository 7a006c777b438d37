"""
queue.py — Durable pending-update queue for the field client.

Every local change is written here before the client tries to send it,
so a crash between the edit and the sync loses nothing. Backed by a
local SQLite file through SQLAlchemy async (aiosqlite):

    pending_mutations   seq (autoincrement) → replay order, oldest first
    failed_mutations    the "needs attention" list, keeps the original seq
    sync_meta           key/value, currently only last_sync_time

A single ``asyncio.Lock`` serialises every operation: the UI enqueueing
and the SyncEngine draining never interleave writes.

Usage:
    queue = PendingUpdateQueue("sqlite+aiosqlite:///./queue.db")
    await queue.open()
    await queue.enqueue(PendingMutation(kind=MutationKind.STATUS_UPDATE, ...))
    for mutation in await queue.list():
        ...
    await queue.close()
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import JSON, Integer, String, Text, delete, func, select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from safehaven.core.config import settings
from safehaven.core.database import build_engine, build_session_factory, close_db, init_db
from safehaven.core.errors import NotFoundError
from safehaven.sync.models import FailedMutation, FailureReason, PendingMutation

logger = logging.getLogger(__name__)

_LAST_SYNC_KEY = "last_sync_time"


# ═══════════════════════════════════════════════════════════════════════════
# Tables (client database only)
# ═══════════════════════════════════════════════════════════════════════════

class QueueBase(DeclarativeBase):
    pass


class PendingRow(QueueBase):
    __tablename__ = "pending_mutations"
    # seq values are never reused, so a re-queued failed mutation can reclaim its own
    __table_args__ = {"sqlite_autoincrement": True}

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    local_id: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    kind: Mapped[str] = mapped_column(String(32))
    target_id: Mapped[str] = mapped_column(String(128), index=True)
    payload: Mapped[dict] = mapped_column(JSON)
    created_at: Mapped[str] = mapped_column(String(40))
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer)
    next_attempt_at: Mapped[Optional[str]] = mapped_column(String(40), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def to_mutation(self) -> PendingMutation:
        return PendingMutation.from_dict({
            "local_id": self.local_id,
            "kind": self.kind,
            "target_id": self.target_id,
            "payload": self.payload,
            "created_at": self.created_at,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "next_attempt_at": self.next_attempt_at,
            "last_error": self.last_error,
        })


class FailedRow(QueueBase):
    __tablename__ = "failed_mutations"

    local_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    seq: Mapped[int] = mapped_column(Integer)
    mutation: Mapped[dict] = mapped_column(JSON)
    reason: Mapped[str] = mapped_column(String(32))
    failed_at: Mapped[str] = mapped_column(String(40))
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def to_failed(self) -> FailedMutation:
        return FailedMutation(
            mutation=PendingMutation.from_dict(self.mutation),
            reason=FailureReason(self.reason),
            failed_at=datetime.fromisoformat(self.failed_at),
            last_error=self.last_error,
        )


class MetaRow(QueueBase):
    __tablename__ = "sync_meta"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    value: Mapped[str] = mapped_column(Text)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


# ═══════════════════════════════════════════════════════════════════════════
# Queue
# ═══════════════════════════════════════════════════════════════════════════

class PendingUpdateQueue:
    """Ordered, persisted list of unconfirmed mutations plus the failed set."""

    def __init__(self, url: str = settings.QUEUE_DATABASE_URL):
        self.url = url
        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker[AsyncSession]] = None
        self._lock = asyncio.Lock()

    # ── Lifecycle ──

    async def open(self) -> "PendingUpdateQueue":
        if self._engine is None:
            self._engine = build_engine(self.url, echo=False)
            await init_db(self._engine, QueueBase)
            self._sessions = build_session_factory(self._engine)
            logger.info("Pending update queue opened (%d pending)", await self.pending_count())
        return self

    async def close(self) -> None:
        if self._engine is not None:
            await close_db(self._engine)
            self._engine = None
            self._sessions = None

    def _session(self) -> AsyncSession:
        if self._sessions is None:
            raise RuntimeError("PendingUpdateQueue is not open; call open() first")
        return self._sessions()

    # ── Pending ──

    async def enqueue(self, mutation: PendingMutation) -> PendingMutation:
        """Append ``mutation``. Insertion order is replay order."""
        async with self._lock, self._session() as session:
            session.add(PendingRow(
                local_id=mutation.local_id,
                kind=mutation.kind.value,
                target_id=mutation.target_id,
                payload=mutation.payload,
                created_at=mutation.created_at.isoformat(),
                retry_count=mutation.retry_count,
                max_retries=mutation.max_retries,
                next_attempt_at=_iso(mutation.next_attempt_at),
                last_error=mutation.last_error,
            ))
            await session.commit()
        logger.info(
            "Queued %s for %s", mutation.kind.value, mutation.target_id,
            extra={"local_id": mutation.local_id, "target_id": mutation.target_id},
        )
        return mutation

    async def list(self) -> List[PendingMutation]:
        """All pending mutations, oldest first."""
        async with self._lock, self._session() as session:
            result = await session.execute(select(PendingRow).order_by(PendingRow.seq))
            return [row.to_mutation() for row in result.scalars()]

    async def get(self, local_id: str) -> Optional[PendingMutation]:
        async with self._lock, self._session() as session:
            row = await self._pending_row(session, local_id)
            return row.to_mutation() if row is not None else None

    async def remove(self, local_id: str) -> bool:
        """Delete one entry. Only called after the server acknowledged it."""
        async with self._lock, self._session() as session:
            result = await session.execute(
                delete(PendingRow).where(PendingRow.local_id == local_id)
            )
            await session.commit()
            return result.rowcount > 0

    async def increment_retry(
        self,
        local_id: str,
        error: Optional[str] = None,
        next_attempt_at: Optional[datetime] = None,
    ) -> int:
        """Bump ``retry_count`` and return the new value."""
        async with self._lock, self._session() as session:
            row = await self._pending_row(session, local_id)
            if row is None:
                raise NotFoundError("PendingMutation", local_id=local_id)
            row.retry_count += 1
            row.last_error = error
            row.next_attempt_at = _iso(next_attempt_at)
            await session.commit()
            return row.retry_count

    async def defer(self, local_id: str, next_attempt_at: datetime, error: Optional[str] = None) -> None:
        """Reschedule without charging a retry (server asked us to wait)."""
        async with self._lock, self._session() as session:
            row = await self._pending_row(session, local_id)
            if row is None:
                raise NotFoundError("PendingMutation", local_id=local_id)
            row.last_error = error
            row.next_attempt_at = _iso(next_attempt_at)
            await session.commit()

    async def pending_count(self) -> int:
        async with self._lock, self._session() as session:
            return await session.scalar(select(func.count()).select_from(PendingRow)) or 0

    # ── Failed ("needs attention") ──

    async def mark_failed(
        self,
        local_id: str,
        reason: FailureReason,
        error: Optional[str] = None,
    ) -> FailedMutation:
        """Move a pending mutation to the failed set."""
        async with self._lock, self._session() as session:
            row = await self._pending_row(session, local_id)
            if row is None:
                raise NotFoundError("PendingMutation", local_id=local_id)
            failed = await self._move_to_failed(session, row, reason, error)
            await session.commit()
        logger.warning(
            "Mutation %s for %s moved to failed (%s): %s",
            local_id, failed.mutation.target_id, reason.value, error,
            extra={"local_id": local_id, "target_id": failed.mutation.target_id},
        )
        return failed

    async def list_failed(self) -> List[FailedMutation]:
        async with self._lock, self._session() as session:
            result = await session.execute(select(FailedRow).order_by(FailedRow.seq))
            return [row.to_failed() for row in result.scalars()]

    async def retry_failed(self, local_id: str) -> PendingMutation:
        """
        Put a failed mutation back in the queue at its original position
        with a fresh retry budget.
        """
        async with self._lock, self._session() as session:
            row = await session.get(FailedRow, local_id)
            if row is None:
                raise NotFoundError("FailedMutation", local_id=local_id)
            mutation = PendingMutation.from_dict(row.mutation)
            mutation.retry_count = 0
            mutation.next_attempt_at = None
            mutation.last_error = None
            session.add(PendingRow(
                seq=row.seq,
                local_id=mutation.local_id,
                kind=mutation.kind.value,
                target_id=mutation.target_id,
                payload=mutation.payload,
                created_at=mutation.created_at.isoformat(),
                retry_count=0,
                max_retries=mutation.max_retries,
                next_attempt_at=None,
                last_error=None,
            ))
            await session.delete(row)
            await session.commit()
        logger.info("Failed mutation %s re-queued", local_id, extra={"local_id": local_id})
        return mutation

    async def discard_failed(self, local_id: str) -> PendingMutation:
        """Drop a failed mutation for good. Explicit user action only."""
        async with self._lock, self._session() as session:
            row = await session.get(FailedRow, local_id)
            if row is None:
                raise NotFoundError("FailedMutation", local_id=local_id)
            mutation = PendingMutation.from_dict(row.mutation)
            await session.delete(row)
            await session.commit()
        logger.info("Failed mutation %s discarded", local_id, extra={"local_id": local_id})
        return mutation

    async def failed_count(self) -> int:
        async with self._lock, self._session() as session:
            return await session.scalar(select(func.count()).select_from(FailedRow)) or 0

    async def expire_stale(
        self,
        max_age: timedelta = timedelta(hours=settings.STALE_MUTATION_HOURS),
        now: Optional[datetime] = None,
    ) -> List[FailedMutation]:
        """Move pending mutations older than ``max_age`` to the failed set."""
        now = now or datetime.now(timezone.utc)
        limit = max_age.total_seconds()
        expired: List[FailedMutation] = []
        async with self._lock, self._session() as session:
            result = await session.execute(select(PendingRow).order_by(PendingRow.seq))
            for row in result.scalars().all():
                if row.to_mutation().age_seconds(now) > limit:
                    expired.append(await self._move_to_failed(
                        session, row, FailureReason.STALE,
                        f"Not synced within {max_age}",
                    ))
            if expired:
                await session.commit()
        if expired:
            logger.warning("Expired %d stale mutation(s)", len(expired))
        return expired

    # ── Sync metadata ──

    async def record_sync(self, when: Optional[datetime] = None) -> datetime:
        when = when or datetime.now(timezone.utc)
        async with self._lock, self._session() as session:
            await session.merge(MetaRow(key=_LAST_SYNC_KEY, value=when.isoformat()))
            await session.commit()
        return when

    async def last_sync_time(self) -> Optional[datetime]:
        async with self._lock, self._session() as session:
            row = await session.get(MetaRow, _LAST_SYNC_KEY)
            return datetime.fromisoformat(row.value) if row is not None else None

    # ── Helpers ──

    @staticmethod
    async def _pending_row(session: AsyncSession, local_id: str) -> Optional[PendingRow]:
        result = await session.execute(
            select(PendingRow).where(PendingRow.local_id == local_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _move_to_failed(
        session: AsyncSession,
        row: PendingRow,
        reason: FailureReason,
        error: Optional[str],
    ) -> FailedMutation:
        mutation = row.to_mutation()
        failed = FailedMutation(mutation=mutation, reason=reason, last_error=error)
        session.add(FailedRow(
            local_id=mutation.local_id,
            seq=row.seq,
            mutation=mutation.to_dict(),
            reason=reason.value,
            failed_at=failed.failed_at.isoformat(),
            last_error=error,
        ))
        await session.delete(row)
        return failed
