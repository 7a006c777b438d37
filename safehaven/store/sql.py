"""
sql.py — SQLAlchemy-backed Record Store.

All collections share one ``records`` table:

    collection │ record_id │ revision │ body (JSON) │ updated_at
    ───────────┼───────────┼──────────┼─────────────┼───────────
    shelters   │ S1        │ 4        │ {...}       │ ...
    alerts     │ 7f3c...   │ 2        │ {...}       │ ...

``revision`` is internal to the store. Every write is a compare-and-set
on it (``UPDATE ... WHERE revision = :seen``), which gives the atomic
conditional update the reconciler relies on without holding row locks
across the read-merge-write cycle. Record-level ``conditions`` are
checked against the body read in the same session.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, List, Mapping, Optional

from sqlalchemy import JSON, DateTime, Integer, String, select, text, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Mapped, mapped_column

from safehaven.core.database import Base
from safehaven.core.errors import ConflictError, NotFoundError
from safehaven.store.base import Record, RecordStore, matches, sort_and_limit

logger = logging.getLogger(__name__)


class RecordRow(Base):
    __tablename__ = "records"

    collection: Mapped[str] = mapped_column(String(64), primary_key=True)
    record_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    body: Mapped[dict] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
    )


class SqlRecordStore(RecordStore):
    """
    Usage:
        engine = build_engine(settings.DATABASE_URL)
        await init_db(engine)
        shelters = SqlRecordStore(build_session_factory(engine), "shelters", "Shelter", "shelter_id")
    """

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        collection: str,
        resource: str,
        key_field: str,
    ):
        super().__init__(resource, key_field)
        self._sessions = sessions
        self.collection = collection

    async def get(self, record_id: str) -> Optional[Record]:
        async with self._sessions() as session:
            row = await session.get(RecordRow, (self.collection, record_id))
            return dict(row.body) if row is not None else None

    async def put(self, record: Record, *, if_absent: bool = False) -> Record:
        record_id = record[self.key_field]
        async with self._sessions() as session:
            row = await session.get(RecordRow, (self.collection, record_id))
            if row is None:
                session.add(RecordRow(
                    collection=self.collection,
                    record_id=record_id,
                    revision=1,
                    body=dict(record),
                ))
            elif if_absent:
                raise ConflictError(self.resource, record_id, f"{self.resource} {record_id} already exists")
            else:
                row.body = dict(record)
                row.revision += 1
                row.updated_at = datetime.now(timezone.utc)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise ConflictError(self.resource, record_id, f"{self.resource} {record_id} already exists") from exc
        return dict(record)

    async def update(
        self,
        record_id: str,
        fields: Mapping[str, Any],
        conditions: Optional[Mapping[str, Any]] = None,
    ) -> Record:
        async with self._sessions() as session:
            row = await session.get(RecordRow, (self.collection, record_id))
            if row is None:
                raise NotFoundError(self.resource, **{self.key_field: record_id})
            body = dict(row.body)
            if not matches(body, conditions):
                raise ConflictError(self.resource, record_id)

            new_body = {**body, **dict(fields)}
            result = await session.execute(
                update(RecordRow)
                .where(
                    RecordRow.collection == self.collection,
                    RecordRow.record_id == record_id,
                    RecordRow.revision == row.revision,
                )
                .values(
                    body=new_body,
                    revision=row.revision + 1,
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                logger.info(
                    "Revision race on %s %s (seen revision %d)",
                    self.resource, record_id, row.revision,
                )
                raise ConflictError(self.resource, record_id)
            await session.commit()
            return new_body

    async def query(
        self,
        criteria: Optional[Mapping[str, Any]] = None,
        *,
        sort_key: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Record]:
        async with self._sessions() as session:
            result = await session.execute(
                select(RecordRow.body).where(RecordRow.collection == self.collection)
            )
            found = [dict(body) for body in result.scalars() if matches(body, criteria)]
        return sort_and_limit(found, sort_key, descending, limit)

    async def ping(self) -> bool:
        try:
            async with self._sessions() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.warning("Record store ping failed: %s", e)
            return False
