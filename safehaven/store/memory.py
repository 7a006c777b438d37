"""
memory.py — Process-local Record Store.

A dict guarded by an asyncio.Lock. Strongly consistent by construction;
used by the test-suite and by a single-instance development server.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Dict, List, Mapping, Optional

from safehaven.core.errors import ConflictError, NotFoundError
from safehaven.store.base import Record, RecordStore, matches, sort_and_limit

logger = logging.getLogger(__name__)


class InMemoryRecordStore(RecordStore):

    def __init__(self, resource: str, key_field: str):
        super().__init__(resource, key_field)
        self._records: Dict[str, Record] = {}
        self._lock = asyncio.Lock()

    async def get(self, record_id: str) -> Optional[Record]:
        record = self._records.get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def put(self, record: Record, *, if_absent: bool = False) -> Record:
        record_id = record[self.key_field]
        async with self._lock:
            if if_absent and record_id in self._records:
                raise ConflictError(self.resource, record_id, f"{self.resource} {record_id} already exists")
            self._records[record_id] = copy.deepcopy(record)
            return copy.deepcopy(record)

    async def update(
        self,
        record_id: str,
        fields: Mapping[str, Any],
        conditions: Optional[Mapping[str, Any]] = None,
    ) -> Record:
        async with self._lock:
            current = self._records.get(record_id)
            if current is None:
                raise NotFoundError(self.resource, **{self.key_field: record_id})
            if not matches(current, conditions):
                logger.debug(
                    "Conditional update rejected for %s %s: %s",
                    self.resource, record_id, dict(conditions or {}),
                )
                raise ConflictError(self.resource, record_id)
            updated = {**current, **copy.deepcopy(dict(fields))}
            self._records[record_id] = updated
            return copy.deepcopy(updated)

    async def query(
        self,
        criteria: Optional[Mapping[str, Any]] = None,
        *,
        sort_key: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Record]:
        found = [copy.deepcopy(r) for r in self._records.values() if matches(r, criteria)]
        return sort_and_limit(found, sort_key, descending, limit)

    def __len__(self) -> int:
        return len(self._records)
