"""
base.py — Record Store contract.

Records are plain dicts addressed by a key field (``shelter_id``,
``alert_id``). Every read returns a copy; callers never share state with
the store.

═══════════════════════════════════════════════════════════════════════════
CONDITIONAL UPDATE
═══════════════════════════════════════════════════════════════════════════

``update(id, fields, conditions)`` is the only write primitive the
reconciler and the lifecycle manager use on existing records:

    1. record missing                       → NotFoundError
    2. any condition field != stored value  → ConflictError
    3. otherwise shallow-merge ``fields`` into the record atomically
       and return the new record

Two writers racing on the same key therefore cannot both succeed with
the same precondition; the loser re-reads and re-applies.
"""

from __future__ import annotations

import abc
from typing import Any, Dict, List, Mapping, Optional

Record = Dict[str, Any]


def matches(record: Mapping[str, Any], criteria: Optional[Mapping[str, Any]]) -> bool:
    """Equality match on every key of ``criteria``."""
    if not criteria:
        return True
    return all(record.get(key) == value for key, value in criteria.items())


def sort_and_limit(
    records: List[Record],
    sort_key: Optional[str],
    descending: bool,
    limit: Optional[int],
) -> List[Record]:
    if sort_key:
        records = sorted(records, key=lambda r: r.get(sort_key) or 0, reverse=descending)
    if limit is not None:
        records = records[:max(0, limit)]
    return records


class RecordStore(abc.ABC):
    """Durable record storage for one collection."""

    def __init__(self, resource: str, key_field: str):
        self.resource = resource
        self.key_field = key_field

    @abc.abstractmethod
    async def get(self, record_id: str) -> Optional[Record]:
        """Return the record or None."""

    @abc.abstractmethod
    async def put(self, record: Record, *, if_absent: bool = False) -> Record:
        """Insert or replace. With ``if_absent`` an existing key raises ConflictError."""

    @abc.abstractmethod
    async def update(
        self,
        record_id: str,
        fields: Mapping[str, Any],
        conditions: Optional[Mapping[str, Any]] = None,
    ) -> Record:
        """Atomic conditional shallow merge; see module docstring."""

    @abc.abstractmethod
    async def query(
        self,
        criteria: Optional[Mapping[str, Any]] = None,
        *,
        sort_key: Optional[str] = None,
        descending: bool = True,
        limit: Optional[int] = None,
    ) -> List[Record]:
        """Scan with an equality filter, sorted, optionally limited."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None
