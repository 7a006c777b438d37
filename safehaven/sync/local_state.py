"""
local_state.py — What the field client shows while mutations are unsynced.

For every target (shelter or alert) the cache holds:

    authoritative   last record the server returned
    overlays        local_id → {field path → value}, in submission order
    field states    field path → local_only | in_flight | confirmed

    view(target) = authoritative record with every overlay applied in order

    ┌────────────┐  apply_overlay   ┌────────────┐  mark_in_flight  ┌───────────┐
    │ confirmed  │ ───────────────► │ local_only │ ───────────────► │ in_flight │
    └────────────┘                  └────────────┘ ◄─────────────── └─────┬─────┘
          ▲                                        revert_to_local        │
          └───────────────────────── confirm (server ack) ────────────────┘

A field is only as synced as the newest overlay that touches it: if an
older edit is in flight while a newer one is still local, the field
reads ``local_only``.
"""

from __future__ import annotations

import copy
from collections import OrderedDict
from typing import Any, Dict, Mapping, Optional, Set

from safehaven.sync.models import FieldSyncState


def flatten_fields(payload: Mapping[str, Any], prefix: str = "") -> Dict[str, Any]:
    """``{"capacity": {"current": 60}}`` → ``{"capacity.current": 60}``. Lists are leaves."""
    flat: Dict[str, Any] = {}
    for key, value in payload.items():
        path = f"{prefix}{key}"
        if isinstance(value, Mapping):
            flat.update(flatten_fields(value, f"{path}."))
        else:
            flat[path] = value
    return flat


def _set_path(record: Dict[str, Any], path: str, value: Any) -> None:
    *parents, leaf = path.split(".")
    node = record
    for part in parents:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[leaf] = copy.deepcopy(value)


class LocalStateCache:
    """In-memory; the durable copy of unsynced edits is the pending queue."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Any]] = {}
        self._overlays: Dict[str, "OrderedDict[str, Dict[str, Any]]"] = {}
        self._in_flight: Set[str] = set()
        self._states: Dict[str, Dict[str, FieldSyncState]] = {}

    # ── Authoritative state ──

    def set_authoritative(self, target_id: str, record: Mapping[str, Any]) -> None:
        """Replace the server copy of ``target_id``; overlays stay on top."""
        self._records[target_id] = copy.deepcopy(dict(record))
        self._recompute(target_id)

    # ── Overlays ──

    def apply_overlay(self, target_id: str, local_id: str, payload: Mapping[str, Any]) -> None:
        """Record an optimistic local edit."""
        self._overlays.setdefault(target_id, OrderedDict())[local_id] = flatten_fields(payload)
        self._recompute(target_id)

    def mark_in_flight(self, target_id: str, local_id: str) -> None:
        if local_id in self._overlays.get(target_id, {}):
            self._in_flight.add(local_id)
            self._recompute(target_id)

    def revert_to_local(self, target_id: str, local_id: str) -> None:
        """The send failed; the edit stays visible but unsynced."""
        self._in_flight.discard(local_id)
        self._recompute(target_id)

    def confirm(self, target_id: str, local_id: str, record: Optional[Mapping[str, Any]] = None) -> None:
        """Server acknowledged ``local_id``; ``record`` is its authoritative answer."""
        self._remove_overlay(target_id, local_id)
        if record:
            self.set_authoritative(target_id, record)
        else:
            self._recompute(target_id)

    def drop_overlay(self, target_id: str, local_id: str) -> None:
        """Forget an edit the user discarded."""
        self._remove_overlay(target_id, local_id)
        self._recompute(target_id)

    def _remove_overlay(self, target_id: str, local_id: str) -> None:
        overlays = self._overlays.get(target_id)
        if overlays is not None:
            overlays.pop(local_id, None)
            if not overlays:
                del self._overlays[target_id]
        self._in_flight.discard(local_id)

    # ── Views ──

    def view(self, target_id: str) -> Dict[str, Any]:
        """Authoritative record with pending edits applied, oldest first."""
        merged = copy.deepcopy(self._records.get(target_id, {}))
        for fields in self._overlays.get(target_id, {}).values():
            for path, value in fields.items():
                _set_path(merged, path, value)
        return merged

    def field_state(self, target_id: str, path: str) -> FieldSyncState:
        return self._states.get(target_id, {}).get(path, FieldSyncState.CONFIRMED)

    def field_states(self, target_id: str) -> Dict[str, FieldSyncState]:
        return dict(self._states.get(target_id, {}))

    def has_unsynced(self, target_id: str) -> bool:
        return bool(self._overlays.get(target_id))

    def _recompute(self, target_id: str) -> None:
        states = {path: FieldSyncState.CONFIRMED for path in self._states.get(target_id, {})}
        for local_id, fields in self._overlays.get(target_id, {}).items():
            state = FieldSyncState.IN_FLIGHT if local_id in self._in_flight else FieldSyncState.LOCAL_ONLY
            for path in fields:
                states[path] = state
        self._states[target_id] = states
