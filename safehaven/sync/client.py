"""
client.py — FieldClient: the API the field UI talks to.

Every edit takes the same path, online or not:

    validate locally ──► optimistic overlay ──► durable enqueue ──► trigger sync
         │                     (local_only)
         └── ValidationError raised to the UI, nothing queued

The UI never waits on the network. It reads ``view()`` / ``field_states()``
for what to show and ``sync_status()`` / ``needs_attention()`` for the
sync banner.

Usage:
    client = FieldClient.from_settings(ActorContext("op-1"))
    await client.start()
    await client.update_shelter_status("S1", {"capacity": {"current": 60}})
    print((await client.sync_status()).to_dict())
    await client.close()
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Mapping, Optional

from safehaven.core.config import settings
from safehaven.core.errors import ValidationError
from safehaven.core.identity import ActorContext, ActorRole
from safehaven.core.validation import validate_alert_edit, validate_alert_input, validate_status_update
from safehaven.sync.connectivity import HttpConnectivityProbe
from safehaven.sync.engine import SyncEngine
from safehaven.sync.local_state import LocalStateCache
from safehaven.sync.models import (
    FailedMutation,
    FieldSyncState,
    MutationKind,
    PendingMutation,
    SyncCycleReport,
    SyncStatus,
)
from safehaven.sync.queue import PendingUpdateQueue
from safehaven.sync.transport import HttpSyncTransport

logger = logging.getLogger(__name__)


def _alert_overlay(kind: MutationKind) -> Dict[str, Any]:
    if kind == MutationKind.ALERT_ACKNOWLEDGE:
        return {"status": "acknowledged"}
    if kind == MutationKind.ALERT_RESOLVE:
        return {"status": "resolved"}
    return {}


class FieldClient:

    def __init__(
        self,
        queue: PendingUpdateQueue,
        engine: SyncEngine,
        actor: ActorContext,
        *,
        max_retries: int = settings.SYNC_MAX_RETRIES,
        auto_sync: bool = True,
    ):
        self.queue = queue
        self.engine = engine
        self.cache: LocalStateCache = engine.cache
        self.actor = actor
        self.max_retries = max_retries
        self.auto_sync = auto_sync

    @classmethod
    def from_settings(cls, actor: Optional[ActorContext] = None) -> "FieldClient":
        """Wire a client against ``SERVER_BASE_URL`` with a local SQLite queue."""
        if actor is None:
            if not settings.CLIENT_ACTOR_ID:
                raise ValidationError("CLIENT_ACTOR_ID must be set to build a field client")
            actor = ActorContext(settings.CLIENT_ACTOR_ID, ActorRole(settings.CLIENT_ACTOR_ROLE))
        queue = PendingUpdateQueue(settings.QUEUE_DATABASE_URL)
        engine = SyncEngine(
            queue,
            HttpSyncTransport(settings.SERVER_BASE_URL, actor),
            HttpConnectivityProbe(settings.CONNECTIVITY_PROBE_URL),
        )
        return cls(queue, engine, actor)

    # ── Lifecycle ──

    async def start(self) -> None:
        """Open the queue, restore overlays for unsynced edits, start syncing."""
        await self.queue.open()
        for mutation in await self.queue.list():
            self._apply_overlay(mutation)
        for failed in await self.queue.list_failed():
            self._apply_overlay(failed.mutation)
        if self.auto_sync:
            await self.engine.start()

    async def close(self) -> None:
        await self.engine.stop()
        await self.engine.transport.close()
        await self.engine.probe.close()
        await self.queue.close()

    # ═══════════════════════════════════════════════════════════════════════
    # Mutations
    # ═══════════════════════════════════════════════════════════════════════

    async def update_shelter_status(self, shelter_id: str, payload: Mapping[str, Any]) -> PendingMutation:
        patch = validate_status_update(payload)
        return await self._submit(PendingMutation(
            kind=MutationKind.STATUS_UPDATE,
            target_id=shelter_id,
            payload=patch.to_payload(),
            max_retries=self.max_retries,
        ))

    async def create_alert(self, payload: Mapping[str, Any]) -> PendingMutation:
        """
        Queue an alert creation. The returned mutation's ``local_id`` is
        also the alert id the server will store, so follow-up acknowledge
        or resolve calls can be queued before the create has synced.
        """
        alert_id = str(uuid.uuid4())
        alert_input = validate_alert_input({**payload, "alert_id": alert_id})
        body = {
            "shelter_id": alert_input.shelter_id,
            "type": alert_input.type.value,
            "priority": alert_input.priority.value,
            "title": alert_input.title,
            "description": alert_input.description,
        }
        return await self._submit(PendingMutation(
            kind=MutationKind.ALERT_CREATE,
            target_id=alert_id,
            local_id=alert_id,
            payload=body,
            max_retries=self.max_retries,
        ))

    async def acknowledge_alert(self, alert_id: str) -> PendingMutation:
        return await self._submit(PendingMutation(
            kind=MutationKind.ALERT_ACKNOWLEDGE,
            target_id=alert_id,
            max_retries=self.max_retries,
        ))

    async def resolve_alert(self, alert_id: str) -> PendingMutation:
        return await self._submit(PendingMutation(
            kind=MutationKind.ALERT_RESOLVE,
            target_id=alert_id,
            max_retries=self.max_retries,
        ))

    async def update_alert_description(self, alert_id: str, description: str) -> PendingMutation:
        body = {"description": validate_alert_edit({"description": description})}
        return await self._submit(PendingMutation(
            kind=MutationKind.ALERT_UPDATE,
            target_id=alert_id,
            payload=body,
            max_retries=self.max_retries,
        ))

    async def _submit(self, mutation: PendingMutation) -> PendingMutation:
        self._apply_overlay(mutation)
        try:
            await self.queue.enqueue(mutation)
        except Exception:
            self.cache.drop_overlay(mutation.target_id, mutation.local_id)
            raise
        self.engine.trigger()
        return mutation

    def _apply_overlay(self, mutation: PendingMutation) -> None:
        if mutation.kind in (
            MutationKind.STATUS_UPDATE, MutationKind.ALERT_CREATE, MutationKind.ALERT_UPDATE,
        ):
            fields = mutation.payload
        else:
            fields = _alert_overlay(mutation.kind)
        self.cache.apply_overlay(mutation.target_id, mutation.local_id, fields)

    # ═══════════════════════════════════════════════════════════════════════
    # Sync state
    # ═══════════════════════════════════════════════════════════════════════

    async def sync_now(self) -> SyncCycleReport:
        return await self.engine.sync_now()

    async def sync_status(self) -> SyncStatus:
        return SyncStatus(
            is_online=self.engine.is_online,
            pending_count=await self.queue.pending_count(),
            failed_count=await self.queue.failed_count(),
            last_sync_time=await self.queue.last_sync_time(),
            auto_sync_running=self.engine.is_running,
        )

    async def needs_attention(self) -> List[FailedMutation]:
        return await self.queue.list_failed()

    async def retry_failed(self, local_id: str) -> PendingMutation:
        mutation = await self.queue.retry_failed(local_id)
        self.engine.trigger()
        return mutation

    async def discard_failed(self, local_id: str) -> PendingMutation:
        mutation = await self.queue.discard_failed(local_id)
        self.cache.drop_overlay(mutation.target_id, mutation.local_id)
        logger.info(
            "Discarded %s for %s", mutation.kind.value, mutation.target_id,
            extra={"local_id": local_id, "target_id": mutation.target_id},
        )
        return mutation

    # ── Views ──

    def view(self, target_id: str) -> Dict[str, Any]:
        return self.cache.view(target_id)

    def field_states(self, target_id: str) -> Dict[str, FieldSyncState]:
        return self.cache.field_states(target_id)
