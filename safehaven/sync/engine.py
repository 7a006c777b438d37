"""
engine.py — SyncEngine: drains the pending queue whenever the server is reachable.

═══════════════════════════════════════════════════════════════════════════
ONE CYCLE
═══════════════════════════════════════════════════════════════════════════

    probe ──(unreachable)──► report(online=False), nothing else
      │
      ▼
    expire_stale            pending older than the age limit → failed: stale
      │
      ▼
    group by target         oldest first; targets run concurrently
      │                     (bounded by a semaphore), each target in order
      ▼
    per mutation ──────────────────────────────────────────────────────────
      next_attempt_at in the future  → skip it and the rest of the target
      paused after a 429             → skip the whole target
      apply (wait_for timeout)
        ok                           → remove, confirm cache, record sync
        Validation/NotFound/Auth     → failed: rejected, next mutation
        RateLimit (429)              → pause every target for Retry-After,
                                       retry not counted
        anything else                → retry_count += 1
                                          < max_retries: backoff, stop target
                                         == max_retries: failed: retries_exhausted

═══════════════════════════════════════════════════════════════════════════
SCHEDULING
═══════════════════════════════════════════════════════════════════════════

    start()     background loop: cycle, then sleep ``interval`` or until
                trigger() — whichever comes first
    trigger()   wake the loop now (coalesced: many triggers, one cycle)
    sync_now()  run a cycle and return its report; joins the running
                cycle instead of starting a second one
    stop()      no new cycles; an in-flight cycle gets ``deadline`` seconds
                and is cancelled after that. Unacknowledged mutations stay
                queued.

Backoff after the n-th failure: ``min(base * 2 ** (n - 1), max)`` seconds.

Usage:
    engine = SyncEngine(queue, HttpSyncTransport(url, actor), HttpConnectivityProbe())
    await engine.start()
    ...
    await engine.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from safehaven.core.config import settings
from safehaven.core.errors import RateLimitError, TransientError, is_retryable
from safehaven.core.logging_config import set_request_context
from safehaven.sync.connectivity import ConnectivityProbe
from safehaven.sync.local_state import LocalStateCache
from safehaven.sync.models import FailureReason, PendingMutation, SyncCycleReport
from safehaven.sync.queue import PendingUpdateQueue
from safehaven.sync.transport import SyncTransport

logger = logging.getLogger(__name__)


class _Outcome(str, Enum):
    APPLIED  = "applied"
    FAILED   = "failed"     # moved to the failed set, target continues
    DEFERRED = "deferred"   # will be retried, target stops for this cycle


def group_by_target(mutations: List[PendingMutation]) -> "OrderedDict[str, List[PendingMutation]]":
    """Group preserving queue order, both across and within targets."""
    groups: "OrderedDict[str, List[PendingMutation]]" = OrderedDict()
    for mutation in mutations:
        groups.setdefault(mutation.target_id, []).append(mutation)
    return groups


def compute_backoff(
    retry_count: int,
    base_seconds: float = settings.SYNC_BACKOFF_BASE_SECONDS,
    max_seconds: float = settings.SYNC_BACKOFF_MAX_SECONDS,
) -> float:
    """Exponential backoff: base * 2^(retry_count - 1), capped."""
    return min(base_seconds * (2 ** max(retry_count - 1, 0)), max_seconds)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SyncEngine:

    def __init__(
        self,
        queue: PendingUpdateQueue,
        transport: SyncTransport,
        probe: ConnectivityProbe,
        cache: Optional[LocalStateCache] = None,
        *,
        interval_seconds: float = settings.SYNC_INTERVAL_SECONDS,
        probe_timeout_seconds: float = settings.CONNECTIVITY_TIMEOUT_SECONDS,
        call_timeout_seconds: float = settings.SERVER_CALL_TIMEOUT_SECONDS,
        backoff_base_seconds: float = settings.SYNC_BACKOFF_BASE_SECONDS,
        backoff_max_seconds: float = settings.SYNC_BACKOFF_MAX_SECONDS,
        max_concurrent_targets: int = settings.SYNC_MAX_CONCURRENT_TARGETS,
        stale_after: timedelta = timedelta(hours=settings.STALE_MUTATION_HOURS),
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.queue = queue
        self.transport = transport
        self.probe = probe
        self.cache = cache if cache is not None else LocalStateCache()
        self.interval_seconds = interval_seconds
        self.probe_timeout_seconds = probe_timeout_seconds
        self.call_timeout_seconds = call_timeout_seconds
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.max_concurrent_targets = max(1, max_concurrent_targets)
        self.stale_after = stale_after
        self._clock = clock

        self.is_online = False
        self.last_report: Optional[SyncCycleReport] = None
        self.cycles_run = 0

        self._loop_task: Optional[asyncio.Task] = None
        self._current_cycle: Optional[asyncio.Task] = None
        self._wakeup = asyncio.Event()
        self._stopping = False
        # Server-wide pause after a 429; the limit is per actor, not per target
        self._hold_until: Optional[datetime] = None

    # ═══════════════════════════════════════════════════════════════════════
    # Scheduling
    # ═══════════════════════════════════════════════════════════════════════

    @property
    def is_running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._stopping = False
        self._wakeup.clear()
        self._loop_task = asyncio.create_task(self._run_loop(), name="safehaven-sync-loop")
        logger.info("Sync engine started (interval %.0fs)", self.interval_seconds)

    def trigger(self) -> None:
        """Ask for a cycle as soon as possible."""
        self._wakeup.set()

    async def sync_now(self) -> SyncCycleReport:
        """Run one cycle, or join the one already running."""
        if self._current_cycle is None or self._current_cycle.done():
            self._current_cycle = asyncio.create_task(self._run_cycle())
        # Shield so a cancelled caller does not abort the shared cycle
        return await asyncio.shield(self._current_cycle)

    async def stop(self, deadline: float = settings.SYNC_SHUTDOWN_DEADLINE_SECONDS) -> None:
        self._stopping = True
        self._wakeup.set()

        cycle = self._current_cycle
        if cycle is not None and not cycle.done():
            done, _ = await asyncio.wait({cycle}, timeout=deadline)
            if not done:
                logger.warning("Sync cycle still running after %.1fs, cancelling", deadline)
                cycle.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await cycle

        if self._loop_task is not None:
            self._loop_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._loop_task
            self._loop_task = None
        logger.info("Sync engine stopped")

    async def _run_loop(self) -> None:
        while not self._stopping:
            self._wakeup.clear()
            try:
                await self.sync_now()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("Sync cycle crashed: %s", e, exc_info=True)

            if self._stopping:
                break
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval_seconds)

    # ═══════════════════════════════════════════════════════════════════════
    # Cycle
    # ═══════════════════════════════════════════════════════════════════════

    async def _run_cycle(self) -> SyncCycleReport:
        report = SyncCycleReport(started_at=self._clock())
        set_request_context(cycle_id=report.cycle_id)
        started = time.perf_counter()

        report.online = self.is_online = await self._probe()
        if report.online:
            expired = await self.queue.expire_stale(self.stale_after, now=self._clock())
            report.expired = len(expired)
            for failed in expired:
                self.cache.revert_to_local(failed.mutation.target_id, failed.local_id)

            groups = group_by_target(await self.queue.list())
            semaphore = asyncio.Semaphore(self.max_concurrent_targets)

            async def drain(mutations: List[PendingMutation]) -> None:
                async with semaphore:
                    await self._drain_target(mutations, report)

            results = await asyncio.gather(
                *(drain(mutations) for mutations in groups.values()),
                return_exceptions=True,
            )
            for target_id, result in zip(groups, results):
                if isinstance(result, Exception):
                    logger.error(
                        "Draining %s failed: %s", target_id, result,
                        exc_info=result, extra={"target_id": target_id},
                    )
                    report.errors.append(f"{target_id}: {result}")

        report.duration_ms = (time.perf_counter() - started) * 1000
        self.last_report = report
        self.cycles_run += 1
        if report.attempted or report.expired:
            logger.info(
                "Sync cycle: %d attempted, %d ok, %d retried, %d failed, %d skipped (%.0fms)",
                report.attempted, report.succeeded, report.retried,
                report.failed, report.skipped, report.duration_ms,
                extra={"duration_ms": report.duration_ms},
            )
        return report

    async def _probe(self) -> bool:
        try:
            return await asyncio.wait_for(
                self.probe.is_reachable(), timeout=self.probe_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return False
        except Exception as e:
            logger.warning("Connectivity probe raised: %s", e)
            return False

    def is_held(self, now: Optional[datetime] = None) -> bool:
        """True while the server has asked this client to back off."""
        return self._hold_until is not None and (now or self._clock()) < self._hold_until

    async def _drain_target(self, mutations: List[PendingMutation], report: SyncCycleReport) -> None:
        """Strictly sequential for one target; stops at the first deferral."""
        for index, mutation in enumerate(mutations):
            now = self._clock()
            if self.is_held(now) or not mutation.is_due(now):
                report.skipped += len(mutations) - index
                return

            report.attempted += 1
            outcome = await self._attempt(mutation, report)
            if outcome == _Outcome.DEFERRED:
                report.skipped += len(mutations) - index - 1
                return

    async def _attempt(self, mutation: PendingMutation, report: SyncCycleReport) -> _Outcome:
        log_extra: Dict[str, object] = {
            "local_id": mutation.local_id, "target_id": mutation.target_id,
        }
        self.cache.mark_in_flight(mutation.target_id, mutation.local_id)
        try:
            record = await asyncio.wait_for(
                self.transport.apply(mutation), timeout=self.call_timeout_seconds,
            )
        except asyncio.TimeoutError:
            error: Exception = TransientError(
                f"Server call timed out after {self.call_timeout_seconds:.1f}s",
            )
        except Exception as e:
            error = e
        else:
            # Removal only after the server acknowledged the mutation
            await self.queue.remove(mutation.local_id)
            self.cache.confirm(mutation.target_id, mutation.local_id, record)
            await self.queue.record_sync(self._clock())
            report.succeeded += 1
            logger.info(
                "Synced %s for %s", mutation.kind.value, mutation.target_id, extra=log_extra,
            )
            return _Outcome.APPLIED

        self.cache.revert_to_local(mutation.target_id, mutation.local_id)
        message = f"{type(error).__name__}: {error}"

        if isinstance(error, RateLimitError):
            return await self._hold(mutation, error, message, report)

        if not is_retryable(error):
            await self.queue.mark_failed(mutation.local_id, FailureReason.REJECTED, message)
            report.failed += 1
            report.errors.append(f"{mutation.local_id}: {message}")
            return _Outcome.FAILED

        retry_count = mutation.retry_count + 1
        delay = compute_backoff(retry_count, self.backoff_base_seconds, self.backoff_max_seconds)
        retry_count = await self.queue.increment_retry(
            mutation.local_id, message, self._clock() + timedelta(seconds=delay),
        )

        if retry_count >= mutation.max_retries:
            await self.queue.mark_failed(
                mutation.local_id, FailureReason.RETRIES_EXHAUSTED, message,
            )
            report.failed += 1
            report.errors.append(f"{mutation.local_id}: {message}")
            return _Outcome.DEFERRED

        report.retried += 1
        logger.warning(
            "Sync of %s failed (%s), retry %d/%d in %.1fs",
            mutation.local_id, message, retry_count, mutation.max_retries, delay,
            extra={**log_extra, "retry_count": retry_count},
        )
        return _Outcome.DEFERRED

    async def _hold(
        self,
        mutation: PendingMutation,
        error: RateLimitError,
        message: str,
        report: SyncCycleReport,
    ) -> _Outcome:
        """
        Throttled: wait at least Retry-After before any further call.

        Not charged against ``max_retries``; a 429 says nothing about
        the mutation itself.
        """
        backoff = compute_backoff(
            mutation.retry_count + 1, self.backoff_base_seconds, self.backoff_max_seconds,
        )
        retry_after = float(error.details.get("retry_after_seconds") or 0)
        delay = max(backoff, retry_after)
        until = self._clock() + timedelta(seconds=delay)
        if self._hold_until is None or until > self._hold_until:
            self._hold_until = until

        await self.queue.defer(mutation.local_id, until, message)
        report.retried += 1
        logger.warning(
            "Rate limited by server, pausing sync for %.1fs", delay,
            extra={"local_id": mutation.local_id, "target_id": mutation.target_id},
        )
        return _Outcome.DEFERRED
