"""
publisher.py — Best-effort notification publishing.

The reconciler and the lifecycle manager publish *after* their write has
been persisted. A publish can only ever cost the caller its timeout:

    ┌───────────────┐   write ok    ┌──────────────────────┐
    │  core service │ ────────────► │ NotificationPublisher│
    └───────────────┘               └──────────┬───────────┘
                                               │ asyncio.wait_for(timeout)
                                               ▼
                                     ┌──────────────────┐
                                     │ NotificationBus  │
                                     └──────────────────┘

    bus raises / times out  → NotificationPublishError logged, returns False
    bus succeeds            → returns True

Envelope (the payload handed to the bus):

    {
        "message_type": "alert.acknowledged",
        "data":         { ...full record... },
        "timestamp":    "2026-10-18T10:00:00+00:00"
    }
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from safehaven.core.config import settings
from safehaven.core.errors import NotificationPublishError
from safehaven.notifications.bus import NotificationBus

logger = logging.getLogger(__name__)

SHELTER_UPDATED = "shelter.updated"
ALERT_CREATED = "alert.created"
ALERT_ACKNOWLEDGED = "alert.acknowledged"
ALERT_RESOLVED = "alert.resolved"
ALERT_UPDATED = "alert.updated"


class NotificationPublisher:
    """Wraps a bus so that publishing never fails the primary operation."""

    def __init__(
        self,
        bus: NotificationBus,
        *,
        timeout_seconds: float = settings.NOTIFICATION_TIMEOUT_SECONDS,
    ):
        self.bus = bus
        self.timeout_seconds = timeout_seconds
        self.failures = 0

    @staticmethod
    def build_envelope(topic: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return {
            "message_type": topic,
            "data": data,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def publish(
        self,
        topic: str,
        data: Dict[str, Any],
        attributes: Optional[Dict[str, str]] = None,
    ) -> bool:
        """Publish ``data`` under ``topic``. Returns False instead of raising."""
        envelope = self.build_envelope(topic, data)
        try:
            await asyncio.wait_for(
                self.bus.publish(topic, envelope, attributes or {}),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            self._record_failure(NotificationPublishError(
                topic, f"timed out after {self.timeout_seconds:.1f}s",
            ))
            return False
        except Exception as exc:
            self._record_failure(NotificationPublishError(topic, str(exc)))
            return False

        logger.debug("Published %s", topic, extra={"topic": topic})
        return True

    def _record_failure(self, error: NotificationPublishError) -> None:
        self.failures += 1
        logger.warning("%s", error.message, extra={"topic": error.details["topic"]})
