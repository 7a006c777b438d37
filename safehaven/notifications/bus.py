"""
bus.py — Notification Bus backends.

A bus only publishes. Delivery to browsers, phones or dashboards happens
downstream of it (web-socket fan-out, push services) and is not modelled
here.

Backends:
    InMemoryNotificationBus — keeps a log of published messages and calls
                              local subscribers; default for development
                              and tests
    RedisNotificationBus    — PUBLISH to ``<prefix>:<topic>`` so any number
                              of server instances or socket gateways can
                              subscribe
"""

from __future__ import annotations

import abc
import fnmatch
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from safehaven.core import redis_pool

logger = logging.getLogger(__name__)

Subscriber = Callable[["PublishedMessage"], Awaitable[None]]


@dataclass
class PublishedMessage:
    topic: str
    payload: Dict[str, Any]
    attributes: Dict[str, str] = field(default_factory=dict)
    published_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "payload": self.payload,
            "attributes": self.attributes,
            "published_at": self.published_at.isoformat(),
        }


class NotificationBus(abc.ABC):

    @abc.abstractmethod
    async def publish(
        self,
        topic: str,
        payload: Dict[str, Any],
        attributes: Optional[Dict[str, str]] = None,
    ) -> None:
        """Publish one message. May raise; the publisher absorbs failures."""

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class InMemoryNotificationBus(NotificationBus):
    """
    Usage:
        bus = InMemoryNotificationBus()
        bus.subscribe("alert.*", on_alert)
        await bus.publish("alert.created", {...})
        bus.messages_for("alert.created")
    """

    def __init__(self, history_limit: int = 1000):
        self.history_limit = history_limit
        self.messages: List[PublishedMessage] = []
        self._subscribers: List[Tuple[str, Subscriber]] = []

    def subscribe(self, pattern: str, callback: Subscriber) -> None:
        """Register ``callback`` for topics matching a glob ``pattern``."""
        self._subscribers.append((pattern, callback))

    async def publish(
        self,
        topic: str,
        payload: Dict[str, Any],
        attributes: Optional[Dict[str, str]] = None,
    ) -> None:
        message = PublishedMessage(topic=topic, payload=payload, attributes=dict(attributes or {}))
        self.messages.append(message)
        if len(self.messages) > self.history_limit:
            del self.messages[: len(self.messages) - self.history_limit]

        for pattern, callback in self._subscribers:
            if not fnmatch.fnmatchcase(topic, pattern):
                continue
            try:
                await callback(message)
            except Exception as e:
                # Subscribers are isolated from one another
                logger.error(
                    "Subscriber %s failed on %s: %s",
                    getattr(callback, "__name__", repr(callback)), topic, e,
                    exc_info=True, extra={"topic": topic},
                )

    def messages_for(self, topic: str) -> List[PublishedMessage]:
        return [m for m in self.messages if m.topic == topic]

    def clear(self) -> None:
        self.messages.clear()


class RedisNotificationBus(NotificationBus):
    """Redis pub/sub backend. Channel name: ``<prefix>:<topic>``."""

    def __init__(self, client, prefix: str = "safehaven"):
        self._client = client
        self._prefix = prefix

    def channel_for(self, topic: str) -> str:
        return f"{self._prefix}:{topic}"

    async def publish(
        self,
        topic: str,
        payload: Dict[str, Any],
        attributes: Optional[Dict[str, str]] = None,
    ) -> None:
        message = redis_pool.dumps({"payload": payload, "attributes": attributes or {}})
        receivers = await self._client.publish(self.channel_for(topic), message)
        logger.debug("Published %s to %d subscriber(s)", topic, receivers)

    async def ping(self) -> bool:
        return await redis_pool.ping(self._client)


def build_notification_bus(backend: str, redis_client=None, prefix: str = "safehaven") -> NotificationBus:
    """Select a bus from configuration."""
    if backend == "redis":
        if redis_client is None:
            raise ValueError("NOTIFICATION_BACKEND=redis requires a Redis client")
        return RedisNotificationBus(redis_client, prefix=prefix)
    if backend != "memory":
        raise ValueError(f"Unknown notification backend: {backend}")
    return InMemoryNotificationBus()
