"""
Health check aggregation — deep health probe for all subsystems.

Checks:
    • Record stores (shelters, alerts)
    • Notification bus
    • Redis, when a shared backend is configured
    • Disk space for the SQLite files

Returns a structured health report suitable for:
    - Kubernetes liveness/readiness probes
    - Load balancer health checks
"""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from safehaven.core import redis_pool
from safehaven.core.config import settings
from safehaven.notifications.bus import NotificationBus
from safehaven.store.base import RecordStore

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


# Track application start time
_start_time = time.monotonic()


async def check_record_store(name: str, store: RecordStore) -> ComponentHealth:
    """Round-trip to a record store backend."""
    comp = ComponentHealth(name=name)
    start = time.monotonic()
    if await store.ping():
        comp.message = "Record store reachable"
    else:
        comp.status = HealthStatus.UNHEALTHY
        comp.message = "Record store unreachable"
    comp.details = {"backend": type(store).__name__}
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_notification_bus(bus: NotificationBus) -> ComponentHealth:
    """Publishing is best-effort, so a dead bus only degrades the service."""
    comp = ComponentHealth(name="notification_bus")
    start = time.monotonic()
    try:
        ok = await bus.ping()
    except Exception as e:
        ok = False
        comp.message = str(e)
    if ok:
        comp.message = "Bus available"
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = comp.message or "Bus unreachable, notifications are being dropped"
    comp.details = {"backend": type(bus).__name__}
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_redis(client) -> ComponentHealth:
    """Check Redis connectivity."""
    comp = ComponentHealth(name="redis")
    start = time.monotonic()
    if await redis_pool.ping(client):
        comp.message = "Redis available"
    else:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Redis unreachable"
    url = settings.REDIS_URL
    comp.details = {"url": url.split("@")[-1] if "@" in url else url}
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_disk_space() -> ComponentHealth:
    """Check available disk space."""
    comp = ComponentHealth(name="disk_space")
    start = time.monotonic()
    try:
        total, used, free = shutil.disk_usage(".")
        free_gb = free / (1024 ** 3)
        total_gb = total / (1024 ** 3)
        used_pct = (used / total) * 100

        comp.details = {
            "total_gb": round(total_gb, 1),
            "free_gb": round(free_gb, 1),
            "used_pct": round(used_pct, 1),
        }

        if free_gb < 0.5:
            comp.status = HealthStatus.UNHEALTHY
            comp.message = f"Low disk space: {free_gb:.1f} GB free"
        elif free_gb < 2.0:
            comp.status = HealthStatus.DEGRADED
            comp.message = f"Disk space warning: {free_gb:.1f} GB free"
        else:
            comp.status = HealthStatus.HEALTHY
            comp.message = f"{free_gb:.1f} GB free"
    except OSError as e:
        comp.status = HealthStatus.DEGRADED
        comp.message = str(e)
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(
    stores: Dict[str, RecordStore],
    bus: NotificationBus,
    redis_client: Optional[Any] = None,
) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [check_record_store(name, store) for name, store in stores.items()]
    checks.append(check_notification_bus(bus))
    if redis_client is not None:
        checks.append(check_redis(redis_client))
    checks.append(check_disk_space())

    for coro in checks:
        comp = await coro
        report.components.append(comp)

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
