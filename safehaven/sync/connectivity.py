"""
connectivity.py — Reachability probes for the SyncEngine.

The engine only asks one question before a cycle: can the server be
reached right now? A probe answers within its own short timeout and
never raises.
"""

from __future__ import annotations

import abc
import logging
from typing import Optional

import httpx

from safehaven.core.config import settings

logger = logging.getLogger(__name__)


class ConnectivityProbe(abc.ABC):

    @abc.abstractmethod
    async def is_reachable(self) -> bool:
        """True when a server round-trip is currently possible."""

    async def close(self) -> None:
        return None


class HttpConnectivityProbe(ConnectivityProbe):
    """Issues a HEAD request; any HTTP response at all counts as reachable."""

    def __init__(
        self,
        url: str = settings.CONNECTIVITY_PROBE_URL,
        *,
        timeout_seconds: float = settings.CONNECTIVITY_TIMEOUT_SECONDS,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self._http_client = client
        self.last_result: Optional[bool] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def is_reachable(self) -> bool:
        client = await self._get_client()
        try:
            await client.head(self.url, timeout=self.timeout_seconds)
            reachable = True
        except httpx.HTTPError as e:
            logger.debug("Connectivity probe to %s failed: %s", self.url, e)
            reachable = False

        if reachable != self.last_result:
            logger.info("Connectivity: %s", "online" if reachable else "offline")
        self.last_result = reachable
        return reachable

    async def close(self) -> None:
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()


class StaticConnectivityProbe(ConnectivityProbe):
    """Fixed answer, flipped by hand. Used by tests and by callers that
    track connectivity through platform events instead of polling."""

    def __init__(self, online: bool = True):
        self.online = online

    async def is_reachable(self) -> bool:
        return self.online
