"""Online/offline detection used to short-circuit turns to the response cache."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

LOGGER = logging.getLogger(__name__)


class ConnectivityMonitor(Protocol):
    async def is_online(self) -> bool:
        ...


class StaticConnectivity:
    """Connectivity reported by the host, e.g. a browser's ``navigator.onLine``."""

    def __init__(self, online: bool = True) -> None:
        self.online = online

    def set_online(self, online: bool) -> None:
        self.online = online

    async def is_online(self) -> bool:
        return self.online


class HttpConnectivityProbe:
    """Issues a lightweight ``HEAD`` request; any transport failure counts as offline."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 3.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = url
        self._timeout = timeout
        self._client = client

    async def is_online(self) -> bool:
        try:
            if self._client is not None:
                await self._client.head(self._url, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    await client.head(self._url)
        except httpx.TransportError as exc:
            LOGGER.debug("Connectivity probe to %s failed: %s", self._url, exc)
            return False
        return True


__all__ = ["ConnectivityMonitor", "HttpConnectivityProbe", "StaticConnectivity"]
