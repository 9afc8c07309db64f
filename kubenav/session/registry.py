"""Registry of configured clusters and their lazily created sessions."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from kubenav.session.cluster import ClusterSession
from kubenav.session.endpoint import ClusterEndpoint
from kubenav.shared.config import Settings
from kubenav.shared.errors import UnknownCluster

logger = logging.getLogger("kubenav.session")

SessionFactory = Callable[..., Awaitable[ClusterSession]]


class SessionRegistry:
    """Owns one session per cluster, created on first use.

    A session is never recreated behind the caller's back: once created it
    lives until :meth:`disconnect`, :meth:`reconnect` or :meth:`close_all`.
    """

    def __init__(
        self,
        endpoints: Iterable[ClusterEndpoint],
        settings: Optional[Settings] = None,
        factory: Optional[SessionFactory] = None,
    ) -> None:
        self.settings = settings or Settings()
        self._endpoints: Dict[str, ClusterEndpoint] = {}
        for endpoint in endpoints:
            self._endpoints[endpoint.name] = endpoint
        self._sessions: Dict[str, ClusterSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._factory: SessionFactory = factory or ClusterSession.connect

    def names(self) -> List[str]:
        return list(self._endpoints)

    def has(self, name: str) -> bool:
        return name in self._endpoints

    def endpoint(self, name: str) -> ClusterEndpoint:
        try:
            return self._endpoints[name]
        except KeyError:
            raise UnknownCluster(f"no cluster named '{name}' is configured") from None

    def endpoints(self) -> List[ClusterEndpoint]:
        return list(self._endpoints.values())

    def is_connected(self, name: str) -> bool:
        session = self._sessions.get(name)
        return session is not None and not session.closed

    def _lock(self, name: str) -> asyncio.Lock:
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
        return self._locks[name]

    async def get(self, name: str) -> ClusterSession:
        """Return the session for *name*, connecting on first use."""

        endpoint = self.endpoint(name)
        async with self._lock(name):
            session = self._sessions.get(name)
            if session is None:
                session = await self._factory(endpoint, self.settings)
                self._sessions[name] = session
            return session

    async def reconnect(self, name: str, verify: bool = True) -> ClusterSession:
        """Explicitly tear down and rebuild the session for *name*."""

        endpoint = self.endpoint(name)
        async with self._lock(name):
            old = self._sessions.pop(name, None)
            if old is not None:
                await old.close()
            session = await self._factory(endpoint, self.settings, verify=verify)
            self._sessions[name] = session
            logger.info("Reconnected to cluster '%s'", name)
            return session

    async def disconnect(self, name: str) -> bool:
        self.endpoint(name)
        async with self._lock(name):
            session = self._sessions.pop(name, None)
            if session is None:
                return False
            await session.close()
            return True

    async def close_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.close()
