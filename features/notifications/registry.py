"""
Connection registry — which observer connection watches which project.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Protocol

import psycopg2

import config
from features.notifications import db as connection_db
from features.projects.errors import InfrastructureError


class ConnectionRegistry(Protocol):
    async def register(self, connection_id: str, project_id: str | None = None,
                       user_id: str | None = None) -> None: ...
    async def remove(self, connection_id: str) -> None: ...
    async def connections_for(self, project_id: str) -> list[str]: ...
    async def purge_expired(self) -> int: ...


@dataclass
class Subscription:
    connection_id: str
    project_id: str | None
    user_id: str | None
    expires_at: float


class InMemoryConnectionRegistry:
    def __init__(self, ttl_sec: int = config.CONNECTION_TTL_SEC,
                 clock: Callable[[], float] = time.time):
        self.ttl_sec = ttl_sec
        self._clock = clock
        self.subscriptions: dict[str, Subscription] = {}

    async def register(self, connection_id: str, project_id: str | None = None,
                       user_id: str | None = None) -> None:
        """Create or rebind a connection; every call renews its TTL."""
        previous = self.subscriptions.get(connection_id)
        self.subscriptions[connection_id] = Subscription(
            connection_id=connection_id,
            project_id=project_id,
            user_id=user_id or (previous.user_id if previous else None),
            expires_at=self._clock() + self.ttl_sec,
        )

    async def remove(self, connection_id: str) -> None:
        self.subscriptions.pop(connection_id, None)

    async def connections_for(self, project_id: str) -> list[str]:
        await self.purge_expired()
        return [
            s.connection_id for s in self.subscriptions.values() if s.project_id == project_id
        ]

    async def purge_expired(self) -> int:
        now = self._clock()
        expired = [cid for cid, s in self.subscriptions.items() if s.expires_at <= now]
        for cid in expired:
            del self.subscriptions[cid]
        return len(expired)


class PostgresConnectionRegistry:
    def __init__(self, ttl_sec: int = config.CONNECTION_TTL_SEC):
        self.ttl_sec = ttl_sec

    async def _call(self, fn, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn, *args)
        except psycopg2.Error as e:
            raise InfrastructureError(f"Connection registry error: {e}") from e

    async def register(self, connection_id: str, project_id: str | None = None,
                       user_id: str | None = None) -> None:
        await self._call(
            connection_db.upsert_connection, connection_id, project_id, user_id, self.ttl_sec,
        )

    async def remove(self, connection_id: str) -> None:
        await self._call(connection_db.delete_connection, connection_id)

    async def connections_for(self, project_id: str) -> list[str]:
        return await self._call(connection_db.get_project_connections, project_id)

    async def purge_expired(self) -> int:
        return await self._call(connection_db.purge_expired)
