"""
Notification transports — push one JSON payload to one connection.

``WebSocketTransport`` lives in the API process next to the sockets it
serves. ``HttpRelayTransport`` is used by processes that hold no sockets (the
Temporal worker): it posts to the API's ``/connections/{id}`` endpoint, which
answers 410 when the connection is gone.
"""

from __future__ import annotations

import logging
from typing import Protocol

import httpx
from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

import config

log = logging.getLogger(__name__)


class ConnectionGone(Exception):
    """The target connection no longer exists; the caller should deregister it."""

    def __init__(self, connection_id: str):
        super().__init__(f"Connection gone: {connection_id}")
        self.connection_id = connection_id


class NotificationTransport(Protocol):
    async def deliver(self, connection_id: str, payload: str) -> None: ...


class WebSocketTransport:
    def __init__(self):
        self._sockets: dict[str, WebSocket] = {}

    def attach(self, connection_id: str, websocket: WebSocket) -> None:
        self._sockets[connection_id] = websocket

    def detach(self, connection_id: str) -> None:
        self._sockets.pop(connection_id, None)

    def __contains__(self, connection_id: str) -> bool:
        return connection_id in self._sockets

    async def deliver(self, connection_id: str, payload: str) -> None:
        websocket = self._sockets.get(connection_id)
        if websocket is None:
            raise ConnectionGone(connection_id)
        try:
            await websocket.send_text(payload)
        except (WebSocketDisconnect, RuntimeError) as e:
            # RuntimeError: starlette refuses to send on a closed socket
            self.detach(connection_id)
            raise ConnectionGone(connection_id) from e


class HttpRelayTransport:
    def __init__(self, base_url: str = config.API_BASE_URL, timeout: float = 10.0,
                 http_client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    async def deliver(self, connection_id: str, payload: str) -> None:
        response = await self._client.post(
            f"{self.base_url}/connections/{connection_id}",
            content=payload,
            headers={"Content-Type": "application/json"},
        )
        if response.status_code == 410:
            raise ConnectionGone(connection_id)
        response.raise_for_status()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
