"""
Best-effort fan-out of orchestration events to project observers.

``publish`` never raises: a lost notification must not roll back or fail
the state change that produced it. Connections reported gone by the
transport are deregistered on the spot.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any

from features.notifications.registry import ConnectionRegistry
from features.notifications.transport import ConnectionGone, NotificationTransport

log = logging.getLogger(__name__)


def build_event(project_id: str, event_type: str, data: dict[str, Any]) -> dict[str, Any]:
    return {
        "type": event_type,
        "projectId": project_id,
        "data": data,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


class Notifier:
    def __init__(self, registry: ConnectionRegistry, transport: NotificationTransport):
        self.registry = registry
        self.transport = transport

    async def publish(self, project_id: str, event_type: str, data: dict[str, Any]) -> int:
        """Send one event to every connection subscribed to ``project_id``.

        Returns the number of successful deliveries.
        """
        try:
            connection_ids = await self.registry.connections_for(project_id)
        except Exception as e:
            log.error("[NOTIFY] Could not look up observers of %s: %s", project_id, e)
            return 0
        if not connection_ids:
            return 0

        payload = json.dumps(build_event(project_id, event_type, data), default=str)
        results = await asyncio.gather(
            *(self._deliver(cid, payload) for cid in connection_ids)
        )
        delivered = sum(results)
        log.info(
            "[NOTIFY] %s for %s delivered to %d/%d connections",
            event_type, project_id, delivered, len(connection_ids),
        )
        return delivered

    async def _deliver(self, connection_id: str, payload: str) -> bool:
        try:
            await self.transport.deliver(connection_id, payload)
            return True
        except ConnectionGone:
            log.info("[NOTIFY] Removing stale connection %s", connection_id)
            try:
                await self.registry.remove(connection_id)
            except Exception as e:
                log.warning("[NOTIFY] Could not remove %s: %s", connection_id, e)
        except Exception as e:
            log.warning("[NOTIFY] Delivery to %s failed: %s", connection_id, e)
        return False
