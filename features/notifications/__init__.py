"""
Notifications feature: observer connections and event fan-out.

Public API:
    from features.notifications import Notifier, InMemoryConnectionRegistry, WebSocketTransport
    from features.notifications import db as connection_db
"""

from features.notifications.fanout import Notifier, build_event
from features.notifications.registry import (
    ConnectionRegistry,
    InMemoryConnectionRegistry,
    PostgresConnectionRegistry,
)
from features.notifications.transport import (
    ConnectionGone,
    HttpRelayTransport,
    NotificationTransport,
    WebSocketTransport,
)

__all__ = [
    "ConnectionGone",
    "ConnectionRegistry",
    "HttpRelayTransport",
    "InMemoryConnectionRegistry",
    "NotificationTransport",
    "Notifier",
    "PostgresConnectionRegistry",
    "WebSocketTransport",
    "build_event",
]
