"""
Service wiring — builds the store, queue, registry, notifier and orchestrator
for one process.

The API and the Temporal worker both call these builders; tests use
``memory_services`` with fakes swapped in.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from activities.agents import LLMAgentRunner
from features.dispatch.consumer import AgentDispatcher, AgentRunner
from features.dispatch.queue import DispatchQueue, InProcessDispatchQueue, TemporalDispatchQueue
from features.notifications import db as connection_db
from features.notifications.fanout import Notifier
from features.notifications.registry import (
    ConnectionRegistry,
    InMemoryConnectionRegistry,
    PostgresConnectionRegistry,
)
from features.notifications.transport import NotificationTransport, WebSocketTransport
from features.projects import db as project_db
from features.projects.artifacts import ArtifactCatalog
from features.projects.orchestrator import Orchestrator
from features.projects.store import InMemoryStateStore, PostgresStateStore, StateStore

log = logging.getLogger(__name__)


@dataclass
class Services:
    store: StateStore
    queue: DispatchQueue
    registry: ConnectionRegistry
    transport: NotificationTransport
    notifier: Notifier
    orchestrator: Orchestrator
    artifacts: ArtifactCatalog
    runner: AgentRunner
    dispatcher: AgentDispatcher

    @property
    def backend(self) -> str:
        return "postgres" if isinstance(self.store, PostgresStateStore) else "memory"

    @property
    def dispatch_mode(self) -> str:
        if isinstance(self.queue, InProcessDispatchQueue):
            return "in-process"
        if isinstance(self.queue, TemporalDispatchQueue):
            return "temporal"
        return type(self.queue).__name__


def build_services(
    store: StateStore,
    registry: ConnectionRegistry,
    transport: NotificationTransport,
    queue: DispatchQueue | None = None,
    runner: AgentRunner | None = None,
) -> Services:
    """Wire one process. Without a queue, agents run in this event loop."""
    notifier = Notifier(registry, transport)
    artifacts = ArtifactCatalog(store)
    runner = runner or LLMAgentRunner(artifacts)
    queue = queue or InProcessDispatchQueue()
    orchestrator = Orchestrator(store, queue, notifier)
    dispatcher = AgentDispatcher(orchestrator, runner)
    if isinstance(queue, InProcessDispatchQueue):
        queue.bind(dispatcher.handle)
    return Services(
        store=store,
        queue=queue,
        registry=registry,
        transport=transport,
        notifier=notifier,
        orchestrator=orchestrator,
        artifacts=artifacts,
        runner=runner,
        dispatcher=dispatcher,
    )


def memory_services(transport: NotificationTransport | None = None,
                    queue: DispatchQueue | None = None,
                    runner: AgentRunner | None = None) -> Services:
    return build_services(
        InMemoryStateStore(),
        InMemoryConnectionRegistry(),
        transport or WebSocketTransport(),
        queue=queue,
        runner=runner,
    )


def postgres_services(transport: NotificationTransport,
                      queue: DispatchQueue | None = None,
                      runner: AgentRunner | None = None) -> Services:
    """Postgres-backed wiring; creates the schema on first use."""
    project_db.init_db()
    connection_db.init_db()
    return build_services(
        PostgresStateStore(),
        PostgresConnectionRegistry(),
        transport,
        queue=queue,
        runner=runner,
    )
