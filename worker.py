"""
Temporal Worker — runs agent dispatch workflows against the shared Postgres state.

Notifications produced here are relayed to the API process, which holds the
observer sockets.

Usage:
    python worker.py
"""

from __future__ import annotations

import asyncio
import logging

from temporalio.client import Client
from temporalio.worker import Worker

import config
from activities.dispatch import DispatchActivities
from features.dispatch.queue import TemporalDispatchQueue
from features.notifications.transport import HttpRelayTransport
from services import postgres_services
from workflows.dispatch import AgentDispatchWorkflow

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%H:%M:%S",
)
log = logging.getLogger(__name__)


async def main():
    log.info("Connecting to Temporal at %s", config.TEMPORAL_HOST)
    client = await Client.connect(config.TEMPORAL_HOST, namespace=config.TEMPORAL_NAMESPACE)

    transport = HttpRelayTransport(config.API_BASE_URL)
    # complete_agent_task enqueues the successor from here
    services = postgres_services(transport, queue=TemporalDispatchQueue(client))
    activities = DispatchActivities(services.orchestrator, services.runner)

    log.info("Starting worker on queue: %s", config.TEMPORAL_TASK_QUEUE)
    worker = Worker(
        client,
        task_queue=config.TEMPORAL_TASK_QUEUE,
        workflows=[AgentDispatchWorkflow],
        activities=activities.all(),
    )

    log.info("Worker ready — listening for tasks")
    try:
        await worker.run()
    finally:
        await transport.aclose()


if __name__ == "__main__":
    asyncio.run(main())
