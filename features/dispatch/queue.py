"""
Dispatch queue — "run this agent for this project" messages.

``TemporalDispatchQueue`` starts one ``AgentDispatchWorkflow`` execution per
message, using the dedup key as workflow id so that a duplicate send inside
the window collapses into the running execution. ``InProcessDispatchQueue``
is the fallback when no Temporal server is reachable: it runs the consumer as
asyncio tasks, one chain per group so messages of a project run in order.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Protocol

from temporalio.client import Client
from temporalio.exceptions import WorkflowAlreadyStartedError
from temporalio.service import RPCError

import config
from features.projects.errors import InfrastructureError

log = logging.getLogger(__name__)

DISPATCH_WORKFLOW = "AgentDispatchWorkflow"


@dataclass
class DispatchMessage:
    project_id: str
    agent_name: str

    def to_dict(self) -> dict:
        return {"projectId": self.project_id, "agentName": self.agent_name}


def dedup_key(project_id: str, agent_name: str, now: float | None = None,
              window: int = config.DISPATCH_DEDUP_WINDOW_SEC) -> str:
    """Per-(project, agent, time window) key; repeats inside one window collapse."""
    now = time.time() if now is None else now
    return f"{project_id}-{agent_name}-{int(now // max(window, 1))}"


class DispatchQueue(Protocol):
    async def send(self, message: DispatchMessage, group_key: str, dedup_key: str) -> None: ...


class TemporalDispatchQueue:
    def __init__(self, client: Client, task_queue: str = config.TEMPORAL_TASK_QUEUE):
        self.client = client
        self.task_queue = task_queue

    async def send(self, message: DispatchMessage, group_key: str, dedup_key: str) -> None:
        try:
            await self.client.start_workflow(
                DISPATCH_WORKFLOW,
                message,
                id=dedup_key,
                task_queue=self.task_queue,
                memo={"group": group_key},
            )
        except WorkflowAlreadyStartedError:
            log.info("[DISPATCH] Duplicate send collapsed: %s", dedup_key)
            return
        except RPCError as e:
            raise InfrastructureError(f"Temporal rejected dispatch {dedup_key}: {e}") from e
        log.info("[DISPATCH] Workflow started: %s", dedup_key)


Handler = Callable[[DispatchMessage], Awaitable[object]]


class InProcessDispatchQueue:
    """Runs the consumer in this event loop. No redelivery: the consumer reports failures itself."""

    def __init__(self, handler: Handler | None = None,
                 window: int = config.DISPATCH_DEDUP_WINDOW_SEC):
        self._handler = handler
        self._window = window
        self._seen: dict[str, float] = {}
        self._tails: dict[str, asyncio.Task] = {}
        self._running: set[asyncio.Task] = set()

    def bind(self, handler: Handler) -> None:
        self._handler = handler

    async def send(self, message: DispatchMessage, group_key: str, dedup_key: str) -> None:
        if self._handler is None:
            raise InfrastructureError("No dispatch consumer bound to the in-process queue")
        now = time.monotonic()
        self._seen = {k: t for k, t in self._seen.items() if now - t < self._window}
        if dedup_key in self._seen:
            log.info("[DISPATCH] Duplicate send collapsed: %s", dedup_key)
            return
        self._seen[dedup_key] = now

        previous = self._tails.get(group_key)
        job = asyncio.create_task(self._consume(message, previous))
        self._tails[group_key] = job
        self._running.add(job)
        job.add_done_callback(self._running.discard)
        job.add_done_callback(lambda done: self._release_tail(group_key, done))

    def _release_tail(self, group_key: str, job: asyncio.Task) -> None:
        if self._tails.get(group_key) is job:
            del self._tails[group_key]

    async def _consume(self, message: DispatchMessage, previous: asyncio.Task | None) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        try:
            await self._handler(message)
        except Exception:
            log.exception(
                "[DISPATCH] Consumer failed for %s / %s", message.project_id, message.agent_name,
            )

    async def drain(self) -> None:
        """Wait until every queued message, including ones queued meanwhile, is consumed."""
        while self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)
