"""
Activities: the steps of one agent dispatch, run by the Temporal worker.

begin_agent_task → run_agent → complete_agent_task (or fail_agent_task).
Orchestration errors that retrying cannot fix are raised as non-retryable
``ApplicationError`` so Temporal stops redelivering them; infrastructure
errors propagate and are retried under the workflow's retry policy.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable

from temporalio import activity
from temporalio.exceptions import ApplicationError

import config
from features.dispatch.consumer import AgentRunner, completion_status
from features.dispatch.queue import DispatchMessage
from features.projects.errors import InvalidTransition, OrchestrationError
from features.projects.models import AgentName, TaskStatus

if TYPE_CHECKING:
    from features.projects.orchestrator import Orchestrator

log = logging.getLogger(__name__)


def _application_error(e: OrchestrationError) -> ApplicationError:
    return ApplicationError(e.message, type=e.reason, non_retryable=not e.retryable)


class DispatchActivities:
    def __init__(self, orchestrator: Orchestrator, runner: AgentRunner,
                 approval_agents: Iterable[str] = config.APPROVAL_AGENTS):
        self.orchestrator = orchestrator
        self.runner = runner
        self.approval_agents = frozenset(approval_agents)

    @activity.defn
    async def begin_agent_task(self, message: DispatchMessage) -> str | None:
        """Returns the started task id, or None when the delivery is stale."""
        try:
            agent = AgentName(message.agent_name)
        except ValueError:
            raise ApplicationError(
                f"Unknown agent {message.agent_name!r}", type="validation_error", non_retryable=True,
            )
        try:
            task = await self.orchestrator.begin_task(message.project_id, agent)
        except OrchestrationError as e:
            if e.retryable:
                raise
            raise _application_error(e) from e
        return task.task_id if task else None

    @activity.defn
    async def run_agent(self, message: DispatchMessage, task_id: str) -> str | None:
        info = activity.info()
        log.info(
            "[DISPATCH] Running %s for %s (attempt %d)",
            message.agent_name, message.project_id, info.attempt,
        )
        project = await self.orchestrator.get_project(message.project_id)
        task = await self.orchestrator.store.get_task(message.project_id, task_id)
        if task is None:
            raise ApplicationError(f"Task {task_id} vanished", type="not_found", non_retryable=True)
        return await self.runner(project, task)

    @activity.defn
    async def complete_agent_task(self, message: DispatchMessage, task_id: str,
                                  artifact_id: str | None) -> str:
        status = completion_status(message.agent_name, self.approval_agents)
        return await self._advance(message, task_id, status, output_artifact_id=artifact_id)

    @activity.defn
    async def fail_agent_task(self, message: DispatchMessage, task_id: str, error: str) -> str:
        return await self._advance(message, task_id, TaskStatus.FAILED, error_message=error)

    async def _advance(self, message: DispatchMessage, task_id: str, status: TaskStatus,
                       **kwargs) -> str:
        try:
            result = await self.orchestrator.advance(message.project_id, task_id, status, **kwargs)
        except InvalidTransition as e:
            # A redelivered step after the write already landed
            log.warning("[DISPATCH] Stale %s for %s: %s", status.value, task_id, e)
            return "stale"
        except OrchestrationError as e:
            if e.retryable:
                raise
            raise _application_error(e) from e
        return result.project.status.value

    def all(self) -> list:
        return [
            self.begin_agent_task,
            self.run_agent,
            self.complete_agent_task,
            self.fail_agent_task,
        ]
