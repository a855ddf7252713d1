"""
Dispatch consumer — executes one queued agent run against the orchestrator.

begin task → run agent (timeout + bounded attempts) → advance to DONE, or to
PENDING_APPROVAL for approval-gated agents, or to FAILED with the reason.
The Temporal workflow in ``workflows/dispatch.py`` performs the same steps as
activities; this class is the in-process equivalent.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Iterable

import config
from features.dispatch.queue import DispatchMessage
from features.projects.models import AgentName, Project, Task, TaskStatus

if TYPE_CHECKING:
    from features.projects.orchestrator import AdvanceResult, Orchestrator

log = logging.getLogger(__name__)

# (project, task) -> id of the artifact the agent produced, if any
AgentRunner = Callable[[Project, Task], Awaitable["str | None"]]


def agent_timeout(agent: AgentName | str) -> int:
    name = agent.value if isinstance(agent, AgentName) else agent
    return config.AGENT_TIMEOUTS.get(name, config.DEFAULT_AGENT_TIMEOUT)


def agent_attempts(agent: AgentName | str) -> int:
    name = agent.value if isinstance(agent, AgentName) else agent
    return config.AGENT_RETRY_LIMITS.get(name, config.DEFAULT_AGENT_RETRY_LIMIT)


def completion_status(agent: AgentName | str, approval_agents: Iterable[str]) -> TaskStatus:
    """DONE, or PENDING_APPROVAL when the agent's output needs human sign-off."""
    name = agent.value if isinstance(agent, AgentName) else agent
    return TaskStatus.PENDING_APPROVAL if name in set(approval_agents) else TaskStatus.DONE


class AgentDispatcher:
    def __init__(
        self,
        orchestrator: Orchestrator,
        runner: AgentRunner,
        *,
        approval_agents: Iterable[str] = config.APPROVAL_AGENTS,
        timeouts: dict[str, float] | None = None,
        attempts: dict[str, int] | None = None,
    ):
        self.orchestrator = orchestrator
        self.runner = runner
        self.approval_agents = frozenset(approval_agents)
        self._timeouts = timeouts or {}
        self._attempts = attempts or {}

    async def handle(self, message: DispatchMessage) -> AdvanceResult | None:
        log.info("[DISPATCH] Processing %s for project %s", message.agent_name, message.project_id)
        try:
            agent = AgentName(message.agent_name)
        except ValueError:
            log.error("[DISPATCH] Unknown agent %r, dropping message", message.agent_name)
            return None

        task = await self.orchestrator.begin_task(message.project_id, agent)
        if task is None:
            return None
        project = await self.orchestrator.get_project(message.project_id)

        timeout = self._timeouts.get(agent.value, agent_timeout(agent))
        attempts = self._attempts.get(agent.value, agent_attempts(agent))
        error = "Agent execution failed"
        for attempt in range(1, attempts + 1):
            try:
                artifact_id = await asyncio.wait_for(self.runner(project, task), timeout)
            except asyncio.TimeoutError:
                error = f"{agent.value} timed out after {timeout}s"
            except Exception as e:
                error = str(e) or type(e).__name__
            else:
                return await self.orchestrator.advance(
                    project.project_id, task.task_id,
                    completion_status(agent, self.approval_agents),
                    output_artifact_id=artifact_id,
                )
            log.warning(
                "[DISPATCH] %s attempt %d/%d failed for %s: %s",
                agent.value, attempt, attempts, project.project_id, error,
            )

        return await self.orchestrator.advance(
            project.project_id, task.task_id, TaskStatus.FAILED, error_message=error,
        )
