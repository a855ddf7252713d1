from __future__ import annotations

import asyncio

import pytest
from temporalio.exceptions import ApplicationError

from activities.dispatch import DispatchActivities
from features.dispatch.queue import DispatchMessage
from features.projects.models import TaskStatus

USER = "user-1"
PROMPT = "Build a blog platform with posts and comments"


async def _noop_runner(project, task):
    return None


def _activities(orchestrator):
    return DispatchActivities(orchestrator, _noop_runner, approval_agents={"ProductManagerAgent"})


async def _project(orchestrator):
    project = await orchestrator.create_project(USER, "Blog", PROMPT)
    await orchestrator.start(project.project_id)
    return project.project_id


def test_begin_then_complete_gates_product_manager(orchestrator, store):
    activities = _activities(orchestrator)

    async def scenario():
        pid = await _project(orchestrator)
        message = DispatchMessage(pid, "ProductManagerAgent")
        task_id = await activities.begin_agent_task(message)
        status = await activities.complete_agent_task(message, task_id, "art-1")
        return await store.get_task(pid, task_id), status

    task, status = asyncio.run(scenario())

    assert task.status == TaskStatus.PENDING_APPROVAL
    assert task.output_artifact_id == "art-1"
    assert status == "IN_PROGRESS"


def test_stale_begin_returns_none(orchestrator):
    activities = _activities(orchestrator)

    async def scenario():
        pid = await _project(orchestrator)
        message = DispatchMessage(pid, "ProductManagerAgent")
        await activities.begin_agent_task(message)
        return await activities.begin_agent_task(message)

    assert asyncio.run(scenario()) is None


def test_unsatisfied_dependencies_are_not_retried(orchestrator):
    activities = _activities(orchestrator)

    async def scenario():
        pid = await _project(orchestrator)
        await activities.begin_agent_task(DispatchMessage(pid, "BackendEngineerAgent"))

    with pytest.raises(ApplicationError) as exc_info:
        asyncio.run(scenario())
    assert exc_info.value.non_retryable
    assert exc_info.value.type == "dependencies_unsatisfied"


def test_unknown_agent_is_not_retried(orchestrator):
    activities = _activities(orchestrator)

    with pytest.raises(ApplicationError) as exc_info:
        asyncio.run(activities.begin_agent_task(DispatchMessage("proj-1", "QaAgent")))
    assert exc_info.value.non_retryable


def test_redelivered_completion_is_stale(orchestrator):
    activities = _activities(orchestrator)

    async def scenario():
        pid = await _project(orchestrator)
        message = DispatchMessage(pid, "ProductManagerAgent")
        task_id = await activities.begin_agent_task(message)
        await activities.fail_agent_task(message, task_id, "boom")
        return await activities.fail_agent_task(message, task_id, "boom")

    assert asyncio.run(scenario()) == "stale"
