from __future__ import annotations

import asyncio

from features.dispatch.consumer import AgentDispatcher, completion_status
from features.dispatch.queue import DispatchMessage, InProcessDispatchQueue, dedup_key
from features.projects.models import AgentName, ProjectStatus, TaskStatus
from services import memory_services

USER = "user-1"
PROMPT = "Build a blog platform with posts and comments"


class FakeRunner:
    """Agent runner stub: returns an artifact id, or plays back scripted failures."""

    def __init__(self, failures=0, delay=0.0):
        self.calls = []
        self.failures = failures
        self.delay = delay

    async def __call__(self, project, task):
        self.calls.append(task.assigned_agent)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            self.failures -= 1
            raise RuntimeError("model overloaded")
        return f"art-{task.order}"


async def _start(orchestrator):
    project = await orchestrator.create_project(USER, "Blog", PROMPT)
    await orchestrator.start(project.project_id)
    return project.project_id


def test_dedup_key_buckets_by_window():
    assert dedup_key("proj-1", "ProductManagerAgent", now=125, window=60) == \
        "proj-1-ProductManagerAgent-2"
    assert dedup_key("proj-1", "ProductManagerAgent", now=179, window=60) == \
        dedup_key("proj-1", "ProductManagerAgent", now=120, window=60)


def test_completion_status_honours_approval_agents():
    approval = {"ProductManagerAgent"}
    assert completion_status(AgentName.PRODUCT_MANAGER, approval) == TaskStatus.PENDING_APPROVAL
    assert completion_status("BackendEngineerAgent", approval) == TaskStatus.DONE


def test_dispatcher_runs_agent_and_waits_for_approval(orchestrator):
    runner = FakeRunner()
    dispatcher = AgentDispatcher(orchestrator, runner, approval_agents={"ProductManagerAgent"})

    async def scenario():
        pid = await _start(orchestrator)
        result = await dispatcher.handle(DispatchMessage(pid, "ProductManagerAgent"))
        return result

    result = asyncio.run(scenario())

    assert result.task.status == TaskStatus.PENDING_APPROVAL
    assert result.task.output_artifact_id == "art-1"
    assert runner.calls == [AgentName.PRODUCT_MANAGER]


def test_dispatcher_retries_then_succeeds(orchestrator, queue):
    runner = FakeRunner(failures=1)
    dispatcher = AgentDispatcher(orchestrator, runner, approval_agents=())

    async def scenario():
        pid = await _start(orchestrator)
        return await dispatcher.handle(DispatchMessage(pid, "ProductManagerAgent"))

    result = asyncio.run(scenario())

    assert len(runner.calls) == 2
    assert result.task.status == TaskStatus.DONE
    assert queue.agents[-1] == "BackendEngineerAgent"


def test_dispatcher_fails_task_after_timeouts(orchestrator):
    runner = FakeRunner(delay=1.0)
    dispatcher = AgentDispatcher(
        orchestrator, runner, approval_agents=(),
        timeouts={"ProductManagerAgent": 0.01},
        attempts={"ProductManagerAgent": 2},
    )

    async def scenario():
        pid = await _start(orchestrator)
        return await dispatcher.handle(DispatchMessage(pid, "ProductManagerAgent"))

    result = asyncio.run(scenario())

    assert len(runner.calls) == 2
    assert result.task.status == TaskStatus.FAILED
    assert "timed out" in result.task.error_message
    assert result.project.status == ProjectStatus.FAILED


def test_duplicate_delivery_is_dropped(orchestrator):
    runner = FakeRunner()
    dispatcher = AgentDispatcher(orchestrator, runner, approval_agents={"ProductManagerAgent"})

    async def scenario():
        pid = await _start(orchestrator)
        message = DispatchMessage(pid, "ProductManagerAgent")
        await dispatcher.handle(message)
        return await dispatcher.handle(message)

    assert asyncio.run(scenario()) is None
    assert len(runner.calls) == 1


def test_unknown_agent_is_dropped(orchestrator):
    dispatcher = AgentDispatcher(orchestrator, FakeRunner())

    async def scenario():
        pid = await _start(orchestrator)
        return await dispatcher.handle(DispatchMessage(pid, "QaAgent"))

    assert asyncio.run(scenario()) is None


def test_in_process_queue_collapses_duplicates():
    handled = []

    async def handler(message):
        handled.append(message.agent_name)

    async def scenario():
        queue = InProcessDispatchQueue(handler)
        message = DispatchMessage("proj-1", "ProductManagerAgent")
        await queue.send(message, "proj-1", "proj-1-ProductManagerAgent-1")
        await queue.send(message, "proj-1", "proj-1-ProductManagerAgent-1")
        await queue.send(DispatchMessage("proj-1", "BackendEngineerAgent"), "proj-1", "k2")
        await queue.drain()
        return queue

    queue = asyncio.run(scenario())

    assert handled == ["ProductManagerAgent", "BackendEngineerAgent"]
    assert queue._tails == {}


def test_in_process_pipeline_end_to_end():
    runner = FakeRunner()

    async def scenario():
        services = memory_services(runner=runner)
        orchestrator = services.orchestrator
        project = await orchestrator.create_project(USER, "Blog", PROMPT)
        pid = project.project_id
        await orchestrator.start(pid, USER)
        await services.queue.drain()
        waiting = await orchestrator.project_status(pid, USER)
        await orchestrator.resume(pid, USER)
        await services.queue.drain()
        return waiting, await orchestrator.get_project(pid, USER)

    waiting, project = asyncio.run(scenario())

    assert waiting["taskCounts"]["PENDING_APPROVAL"] == 1
    assert project.status == ProjectStatus.COMPLETED
    assert runner.calls == [
        AgentName.PRODUCT_MANAGER,
        AgentName.BACKEND_ENGINEER,
        AgentName.FRONTEND_ENGINEER,
        AgentName.DEVOPS_ENGINEER,
    ]
