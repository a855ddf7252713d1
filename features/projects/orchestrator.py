"""
Orchestration core — owns every Project/Task status change.

Creation seeds the fixed agent pipeline; ``start`` dispatches the first
runnable task; the dispatch consumer reports back through ``begin_task`` and
``advance``; humans unblock approval-gated tasks through ``resume`` and
``reject``. Every write is checked against the transition tables and applied
as a conditional update on the previous status, so a duplicate delivery loses
the race instead of being processed twice. After every state change exactly
one notification is published; fan-out failures never reach this module.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

import config
from features.dispatch.queue import DispatchMessage, DispatchQueue, dedup_key
from features.projects.errors import (
    DependenciesUnsatisfied,
    Forbidden,
    InfrastructureError,
    InvalidTransition,
    NoTaskPendingApproval,
    NotFound,
    PipelineBusy,
    ProjectActive,
    ValidationFailed,
)
from features.projects.models import (
    AgentName,
    Project,
    ProjectStatus,
    Task,
    TaskStatus,
    build_seed_tasks,
    check_project_transition,
    check_task_transition,
    new_project_id,
    utcnow,
    validate_progress,
    validate_project_fields,
)
from features.projects.resolver import (
    dependencies_satisfied,
    next_executable,
    pipeline_finished,
    validate_task_set,
)
from features.projects.store import StateStore

if TYPE_CHECKING:
    from features.notifications.fanout import Notifier

log = logging.getLogger(__name__)

TASK_UPDATE = "task_update"
PROJECT_UPDATE = "project_update"

_ACTIVE = (TaskStatus.IN_PROGRESS, TaskStatus.PENDING_APPROVAL)


@dataclass
class AdvanceResult:
    """What a state change did to the pipeline."""
    task: Task | None
    project: Project
    next_agent: AgentName | None = None
    project_completed: bool = False
    events: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task": self.task.to_dict() if self.task else None,
            "project": self.project.to_dict(),
            "nextAgent": self.next_agent.value if self.next_agent else None,
            "projectCompleted": self.project_completed,
            "status": self.project.status.value,
        }


class Orchestrator:
    """State machine over one store, one dispatch queue and one notifier."""

    def __init__(
        self,
        store: StateStore,
        queue: DispatchQueue,
        notifier: Notifier,
        *,
        clock: Callable[[], float] = time.time,
        dedup_window: int = config.DISPATCH_DEDUP_WINDOW_SEC,
    ):
        self.store = store
        self.queue = queue
        self.notifier = notifier
        self._clock = clock
        self._dedup_window = dedup_window

    # ── Projects ──────────────────────────────────────────────────────

    async def create_project(self, user_id: str, project_name: str, request_prompt: str) -> Project:
        """Create a PENDING project and its four TODO seed tasks. Does not dispatch."""
        if not user_id:
            raise ValidationFailed("User ID is required")
        validate_project_fields(project_name, request_prompt)
        project = Project(
            project_id=new_project_id(),
            user_id=user_id,
            project_name=project_name.strip(),
            request_prompt=request_prompt.strip(),
        )
        await self.store.put_project(project)
        log.info("[PROJECT] Created: %s — %s (user %s)", project.project_id, project.project_name, user_id)
        await self.ensure_seeded(project.project_id)
        return project

    async def ensure_seeded(self, project_id: str) -> list[Task]:
        """Write whichever seed tasks are missing. Safe to call any number of times."""
        seeds = build_seed_tasks(project_id)
        validate_task_set(seeds)
        existing = {t.task_id for t in await self.store.list_tasks(project_id)}
        for task in seeds:
            if task.task_id in existing:
                continue
            if await self.store.put_task_if_absent(task):
                log.info("[TASK] Seeded: %s — %s", task.task_id, task.assigned_agent.value)
        return await self.store.list_tasks(project_id)

    async def get_project(self, project_id: str, user_id: str | None = None) -> Project:
        """Fetch a project; when ``user_id`` is given the caller must own it."""
        project = await self.store.get_project(project_id)
        if project is None:
            raise NotFound(f"Project not found: {project_id}")
        if user_id is not None and project.user_id != user_id:
            raise Forbidden("Access denied")
        return project

    async def list_projects(self, user_id: str) -> list[Project]:
        return await self.store.list_projects(user_id)

    async def list_tasks(self, project_id: str, user_id: str | None = None) -> list[Task]:
        await self.get_project(project_id, user_id)
        return await self.store.list_tasks(project_id)

    async def update_project(
        self,
        project_id: str,
        user_id: str | None = None,
        *,
        project_name: str | None = None,
        request_prompt: str | None = None,
        status: ProjectStatus | None = None,
    ) -> Project:
        project = await self.get_project(project_id, user_id)
        validate_project_fields(project_name, request_prompt)
        changes: dict[str, Any] = {}
        if project_name is not None:
            changes["project_name"] = project_name.strip()
        if request_prompt is not None:
            changes["request_prompt"] = request_prompt.strip()
        if status is not None and status != project.status:
            check_project_transition(project.status, status)
            changes["status"] = status
        if not changes:
            return project
        changes["updated_at"] = utcnow()
        updated = await self.store.update_project(
            project_id, changes, expected_status=project.status,
        )
        if "status" in changes:
            await self._publish(updated, PROJECT_UPDATE, {"status": updated.status.value})
        return updated

    async def delete_project(self, project_id: str, user_id: str | None = None) -> None:
        """Delete a project with its tasks and artifacts. Refused while running."""
        project = await self.get_project(project_id, user_id)
        if project.status == ProjectStatus.IN_PROGRESS:
            raise ProjectActive("Cannot delete project while it is in progress")
        await self.store.delete_project(project_id)
        log.info("[PROJECT] Deleted: %s", project_id)

    async def project_status(self, project_id: str, user_id: str | None = None) -> dict[str, Any]:
        project = await self.get_project(project_id, user_id)
        tasks = await self.store.list_tasks(project_id)
        counts = {s.value: 0 for s in TaskStatus}
        for t in tasks:
            counts[t.status.value] += 1
        progress = round(sum(t.progress or 0 for t in tasks) / len(tasks)) if tasks else 0
        nxt = next_executable(tasks)
        return {
            "projectId": project.project_id,
            "status": project.status.value,
            "progress": progress,
            "totalTasks": len(tasks),
            "taskCounts": counts,
            "nextExecutableTask": nxt.to_dict() if nxt else None,
        }

    # ── Dispatch ──────────────────────────────────────────────────────

    async def start(self, project_id: str, user_id: str | None = None) -> AdvanceResult:
        """Begin (or re-trigger) execution: enqueue the next runnable task."""
        project = await self.get_project(project_id, user_id)
        if project.status in (ProjectStatus.COMPLETED, ProjectStatus.FAILED):
            raise InvalidTransition(
                f"Cannot start project {project_id} in status {project.status.value}"
            )
        tasks = await self.ensure_seeded(project_id)
        active = [t for t in tasks if t.status in _ACTIVE]
        if active:
            raise PipelineBusy(
                f"Task {active[0].task_id} is {active[0].status.value}; pipeline already running"
            )

        nxt = next_executable(tasks)
        finished = pipeline_finished(tasks)
        if nxt is None and not finished:
            raise InvalidTransition(f"Project {project_id} has no runnable task")

        if project.status == ProjectStatus.PENDING:
            project = await self._set_project_status(project, ProjectStatus.IN_PROGRESS)

        if nxt is None:
            project = await self._set_project_status(project, ProjectStatus.COMPLETED)
            await self._publish(project, PROJECT_UPDATE, {
                "status": project.status.value,
                "message": "All agents completed successfully",
            })
            return AdvanceResult(None, project, project_completed=True, events=[PROJECT_UPDATE])

        await self._enqueue(project_id, nxt.assigned_agent)
        await self._publish(project, PROJECT_UPDATE, {
            "status": project.status.value,
            "nextAgent": nxt.assigned_agent.value,
            "message": "Orchestration started",
        })
        return AdvanceResult(None, project, next_agent=nxt.assigned_agent, events=[PROJECT_UPDATE])

    async def begin_task(self, project_id: str, agent: AgentName) -> Task | None:
        """Dispatch-consumer entry: move the agent's task TODO → IN_PROGRESS.

        Returns None when the message is stale (task missing or no longer
        TODO), which is how duplicate deliveries are dropped.
        """
        project = await self.get_project(project_id)
        tasks = await self.store.list_tasks(project_id)
        task = next((t for t in tasks if t.assigned_agent == agent), None)
        if task is None:
            log.error("[DISPATCH] No task for %s in project %s", agent.value, project_id)
            return None
        if task.status != TaskStatus.TODO:
            log.warning(
                "[DISPATCH] Ignoring delivery for %s: task %s is %s",
                agent.value, task.task_id, task.status.value,
            )
            return None
        if not dependencies_satisfied(task, tasks):
            raise DependenciesUnsatisfied(
                f"Task {task.task_id} has unfinished dependencies: {', '.join(task.dependencies)}"
            )

        task = await self._transition(task, TaskStatus.IN_PROGRESS, {
            "started_at": utcnow(),
            "completed_at": None,
            "progress": 0,
            "error_message": None,
        })
        if project.status == ProjectStatus.PENDING:
            project = await self._set_project_status(project, ProjectStatus.IN_PROGRESS)
        await self._publish(project, TASK_UPDATE, self._task_payload(task))
        return task

    async def report_progress(self, project_id: str, task_id: str, progress: int) -> Task:
        validate_progress(progress)
        task = await self._get_task(project_id, task_id)
        if task.status != TaskStatus.IN_PROGRESS:
            raise InvalidTransition(
                f"Cannot report progress on task {task_id} in status {task.status.value}"
            )
        task = await self.store.update_task(
            project_id, task_id, {"progress": progress}, expected_status=TaskStatus.IN_PROGRESS,
        )
        project = await self.get_project(project_id)
        await self._publish(project, TASK_UPDATE, self._task_payload(task))
        return task

    async def advance(
        self,
        project_id: str,
        task_id: str,
        status: TaskStatus,
        *,
        output_artifact_id: str | None = None,
        error_message: str | None = None,
    ) -> AdvanceResult:
        """An agent finished task ``task_id``: apply ``status`` and move the pipeline on."""
        task = await self._get_task(project_id, task_id)
        if task.status != TaskStatus.IN_PROGRESS:
            raise InvalidTransition(
                f"Task {task_id} is {task.status.value}; only IN_PROGRESS tasks can be advanced"
            )
        check_task_transition(task.status, status)

        changes: dict[str, Any] = {}
        if output_artifact_id:
            changes["output_artifact_id"] = output_artifact_id
        if status == TaskStatus.DONE:
            changes.update(completed_at=utcnow(), progress=100)
        elif status == TaskStatus.PENDING_APPROVAL:
            changes.update(progress=100)
        elif status == TaskStatus.FAILED:
            changes.update(
                completed_at=utcnow(),
                error_message=error_message or "Agent execution failed",
            )
        task = await self._transition(task, status, changes)

        if status == TaskStatus.DONE:
            return await self._continue_pipeline(task)

        project = await self.get_project(project_id)
        if status == TaskStatus.PENDING_APPROVAL:
            log.info("[TASK] Awaiting approval: %s — %s", task.task_id, task.assigned_agent.value)
            await self._publish(project, TASK_UPDATE, self._task_payload(task))
            return AdvanceResult(task, project, events=[TASK_UPDATE])

        # FAILED: the pipeline stops until an explicit restart
        if project.status in (ProjectStatus.PENDING, ProjectStatus.IN_PROGRESS):
            project = await self._set_project_status(project, ProjectStatus.FAILED)
        await self._publish(project, PROJECT_UPDATE, {
            **self._task_payload(task),
            "projectStatus": project.status.value,
            "message": f"Agent {task.assigned_agent.value} failed",
        })
        return AdvanceResult(task, project, events=[PROJECT_UPDATE])

    # ── Approval gate ─────────────────────────────────────────────────

    async def resume(
        self,
        project_id: str,
        user_id: str | None = None,
        task_id: str | None = None,
        feedback: str | None = None,
        *,
        approve: bool = True,
    ) -> AdvanceResult:
        """Approve the task waiting for sign-off and continue the pipeline."""
        if not approve:
            return await self.reject(project_id, user_id, task_id, feedback)

        await self.get_project(project_id, user_id)
        task = await self._pending_approval_task(project_id, task_id)

        changes: dict[str, Any] = {"completed_at": utcnow(), "progress": 100}
        if feedback:
            changes["metadata"] = {**task.metadata, "userFeedback": feedback}
        task = await self._transition(task, TaskStatus.DONE, changes)
        log.info("[TASK] Approved: %s — %s", task.task_id, task.assigned_agent.value)

        project = await self.get_project(project_id)
        await self._publish(project, TASK_UPDATE, {
            **self._task_payload(task),
            "approved": True,
            "feedback": feedback,
        })
        result = await self._continue_pipeline(task)
        result.events.insert(0, TASK_UPDATE)
        return result

    async def reject(
        self,
        project_id: str,
        user_id: str | None = None,
        task_id: str | None = None,
        reason: str | None = None,
    ) -> AdvanceResult:
        """Send an approval-gated task back to TODO without advancing the pipeline."""
        await self.get_project(project_id, user_id)
        task = await self._pending_approval_task(project_id, task_id)
        task = await self._transition(task, TaskStatus.TODO, {
            "progress": 0,
            "started_at": None,
            "completed_at": None,
            "error_message": reason or "Changes requested",
        })
        log.info("[TASK] Rejected: %s — %s", task.task_id, reason or "changes requested")

        project = await self.get_project(project_id)
        await self._publish(project, TASK_UPDATE, {
            **self._task_payload(task),
            "approved": False,
            "feedback": reason,
        })
        return AdvanceResult(task, project, events=[TASK_UPDATE])

    # ── Retry ─────────────────────────────────────────────────────────

    async def retry_task(self, project_id: str, task_id: str) -> Task:
        """FAILED → TODO so the task can be dispatched again."""
        task = await self._get_task(project_id, task_id)
        task = await self._transition(task, TaskStatus.TODO, {
            "progress": 0,
            "started_at": None,
            "completed_at": None,
        })
        project = await self.get_project(project_id)
        await self._publish(project, TASK_UPDATE, self._task_payload(task))
        return task

    async def restart(self, project_id: str, user_id: str | None = None) -> Project:
        """FAILED project → PENDING with every failed task reset. Follow with ``start``."""
        project = await self.get_project(project_id, user_id)
        check_project_transition(project.status, ProjectStatus.PENDING)
        for task in await self.store.list_tasks(project_id):
            if task.status == TaskStatus.FAILED:
                await self._transition(task, TaskStatus.TODO, {
                    "progress": 0,
                    "started_at": None,
                    "completed_at": None,
                })
        await self.ensure_seeded(project_id)
        project = await self._set_project_status(project, ProjectStatus.PENDING)
        await self._publish(project, PROJECT_UPDATE, {
            "status": project.status.value,
            "message": "Project restarted",
        })
        return project

    async def update_task(
        self,
        project_id: str,
        task_id: str,
        *,
        status: TaskStatus | None = None,
        progress: int | None = None,
        error_message: str | None = None,
        output_artifact_id: str | None = None,
    ) -> Task:
        """Worker-facing patch, routed to the transition path that owns it.

        Tasks awaiting approval are left to ``resume`` and ``reject``, which check ownership.
        """
        task = await self._get_task(project_id, task_id)
        if task.status == TaskStatus.PENDING_APPROVAL:
            raise InvalidTransition(
                f"Task {task_id} is awaiting approval; use resume or reject as the project owner"
            )
        if status is None or (status == task.status == TaskStatus.IN_PROGRESS):
            if progress is None:
                raise ValidationFailed("Nothing to update")
            return await self.report_progress(project_id, task_id, progress)

        check_task_transition(task.status, status)
        if status == TaskStatus.IN_PROGRESS:
            started = await self.begin_task(project_id, task.assigned_agent)
            if started is None:
                raise InvalidTransition(f"Task {task_id} could not be started")
            return started
        if task.status == TaskStatus.IN_PROGRESS:
            result = await self.advance(
                project_id, task_id, status,
                output_artifact_id=output_artifact_id,
                error_message=error_message,
            )
            return result.task
        return await self.retry_task(project_id, task_id)

    # ── Internals ─────────────────────────────────────────────────────

    async def _continue_pipeline(self, task: Task) -> AdvanceResult:
        """After ``task`` reached DONE: enqueue the next runnable task or complete the project."""
        project_id = task.project_id
        tasks = await self.store.list_tasks(project_id)
        project = await self.get_project(project_id)
        nxt = next_executable(tasks)

        if nxt is not None:
            await self._enqueue(project_id, nxt.assigned_agent)
            await self._publish(project, TASK_UPDATE, {
                **self._task_payload(task),
                "nextAgent": nxt.assigned_agent.value,
            })
            return AdvanceResult(task, project, next_agent=nxt.assigned_agent, events=[TASK_UPDATE])

        if pipeline_finished(tasks):
            project = await self._set_project_status(project, ProjectStatus.COMPLETED)
            log.info("[PROJECT] All agents completed for %s", project_id)
            await self._publish(project, PROJECT_UPDATE, {
                **self._task_payload(task),
                "projectStatus": project.status.value,
                "message": "All agents completed successfully",
            })
            return AdvanceResult(task, project, project_completed=True, events=[PROJECT_UPDATE])

        log.warning("[PROJECT] %s halted: no runnable task after %s", project_id, task.task_id)
        await self._publish(project, TASK_UPDATE, self._task_payload(task))
        return AdvanceResult(task, project, events=[TASK_UPDATE])

    async def _pending_approval_task(self, project_id: str, task_id: str | None) -> Task:
        tasks = await self.store.list_tasks(project_id)
        if task_id:
            match = next((t for t in tasks if t.task_id == task_id), None)
            if match is None:
                raise NotFound(f"Task {task_id} not found in project {project_id}")
            if match.status != TaskStatus.PENDING_APPROVAL:
                raise NoTaskPendingApproval(f"Task {task_id} is not pending approval")
            return match
        pending = [t for t in tasks if t.status == TaskStatus.PENDING_APPROVAL]
        if not pending:
            raise NoTaskPendingApproval("No task pending approval found")
        if len(pending) > 1:
            log.warning(
                "[TASK] %d tasks pending approval in %s; taking %s",
                len(pending), project_id, pending[0].task_id,
            )
        return pending[0]

    async def _get_task(self, project_id: str, task_id: str) -> Task:
        task = await self.store.get_task(project_id, task_id)
        if task is None:
            raise NotFound(f"Task {task_id} not found in project {project_id}")
        return task

    async def _transition(self, task: Task, target: TaskStatus, changes: dict) -> Task:
        check_task_transition(task.status, target)
        updated = await self.store.update_task(
            task.project_id, task.task_id,
            {**changes, "status": target},
            expected_status=task.status,
        )
        log.info(
            "[TASK] %s: %s → %s", updated.task_id, task.status.value, updated.status.value,
        )
        return updated

    async def _set_project_status(self, project: Project, target: ProjectStatus) -> Project:
        check_project_transition(project.status, target)
        updated = await self.store.update_project(
            project.project_id,
            {"status": target, "updated_at": utcnow()},
            expected_status=project.status,
        )
        log.info("[PROJECT] %s: %s → %s", project.project_id, project.status.value, target.value)
        return updated

    async def _enqueue(self, project_id: str, agent: AgentName) -> None:
        message = DispatchMessage(project_id=project_id, agent_name=agent.value)
        key = dedup_key(project_id, agent.value, self._clock(), self._dedup_window)
        try:
            await self.queue.send(message, group_key=project_id, dedup_key=key)
        except Exception as e:
            if isinstance(e, InfrastructureError):
                raise
            log.error("[DISPATCH] Failed to queue %s for project %s: %s", agent.value, project_id, e)
            raise InfrastructureError(f"Failed to queue agent task {agent.value}: {e}") from e
        log.info("[DISPATCH] Queued %s for project %s", agent.value, project_id)

    async def _publish(self, project: Project, event_type: str, data: dict) -> None:
        await self.notifier.publish(project.project_id, event_type, data)

    @staticmethod
    def _task_payload(task: Task) -> dict[str, Any]:
        return {
            "taskId": task.task_id,
            "agentName": task.assigned_agent.value,
            "status": task.status.value,
            "progress": task.progress,
            "errorMessage": task.error_message,
            "outputArtifactId": task.output_artifact_id,
        }
