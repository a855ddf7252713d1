"""
State store port and its two adapters.

The orchestration core only talks to ``StateStore``. ``PostgresStateStore``
runs the synchronous ``features.projects.db`` calls in the default executor;
``InMemoryStateStore`` keeps copies of every record in dicts and is used when
Postgres is unavailable and in tests.

``expected_status`` on the update methods is a compare-and-set guard: the
write only happens if the stored status still equals it, otherwise
``TransitionConflict`` is raised.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from dataclasses import replace
from typing import Any, Protocol

import psycopg2

from features.projects import db as project_db
from features.projects.errors import (
    InfrastructureError,
    NotFound,
    TransitionConflict,
    ValidationFailed,
)
from features.projects.models import (
    ARTIFACT_IDENTITY_FIELDS,
    AgentName,
    Artifact,
    ArtifactType,
    Project,
    ProjectStatus,
    Task,
    TaskStatus,
)

log = logging.getLogger(__name__)


class StateStore(Protocol):
    async def put_project(self, project: Project) -> None: ...
    async def get_project(self, project_id: str) -> Project | None: ...
    async def list_projects(self, user_id: str) -> list[Project]: ...
    async def update_project(self, project_id: str, changes: dict,
                             expected_status: ProjectStatus | None = None) -> Project: ...
    async def delete_project(self, project_id: str) -> None: ...

    async def put_task_if_absent(self, task: Task) -> bool: ...
    async def get_task(self, project_id: str, task_id: str) -> Task | None: ...
    async def list_tasks(self, project_id: str) -> list[Task]: ...
    async def update_task(self, project_id: str, task_id: str, changes: dict,
                          expected_status: TaskStatus | None = None) -> Task: ...

    async def put_artifact(self, artifact: Artifact) -> None: ...
    async def get_artifact(self, project_id: str, artifact_id: str) -> Artifact | None: ...
    async def list_artifacts(self, project_id: str) -> list[Artifact]: ...
    async def update_artifact(self, project_id: str, artifact_id: str, changes: dict) -> Artifact: ...
    async def delete_artifact(self, project_id: str, artifact_id: str) -> None: ...


def _check_artifact_changes(changes: dict) -> None:
    frozen = ARTIFACT_IDENTITY_FIELDS & set(changes)
    if frozen:
        raise ValidationFailed(f"Artifact identity fields are immutable: {', '.join(sorted(frozen))}")


# ── In-memory ─────────────────────────────────────────────────────────

class InMemoryStateStore:
    """Dict-backed store. Records are copied on the way in and out."""

    def __init__(self):
        self.projects: dict[str, Project] = {}
        self.tasks: dict[str, dict[str, Task]] = {}
        self.artifacts: dict[str, dict[str, Artifact]] = {}

    async def put_project(self, project: Project) -> None:
        self.projects[project.project_id] = copy.deepcopy(project)
        self.tasks.setdefault(project.project_id, {})
        self.artifacts.setdefault(project.project_id, {})

    async def get_project(self, project_id: str) -> Project | None:
        project = self.projects.get(project_id)
        return copy.deepcopy(project) if project else None

    async def list_projects(self, user_id: str) -> list[Project]:
        owned = [p for p in self.projects.values() if p.user_id == user_id]
        owned.sort(key=lambda p: p.created_at, reverse=True)
        return copy.deepcopy(owned)

    async def update_project(self, project_id: str, changes: dict,
                             expected_status: ProjectStatus | None = None) -> Project:
        current = self.projects.get(project_id)
        if current is None:
            raise NotFound(f"Project not found: {project_id}")
        if expected_status is not None and current.status != expected_status:
            raise TransitionConflict(
                f"Project {project_id} is {current.status.value}, expected {expected_status.value}"
            )
        updated = replace(current, **changes)
        self.projects[project_id] = updated
        return copy.deepcopy(updated)

    async def delete_project(self, project_id: str) -> None:
        if self.projects.pop(project_id, None) is None:
            raise NotFound(f"Project not found: {project_id}")
        self.tasks.pop(project_id, None)
        self.artifacts.pop(project_id, None)

    async def put_task_if_absent(self, task: Task) -> bool:
        if task.project_id not in self.projects:
            raise NotFound(f"Project not found: {task.project_id}")
        bucket = self.tasks.setdefault(task.project_id, {})
        if task.task_id in bucket:
            return False
        bucket[task.task_id] = copy.deepcopy(task)
        return True

    async def get_task(self, project_id: str, task_id: str) -> Task | None:
        task = self.tasks.get(project_id, {}).get(task_id)
        return copy.deepcopy(task) if task else None

    async def list_tasks(self, project_id: str) -> list[Task]:
        tasks = sorted(self.tasks.get(project_id, {}).values(), key=lambda t: (t.order, t.task_id))
        return copy.deepcopy(tasks)

    async def update_task(self, project_id: str, task_id: str, changes: dict,
                          expected_status: TaskStatus | None = None) -> Task:
        current = self.tasks.get(project_id, {}).get(task_id)
        if current is None:
            raise NotFound(f"Task {task_id} not found in project {project_id}")
        if expected_status is not None and current.status != expected_status:
            raise TransitionConflict(
                f"Task {task_id} is {current.status.value}, expected {expected_status.value}"
            )
        updated = replace(current, **changes)
        self.tasks[project_id][task_id] = updated
        return copy.deepcopy(updated)

    async def put_artifact(self, artifact: Artifact) -> None:
        if artifact.project_id not in self.projects:
            raise NotFound(f"Project not found: {artifact.project_id}")
        self.artifacts.setdefault(artifact.project_id, {})[artifact.artifact_id] = copy.deepcopy(artifact)

    async def get_artifact(self, project_id: str, artifact_id: str) -> Artifact | None:
        artifact = self.artifacts.get(project_id, {}).get(artifact_id)
        return copy.deepcopy(artifact) if artifact else None

    async def list_artifacts(self, project_id: str) -> list[Artifact]:
        artifacts = sorted(self.artifacts.get(project_id, {}).values(), key=lambda a: a.created_at)
        return copy.deepcopy(artifacts)

    async def update_artifact(self, project_id: str, artifact_id: str, changes: dict) -> Artifact:
        _check_artifact_changes(changes)
        current = self.artifacts.get(project_id, {}).get(artifact_id)
        if current is None:
            raise NotFound(f"Artifact {artifact_id} not found in project {project_id}")
        updated = replace(current, **changes)
        self.artifacts[project_id][artifact_id] = updated
        return copy.deepcopy(updated)

    async def delete_artifact(self, project_id: str, artifact_id: str) -> None:
        if self.artifacts.get(project_id, {}).pop(artifact_id, None) is None:
            raise NotFound(f"Artifact {artifact_id} not found in project {project_id}")


# ── Postgres ──────────────────────────────────────────────────────────

def _ts(value: Any) -> Any:
    return value.isoformat() if hasattr(value, "isoformat") else value


def _to_column(value: Any) -> Any:
    return value.value if hasattr(value, "value") else value


def project_from_row(row: dict) -> Project:
    return Project(
        project_id=row["project_id"],
        user_id=row["user_id"],
        project_name=row["project_name"],
        request_prompt=row["request_prompt"],
        status=ProjectStatus(row["status"]),
        created_at=_ts(row["created_at"]),
        updated_at=_ts(row["updated_at"]),
    )


def task_from_row(row: dict) -> Task:
    return Task(
        project_id=row["project_id"],
        task_id=row["task_id"],
        assigned_agent=AgentName(row["assigned_agent"]),
        status=TaskStatus(row["status"]),
        dependencies=list(row.get("dependencies") or []),
        order=row.get("position") or 0,
        description=row.get("description") or "",
        progress=row.get("progress"),
        started_at=_ts(row.get("started_at")),
        completed_at=_ts(row.get("completed_at")),
        error_message=row.get("error_message"),
        output_artifact_id=row.get("output_artifact_id"),
        metadata=dict(row.get("metadata") or {}),
    )


def artifact_from_row(row: dict) -> Artifact:
    return Artifact(
        project_id=row["project_id"],
        artifact_id=row["artifact_id"],
        artifact_type=ArtifactType(row["artifact_type"]),
        location=row["location"],
        version=row.get("version") or "1.0",
        title=row.get("title"),
        description=row.get("description"),
        metadata=dict(row.get("metadata") or {}),
        created_at=_ts(row["created_at"]),
    )


class PostgresStateStore:
    """Adapter over ``features.projects.db``; blocking calls run in the executor."""

    async def _call(self, fn, *args):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, fn, *args)
        except psycopg2.Error as e:
            log.error("Database call %s failed: %s", fn.__name__, e)
            raise InfrastructureError(f"Database error: {e}") from e

    async def put_project(self, project: Project) -> None:
        row = {
            "project_id": project.project_id,
            "user_id": project.user_id,
            "project_name": project.project_name,
            "request_prompt": project.request_prompt,
            "status": project.status.value,
            "created_at": project.created_at,
            "updated_at": project.updated_at,
        }
        await self._call(project_db.insert_project, row)

    async def get_project(self, project_id: str) -> Project | None:
        row = await self._call(project_db.get_project, project_id)
        return project_from_row(row) if row else None

    async def list_projects(self, user_id: str) -> list[Project]:
        rows = await self._call(project_db.list_projects_for_user, user_id)
        return [project_from_row(r) for r in rows]

    async def update_project(self, project_id: str, changes: dict,
                             expected_status: ProjectStatus | None = None) -> Project:
        columns = {k: _to_column(v) for k, v in changes.items()}
        row = await self._call(
            project_db.update_project, project_id, columns, _to_column(expected_status),
        )
        if row:
            return project_from_row(row)
        current = await self.get_project(project_id)
        if current is None or expected_status is None:
            raise NotFound(f"Project not found: {project_id}")
        raise TransitionConflict(
            f"Project {project_id} is {current.status.value}, expected {expected_status.value}"
        )

    async def delete_project(self, project_id: str) -> None:
        if not await self._call(project_db.delete_project, project_id):
            raise NotFound(f"Project not found: {project_id}")

    async def put_task_if_absent(self, task: Task) -> bool:
        row = {
            "project_id": task.project_id,
            "task_id": task.task_id,
            "assigned_agent": task.assigned_agent.value,
            "status": task.status.value,
            "dependencies": task.dependencies,
            "position": task.order,
            "description": task.description,
            "progress": task.progress,
            "started_at": task.started_at,
            "completed_at": task.completed_at,
            "error_message": task.error_message,
            "output_artifact_id": task.output_artifact_id,
            "metadata": task.metadata,
        }
        return await self._call(project_db.insert_task_if_absent, row)

    async def get_task(self, project_id: str, task_id: str) -> Task | None:
        row = await self._call(project_db.get_task, project_id, task_id)
        return task_from_row(row) if row else None

    async def list_tasks(self, project_id: str) -> list[Task]:
        rows = await self._call(project_db.list_tasks, project_id)
        return [task_from_row(r) for r in rows]

    async def update_task(self, project_id: str, task_id: str, changes: dict,
                          expected_status: TaskStatus | None = None) -> Task:
        columns = {k: _to_column(v) for k, v in changes.items()}
        row = await self._call(
            project_db.update_task, project_id, task_id, columns, _to_column(expected_status),
        )
        if row:
            return task_from_row(row)
        current = await self.get_task(project_id, task_id)
        if current is None or expected_status is None:
            raise NotFound(f"Task {task_id} not found in project {project_id}")
        raise TransitionConflict(
            f"Task {task_id} is {current.status.value}, expected {expected_status.value}"
        )

    async def put_artifact(self, artifact: Artifact) -> None:
        row = {
            "project_id": artifact.project_id,
            "artifact_id": artifact.artifact_id,
            "artifact_type": artifact.artifact_type.value,
            "location": artifact.location,
            "version": artifact.version,
            "title": artifact.title,
            "description": artifact.description,
            "metadata": artifact.metadata,
            "created_at": artifact.created_at,
        }
        await self._call(project_db.insert_artifact, row)

    async def get_artifact(self, project_id: str, artifact_id: str) -> Artifact | None:
        row = await self._call(project_db.get_artifact, project_id, artifact_id)
        return artifact_from_row(row) if row else None

    async def list_artifacts(self, project_id: str) -> list[Artifact]:
        rows = await self._call(project_db.list_artifacts, project_id)
        return [artifact_from_row(r) for r in rows]

    async def update_artifact(self, project_id: str, artifact_id: str, changes: dict) -> Artifact:
        _check_artifact_changes(changes)
        columns = {k: _to_column(v) for k, v in changes.items()}
        row = await self._call(project_db.update_artifact, project_id, artifact_id, columns)
        if not row:
            raise NotFound(f"Artifact {artifact_id} not found in project {project_id}")
        return artifact_from_row(row)

    async def delete_artifact(self, project_id: str, artifact_id: str) -> None:
        if not await self._call(project_db.delete_artifact, project_id, artifact_id):
            raise NotFound(f"Artifact {artifact_id} not found in project {project_id}")
