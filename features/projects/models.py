"""
Data models for the projects feature.

Project, Task and Artifact are the records the orchestration core reads and
mutates. Status changes are only legal along the transition tables below;
everything that writes a status goes through ``check_task_transition`` or
``check_project_transition`` first.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from features.projects.errors import InvalidTransition, ValidationFailed

PROJECT_NAME_MAX = 100
REQUEST_PROMPT_MIN = 10
REQUEST_PROMPT_MAX = 2000


class ProjectStatus(str, Enum):
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class TaskStatus(str, Enum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    DONE = "DONE"
    FAILED = "FAILED"
    PENDING_APPROVAL = "PENDING_APPROVAL"


class AgentName(str, Enum):
    PRODUCT_MANAGER = "ProductManagerAgent"
    BACKEND_ENGINEER = "BackendEngineerAgent"
    FRONTEND_ENGINEER = "FrontendEngineerAgent"
    DEVOPS_ENGINEER = "DevOpsEngineerAgent"


class ArtifactType(str, Enum):
    SRS_DOCUMENT = "SRS_DOCUMENT"
    SOURCE_CODE = "SOURCE_CODE"
    DEPLOYMENT_URL = "DEPLOYMENT_URL"
    TEST_REPORT = "TEST_REPORT"


TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.TODO: frozenset({TaskStatus.IN_PROGRESS}),
    TaskStatus.IN_PROGRESS: frozenset(
        {TaskStatus.DONE, TaskStatus.FAILED, TaskStatus.PENDING_APPROVAL}
    ),
    TaskStatus.DONE: frozenset(),
    TaskStatus.FAILED: frozenset({TaskStatus.TODO}),
    TaskStatus.PENDING_APPROVAL: frozenset({TaskStatus.DONE, TaskStatus.TODO}),
}

PROJECT_TRANSITIONS: dict[ProjectStatus, frozenset[ProjectStatus]] = {
    ProjectStatus.PENDING: frozenset({ProjectStatus.IN_PROGRESS, ProjectStatus.FAILED}),
    ProjectStatus.IN_PROGRESS: frozenset({ProjectStatus.COMPLETED, ProjectStatus.FAILED}),
    ProjectStatus.COMPLETED: frozenset(),
    ProjectStatus.FAILED: frozenset({ProjectStatus.PENDING}),
}

# Fixed agent pipeline, in execution order
PIPELINE: tuple[tuple[AgentName, str], ...] = (
    (AgentName.PRODUCT_MANAGER, "Analyze requirements and create SRS document"),
    (AgentName.BACKEND_ENGINEER, "Design database schema and create backend APIs"),
    (AgentName.FRONTEND_ENGINEER, "Create React components and user interface"),
    (AgentName.DEVOPS_ENGINEER, "Deploy application to cloud infrastructure"),
)


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_project_id() -> str:
    return f"proj-{uuid.uuid4().hex[:12]}"


def new_artifact_id() -> str:
    return f"art-{uuid.uuid4().hex[:12]}"


def seed_task_id(position: int, agent: AgentName) -> str:
    """Deterministic id so that re-running seeding never duplicates a task."""
    return f"task-{position}-{agent.value}"


def check_task_transition(current: TaskStatus, target: TaskStatus) -> None:
    if target not in TASK_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Invalid task status transition from {current.value} to {target.value}"
        )


def check_project_transition(current: ProjectStatus, target: ProjectStatus) -> None:
    if target not in PROJECT_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Invalid project status transition from {current.value} to {target.value}"
        )


def validate_project_fields(name: str | None = None, prompt: str | None = None) -> None:
    """Apply the request bounds to a project name and/or prompt."""
    if name is not None:
        stripped = name.strip()
        if not stripped:
            raise ValidationFailed("Project name is required")
        if len(stripped) > PROJECT_NAME_MAX:
            raise ValidationFailed("Project name too long")
    if prompt is not None:
        stripped = prompt.strip()
        if len(stripped) < REQUEST_PROMPT_MIN:
            raise ValidationFailed(
                f"Request prompt must be at least {REQUEST_PROMPT_MIN} characters"
            )
        if len(stripped) > REQUEST_PROMPT_MAX:
            raise ValidationFailed("Request prompt too long")


def validate_progress(progress: int) -> None:
    if isinstance(progress, bool) or not isinstance(progress, int) or not 0 <= progress <= 100:
        raise ValidationFailed(f"Progress must be an integer between 0 and 100, got {progress!r}")


@dataclass
class Project:
    """A user's request, fulfilled by the agent pipeline."""
    project_id: str
    user_id: str
    project_name: str
    request_prompt: str
    status: ProjectStatus = ProjectStatus.PENDING
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "projectId": self.project_id,
            "userId": self.user_id,
            "projectName": self.project_name,
            "requestPrompt": self.request_prompt,
            "status": self.status.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class Task:
    """One agent's unit of work inside a project."""
    project_id: str
    task_id: str
    assigned_agent: AgentName
    status: TaskStatus = TaskStatus.TODO
    dependencies: list[str] = field(default_factory=list)
    order: int = 0
    description: str = ""
    progress: int | None = None
    started_at: str | None = None
    completed_at: str | None = None
    error_message: str | None = None
    output_artifact_id: str | None = None
    metadata: dict = field(default_factory=dict)

    def __post_init__(self) -> None:
        # set semantics, first occurrence wins
        self.dependencies = list(dict.fromkeys(self.dependencies))
        if self.task_id in self.dependencies:
            raise ValidationFailed(f"Task {self.task_id} cannot depend on itself")
        if self.progress is not None:
            validate_progress(self.progress)

    def to_dict(self) -> dict[str, Any]:
        return {
            "projectId": self.project_id,
            "taskId": self.task_id,
            "assignedAgent": self.assigned_agent.value,
            "status": self.status.value,
            "dependencies": list(self.dependencies),
            "order": self.order,
            "description": self.description,
            "progress": self.progress,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "errorMessage": self.error_message,
            "outputArtifactId": self.output_artifact_id,
            "metadata": dict(self.metadata),
        }


ARTIFACT_IDENTITY_FIELDS = frozenset({"project_id", "artifact_id", "created_at"})


@dataclass
class Artifact:
    """A document, repository or URL produced by an agent."""
    project_id: str
    artifact_id: str
    artifact_type: ArtifactType
    location: str
    version: str = "1.0"
    title: str | None = None
    description: str | None = None
    metadata: dict = field(default_factory=dict)
    created_at: str = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        return {
            "projectId": data["project_id"],
            "artifactId": data["artifact_id"],
            "artifactType": self.artifact_type.value,
            "location": data["location"],
            "version": data["version"],
            "title": data["title"],
            "description": data["description"],
            "metadata": data["metadata"],
            "createdAt": data["created_at"],
        }


def build_seed_tasks(project_id: str) -> list[Task]:
    """The four pipeline tasks, each depending on the one before it."""
    tasks: list[Task] = []
    previous: str | None = None
    for position, (agent, description) in enumerate(PIPELINE, start=1):
        task_id = seed_task_id(position, agent)
        tasks.append(Task(
            project_id=project_id,
            task_id=task_id,
            assigned_agent=agent,
            dependencies=[previous] if previous else [],
            order=position,
            description=description,
        ))
        previous = task_id
    return tasks
