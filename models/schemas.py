"""
Pydantic request bodies for the HTTP and WebSocket surface.

Field names are camelCase on the wire; handlers use the snake_case
attributes.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from features.projects.models import ArtifactType, ProjectStatus, TaskStatus


class _Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CreateProjectRequest(_Body):
    project_name: str = Field(min_length=1, max_length=100)
    request_prompt: str = Field(min_length=10, max_length=2000)


class UpdateProjectRequest(_Body):
    project_name: str | None = Field(default=None, min_length=1, max_length=100)
    request_prompt: str | None = Field(default=None, min_length=10, max_length=2000)
    status: ProjectStatus | None = None


class ResumeRequest(_Body):
    task_id: str | None = None
    feedback: str | None = None
    approve: bool = True


class RejectRequest(_Body):
    task_id: str | None = None
    reason: str | None = None


class TaskUpdateRequest(_Body):
    status: TaskStatus | None = None
    progress: int | None = Field(default=None, ge=0, le=100)
    error_message: str | None = None
    output_artifact_id: str | None = None


class ArtifactUpdateRequest(_Body):
    artifact_type: ArtifactType | None = None
    location: str | None = None
    version: str | None = None
    title: str | None = None
    description: str | None = None
    metadata: dict[str, Any] | None = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class SubscriptionMessage(_Body):
    action: Literal["subscribe", "unsubscribe"]
    project_id: str | None = None
