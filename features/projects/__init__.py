"""
Projects feature — projects, their pipeline tasks and produced artifacts.

Public API:
    from features.projects import Project, Task, Artifact, TaskStatus
    from features.projects.orchestrator import Orchestrator
    from features.projects import db as project_db
"""

from features.projects.models import (
    AgentName,
    Artifact,
    ArtifactType,
    Project,
    ProjectStatus,
    Task,
    TaskStatus,
)

__all__ = [
    "AgentName",
    "Artifact",
    "ArtifactType",
    "Project",
    "ProjectStatus",
    "Task",
    "TaskStatus",
]
