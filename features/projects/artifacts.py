"""
Artifact catalog — records of what the agents produced for a project.
"""

from __future__ import annotations

import logging

from features.projects.errors import NotFound, ValidationFailed
from features.projects.models import Artifact, ArtifactType, new_artifact_id
from features.projects.store import StateStore

log = logging.getLogger(__name__)


class ArtifactCatalog:
    def __init__(self, store: StateStore):
        self.store = store

    async def create(
        self,
        project_id: str,
        artifact_type: ArtifactType,
        location: str,
        *,
        version: str = "1.0",
        title: str | None = None,
        description: str | None = None,
        metadata: dict | None = None,
    ) -> Artifact:
        if not location:
            raise ValidationFailed("Artifact location is required")
        artifact = Artifact(
            project_id=project_id,
            artifact_id=new_artifact_id(),
            artifact_type=artifact_type,
            location=location,
            version=version,
            title=title,
            description=description,
            metadata=dict(metadata or {}),
        )
        await self.store.put_artifact(artifact)
        log.info(
            "Artifact %s (%s) stored for project %s at %s",
            artifact.artifact_id, artifact_type.value, project_id, location,
        )
        return artifact

    async def get(self, project_id: str, artifact_id: str) -> Artifact:
        artifact = await self.store.get_artifact(project_id, artifact_id)
        if artifact is None:
            raise NotFound(f"Artifact {artifact_id} not found in project {project_id}")
        return artifact

    async def list(self, project_id: str) -> list[Artifact]:
        return await self.store.list_artifacts(project_id)

    async def update(self, project_id: str, artifact_id: str, changes: dict) -> Artifact:
        """Change non-identity fields; projectId, artifactId and createdAt never move."""
        if not changes:
            return await self.get(project_id, artifact_id)
        if "artifact_type" in changes:
            changes = {**changes, "artifact_type": ArtifactType(changes["artifact_type"])}
        return await self.store.update_artifact(project_id, artifact_id, changes)

    async def delete(self, project_id: str, artifact_id: str) -> None:
        await self.store.delete_artifact(project_id, artifact_id)
        log.info("Artifact %s deleted from project %s", artifact_id, project_id)
