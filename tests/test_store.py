from __future__ import annotations

import asyncio

import pytest

from features.projects.artifacts import ArtifactCatalog
from features.projects.errors import NotFound, TransitionConflict, ValidationFailed
from features.projects.models import ArtifactType, Project, TaskStatus, build_seed_tasks


def _project(store, project_id="proj-1"):
    project = Project(project_id=project_id, user_id="user-1", project_name="Blog",
                      request_prompt="Build a blog platform")
    asyncio.run(store.put_project(project))
    return project


def test_conditional_task_update_loses_race(store):
    _project(store)
    task = build_seed_tasks("proj-1")[0]

    async def scenario():
        await store.put_task_if_absent(task)
        await store.update_task("proj-1", task.task_id, {"status": TaskStatus.IN_PROGRESS},
                                expected_status=TaskStatus.TODO)
        await store.update_task("proj-1", task.task_id, {"status": TaskStatus.IN_PROGRESS},
                                expected_status=TaskStatus.TODO)

    with pytest.raises(TransitionConflict):
        asyncio.run(scenario())


def test_put_task_if_absent_is_idempotent(store):
    _project(store)
    task = build_seed_tasks("proj-1")[0]

    async def scenario():
        return await store.put_task_if_absent(task), await store.put_task_if_absent(task)

    assert asyncio.run(scenario()) == (True, False)


def test_returned_records_are_copies(store):
    _project(store)

    async def scenario():
        project = await store.get_project("proj-1")
        project.project_name = "changed"
        return await store.get_project("proj-1")

    assert asyncio.run(scenario()).project_name == "Blog"


def test_artifact_catalog_lifecycle(store):
    _project(store)
    catalog = ArtifactCatalog(store)

    async def scenario():
        created = await catalog.create("proj-1", ArtifactType.SRS_DOCUMENT, "/tmp/srs.md",
                                       title="SRS")
        updated = await catalog.update("proj-1", created.artifact_id, {"title": "SRS v2",
                                                                        "version": "1.1"})
        listed = await catalog.list("proj-1")
        await catalog.delete("proj-1", created.artifact_id)
        with pytest.raises(NotFound):
            await catalog.get("proj-1", created.artifact_id)
        return created, updated, listed

    created, updated, listed = asyncio.run(scenario())

    assert created.artifact_id.startswith("art-")
    assert updated.title == "SRS v2"
    assert updated.created_at == created.created_at
    assert [a.artifact_id for a in listed] == [created.artifact_id]


def test_artifact_identity_is_immutable(store):
    _project(store)
    catalog = ArtifactCatalog(store)

    async def scenario():
        created = await catalog.create("proj-1", ArtifactType.SOURCE_CODE, "/tmp/backend.md")
        await catalog.update("proj-1", created.artifact_id, {"artifact_id": "art-other"})

    with pytest.raises(ValidationFailed):
        asyncio.run(scenario())


def test_artifact_requires_location(store):
    _project(store)
    catalog = ArtifactCatalog(store)

    with pytest.raises(ValidationFailed):
        asyncio.run(catalog.create("proj-1", ArtifactType.TEST_REPORT, ""))
