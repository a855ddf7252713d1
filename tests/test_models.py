from __future__ import annotations

import pytest

from features.projects.errors import InvalidTransition, ValidationFailed
from features.projects.models import (
    AgentName,
    Artifact,
    ArtifactType,
    ProjectStatus,
    Task,
    TaskStatus,
    build_seed_tasks,
    check_project_transition,
    check_task_transition,
    validate_progress,
    validate_project_fields,
)


def test_seed_tasks_follow_pipeline_order():
    tasks = build_seed_tasks("proj-1")

    assert [t.assigned_agent for t in tasks] == [
        AgentName.PRODUCT_MANAGER,
        AgentName.BACKEND_ENGINEER,
        AgentName.FRONTEND_ENGINEER,
        AgentName.DEVOPS_ENGINEER,
    ]
    assert [t.order for t in tasks] == [1, 2, 3, 4]
    assert all(t.status == TaskStatus.TODO for t in tasks)
    assert tasks[0].dependencies == []
    for previous, task in zip(tasks, tasks[1:]):
        assert task.dependencies == [previous.task_id]


def test_seed_task_ids_are_deterministic():
    assert [t.task_id for t in build_seed_tasks("a")] == [t.task_id for t in build_seed_tasks("b")]
    assert build_seed_tasks("a")[0].task_id == "task-1-ProductManagerAgent"


@pytest.mark.parametrize("current,target", [
    (TaskStatus.TODO, TaskStatus.IN_PROGRESS),
    (TaskStatus.IN_PROGRESS, TaskStatus.DONE),
    (TaskStatus.IN_PROGRESS, TaskStatus.PENDING_APPROVAL),
    (TaskStatus.IN_PROGRESS, TaskStatus.FAILED),
    (TaskStatus.PENDING_APPROVAL, TaskStatus.DONE),
    (TaskStatus.PENDING_APPROVAL, TaskStatus.TODO),
    (TaskStatus.FAILED, TaskStatus.TODO),
])
def test_allowed_task_transitions(current, target):
    check_task_transition(current, target)


@pytest.mark.parametrize("current,target", [
    (TaskStatus.TODO, TaskStatus.DONE),
    (TaskStatus.DONE, TaskStatus.TODO),
    (TaskStatus.DONE, TaskStatus.IN_PROGRESS),
    (TaskStatus.PENDING_APPROVAL, TaskStatus.IN_PROGRESS),
])
def test_rejected_task_transitions(current, target):
    with pytest.raises(InvalidTransition):
        check_task_transition(current, target)


def test_completed_project_is_terminal():
    for target in ProjectStatus:
        with pytest.raises(InvalidTransition):
            check_project_transition(ProjectStatus.COMPLETED, target)
    check_project_transition(ProjectStatus.FAILED, ProjectStatus.PENDING)


def test_task_dependencies_are_a_set():
    task = Task("p", "t2", AgentName.BACKEND_ENGINEER, dependencies=["t1", "t1", "t0"])
    assert task.dependencies == ["t1", "t0"]


def test_task_cannot_depend_on_itself():
    with pytest.raises(ValidationFailed):
        Task("p", "t1", AgentName.BACKEND_ENGINEER, dependencies=["t1"])


@pytest.mark.parametrize("value", [-1, 101, 50.5, True])
def test_progress_out_of_range(value):
    with pytest.raises(ValidationFailed):
        validate_progress(value)


def test_project_field_bounds():
    validate_project_fields("Blog", "Build a blog platform")
    with pytest.raises(ValidationFailed):
        validate_project_fields("   ", None)
    with pytest.raises(ValidationFailed):
        validate_project_fields(None, "too short")
    with pytest.raises(ValidationFailed):
        validate_project_fields("x" * 101, None)
    with pytest.raises(ValidationFailed):
        validate_project_fields(None, "p" * 2001)


def test_wire_format_is_camel_case():
    task = build_seed_tasks("proj-1")[1]
    data = task.to_dict()
    assert data["taskId"] == "task-2-BackendEngineerAgent"
    assert data["assignedAgent"] == "BackendEngineerAgent"
    assert data["dependencies"] == ["task-1-ProductManagerAgent"]

    artifact = Artifact("proj-1", "art-1", ArtifactType.SRS_DOCUMENT, "/tmp/srs.md")
    assert artifact.to_dict()["artifactType"] == "SRS_DOCUMENT"
    assert artifact.to_dict()["version"] == "1.0"
