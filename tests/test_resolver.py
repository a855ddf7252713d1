from __future__ import annotations

import copy
from dataclasses import replace

import pytest

from features.projects.errors import ValidationFailed
from features.projects.models import AgentName, Task, TaskStatus, build_seed_tasks
from features.projects.resolver import (
    dependencies_satisfied,
    next_executable,
    pipeline_finished,
    validate_task_set,
)


def _with_status(tasks, *statuses):
    return [replace(t, status=s) for t, s in zip(tasks, statuses)]


def test_fresh_pipeline_starts_with_product_manager():
    tasks = build_seed_tasks("p")
    assert next_executable(tasks).assigned_agent == AgentName.PRODUCT_MANAGER


def test_next_task_after_done():
    tasks = _with_status(build_seed_tasks("p"), TaskStatus.DONE, TaskStatus.TODO,
                         TaskStatus.TODO, TaskStatus.TODO)
    assert next_executable(tasks).assigned_agent == AgentName.BACKEND_ENGINEER


def test_pending_approval_blocks_successors():
    tasks = _with_status(build_seed_tasks("p"), TaskStatus.PENDING_APPROVAL, TaskStatus.TODO,
                         TaskStatus.TODO, TaskStatus.TODO)
    assert next_executable(tasks) is None
    assert not pipeline_finished(tasks)


def test_failed_dependency_blocks_successors():
    tasks = _with_status(build_seed_tasks("p"), TaskStatus.DONE, TaskStatus.FAILED,
                         TaskStatus.TODO, TaskStatus.TODO)
    assert next_executable(tasks) is None


def test_missing_dependency_is_unsatisfied():
    task = Task("p", "t2", AgentName.BACKEND_ENGINEER, dependencies=["ghost"])
    assert not dependencies_satisfied(task, [task])


def test_first_runnable_in_input_order_wins():
    a = Task("p", "a", AgentName.FRONTEND_ENGINEER)
    b = Task("p", "b", AgentName.BACKEND_ENGINEER)
    assert next_executable([b, a]).task_id == "b"


def test_resolver_does_not_mutate_input():
    tasks = build_seed_tasks("p")
    before = copy.deepcopy(tasks)
    next_executable(tasks)
    pipeline_finished(tasks)
    assert tasks == before


def test_pipeline_finished_needs_every_task_done():
    tasks = build_seed_tasks("p")
    assert not pipeline_finished(tasks)
    assert pipeline_finished([replace(t, status=TaskStatus.DONE) for t in tasks])
    assert not pipeline_finished([])


def test_foreign_dependency_rejected():
    tasks = build_seed_tasks("p")
    tasks.append(Task("p", "extra", AgentName.DEVOPS_ENGINEER, dependencies=["task-9-Elsewhere"]))
    with pytest.raises(ValidationFailed):
        validate_task_set(tasks)
