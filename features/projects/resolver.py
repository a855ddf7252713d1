"""
Dependency resolution over one project's task set.

Pure functions: no I/O, no mutation of the tasks passed in.
"""

from __future__ import annotations

from typing import Iterable, Sequence

from features.projects.errors import ValidationFailed
from features.projects.models import Task, TaskStatus


def dependencies_satisfied(task: Task, tasks: Iterable[Task]) -> bool:
    """True when every dependency of ``task`` names a DONE task in ``tasks``.

    A dependency id with no matching task counts as unsatisfied.
    """
    if not task.dependencies:
        return True
    status_by_id = {t.task_id: t.status for t in tasks}
    return all(status_by_id.get(dep) == TaskStatus.DONE for dep in task.dependencies)


def next_executable(tasks: Sequence[Task]) -> Task | None:
    """Return the first TODO task, in input order, whose dependencies are all DONE."""
    for task in tasks:
        if task.status == TaskStatus.TODO and dependencies_satisfied(task, tasks):
            return task
    return None


def pipeline_finished(tasks: Sequence[Task]) -> bool:
    return bool(tasks) and all(t.status == TaskStatus.DONE for t in tasks)


def validate_task_set(tasks: Sequence[Task]) -> None:
    """Reject dependencies that point outside the project's own task set."""
    known = {t.task_id for t in tasks}
    for task in tasks:
        foreign = [dep for dep in task.dependencies if dep not in known]
        if foreign:
            raise ValidationFailed(
                f"Task {task.task_id} depends on tasks outside project {task.project_id}: "
                f"{', '.join(foreign)}"
            )
