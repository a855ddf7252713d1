"""
Error taxonomy for the orchestration core.

Every error carries a stable machine-readable ``reason``, the HTTP status the
API layer answers with, and whether the operation is safe to retry.
"""

from __future__ import annotations


class OrchestrationError(Exception):
    reason = "orchestration_error"
    status_code = 500
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.reason)
        self.message = message or self.reason

    def to_dict(self) -> dict:
        return {"reason": self.reason, "message": self.message}


class ValidationFailed(OrchestrationError):
    reason = "validation_error"
    status_code = 400


class InvalidTransition(OrchestrationError):
    reason = "invalid_transition"
    status_code = 409


class TransitionConflict(InvalidTransition):
    """A conditional write found the record in a different state than expected."""
    reason = "transition_conflict"


class DependenciesUnsatisfied(InvalidTransition):
    reason = "dependencies_unsatisfied"


class PipelineBusy(InvalidTransition):
    reason = "pipeline_busy"


class ProjectActive(InvalidTransition):
    reason = "project_active"


class NoTaskPendingApproval(OrchestrationError):
    reason = "no_task_pending_approval"
    status_code = 400


class NotFound(OrchestrationError):
    reason = "not_found"
    status_code = 404


class Forbidden(OrchestrationError):
    reason = "forbidden"
    status_code = 403


class InfrastructureError(OrchestrationError):
    """Store, queue or transport I/O failed."""
    reason = "infrastructure_error"
    status_code = 503
    retryable = True
