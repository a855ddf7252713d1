"""
Temporal Workflow: one agent dispatch.

Started by ``TemporalDispatchQueue`` with the dedup key as workflow id, so a
duplicate enqueue inside the window joins the running execution instead of
starting a second one. The agent step gets the agent's own timeout and
attempt limit; when it is exhausted the task is marked FAILED.
"""

from __future__ import annotations

from datetime import timedelta

from temporalio import workflow
from temporalio.common import RetryPolicy
from temporalio.exceptions import ActivityError

with workflow.unsafe.imports_passed_through():
    import config
    from activities.dispatch import DispatchActivities
    from features.dispatch.consumer import agent_attempts, agent_timeout
    from features.dispatch.queue import DISPATCH_WORKFLOW, DispatchMessage


@workflow.defn(name=DISPATCH_WORKFLOW)
class AgentDispatchWorkflow:

    @workflow.run
    async def run(self, message: DispatchMessage) -> dict:
        step = {
            "start_to_close_timeout": timedelta(seconds=config.DISPATCH_STEP_TIMEOUT_SEC),
            "retry_policy": RetryPolicy(maximum_attempts=config.DISPATCH_STEP_MAX_ATTEMPTS),
        }

        task_id = await workflow.execute_activity_method(
            DispatchActivities.begin_agent_task, message, **step,
        )
        if task_id is None:
            workflow.logger.info("Stale dispatch for %s / %s", message.project_id, message.agent_name)
            return {"status": "skipped", **message.to_dict()}

        try:
            artifact_id = await workflow.execute_activity_method(
                DispatchActivities.run_agent,
                args=[message, task_id],
                start_to_close_timeout=timedelta(seconds=agent_timeout(message.agent_name)),
                retry_policy=RetryPolicy(
                    maximum_attempts=agent_attempts(message.agent_name),
                    initial_interval=timedelta(seconds=5),
                ),
            )
        except ActivityError as e:
            error = str(e.cause) if e.cause else str(e)
            workflow.logger.warning("Agent %s failed: %s", message.agent_name, error)
            project_status = await workflow.execute_activity_method(
                DispatchActivities.fail_agent_task, args=[message, task_id, error], **step,
            )
            return {"status": "failed", "taskId": task_id, "error": error,
                    "projectStatus": project_status, **message.to_dict()}

        project_status = await workflow.execute_activity_method(
            DispatchActivities.complete_agent_task, args=[message, task_id, artifact_id], **step,
        )
        return {"status": "completed", "taskId": task_id, "artifactId": artifact_id,
                "projectStatus": project_status, **message.to_dict()}
