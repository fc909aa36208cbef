"""Audit topics written by the workflow engine."""


class AuditTopics:
    """Topics recorded in the audit journal. One row per transition."""

    # Task dispatched (claimed and marked in_progress)
    TASK_STARTED = "task.started"

    # Task finished successfully; payload carries duration_ms
    TASK_COMPLETED = "task.completed"

    # Attempt failed, another attempt is scheduled
    TASK_RETRY = "task.retry"

    # Retry budget exhausted or capability unresolvable
    TASK_FAILED = "task.failed"

    # Cancelled by an abort cascade or by an operator
    TASK_CANCELLED = "task.cancelled"

    # Instance created by start_workflow
    WORKFLOW_STARTED = "workflow.started"

    # Instance reached completed, completed_with_errors or failed
    WORKFLOW_FINISHED = "workflow.finished"

    # External event mapped (or not) to a workflow definition
    WORKFLOW_TRIGGERED = "workflow.triggered"

    # SLA monitor reported a breach
    SLA_VIOLATION = "sla.violation"


# Payload contracts (documentation)
TASK_PAYLOAD = {
    "workflow_id": "str",
    "instance_id": "str",
    "task_id": "str",
    "step_id": "str",
    "capability": "str",
    "action": "str",
    "status": "str",
    "error": "str | None",
    "attempt": "int",
}
WORKFLOW_FINISHED_PAYLOAD = {
    "workflow_id": "str",
    "instance_id": "str",
    "status": "str",
    "triggered_by": "str",
    "duration_sec": "float",
    "aborted_by_step": "str | None",
}
WORKFLOW_TRIGGERED_PAYLOAD = {
    "event_type": "str",
    "workflow_id": "str | None",
    "instance_id": "str | None",
    "status": "str",
}
