"""Task queue exceptions: lookup failures, illegal transitions and execution errors."""


class TaskflowError(Exception):
    """Base class for all orchestrator errors."""


class TaskNotFoundError(TaskflowError):
    """Operation referenced a task ID that does not exist."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InstanceNotFoundError(TaskflowError):
    """Operation referenced a workflow instance ID that does not exist."""

    def __init__(self, instance_id: str) -> None:
        super().__init__(f"Workflow instance not found: {instance_id}")
        self.instance_id = instance_id


class WorkflowNotFoundError(TaskflowError):
    """No workflow definition is loaded under the requested ID."""

    def __init__(self, workflow_id: str) -> None:
        super().__init__(f"Workflow not found: {workflow_id}")
        self.workflow_id = workflow_id


class InvalidTransitionError(TaskflowError):
    """Requested status change is not allowed by the task state machine."""


# --- Execution errors (raised by the Executor, consumed by the Retry Manager) ---


class ExecutionError(TaskflowError):
    """Capability invocation did not produce an output."""

    kind = "capability"
    retryable = True


class CapabilityError(ExecutionError):
    """The capability itself failed (network, business-logic rejection)."""


class TaskTimeoutError(ExecutionError):
    """The capability call exceeded the task timeout budget."""

    kind = "timeout"


class UnresolvableCapabilityError(ExecutionError):
    """No handler is registered for the capability/action pair. Never retried."""

    kind = "unresolvable"
    retryable = False
