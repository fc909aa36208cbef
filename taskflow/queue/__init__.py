"""Task queue core: store, scheduler, executor, retry, SLA, completion and the engine."""

from taskflow.queue.completion import CompletionDetector
from taskflow.queue.engine import WorkflowEngine
from taskflow.queue.errors import (
    CapabilityError,
    ExecutionError,
    InstanceNotFoundError,
    InvalidTransitionError,
    TaskflowError,
    TaskNotFoundError,
    TaskTimeoutError,
    UnresolvableCapabilityError,
    WorkflowNotFoundError,
)
from taskflow.queue.executor import CapabilityRegistry, Executor
from taskflow.queue.models import InstanceStatus, Task, TaskStatus, WorkflowInstance
from taskflow.queue.retry import RetryManager, RetryPolicy
from taskflow.queue.scheduler import Scheduler, select_next_eligible_task
from taskflow.queue.sla import SlaMonitor, SlaViolation
from taskflow.queue.store import TaskStore
from taskflow.queue.templates import resolve_templates

__all__ = [
    "CapabilityError",
    "CapabilityRegistry",
    "CompletionDetector",
    "ExecutionError",
    "Executor",
    "InstanceNotFoundError",
    "InstanceStatus",
    "InvalidTransitionError",
    "RetryManager",
    "RetryPolicy",
    "Scheduler",
    "SlaMonitor",
    "SlaViolation",
    "Task",
    "TaskNotFoundError",
    "TaskStatus",
    "TaskStore",
    "TaskTimeoutError",
    "TaskflowError",
    "UnresolvableCapabilityError",
    "WorkflowEngine",
    "WorkflowInstance",
    "WorkflowNotFoundError",
    "resolve_templates",
    "select_next_eligible_task",
]
