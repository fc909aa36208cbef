"""Task queue data models: internal dataclasses and Pydantic results for the admin surface."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRY = "retry"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)

# Allowed status changes: current -> set of next states.
# Terminal states have no outgoing edges.
ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CANCELLED}),
    TaskStatus.RETRY: frozenset(
        {
            TaskStatus.IN_PROGRESS,
            TaskStatus.PENDING,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        }
    ),
    TaskStatus.IN_PROGRESS: frozenset(
        {
            TaskStatus.COMPLETED,
            TaskStatus.RETRY,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        }
    ),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


class InstanceStatus(str, Enum):
    """Workflow instance outcome states."""

    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not InstanceStatus.RUNNING


# --- Internal dataclasses (store records) ---


@dataclass
class TaskError:
    """Structured failure reason recorded on a task."""

    message: str
    attempt: int
    kind: str = "capability"


@dataclass
class TaskSpec:
    """Input for TaskStore.create: everything a new task needs except bookkeeping."""

    workflow_id: str
    workflow_instance_id: str
    step_id: str
    agent: str
    action: str
    input: dict[str, Any] = field(default_factory=dict)
    priority: int = 5
    timeout: float = 60.0
    max_retries: int = 3
    delay: float = 0.0
    depends_on: tuple[str, ...] = ()


@dataclass
class Task:
    """A unit of work bound to one workflow step."""

    task_id: str
    workflow_id: str
    workflow_instance_id: str
    step_id: str
    agent: str
    action: str
    input: dict[str, Any]
    priority: int
    timeout: float
    max_retries: int
    delay: float
    depends_on: tuple[str, ...]
    created_at: float
    updated_at: float
    scheduled_for: float
    status: TaskStatus = TaskStatus.PENDING
    retry_count: int = 0
    attempts: int = 0
    output: Any = None
    error: TaskError | None = None
    started_at: float | None = None
    attempt_started_at: float | None = None
    completed_at: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass
class WorkflowInstance:
    """One execution of a workflow definition."""

    instance_id: str
    workflow_id: str
    triggered_by: str
    trigger_data: dict[str, Any]
    created_at: float
    updated_at: float
    status: InstanceStatus = InstanceStatus.RUNNING
    task_ids: dict[str, str] = field(default_factory=dict)
    aborted_by_step: str | None = None
    completed_at: float | None = None


@dataclass
class TaskPage:
    """One page of a filtered, sorted task listing."""

    tasks: list[Task]
    total: int
    limit: int
    offset: int


# --- Result models (engine entry points and admin surface) ---


class StartWorkflowResult(BaseModel):
    """Result of WorkflowEngine.start_workflow."""

    instance_id: str
    workflow_id: str
    task_ids: dict[str, str] = Field(default_factory=dict)
    step_count: int = 0


class TaskRunResult(BaseModel):
    """Outcome of dispatching one task."""

    task_id: str
    status: str
    output: Any = None
    error: str | None = None


class TaskErrorView(BaseModel):
    message: str
    attempt: int
    kind: str


class TaskView(BaseModel):
    """Readable task view for the admin surface."""

    task_id: str
    workflow_id: str
    workflow_instance_id: str
    step_id: str
    agent: str
    action: str
    status: str
    priority: int
    retry_count: int
    max_retries: int
    timeout: float
    depends_on: list[str] = Field(default_factory=list)
    output: Any = None
    error: TaskErrorView | None = None
    created_at: float = 0.0
    updated_at: float = 0.0
    started_at: float | None = None
    completed_at: float | None = None

    @classmethod
    def from_task(cls, task: Task) -> "TaskView":
        error = None
        if task.error is not None:
            error = TaskErrorView(
                message=task.error.message,
                attempt=task.error.attempt,
                kind=task.error.kind,
            )
        return cls(
            task_id=task.task_id,
            workflow_id=task.workflow_id,
            workflow_instance_id=task.workflow_instance_id,
            step_id=task.step_id,
            agent=task.agent,
            action=task.action,
            status=task.status.value,
            priority=task.priority,
            retry_count=task.retry_count,
            max_retries=task.max_retries,
            timeout=task.timeout,
            depends_on=list(task.depends_on),
            output=task.output,
            error=error,
            created_at=task.created_at,
            updated_at=task.updated_at,
            started_at=task.started_at,
            completed_at=task.completed_at,
        )


class TaskListResult(BaseModel):
    """Result of WorkflowEngine.list_tasks."""

    tasks: list[TaskView] = Field(default_factory=list)
    total: int = 0
    limit: int = 100
    offset: int = 0


class InstanceStatusResult(BaseModel):
    """Result of WorkflowEngine.get_instance."""

    instance_id: str
    workflow_id: str
    status: str
    triggered_by: str
    trigger_data: dict[str, Any] = Field(default_factory=dict)
    aborted_by_step: str | None = None
    tasks: list[TaskView] = Field(default_factory=list)
    created_at: float = 0.0
    completed_at: float | None = None


class WorkflowBreakdown(BaseModel):
    total: int = 0
    completed: int = 0
    failed: int = 0
    pending: int = 0


class QueueStats(BaseModel):
    """Counts by status, per-workflow breakdown and average completion latency."""

    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    retry: int = 0
    cancelled: int = 0
    stuck: int = 0
    by_workflow: dict[str, WorkflowBreakdown] = Field(default_factory=dict)
    avg_completion_ms: int | None = None


class WorkflowSummary(BaseModel):
    name: str
    steps: int
    max_duration_minutes: float | None = None
    alert_after_minutes: float | None = None


class DashboardResult(BaseModel):
    """Snapshot for operational dashboards."""

    queue_stats: QueueStats
    workflows: dict[str, WorkflowSummary] = Field(default_factory=dict)
    recent_tasks: list[TaskView] = Field(default_factory=list)
    timestamp: float = 0.0
