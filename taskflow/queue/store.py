"""Task Store and Workflow Instance Registry: in-memory, thread-safe, no I/O.

Every read returns a copy, so callers never mutate records behind the store's back.
Record mutations run under one re-entrant lock; components that need a
read-modify-write spanning several records (claim, abort cascade, completion)
hold ``locked()`` around the whole sequence.
"""

import copy
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import fields as dataclass_fields
from typing import Any, Callable, Iterable, Iterator

from taskflow.queue.errors import InvalidTransitionError, TaskNotFoundError
from taskflow.queue.models import (
    ALLOWED_TRANSITIONS,
    InstanceStatus,
    QueueStats,
    Task,
    TaskPage,
    TaskSpec,
    TaskStatus,
    WorkflowBreakdown,
    WorkflowInstance,
)

logger = logging.getLogger(__name__)

_TASK_FIELDS = frozenset(f.name for f in dataclass_fields(Task))
_INSTANCE_FIELDS = frozenset(f.name for f in dataclass_fields(WorkflowInstance))
_IMMUTABLE_TASK_FIELDS = frozenset({"task_id", "created_at", "updated_at"})
_SORTABLE_TASK_FIELDS = frozenset({
    "task_id", "workflow_id", "workflow_instance_id", "step_id", "agent", "action",
    "status", "priority", "timeout", "max_retries", "delay", "retry_count", "attempts",
    "created_at", "updated_at", "scheduled_for", "started_at", "attempt_started_at", "completed_at",
})


class TaskStore:
    """Authoritative record of tasks and workflow instances for one process lifetime."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.RLock()
        self._tasks: dict[str, Task] = {}
        self._instances: dict[str, WorkflowInstance] = {}
        self._seq = 0

    @property
    def clock(self) -> Callable[[], float]:
        return self._clock

    @contextmanager
    def locked(self) -> Iterator[None]:
        """Hold the store lock across a multi-step read-modify-write."""
        with self._lock:
            yield

    # --- Tasks ---

    def _next_task_id(self) -> str:
        self._seq += 1
        return f"task_{self._seq:06d}_{uuid.uuid4().hex[:8]}"

    def _insert(self, spec: TaskSpec, now: float) -> Task:
        task = Task(
            task_id=self._next_task_id(),
            workflow_id=spec.workflow_id,
            workflow_instance_id=spec.workflow_instance_id,
            step_id=spec.step_id,
            agent=spec.agent,
            action=spec.action,
            input=copy.deepcopy(spec.input),
            priority=spec.priority,
            timeout=spec.timeout,
            max_retries=spec.max_retries,
            delay=spec.delay,
            depends_on=tuple(spec.depends_on),
            created_at=now,
            updated_at=now,
            scheduled_for=now + spec.delay if spec.delay > 0 else now,
        )
        self._tasks[task.task_id] = task
        logger.info(
            "task_store: task added %s [%s.%s] for workflow %s",
            task.task_id,
            task.agent,
            task.action,
            task.workflow_id,
        )
        return task

    def create(self, spec: TaskSpec) -> Task:
        """Add a new PENDING task."""
        with self._lock:
            return copy.deepcopy(self._insert(spec, self._clock()))

    def get(self, task_id: str) -> Task | None:
        """Return a copy of the task, or None if it does not exist."""
        with self._lock:
            task = self._tasks.get(task_id)
            return copy.deepcopy(task) if task else None

    def update(self, task_id: str, **changes: Any) -> Task | None:
        """Apply partial field changes. Returns None (no mutation) if the task is missing.

        A ``status`` change must follow ALLOWED_TRANSITIONS; terminal tasks are
        immutable. Stamps updated_at always, started_at on the first IN_PROGRESS,
        attempt_started_at on every IN_PROGRESS and completed_at on COMPLETED/FAILED.
        """
        unknown = set(changes) - _TASK_FIELDS
        if unknown or _IMMUTABLE_TASK_FIELDS & set(changes):
            raise ValueError(f"Cannot update task fields: {sorted(unknown | (_IMMUTABLE_TASK_FIELDS & set(changes)))}")
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                logger.warning("task_store: cannot update, task not found: %s", task_id)
                return None
            if task.is_terminal:
                raise InvalidTransitionError(
                    f"Task {task_id} is {task.status.value} and can no longer change"
                )
            now = self._clock()
            new_status = changes.pop("status", None)
            if new_status is not None:
                new_status = TaskStatus(new_status)
                if new_status not in ALLOWED_TRANSITIONS[task.status]:
                    raise InvalidTransitionError(
                        f"Task {task_id}: {task.status.value} -> {new_status.value} is not allowed"
                    )
            for name, value in changes.items():
                setattr(task, name, value)
            task.updated_at = now
            if new_status is not None:
                task.status = new_status
                if new_status is TaskStatus.IN_PROGRESS:
                    if task.started_at is None:
                        task.started_at = now
                    task.attempt_started_at = now
                    task.attempts += 1
                elif new_status in (TaskStatus.COMPLETED, TaskStatus.FAILED):
                    task.completed_at = now
            logger.debug(
                "task_store: task updated %s -> %s",
                task_id,
                new_status.value if new_status is not None else "fields updated",
            )
            return copy.deepcopy(task)

    def transition(self, task_id: str, status: TaskStatus, **changes: Any) -> Task:
        """Move a task to ``status`` (validated), applying extra field changes.

        Unlike ``update``, a missing task raises TaskNotFoundError.
        """
        updated = self.update(task_id, status=status, **changes)
        if updated is None:
            raise TaskNotFoundError(task_id)
        return updated

    def tasks(self) -> list[Task]:
        """Copies of all tasks, in insertion order."""
        with self._lock:
            return [copy.deepcopy(t) for t in self._tasks.values()]

    def tasks_for_instance(self, instance_id: str) -> list[Task]:
        with self._lock:
            return [
                copy.deepcopy(t)
                for t in self._tasks.values()
                if t.workflow_instance_id == instance_id
            ]

    def query(
        self,
        status: TaskStatus | str | Iterable[TaskStatus | str] | None = None,
        workflow_id: str | None = None,
        workflow_instance_id: str | None = None,
        agent: str | None = None,
        limit: int = 100,
        offset: int = 0,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> TaskPage:
        """Filter, sort and paginate tasks."""
        if sort_by not in _SORTABLE_TASK_FIELDS:
            raise ValueError(f"Unknown sort field: {sort_by}")
        if sort_order not in ("asc", "desc"):
            raise ValueError(f"sort_order must be 'asc' or 'desc', got {sort_order!r}")
        statuses: set[TaskStatus] | None = None
        if status is not None:
            if isinstance(status, (str, TaskStatus)):
                statuses = {TaskStatus(status)}
            else:
                statuses = {TaskStatus(s) for s in status}

        with self._lock:
            results = [
                t
                for t in self._tasks.values()
                if (statuses is None or t.status in statuses)
                and (workflow_id is None or t.workflow_id == workflow_id)
                and (workflow_instance_id is None or t.workflow_instance_id == workflow_instance_id)
                and (agent is None or t.agent == agent)
            ]
            results.sort(key=lambda t: t.task_id, reverse=sort_order == "desc")
            results.sort(key=lambda t: _sort_value(getattr(t, sort_by)), reverse=sort_order == "desc")
            total = len(results)
            page = [copy.deepcopy(t) for t in results[offset:offset + limit]]
        return TaskPage(tasks=page, total=total, limit=limit, offset=offset)

    def cleanup(self, max_age_hours: float = 24.0) -> int:
        """Delete terminal tasks last updated more than max_age_hours ago. Returns count removed."""
        cutoff = self._clock() - max_age_hours * 3600
        with self._lock:
            stale = [
                task_id
                for task_id, t in self._tasks.items()
                if t.is_terminal and t.updated_at < cutoff
            ]
            for task_id in stale:
                del self._tasks[task_id]
        if stale:
            logger.info("task_store: cleaned up %d old tasks (max_age=%sh)", len(stale), max_age_hours)
        return len(stale)

    def stats(self) -> QueueStats:
        """Counts by status, per-workflow breakdown and average completion latency."""
        now = self._clock()
        with self._lock:
            all_tasks = list(self._tasks.values())
            stats = QueueStats(total=len(all_tasks))
            durations: list[float] = []
            for t in all_tasks:
                field_name = t.status.value
                setattr(stats, field_name, getattr(stats, field_name) + 1)
                if (
                    t.status is TaskStatus.IN_PROGRESS
                    and t.attempt_started_at is not None
                    and now - t.attempt_started_at > t.timeout
                ):
                    stats.stuck += 1
                wf = stats.by_workflow.setdefault(t.workflow_id, WorkflowBreakdown())
                wf.total += 1
                if t.status is TaskStatus.COMPLETED:
                    wf.completed += 1
                elif t.status is TaskStatus.FAILED:
                    wf.failed += 1
                elif t.status is TaskStatus.PENDING:
                    wf.pending += 1
                if t.completed_at is not None and t.started_at is not None:
                    durations.append(t.completed_at - t.started_at)
        if durations:
            stats.avg_completion_ms = round(sum(durations) / len(durations) * 1000)
        return stats

    # --- Workflow instances ---

    def _new_instance(
        self, workflow_id: str, triggered_by: str, trigger_data: dict[str, Any], now: float
    ) -> WorkflowInstance:
        instance = WorkflowInstance(
            instance_id=f"wf_{uuid.uuid4().hex[:12]}",
            workflow_id=workflow_id,
            triggered_by=triggered_by,
            trigger_data=copy.deepcopy(trigger_data),
            created_at=now,
            updated_at=now,
        )
        self._instances[instance.instance_id] = instance
        return instance

    def create_instance(
        self,
        workflow_id: str,
        triggered_by: str = "system",
        trigger_data: dict[str, Any] | None = None,
    ) -> WorkflowInstance:
        """Register a RUNNING instance with no tasks."""
        with self._lock:
            instance = self._new_instance(workflow_id, triggered_by, trigger_data or {}, self._clock())
            return copy.deepcopy(instance)

    def start_instance(
        self,
        workflow_id: str,
        triggered_by: str,
        trigger_data: dict[str, Any],
        specs: Iterable[Callable[[str], TaskSpec]],
    ) -> tuple[WorkflowInstance, list[Task]]:
        """Create an instance and all its tasks atomically.

        ``specs`` are factories receiving the new instance ID, so task specs can
        carry it before the instance exists outside the lock.
        """
        with self._lock:
            now = self._clock()
            instance = self._new_instance(workflow_id, triggered_by, trigger_data, now)
            created = [self._insert(make_spec(instance.instance_id), now) for make_spec in specs]
            instance.task_ids = {t.step_id: t.task_id for t in created}
            return copy.deepcopy(instance), [copy.deepcopy(t) for t in created]

    def get_instance(self, instance_id: str) -> WorkflowInstance | None:
        with self._lock:
            instance = self._instances.get(instance_id)
            return copy.deepcopy(instance) if instance else None

    def list_instances(self, status: InstanceStatus | str | None = None) -> list[WorkflowInstance]:
        wanted = InstanceStatus(status) if status is not None else None
        with self._lock:
            return [
                copy.deepcopy(i)
                for i in self._instances.values()
                if wanted is None or i.status is wanted
            ]

    def update_instance(self, instance_id: str, **changes: Any) -> WorkflowInstance | None:
        """Apply partial changes. Returns None (no mutation) if the instance is missing."""
        unknown = set(changes) - _INSTANCE_FIELDS
        if unknown:
            raise ValueError(f"Unknown instance fields: {sorted(unknown)}")
        with self._lock:
            instance = self._instances.get(instance_id)
            if instance is None:
                logger.warning("task_store: cannot update, instance not found: %s", instance_id)
                return None
            now = self._clock()
            if "status" in changes:
                changes["status"] = InstanceStatus(changes["status"])
            for name, value in changes.items():
                setattr(instance, name, value)
            instance.updated_at = now
            if instance.status.is_terminal and instance.completed_at is None:
                instance.completed_at = now
            return copy.deepcopy(instance)


def _sort_value(value: Any) -> tuple[int, Any]:
    """Sort key that puts None first and keeps enums comparable."""
    if value is None:
        return (0, "")
    if isinstance(value, TaskStatus):
        return (1, value.value)
    return (1, value)
