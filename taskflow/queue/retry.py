"""Retry Manager: bounded retries, terminal failure and abort-on-failure cascade."""

import logging
import random
from dataclasses import dataclass
from typing import Callable

from taskflow.queue.errors import ExecutionError, TaskNotFoundError
from taskflow.queue.models import Task, TaskError, TaskStatus
from taskflow.queue.store import TaskStore
from taskflow.workflows.definition import WorkflowDefinition

logger = logging.getLogger(__name__)

DefinitionLookup = Callable[[str], WorkflowDefinition | None]


def compute_retry_delay(
    attempt: int,
    base: float = 5.0,
    max_delay: float = 300.0,
    jitter: bool = True,
) -> float:
    """Exponential backoff with optional jitter. base <= 0 means immediate retry."""
    if base <= 0:
        return 0.0
    delay = min(base * (2**attempt), max_delay)
    if jitter:
        delay += random.uniform(0, delay * 0.3)
    return delay


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff between attempts. The default re-queues immediately."""

    backoff_base: float = 0.0
    backoff_max: float = 300.0
    jitter: bool = True

    def delay_for(self, retry_count: int) -> float:
        return compute_retry_delay(retry_count, self.backoff_base, self.backoff_max, self.jitter)


class RetryManager:
    """Classify a failed task as retryable or permanently failed and apply it."""

    def __init__(
        self,
        store: TaskStore,
        definitions: DefinitionLookup,
        policy: RetryPolicy | None = None,
    ) -> None:
        self._store = store
        self._definitions = definitions
        self._policy = policy or RetryPolicy()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def on_failure(self, task: Task | str, error: BaseException | str) -> Task:
        """Record the failure and move the task to RETRY or FAILED.

        RETRY when the error is retryable and retry_count < max_retries
        (retry_count is incremented); FAILED otherwise. A terminal failure of
        an abort-on-failure step cancels the instance's PENDING/RETRY siblings
        and marks the instance as aborted by that step.
        """
        task_id = task if isinstance(task, str) else task.task_id
        message = str(error) or type(error).__name__
        kind = getattr(error, "kind", "capability")
        retryable = getattr(error, "retryable", True) if isinstance(error, ExecutionError) else True

        with self._store.locked():
            current = self._store.get(task_id)
            if current is None:
                raise TaskNotFoundError(task_id)

            attempt = current.retry_count + 1
            if retryable and current.retry_count < current.max_retries:
                now = self._store.clock()
                updated = self._store.transition(
                    task_id,
                    TaskStatus.RETRY,
                    retry_count=current.retry_count + 1,
                    error=TaskError(message=message, attempt=attempt, kind=kind),
                    scheduled_for=now + self._policy.delay_for(current.retry_count),
                )
                logger.warning(
                    "retry: task %s failed (attempt %d/%d): %s",
                    task_id,
                    attempt,
                    current.max_retries + 1,
                    message,
                )
                return updated

            updated = self._store.transition(
                task_id,
                TaskStatus.FAILED,
                error=TaskError(message=message, attempt=attempt, kind=kind),
            )
            if retryable:
                logger.error(
                    "retry: task %s permanently failed after %d attempts: %s",
                    task_id,
                    attempt,
                    message,
                )
            else:
                logger.error("retry: task %s failed without retry (%s): %s", task_id, kind, message)
            self._abort_if_required(updated)
            return updated

    def _abort_if_required(self, task: Task) -> list[Task]:
        definition = self._definitions(task.workflow_id)
        step = definition.get_step(task.step_id) if definition else None
        if step is None or not step.aborts_on_failure:
            return []
        return self.abort_instance(task)

    def abort_instance(self, failed: Task) -> list[Task]:
        """Cancel PENDING/RETRY siblings and record the aborting step. Returns cancelled tasks."""
        instance_id = failed.workflow_instance_id
        with self._store.locked():
            instance = self._store.get_instance(instance_id)
            if instance is not None and instance.aborted_by_step is None:
                self._store.update_instance(instance_id, aborted_by_step=failed.step_id)
            cancelled = []
            for sibling in self._store.tasks_for_instance(instance_id):
                if sibling.status in (TaskStatus.PENDING, TaskStatus.RETRY):
                    cancelled.append(self._store.transition(sibling.task_id, TaskStatus.CANCELLED))
        logger.warning(
            "retry: aborting workflow %s instance %s due to step %s failure; cancelled %d tasks",
            failed.workflow_id,
            instance_id,
            failed.step_id,
            len(cancelled),
        )
        return cancelled

    def requeue_retries(self, now: float | None = None) -> list[Task]:
        """Move due RETRY tasks with budget left back to PENDING.

        A RETRY task whose retry_count already equals max_retries stays in RETRY:
        the scheduler still dispatches it for its final attempt, and a failure of
        that attempt is what makes it FAILED.
        """
        when = self._store.clock() if now is None else now
        requeued = []
        with self._store.locked():
            for task in self._store.tasks():
                if (
                    task.status is TaskStatus.RETRY
                    and task.scheduled_for <= when
                    and task.retry_count < task.max_retries
                ):
                    requeued.append(self._store.transition(task.task_id, TaskStatus.PENDING))
        if requeued:
            logger.info("retry: re-queued %d tasks", len(requeued))
        return requeued
