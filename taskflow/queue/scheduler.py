"""Scheduler: pick the single most eligible task (priority, retry precedence, age, ID)."""

import logging
from typing import Iterable

from taskflow.queue.models import Task, TaskStatus
from taskflow.queue.store import TaskStore

logger = logging.getLogger(__name__)

_RUNNABLE = (TaskStatus.PENDING, TaskStatus.RETRY)


def ordering_key(task: Task) -> tuple[int, int, float, str]:
    """Total order: lower priority number, RETRY before PENDING, older first, then task ID."""
    return (
        task.priority,
        0 if task.status is TaskStatus.RETRY else 1,
        task.created_at,
        task.task_id,
    )


def select_next_eligible_task(tasks: Iterable[Task], now: float) -> Task | None:
    """Return the most eligible task, or None. Pure: reads its arguments only.

    Eligible: status PENDING or RETRY, scheduled_for has passed, and every
    step in depends_on has a COMPLETED sibling in the same workflow instance.
    """
    all_tasks = list(tasks)
    step_status: dict[tuple[str, str], TaskStatus] = {
        (t.workflow_instance_id, t.step_id): t.status for t in all_tasks
    }

    def deps_completed(task: Task) -> bool:
        return all(
            step_status.get((task.workflow_instance_id, dep)) is TaskStatus.COMPLETED
            for dep in task.depends_on
        )

    eligible = [
        t
        for t in all_tasks
        if t.status in _RUNNABLE and t.scheduled_for <= now and deps_completed(t)
    ]
    if not eligible:
        return None
    return min(eligible, key=ordering_key)


class Scheduler:
    """Selects and claims tasks from a TaskStore."""

    def __init__(self, store: TaskStore) -> None:
        self._store = store

    def select_next_eligible_task(self, now: float | None = None) -> Task | None:
        """Peek at the next task without changing any state."""
        when = self._store.clock() if now is None else now
        return select_next_eligible_task(self._store.tasks(), when)

    def claim_next(self, now: float | None = None) -> Task | None:
        """Select and mark IN_PROGRESS in one critical section.

        Two concurrent callers can never claim the same task.
        """
        with self._store.locked():
            task = self.select_next_eligible_task(now)
            if task is None:
                return None
            claimed = self._store.transition(task.task_id, TaskStatus.IN_PROGRESS)
        logger.info(
            "scheduler: claimed %s [%s.%s] step=%s priority=%d attempt=%d",
            claimed.task_id,
            claimed.agent,
            claimed.action,
            claimed.step_id,
            claimed.priority,
            claimed.retry_count + 1,
        )
        return claimed
