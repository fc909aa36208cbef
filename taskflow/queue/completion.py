"""Completion Detector: finalize a workflow instance once every task is terminal."""

import logging

from taskflow.queue.models import InstanceStatus, Task, TaskStatus, WorkflowInstance
from taskflow.queue.store import TaskStore

logger = logging.getLogger(__name__)


class CompletionDetector:
    """Computes and records instance outcomes exactly once."""

    def __init__(self, store: TaskStore) -> None:
        self._store = store

    def on_task_terminal(self, task: Task) -> WorkflowInstance | None:
        """Check the task's instance. Returns the finalized instance, or None if still running.

        Idempotent: once an instance is terminal, further calls return None and
        change nothing, so callers can fire outcome notifications on a non-None
        return without risking duplicates.
        """
        return self.check_instance(task.workflow_instance_id)

    def cancel_unreachable(self, instance_id: str) -> list[Task]:
        """Cancel PENDING tasks that depend, directly or transitively, on a FAILED or CANCELLED step.

        Such tasks can never become eligible and would keep their instance RUNNING.
        """
        cancelled: list[Task] = []
        with self._store.locked():
            by_step = {t.step_id: t for t in self._store.tasks_for_instance(instance_id)}
            changed = True
            while changed:
                changed = False
                for task in list(by_step.values()):
                    if task.status is not TaskStatus.PENDING:
                        continue
                    blocked = [
                        dep
                        for dep in task.depends_on
                        if dep in by_step
                        and by_step[dep].status in (TaskStatus.FAILED, TaskStatus.CANCELLED)
                    ]
                    if blocked:
                        updated = self._store.transition(task.task_id, TaskStatus.CANCELLED)
                        by_step[task.step_id] = updated
                        cancelled.append(updated)
                        changed = True
                        logger.info(
                            "completion: cancelled %s (step %s), dependency %s will never complete",
                            task.task_id,
                            task.step_id,
                            ", ".join(blocked),
                        )
        return cancelled

    def check_instance(self, instance_id: str) -> WorkflowInstance | None:
        with self._store.locked():
            tasks = self._store.tasks_for_instance(instance_id)
            if not tasks or any(not t.is_terminal for t in tasks):
                return None
            instance = self._store.get_instance(instance_id)
            if instance is None:
                logger.warning("completion: instance not found: %s", instance_id)
                return None
            if instance.status.is_terminal:
                return None

            if instance.aborted_by_step is not None:
                outcome = InstanceStatus.FAILED
            elif any(t.status is TaskStatus.FAILED for t in tasks):
                outcome = InstanceStatus.COMPLETED_WITH_ERRORS
            else:
                outcome = InstanceStatus.COMPLETED
            finished = self._store.update_instance(instance_id, status=outcome)

        succeeded = sum(1 for t in tasks if t.status is TaskStatus.COMPLETED)
        logger.info(
            "completion: workflow instance %s %s: %d/%d tasks succeeded",
            instance_id,
            outcome.value,
            succeeded,
            len(tasks),
        )
        return finished

    def sweep(self) -> list[WorkflowInstance]:
        """Check every RUNNING instance. Catches terminal transitions made outside the driver.

        Unreachable dependents are cancelled first.
        """
        finished = []
        for instance in self._store.list_instances(InstanceStatus.RUNNING):
            self.cancel_unreachable(instance.instance_id)
            result = self.check_instance(instance.instance_id)
            if result is not None:
                finished.append(result)
        return finished
