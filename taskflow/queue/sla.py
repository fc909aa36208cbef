"""SLA Monitor and stuck-task detector. Read-only over the Task Store."""

import logging
from dataclasses import dataclass
from typing import Callable, Literal

from taskflow.queue.models import InstanceStatus, Task, TaskStatus
from taskflow.queue.store import TaskStore
from taskflow.workflows.definition import WorkflowDefinition

logger = logging.getLogger(__name__)

DEFAULT_ALERT_AFTER_MINUTES = 60.0
DEFAULT_MAX_DURATION_MINUTES = 120.0

Severity = Literal["warning", "critical"]


@dataclass(frozen=True)
class SlaViolation:
    """One SLA breach. scope is 'task' (in-flight task) or 'instance' (running workflow)."""

    scope: Literal["task", "instance"]
    severity: Severity
    workflow_id: str
    instance_id: str
    elapsed_minutes: float
    threshold_minutes: float
    task_id: str | None = None
    step_id: str | None = None
    agent: str | None = None


class SlaMonitor:
    """Report duration breaches against each workflow's SLA thresholds. Never mutates state."""

    def __init__(
        self,
        store: TaskStore,
        definitions: Callable[[str], WorkflowDefinition | None],
        default_alert_after_minutes: float = DEFAULT_ALERT_AFTER_MINUTES,
        default_max_duration_minutes: float = DEFAULT_MAX_DURATION_MINUTES,
    ) -> None:
        self._store = store
        self._definitions = definitions
        self._default_alert = default_alert_after_minutes
        self._default_max = default_max_duration_minutes

    def _thresholds(self, workflow_id: str) -> tuple[float, float] | None:
        definition = self._definitions(workflow_id)
        if definition is None:
            return None
        sla = definition.sla
        alert = sla.alert_after_minutes if sla and sla.alert_after_minutes is not None else self._default_alert
        maximum = sla.max_duration_minutes if sla and sla.max_duration_minutes is not None else self._default_max
        return alert, maximum

    def _classify(self, elapsed_minutes: float, alert: float, maximum: float) -> tuple[Severity, float] | None:
        if elapsed_minutes > maximum:
            return "critical", maximum
        if elapsed_minutes > alert:
            return "warning", alert
        return None

    def scan(self, now: float | None = None) -> list[SlaViolation]:
        """Check every IN_PROGRESS task's elapsed time since started_at."""
        when = self._store.clock() if now is None else now
        violations: list[SlaViolation] = []
        for task in self._store.tasks():
            if task.status is not TaskStatus.IN_PROGRESS or task.started_at is None:
                continue
            thresholds = self._thresholds(task.workflow_id)
            if thresholds is None:
                continue
            elapsed = (when - task.started_at) / 60.0
            result = self._classify(elapsed, *thresholds)
            if result is None:
                continue
            severity, threshold = result
            violations.append(
                SlaViolation(
                    scope="task",
                    severity=severity,
                    workflow_id=task.workflow_id,
                    instance_id=task.workflow_instance_id,
                    elapsed_minutes=round(elapsed, 1),
                    threshold_minutes=threshold,
                    task_id=task.task_id,
                    step_id=task.step_id,
                    agent=task.agent,
                )
            )
        if violations:
            logger.warning("sla: %d task violations detected", len(violations))
        return violations

    def scan_instances(self, now: float | None = None) -> list[SlaViolation]:
        """Check every RUNNING workflow instance's elapsed time since creation."""
        when = self._store.clock() if now is None else now
        violations: list[SlaViolation] = []
        for instance in self._store.list_instances(InstanceStatus.RUNNING):
            thresholds = self._thresholds(instance.workflow_id)
            if thresholds is None:
                continue
            elapsed = (when - instance.created_at) / 60.0
            result = self._classify(elapsed, *thresholds)
            if result is None:
                continue
            severity, threshold = result
            violations.append(
                SlaViolation(
                    scope="instance",
                    severity=severity,
                    workflow_id=instance.workflow_id,
                    instance_id=instance.instance_id,
                    elapsed_minutes=round(elapsed, 1),
                    threshold_minutes=threshold,
                )
            )
        if violations:
            logger.warning("sla: %d instance violations detected", len(violations))
        return violations

    def find_stuck_tasks(self, now: float | None = None) -> list[Task]:
        """IN_PROGRESS tasks whose current attempt has outlived the task's own timeout."""
        when = self._store.clock() if now is None else now
        return [
            t
            for t in self._store.tasks()
            if t.status is TaskStatus.IN_PROGRESS
            and t.attempt_started_at is not None
            and when - t.attempt_started_at > t.timeout
        ]
