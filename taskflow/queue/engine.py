"""WorkflowEngine: start workflows, drive the task queue and serve the admin surface."""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from taskflow.audit.topics import AuditTopics
from taskflow.contract import AuditSink, Notifier
from taskflow.queue.completion import CompletionDetector
from taskflow.queue.errors import (
    ExecutionError,
    InstanceNotFoundError,
    InvalidTransitionError,
    TaskNotFoundError,
    TaskTimeoutError,
    WorkflowNotFoundError,
)
from taskflow.queue.executor import CapabilityRegistry, Executor
from taskflow.queue.models import (
    DashboardResult,
    InstanceStatus,
    InstanceStatusResult,
    QueueStats,
    StartWorkflowResult,
    Task,
    TaskListResult,
    TaskRunResult,
    TaskSpec,
    TaskStatus,
    TaskView,
    WorkflowInstance,
    WorkflowSummary,
)
from taskflow.queue.retry import RetryManager, RetryPolicy
from taskflow.queue.scheduler import Scheduler
from taskflow.queue.sla import SlaMonitor, SlaViolation
from taskflow.queue.store import TaskStore
from taskflow.queue.templates import build_context, completed_outputs, resolve_templates
from taskflow.workflows.catalog import WorkflowCatalog
from taskflow.workflows.definition import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_TIMEOUT_SEC,
    StepDefinition,
    WorkflowDefinition,
)

logger = logging.getLogger(__name__)

_CANCELLABLE = (TaskStatus.PENDING, TaskStatus.RETRY, TaskStatus.IN_PROGRESS)


class WorkflowEngine:
    """Owns the store and wires scheduler, executor, retry, SLA and completion together.

    The store is the only shared mutable state. Claiming and applying results
    are short critical sections under the store lock; capability calls run
    outside it, so up to ``max_concurrency`` calls can be in flight at once.
    """

    def __init__(
        self,
        store: TaskStore | None = None,
        catalog: WorkflowCatalog | None = None,
        registry: CapabilityRegistry | None = None,
        *,
        notifier: Notifier | None = None,
        audit: AuditSink | None = None,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.time,
        tick_sec: float = 1.0,
        max_tasks_per_tick: int = 10,
        max_concurrency: int = 1,
        default_timeout_sec: float = DEFAULT_TIMEOUT_SEC,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
        sla_check_interval_sec: float = 300.0,
        sla_alert_to: str = "ceo",
        sla_alert_after_minutes: float = 60.0,
        sla_max_duration_minutes: float = 120.0,
        cleanup_interval_sec: float = 3600.0,
        cleanup_max_age_hours: float = 24.0,
        audit_retention_days: float = 30.0,
        triggers: dict[str, str] | None = None,
    ) -> None:
        self._store = store or TaskStore(clock=clock)
        self._catalog = catalog or WorkflowCatalog()
        self._registry = registry or CapabilityRegistry()
        self._notifier = notifier
        self._audit_sink = audit
        self._tick_sec = tick_sec
        self._max_tasks_per_tick = max_tasks_per_tick
        self._max_concurrency = max(1, max_concurrency)
        self._default_timeout = default_timeout_sec
        self._default_max_retries = default_max_retries
        self._sla_check_interval = sla_check_interval_sec
        self._sla_alert_to = sla_alert_to
        self._cleanup_interval = cleanup_interval_sec
        self._cleanup_max_age_hours = cleanup_max_age_hours
        self._audit_retention_days = audit_retention_days
        self._triggers = dict(triggers or {})

        self._scheduler = Scheduler(self._store)
        self._executor = Executor(self._registry)
        self._retry = RetryManager(self._store, self._catalog.get, retry_policy)
        self._sla = SlaMonitor(
            self._store,
            self._catalog.get,
            default_alert_after_minutes=sla_alert_after_minutes,
            default_max_duration_minutes=sla_max_duration_minutes,
        )
        self._completion = CompletionDetector(self._store)

        self._wake = asyncio.Event()
        self._loops: list[asyncio.Task[None]] = []
        self._stopped = False

    @property
    def store(self) -> TaskStore:
        return self._store

    @property
    def catalog(self) -> WorkflowCatalog:
        return self._catalog

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    @property
    def triggers(self) -> dict[str, str]:
        return dict(self._triggers)

    # --- Starting workflows ---

    def _spec_factory(
        self,
        definition: WorkflowDefinition,
        step: StepDefinition,
        context: dict[str, Any],
    ) -> Callable[[str], TaskSpec]:
        def make(instance_id: str) -> TaskSpec:
            return TaskSpec(
                workflow_id=definition.id,
                workflow_instance_id=instance_id,
                step_id=step.id,
                agent=step.agent,
                action=step.action,
                input=resolve_templates(step.input, context),
                priority=definition.step_priority(step),
                timeout=step.timeout_seconds(self._default_timeout),
                max_retries=step.retries if step.retries is not None else self._default_max_retries,
                delay=step.delay_seconds,
                depends_on=tuple(step.depends_on),
            )

        return make

    async def start_workflow(
        self,
        definition_id: str,
        trigger_data: dict[str, Any] | None = None,
        triggered_by: str = "system",
    ) -> StartWorkflowResult:
        """Create an instance and one task per step. Raises WorkflowNotFoundError for unknown IDs."""
        definition = self._catalog.get(definition_id)
        if definition is None:
            raise WorkflowNotFoundError(definition_id)
        data = dict(trigger_data or {})
        context = build_context(data)
        instance, tasks = self._store.start_instance(
            definition.id,
            triggered_by,
            data,
            [self._spec_factory(definition, step, context) for step in definition.steps],
        )
        logger.info(
            "engine: started workflow %s (%s) with %d tasks, triggered by %s",
            definition.id,
            instance.instance_id,
            len(tasks),
            triggered_by,
        )
        self._wake.set()
        await self._audit(
            AuditTopics.WORKFLOW_STARTED,
            {
                "workflow_id": definition.id,
                "instance_id": instance.instance_id,
                "status": instance.status.value,
                "triggered_by": triggered_by,
                "steps": len(tasks),
            },
        )
        return StartWorkflowResult(
            instance_id=instance.instance_id,
            workflow_id=definition.id,
            task_ids=dict(instance.task_ids),
            step_count=len(tasks),
        )

    async def trigger_workflow(
        self, event_type: str, data: dict[str, Any] | None = None
    ) -> StartWorkflowResult | None:
        """Start the workflow mapped to ``event_type``. Unknown events return None."""
        workflow_id = self._triggers.get(event_type)
        if workflow_id is None:
            logger.warning("engine: no workflow mapped to event %s", event_type)
            await self._audit(
                AuditTopics.WORKFLOW_TRIGGERED,
                {"event_type": event_type, "workflow_id": None, "status": "ignored"},
            )
            return None
        try:
            result = await self.start_workflow(workflow_id, data, triggered_by=event_type)
        except WorkflowNotFoundError:
            logger.error("engine: event %s maps to unknown workflow %s", event_type, workflow_id)
            await self._audit(
                AuditTopics.WORKFLOW_TRIGGERED,
                {"event_type": event_type, "workflow_id": workflow_id, "status": "error"},
            )
            raise
        await self._audit(
            AuditTopics.WORKFLOW_TRIGGERED,
            {
                "event_type": event_type,
                "workflow_id": workflow_id,
                "instance_id": result.instance_id,
                "status": "started",
            },
        )
        return result

    # --- Dispatch ---

    async def process_next_task(self) -> TaskRunResult | None:
        """Claim the most eligible task, execute it and apply the outcome. None if idle."""
        task = self._scheduler.claim_next()
        if task is None:
            return None
        return await self._dispatch(task)

    async def process_queue(self, max_tasks: int | None = None) -> int:
        """Dispatch up to ``max_tasks`` tasks, at most max_concurrency in flight. Returns count."""
        limit = self._max_tasks_per_tick if max_tasks is None else max_tasks
        if self._max_concurrency == 1:
            processed = 0
            while processed < limit:
                if await self.process_next_task() is None:
                    break
                processed += 1
            return processed

        in_flight: set[asyncio.Task[TaskRunResult]] = set()
        processed = 0
        try:
            while processed < limit or in_flight:
                while processed < limit and len(in_flight) < self._max_concurrency:
                    task = self._scheduler.claim_next()
                    if task is None:
                        break
                    in_flight.add(asyncio.create_task(self._dispatch(task)))
                    processed += 1
                if not in_flight:
                    break
                done, in_flight = await asyncio.wait(in_flight, return_when=asyncio.FIRST_COMPLETED)
                for finished in done:
                    exc = finished.exception()
                    if exc is not None:
                        logger.error("engine: dispatch failed: %s", exc, exc_info=exc)
        except asyncio.CancelledError:
            for pending in in_flight:
                pending.cancel()
            raise
        return processed

    async def _dispatch(self, task: Task) -> TaskRunResult:
        await self._audit(AuditTopics.TASK_STARTED, self._task_payload(task))
        payload = self._resolve_input(task)
        t0 = time.monotonic()
        try:
            output = await self._executor.execute(task.agent, task.action, payload, task.timeout)
        except ExecutionError as e:
            return await self._apply_failure(task, e)
        duration_ms = int((time.monotonic() - t0) * 1000)
        return await self._apply_success(task, output, duration_ms)

    def _resolve_input(self, task: Task) -> dict[str, Any]:
        """Resolve step-output templates against the instance's COMPLETED siblings."""
        instance = self._store.get_instance(task.workflow_instance_id)
        siblings = self._store.tasks_for_instance(task.workflow_instance_id)
        context = build_context(
            instance.trigger_data if instance else {},
            completed_outputs(siblings),
        )
        return resolve_templates(task.input, context)

    def _current_attempt(self, task: Task) -> Task | None:
        """The stored task if ``task``'s attempt still owns it, else None."""
        current = self._store.get(task.task_id)
        if current is None or current.status is not TaskStatus.IN_PROGRESS:
            return None
        if current.attempts != task.attempts:
            return None
        return current

    def _stale_result(self, task: Task) -> TaskRunResult:
        current = self._store.get(task.task_id)
        status = current.status.value if current else "missing"
        logger.info("engine: discarding late result for %s (now %s)", task.task_id, status)
        return TaskRunResult(task_id=task.task_id, status=status)

    async def _apply_success(self, task: Task, output: Any, duration_ms: int) -> TaskRunResult:
        with self._store.locked():
            if self._current_attempt(task) is None:
                return self._stale_result(task)
            done = self._store.transition(task.task_id, TaskStatus.COMPLETED, output=output)
        logger.info("engine: task %s completed in %dms", task.task_id, duration_ms)
        await self._audit(
            AuditTopics.TASK_COMPLETED, {**self._task_payload(done), "duration_ms": duration_ms}
        )
        await self._after_terminal(done)
        return TaskRunResult(task_id=done.task_id, status=done.status.value, output=output)

    async def _apply_failure(self, task: Task, error: ExecutionError) -> TaskRunResult:
        with self._store.locked():
            if self._current_attempt(task) is None:
                return self._stale_result(task)
            updated = self._retry.on_failure(task, error)
        await self._after_failure(updated)
        return TaskRunResult(
            task_id=updated.task_id,
            status=updated.status.value,
            error=updated.error.message if updated.error else str(error),
        )

    async def _after_failure(self, task: Task) -> None:
        if task.status is TaskStatus.RETRY:
            await self._audit(AuditTopics.TASK_RETRY, self._task_payload(task))
            self._wake.set()
            return
        await self._audit(AuditTopics.TASK_FAILED, self._task_payload(task))
        instance = self._store.get_instance(task.workflow_instance_id)
        if instance is not None and instance.aborted_by_step == task.step_id:
            await self._alert_abort(task, instance)
        await self._after_terminal(task)

    async def _after_terminal(self, task: Task) -> None:
        if task.status in (TaskStatus.FAILED, TaskStatus.CANCELLED):
            for dependent in self._completion.cancel_unreachable(task.workflow_instance_id):
                await self._audit(AuditTopics.TASK_CANCELLED, self._task_payload(dependent))
        finished = self._completion.on_task_terminal(task)
        if finished is not None:
            await self._on_instance_finished(finished)

    async def _on_instance_finished(self, instance: WorkflowInstance) -> None:
        duration = (instance.completed_at or instance.updated_at) - instance.created_at
        await self._audit(
            AuditTopics.WORKFLOW_FINISHED,
            {
                "workflow_id": instance.workflow_id,
                "instance_id": instance.instance_id,
                "status": instance.status.value,
                "triggered_by": instance.triggered_by,
                "duration_sec": round(duration, 3),
                "aborted_by_step": instance.aborted_by_step,
            },
        )
        definition = self._catalog.get(instance.workflow_id)
        if (
            instance.status is InstanceStatus.COMPLETED
            and definition is not None
            and definition.on_complete is not None
            and definition.on_complete.notify_to
        ):
            tasks = self._store.tasks_for_instance(instance.instance_id)
            lines = [f"- {t.step_id}: {t.status.value}" for t in tasks]
            await self._notify(
                definition.on_complete.notify_to,
                f"Workflow completed: {definition.name or definition.id}",
                f"Instance {instance.instance_id} completed {len(tasks)} steps "
                f"in {duration / 60:.1f} min.\n" + "\n".join(lines),
            )

    async def _alert_abort(self, task: Task, instance: WorkflowInstance) -> None:
        definition = self._catalog.get(task.workflow_id)
        if definition is None or definition.on_failure is None or not definition.on_failure.alert_to:
            return
        message = task.error.message if task.error else "unknown error"
        await self._notify(
            definition.on_failure.alert_to,
            f"Workflow aborted: {definition.name or definition.id}",
            f"Step {task.step_id} ({task.agent}.{task.action}) failed permanently in instance "
            f"{instance.instance_id}: {message}\nRemaining pending steps were cancelled.",
        )

    # --- Maintenance ---

    async def requeue_retries(self) -> int:
        """Move due RETRY tasks back to PENDING. Returns count."""
        requeued = self._retry.requeue_retries()
        if requeued:
            self._wake.set()
        return len(requeued)

    async def handle_stuck_tasks(self) -> list[Task]:
        """Fail IN_PROGRESS tasks that outlived their timeout through the retry path."""
        handled = []
        for stuck in self._sla.find_stuck_tasks():
            error = TaskTimeoutError(f"Task stuck: exceeded timeout of {stuck.timeout:g}s")
            with self._store.locked():
                if self._current_attempt(stuck) is None:
                    continue
                updated = self._retry.on_failure(stuck, error)
            logger.warning("engine: recovered stuck task %s -> %s", stuck.task_id, updated.status.value)
            await self._after_failure(updated)
            handled.append(updated)
        return handled

    def sweep_instances(self) -> list[WorkflowInstance]:
        """Finalize RUNNING instances whose tasks are all terminal."""
        return self._completion.sweep()

    async def monitor_slas(self) -> list[SlaViolation]:
        """Scan tasks and instances, record violations and alert on critical ones."""
        violations = self._sla.scan() + self._sla.scan_instances()
        for v in violations:
            await self._audit(
                AuditTopics.SLA_VIOLATION,
                {
                    "workflow_id": v.workflow_id,
                    "instance_id": v.instance_id,
                    "task_id": v.task_id,
                    "capability": v.agent,
                    "status": v.severity,
                    "scope": v.scope,
                    "elapsed_minutes": v.elapsed_minutes,
                    "threshold_minutes": v.threshold_minutes,
                },
            )
        critical = [v for v in violations if v.severity == "critical"]
        if critical:
            lines = [
                f"- {v.workflow_id} {v.scope} {v.task_id or v.instance_id}: "
                f"{v.elapsed_minutes} min (max {v.threshold_minutes:g})"
                for v in critical
            ]
            await self._notify(
                self._sla_alert_to,
                f"SLA violation: {len(critical)} critical",
                "\n".join(lines),
            )
        return violations

    async def cleanup(self, max_age_hours: float | None = None) -> int:
        """Drop old terminal tasks and prune the audit journal when it supports cleanup."""
        removed = self._store.cleanup(
            self._cleanup_max_age_hours if max_age_hours is None else max_age_hours
        )
        prune = getattr(self._audit_sink, "cleanup", None)
        if prune is not None:
            try:
                await prune(self._audit_retention_days)
            except Exception as e:
                logger.warning("engine: audit cleanup failed: %s", e)
        return removed

    async def cancel_task(self, task_id: str) -> Task:
        """Operator cancel. Raises TaskNotFoundError or InvalidTransitionError."""
        with self._store.locked():
            task = self._store.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            if task.status not in _CANCELLABLE:
                raise InvalidTransitionError(f"Task {task_id} is {task.status.value} and cannot be cancelled")
            cancelled = self._store.transition(task_id, TaskStatus.CANCELLED)
        logger.info("engine: task %s cancelled (was %s)", task_id, task.status.value)
        await self._audit(AuditTopics.TASK_CANCELLED, self._task_payload(cancelled))
        await self._after_terminal(cancelled)
        return cancelled

    # --- Administrative surface ---

    def list_tasks(
        self,
        status: str | list[str] | None = None,
        workflow_id: str | None = None,
        workflow_instance_id: str | None = None,
        agent: str | None = None,
        limit: int = 100,
        offset: int = 0,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> TaskListResult:
        page = self._store.query(
            status=status,
            workflow_id=workflow_id,
            workflow_instance_id=workflow_instance_id,
            agent=agent,
            limit=limit,
            offset=offset,
            sort_by=sort_by,
            sort_order=sort_order,
        )
        return TaskListResult(
            tasks=[TaskView.from_task(t) for t in page.tasks],
            total=page.total,
            limit=page.limit,
            offset=page.offset,
        )

    def get_task(self, task_id: str) -> TaskView:
        task = self._store.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return TaskView.from_task(task)

    def get_instance(self, instance_id: str) -> InstanceStatusResult:
        instance = self._store.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFoundError(instance_id)
        tasks = self._store.tasks_for_instance(instance_id)
        return InstanceStatusResult(
            instance_id=instance.instance_id,
            workflow_id=instance.workflow_id,
            status=instance.status.value,
            triggered_by=instance.triggered_by,
            trigger_data=instance.trigger_data,
            aborted_by_step=instance.aborted_by_step,
            tasks=[TaskView.from_task(t) for t in tasks],
            created_at=instance.created_at,
            completed_at=instance.completed_at,
        )

    def queue_stats(self) -> QueueStats:
        return self._store.stats()

    def dashboard(self) -> DashboardResult:
        workflows = {
            d.id: WorkflowSummary(
                name=d.name or d.id,
                steps=len(d.steps),
                max_duration_minutes=d.sla.max_duration_minutes if d.sla else None,
                alert_after_minutes=d.sla.alert_after_minutes if d.sla else None,
            )
            for d in self._catalog
        }
        return DashboardResult(
            queue_stats=self.queue_stats(),
            workflows=workflows,
            recent_tasks=self.list_tasks(limit=20).tasks,
            timestamp=self._store.clock(),
        )

    async def performance_metrics(self, days: float = 7) -> Any:
        """Per-workflow and per-trigger outcome metrics from the audit journal, or None."""
        metrics = getattr(self._audit_sink, "performance_metrics", None)
        if metrics is None:
            return None
        return await metrics(days)

    # --- Collaborators ---

    def _task_payload(self, task: Task) -> dict[str, Any]:
        return {
            "workflow_id": task.workflow_id,
            "instance_id": task.workflow_instance_id,
            "task_id": task.task_id,
            "step_id": task.step_id,
            "capability": task.agent,
            "action": task.action,
            "status": task.status.value,
            "error": task.error.message if task.error else None,
            "attempt": task.attempts,
        }

    async def _audit(self, topic: str, payload: dict[str, Any]) -> None:
        if self._audit_sink is None:
            return
        try:
            await self._audit_sink.record(topic, payload)
        except Exception as e:
            logger.warning("engine: audit sink failed for %s: %s", topic, e)

    async def _notify(self, target: str, subject: str, body: str) -> None:
        if self._notifier is None:
            logger.info("engine: no notifier configured, dropping message to %s: %s", target, subject)
            return
        try:
            await self._notifier.notify(target, subject, body)
        except Exception as e:
            logger.warning("engine: notifier failed for %s: %s", target, e)

    # --- Background loops ---

    async def _run_every(
        self,
        name: str,
        interval: float,
        step: Callable[[], Awaitable[Any]],
    ) -> None:
        while not self._stopped:
            try:
                await step()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("engine: %s loop error: %s", name, e)
            await asyncio.sleep(interval)

    async def _queue_loop(self) -> None:
        while not self._stopped:
            try:
                processed = await self.process_queue()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("engine: queue loop error: %s", e)
                processed = 0
            if processed:
                continue
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._tick_sec)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()

    async def _maintenance(self) -> None:
        await self.handle_stuck_tasks()
        await self.requeue_retries()
        for instance in self.sweep_instances():
            await self._on_instance_finished(instance)
        await self.monitor_slas()

    async def start(self) -> None:
        """Start queue, maintenance and cleanup loops as asyncio Tasks."""
        if self._loops:
            return
        self._stopped = False
        self._loops = [
            asyncio.create_task(self._queue_loop()),
            asyncio.create_task(
                self._run_every("maintenance", self._sla_check_interval, self._maintenance)
            ),
            asyncio.create_task(
                self._run_every("cleanup", self._cleanup_interval, self.cleanup)
            ),
        ]
        logger.info(
            "engine: started (%d workflows, %d capabilities, concurrency=%d)",
            len(self._catalog),
            len(self._registry),
            self._max_concurrency,
        )

    async def stop(self) -> None:
        """Cancel the loops and wait for them to exit."""
        self._stopped = True
        self._wake.set()
        for loop in self._loops:
            loop.cancel()
        for loop in self._loops:
            try:
                await loop
            except asyncio.CancelledError:
                pass
        self._loops = []
        logger.info("engine: stopped")

    async def run_background(self) -> None:
        """Run all loops until cancelled."""
        await self.start()
        try:
            await asyncio.gather(*self._loops)
        finally:
            await self.stop()
