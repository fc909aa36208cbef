"""Tests for WorkflowEngine: end-to-end workflows, triggers, notifications, admin surface, loops."""

import asyncio
import time
from typing import Any
from unittest.mock import AsyncMock

import pytest

from taskflow.queue.engine import WorkflowEngine
from taskflow.queue.errors import (
    InstanceNotFoundError,
    InvalidTransitionError,
    TaskNotFoundError,
    WorkflowNotFoundError,
)
from taskflow.queue.executor import CapabilityRegistry
from taskflow.queue.models import InstanceStatus, TaskStatus
from taskflow.queue.scheduler import Scheduler
from taskflow.workflows import WorkflowCatalog, WorkflowDefinition


def _catalog(*definitions: dict) -> WorkflowCatalog:
    return WorkflowCatalog([WorkflowDefinition.model_validate(d) for d in definitions])


def _three_steps(workflow_id: str = "three", **step_b: Any) -> dict:
    return {
        "id": workflow_id,
        "name": "Three Steps",
        "priority": 5,
        "onComplete": {"notifyTo": "ceo"},
        "onFailure": {"alertTo": "ceo"},
        "steps": [
            {"id": "a", "agent": "work", "action": "a", "retries": 2},
            {"id": "b", "agent": "work", "action": "b", "retries": 2, **step_b},
            {"id": "c", "agent": "work", "action": "c", "retries": 2},
        ],
    }


class _Flaky:
    """Fails the first ``failures`` calls, then succeeds."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    async def invoke(self, payload: dict[str, Any]) -> Any:
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"transient failure {self.calls}")
        return {"ok": True, "calls": self.calls}


async def _ok(payload: dict[str, Any]) -> dict[str, Any]:
    return {"ok": True, "payload": payload}


def _registry(**handlers: Any) -> CapabilityRegistry:
    registry = CapabilityRegistry()
    for action in ("a", "b", "c"):
        registry.register("work", action, handlers.get(action, _ok))
    return registry


async def _drain(engine: WorkflowEngine, limit: int = 50) -> int:
    processed = 0
    while processed < limit and await engine.process_next_task() is not None:
        processed += 1
    return processed


class TestEndToEnd:
    """Full workflow runs driven by process_next_task."""

    @pytest.mark.asyncio
    async def test_transient_failures_then_success(self, clock) -> None:
        flaky = _Flaky(failures=2)
        engine = WorkflowEngine(
            catalog=_catalog(_three_steps()), registry=_registry(b=flaky), clock=clock
        )
        started = await engine.start_workflow("three", {"leadId": "L1"})
        await _drain(engine)

        step_b = engine.store.get(started.task_ids["b"])
        assert step_b.status is TaskStatus.COMPLETED
        assert step_b.retry_count == 2
        assert flaky.calls == 3
        assert engine.get_instance(started.instance_id).status == "completed"

    @pytest.mark.asyncio
    async def test_abort_on_failure_cancels_pending(self, clock) -> None:
        always_fails = _Flaky(failures=99)
        notifier = AsyncMock()
        engine = WorkflowEngine(
            catalog=_catalog(_three_steps(onFailure="abort")),
            registry=_registry(b=always_fails),
            notifier=notifier,
            clock=clock,
        )
        started = await engine.start_workflow("three")
        await _drain(engine)

        step_b = engine.store.get(started.task_ids["b"])
        step_c = engine.store.get(started.task_ids["c"])
        assert step_b.status is TaskStatus.FAILED
        assert step_b.retry_count == 2
        assert step_b.error.attempt == 3
        assert always_fails.calls == 3
        assert step_c.status is TaskStatus.CANCELLED

        status = engine.get_instance(started.instance_id)
        assert status.status == "failed"
        assert status.aborted_by_step == "b"
        notifier.notify.assert_awaited_once()
        target, subject, body = notifier.notify.await_args.args
        assert target == "ceo"
        assert "aborted" in subject
        assert "transient failure 3" in body

    @pytest.mark.asyncio
    async def test_failure_without_abort_completes_with_errors(self, clock) -> None:
        engine = WorkflowEngine(
            catalog=_catalog(_three_steps()), registry=_registry(b=_Flaky(failures=99)), clock=clock
        )
        started = await engine.start_workflow("three")
        await _drain(engine)
        assert engine.get_instance(started.instance_id).status == "completed_with_errors"
        assert engine.store.get(started.task_ids["c"]).status is TaskStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_unresolvable_capability_fails_without_retry(self, clock) -> None:
        registry = CapabilityRegistry()
        registry.register("work", "a", _ok)
        registry.register("work", "c", _ok)
        engine = WorkflowEngine(catalog=_catalog(_three_steps()), registry=registry, clock=clock)
        started = await engine.start_workflow("three")
        await _drain(engine)

        step_b = engine.store.get(started.task_ids["b"])
        assert step_b.status is TaskStatus.FAILED
        assert step_b.retry_count == 0
        assert step_b.error.kind == "unresolvable"

    @pytest.mark.asyncio
    async def test_step_outputs_feed_dependents(self, clock) -> None:
        seen: list[dict[str, Any]] = []

        async def score(payload: dict[str, Any]) -> dict[str, Any]:
            return {"score": 87}

        async def update(payload: dict[str, Any]) -> dict[str, Any]:
            seen.append(payload)
            return {"updated": True}

        registry = CapabilityRegistry()
        registry.register("qualifier", "score", score)
        registry.register("crm", "update", update)
        definition = {
            "id": "lead",
            "steps": [
                {
                    "id": "update",
                    "agent": "crm",
                    "action": "update",
                    "dependsOn": ["score"],
                    "input": {
                        "leadId": "{{trigger.data.leadId}}",
                        "score": "{{steps.score.output.score}}",
                    },
                },
                {"id": "score", "agent": "qualifier", "action": "score"},
            ],
        }
        engine = WorkflowEngine(catalog=_catalog(definition), registry=registry, clock=clock)
        started = await engine.start_workflow("lead", {"leadId": "L1"})

        stored = engine.store.get(started.task_ids["update"])
        assert stored.input == {"leadId": "L1", "score": "{{steps.score.output.score}}"}
        await _drain(engine)
        assert seen == [{"leadId": "L1", "score": 87}]

    @pytest.mark.asyncio
    async def test_delayed_step_waits(self, clock) -> None:
        definition = {
            "id": "delayed",
            "steps": [{"id": "a", "agent": "work", "action": "a", "delay": "5m"}],
        }
        engine = WorkflowEngine(catalog=_catalog(definition), registry=_registry(), clock=clock)
        started = await engine.start_workflow("delayed")
        assert await engine.process_next_task() is None
        clock.advance(300)
        result = await engine.process_next_task()
        assert result.task_id == started.task_ids["a"]
        assert result.status == "completed"

    @pytest.mark.asyncio
    async def test_start_applies_step_settings(self, clock) -> None:
        definition = {
            "id": "cfg",
            "sla": {"maxDurationMinutes": 20},
            "steps": [
                {"id": "a", "agent": "work", "action": "a", "timeout": "2m", "retries": 5},
                {"id": "b", "agent": "work", "action": "b"},
            ],
        }
        engine = WorkflowEngine(
            catalog=_catalog(definition), registry=_registry(), clock=clock, default_max_retries=1
        )
        started = await engine.start_workflow("cfg", triggered_by="tester")
        a = engine.store.get(started.task_ids["a"])
        b = engine.store.get(started.task_ids["b"])
        assert (a.timeout, a.max_retries, a.priority) == (120, 5, 1)
        assert (b.timeout, b.max_retries) == (60, 1)
        assert started.step_count == 2
        assert engine.get_instance(started.instance_id).triggered_by == "tester"

    @pytest.mark.asyncio
    async def test_engine_default_timeout_applies_to_unset_steps(self, clock) -> None:
        definition = {
            "id": "cfg",
            "steps": [
                {"id": "a", "agent": "work", "action": "a", "timeout": "soon"},
                {"id": "b", "agent": "work", "action": "b", "timeout": 5},
            ],
        }
        engine = WorkflowEngine(
            catalog=_catalog(definition), registry=_registry(), clock=clock, default_timeout_sec=90
        )
        started = await engine.start_workflow("cfg")
        assert engine.store.get(started.task_ids["a"]).timeout == 90
        assert engine.store.get(started.task_ids["b"]).timeout == 5

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, clock) -> None:
        engine = WorkflowEngine(clock=clock)
        with pytest.raises(WorkflowNotFoundError):
            await engine.start_workflow("missing")


class TestTriggers:
    """Event type -> workflow mapping."""

    @pytest.mark.asyncio
    async def test_mapped_event_starts_workflow(self, clock) -> None:
        audit = AsyncMock()
        engine = WorkflowEngine(
            catalog=_catalog(_three_steps()),
            registry=_registry(),
            audit=audit,
            triggers={"new_lead": "three"},
            clock=clock,
        )
        result = await engine.trigger_workflow("new_lead", {"leadId": "L9"})
        instance = engine.get_instance(result.instance_id)
        assert instance.triggered_by == "new_lead"
        assert instance.trigger_data == {"leadId": "L9"}
        topics = [c.args[0] for c in audit.record.await_args_list]
        assert topics == ["workflow.started", "workflow.triggered"]

    @pytest.mark.asyncio
    async def test_unmapped_event_ignored(self, clock) -> None:
        engine = WorkflowEngine(catalog=_catalog(_three_steps()), clock=clock)
        assert await engine.trigger_workflow("unknown_event", {}) is None
        assert engine.store.tasks() == []


class TestNotificationsAndAudit:
    """Collaborator calls and their failure isolation."""

    @pytest.mark.asyncio
    async def test_completion_notifies_once(self, clock) -> None:
        notifier = AsyncMock()
        engine = WorkflowEngine(
            catalog=_catalog(_three_steps()), registry=_registry(), notifier=notifier, clock=clock
        )
        await engine.start_workflow("three")
        await _drain(engine)
        engine.sweep_instances()
        notifier.notify.assert_awaited_once()
        target, subject, _ = notifier.notify.await_args.args
        assert target == "ceo"
        assert subject == "Workflow completed: Three Steps"

    @pytest.mark.asyncio
    async def test_audit_records_transitions(self, clock) -> None:
        audit = AsyncMock()
        engine = WorkflowEngine(
            catalog=_catalog(_three_steps()), registry=_registry(b=_Flaky(1)), audit=audit, clock=clock
        )
        await engine.start_workflow("three")
        await _drain(engine)
        topics = [c.args[0] for c in audit.record.await_args_list]
        assert topics[0] == "workflow.started"
        assert topics.count("task.completed") == 3
        assert topics.count("task.retry") == 1
        assert topics[-1] == "workflow.finished"
        finished = audit.record.await_args_list[-1].args[1]
        assert finished["status"] == "completed"

    @pytest.mark.asyncio
    async def test_failing_collaborators_do_not_break_engine(self, clock) -> None:
        audit = AsyncMock()
        audit.record.side_effect = OSError("disk full")
        notifier = AsyncMock()
        notifier.notify.side_effect = ConnectionError("smtp down")
        engine = WorkflowEngine(
            catalog=_catalog(_three_steps()),
            registry=_registry(),
            audit=audit,
            notifier=notifier,
            clock=clock,
        )
        started = await engine.start_workflow("three")
        assert await _drain(engine) == 3
        assert engine.get_instance(started.instance_id).status == "completed"

    @pytest.mark.asyncio
    async def test_sla_critical_alerts(self, clock) -> None:
        notifier = AsyncMock()
        definition = {
            "id": "sla",
            "sla": {"maxDurationMinutes": 60, "alertAfterMinutes": 30},
            "steps": [{"id": "a", "agent": "work", "action": "a", "timeout": "3h"}],
        }
        engine = WorkflowEngine(
            catalog=_catalog(definition), registry=_registry(), notifier=notifier, clock=clock
        )
        await engine.start_workflow("sla")
        Scheduler(engine.store).claim_next()
        clock.advance(70 * 60)

        violations = await engine.monitor_slas()
        assert {(v.scope, v.severity) for v in violations} == {("task", "critical"), ("instance", "critical")}
        notifier.notify.assert_awaited_once()
        assert notifier.notify.await_args.args[0] == "ceo"


class TestRecovery:
    """Stuck tasks, cancellation and late results."""

    @pytest.mark.asyncio
    async def test_failed_continue_step_cancels_dependents(self, clock) -> None:
        """Dependents of a permanently failed step are cancelled so the instance can finish."""
        definition = {
            "id": "chain",
            "steps": [
                {"id": "a", "agent": "work", "action": "a", "retries": 0},
                {"id": "b", "agent": "work", "action": "b", "dependsOn": ["a"]},
                {"id": "c", "agent": "work", "action": "c", "dependsOn": ["b"]},
                {"id": "side", "agent": "work", "action": "b"},
            ],
        }
        audit = AsyncMock()
        engine = WorkflowEngine(
            catalog=_catalog(definition),
            registry=_registry(a=_Flaky(failures=99)),
            audit=audit,
            clock=clock,
        )
        started = await engine.start_workflow("chain")
        await _drain(engine)

        status = {step: engine.store.get(tid).status for step, tid in started.task_ids.items()}
        assert status == {
            "a": TaskStatus.FAILED,
            "b": TaskStatus.CANCELLED,
            "c": TaskStatus.CANCELLED,
            "side": TaskStatus.COMPLETED,
        }
        instance = engine.get_instance(started.instance_id)
        assert instance.status == "completed_with_errors"
        topics = [c.args[0] for c in audit.record.await_args_list]
        assert topics.count("task.cancelled") == 2
        assert topics[-1] == "workflow.finished"

    @pytest.mark.asyncio
    async def test_operator_cancel_cascades_to_dependents(self, clock) -> None:
        definition = {
            "id": "pair",
            "steps": [
                {"id": "a", "agent": "work", "action": "a"},
                {"id": "b", "agent": "work", "action": "b", "dependsOn": ["a"]},
            ],
        }
        engine = WorkflowEngine(catalog=_catalog(definition), registry=_registry(), clock=clock)
        started = await engine.start_workflow("pair")
        await engine.cancel_task(started.task_ids["a"])
        assert engine.store.get(started.task_ids["b"]).status is TaskStatus.CANCELLED
        assert engine.store.get_instance(started.instance_id).status is InstanceStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stuck_task_goes_through_retry(self, clock) -> None:
        definition = {"id": "stuck", "steps": [{"id": "a", "agent": "work", "action": "a", "timeout": 30}]}
        engine = WorkflowEngine(catalog=_catalog(definition), registry=_registry(), clock=clock)
        started = await engine.start_workflow("stuck")
        Scheduler(engine.store).claim_next()
        clock.advance(31)

        handled = await engine.handle_stuck_tasks()
        assert [t.task_id for t in handled] == [started.task_ids["a"]]
        task = engine.store.get(started.task_ids["a"])
        assert task.status is TaskStatus.RETRY
        assert task.error.kind == "timeout"
        assert task.error.message == "Task stuck: exceeded timeout of 30s"

    @pytest.mark.asyncio
    async def test_stuck_task_exhausted_fails_and_finishes_instance(self, clock) -> None:
        definition = {
            "id": "stuck",
            "steps": [{"id": "a", "agent": "work", "action": "a", "timeout": 30, "retries": 0}],
        }
        engine = WorkflowEngine(catalog=_catalog(definition), registry=_registry(), clock=clock)
        started = await engine.start_workflow("stuck")
        Scheduler(engine.store).claim_next()
        clock.advance(31)
        await engine.handle_stuck_tasks()
        assert engine.store.get(started.task_ids["a"]).status is TaskStatus.FAILED
        assert engine.get_instance(started.instance_id).status == "completed_with_errors"

    @pytest.mark.asyncio
    async def test_result_discarded_after_cancel(self, clock) -> None:
        engine: WorkflowEngine

        async def cancels_itself(payload: dict[str, Any]) -> dict[str, Any]:
            await engine.cancel_task(payload["task_id"])
            return {"late": True}

        registry = CapabilityRegistry()
        registry.register("work", "a", cancels_itself)
        definition = {"id": "one", "steps": [{"id": "a", "agent": "work", "action": "a"}]}
        engine = WorkflowEngine(catalog=_catalog(definition), registry=registry, clock=clock)
        started = await engine.start_workflow("one")
        engine.store.update(started.task_ids["a"], input={"task_id": started.task_ids["a"]})

        result = await engine.process_next_task()
        assert result.status == "cancelled"
        task = engine.store.get(started.task_ids["a"])
        assert task.status is TaskStatus.CANCELLED
        assert task.output is None
        assert engine.get_instance(started.instance_id).status == "completed"

    @pytest.mark.asyncio
    async def test_late_result_after_stuck_recovery_discarded(self, clock) -> None:
        release = asyncio.Event()
        engine: WorkflowEngine

        async def hangs(payload: dict[str, Any]) -> dict[str, Any]:
            await release.wait()
            return {"late": True}

        registry = CapabilityRegistry()
        registry.register("work", "a", hangs)
        definition = {"id": "one", "steps": [{"id": "a", "agent": "work", "action": "a", "timeout": 30}]}
        engine = WorkflowEngine(catalog=_catalog(definition), registry=registry, clock=clock)
        started = await engine.start_workflow("one")

        dispatch = asyncio.create_task(engine.process_next_task())
        await asyncio.sleep(0.01)
        clock.advance(31)
        await engine.handle_stuck_tasks()
        release.set()
        result = await dispatch

        assert result.status == "retry"
        task = engine.store.get(started.task_ids["a"])
        assert task.status is TaskStatus.RETRY
        assert task.output is None

    @pytest.mark.asyncio
    async def test_cancel_task_errors(self, clock) -> None:
        engine = WorkflowEngine(catalog=_catalog(_three_steps()), registry=_registry(), clock=clock)
        started = await engine.start_workflow("three")
        with pytest.raises(TaskNotFoundError):
            await engine.cancel_task("task_missing")
        await engine.cancel_task(started.task_ids["a"])
        with pytest.raises(InvalidTransitionError):
            await engine.cancel_task(started.task_ids["a"])


class TestAdminSurface:
    """Queries for operational visibility."""

    @pytest.mark.asyncio
    async def test_queries(self, clock) -> None:
        engine = WorkflowEngine(
            catalog=_catalog(_three_steps(onFailure="abort")),
            registry=_registry(b=_Flaky(99)),
            clock=clock,
        )
        started = await engine.start_workflow("three")
        await _drain(engine)

        listing = engine.list_tasks(status="failed")
        assert listing.total == 1
        assert listing.tasks[0].error.message == "transient failure 3"
        assert listing.tasks[0].error.attempt == 3

        view = engine.get_task(started.task_ids["c"])
        assert view.status == "cancelled"

        stats = engine.queue_stats()
        assert (stats.completed, stats.failed, stats.cancelled) == (1, 1, 1)
        assert stats.by_workflow["three"].total == 3

        dashboard = engine.dashboard()
        assert dashboard.workflows["three"].steps == 3
        assert len(dashboard.recent_tasks) == 3

        with pytest.raises(TaskNotFoundError):
            engine.get_task("task_missing")
        with pytest.raises(InstanceNotFoundError):
            engine.get_instance("wf_missing")

    @pytest.mark.asyncio
    async def test_performance_metrics_without_audit(self, clock) -> None:
        assert await WorkflowEngine(clock=clock).performance_metrics() is None

    @pytest.mark.asyncio
    async def test_cleanup_drops_old_terminal_tasks(self, clock) -> None:
        engine = WorkflowEngine(
            catalog=_catalog(_three_steps()), registry=_registry(), clock=clock, cleanup_max_age_hours=1
        )
        await engine.start_workflow("three")
        await _drain(engine)
        clock.advance(2 * 3600)
        assert await engine.cleanup() == 3
        assert engine.store.tasks() == []


class TestConcurrencyAndLoops:
    """process_queue concurrency and background loops."""

    @pytest.mark.asyncio
    async def test_process_queue_runs_concurrently(self, clock) -> None:
        async def slow(payload: dict[str, Any]) -> dict[str, Any]:
            await asyncio.sleep(0.2)
            return {"ok": True}

        engine = WorkflowEngine(
            catalog=_catalog(_three_steps()),
            registry=_registry(a=slow, b=slow, c=slow),
            max_concurrency=3,
            clock=clock,
        )
        started = await engine.start_workflow("three")
        t0 = time.monotonic()
        assert await engine.process_queue() == 3
        assert time.monotonic() - t0 < 0.5
        assert engine.get_instance(started.instance_id).status == "completed"

    @pytest.mark.asyncio
    async def test_process_queue_respects_max_tasks(self, clock) -> None:
        engine = WorkflowEngine(catalog=_catalog(_three_steps()), registry=_registry(), clock=clock)
        await engine.start_workflow("three")
        assert await engine.process_queue(max_tasks=2) == 2
        assert engine.queue_stats().pending == 1

    @pytest.mark.asyncio
    async def test_background_loops_complete_workflow(self) -> None:
        engine = WorkflowEngine(
            catalog=_catalog(_three_steps()),
            registry=_registry(b=_Flaky(1)),
            tick_sec=0.05,
            sla_check_interval_sec=0.05,
        )
        await engine.start()
        try:
            started = await engine.start_workflow("three")
            for _ in range(40):
                await asyncio.sleep(0.05)
                if engine.store.get_instance(started.instance_id).status is not InstanceStatus.RUNNING:
                    break
        finally:
            await engine.stop()
        assert engine.get_instance(started.instance_id).status == "completed"
