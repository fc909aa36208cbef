"""Audit journal result models."""

from typing import Any

from pydantic import BaseModel, Field


class AuditRecord(BaseModel):
    """One journal row."""

    id: int
    topic: str
    workflow_id: str | None = None
    instance_id: str | None = None
    task_id: str | None = None
    capability: str | None = None
    action: str | None = None
    status: str | None = None
    error: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: float


class WorkflowMetrics(BaseModel):
    count: int = 0
    success: int = 0
    with_errors: int = 0
    failed: int = 0


class TriggerMetrics(BaseModel):
    count: int = 0


class PerformanceMetrics(BaseModel):
    """Finished workflow instances over a time window, per workflow and per trigger."""

    days: float
    total_executions: int = 0
    by_workflow: dict[str, WorkflowMetrics] = Field(default_factory=dict)
    by_trigger: dict[str, TriggerMetrics] = Field(default_factory=dict)
    avg_duration_sec: float | None = None
    success_rate: float = 0.0
