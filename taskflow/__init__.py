"""Workflow task-queue orchestrator: dependent tasks, retries, timeouts and SLA monitoring."""

from taskflow.queue import WorkflowEngine

__all__ = ["WorkflowEngine"]
