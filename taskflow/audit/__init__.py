"""Audit sink: SQLite journal of task and workflow transitions."""

from taskflow.audit.journal import AuditJournal
from taskflow.audit.models import AuditRecord, PerformanceMetrics, TriggerMetrics, WorkflowMetrics
from taskflow.audit.topics import AuditTopics

__all__ = [
    "AuditJournal",
    "AuditRecord",
    "AuditTopics",
    "PerformanceMetrics",
    "TriggerMetrics",
    "WorkflowMetrics",
]
