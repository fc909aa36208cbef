"""Workflow definitions: schema, file loader and catalog."""

from taskflow.workflows.catalog import WorkflowCatalog
from taskflow.workflows.definition import (
    SlaConfig,
    StepDefinition,
    WorkflowDefinition,
    load_workflow,
    parse_duration,
    priority_from_sla,
)

__all__ = [
    "SlaConfig",
    "StepDefinition",
    "WorkflowCatalog",
    "WorkflowDefinition",
    "load_workflow",
    "parse_duration",
    "priority_from_sla",
]
