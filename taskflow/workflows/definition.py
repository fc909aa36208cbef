"""Workflow definition: Pydantic schema and YAML/JSON loader.

Keys follow the camelCase used by existing definition files (dependsOn,
maxDurationMinutes, onFailure, ...); snake_case names are accepted too.
"""

import re
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

DEFAULT_TIMEOUT_SEC = 60.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_PRIORITY = 5

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)\s*$")
_UNIT_SECONDS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, "d": 86400.0}


def parse_duration(value: float | int | str | None, default: float = 0.0) -> float:
    """Seconds from a number (already seconds) or '<n>(ms|s|m|h|d)'. Unparseable -> default."""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(value)
    if not match:
        try:
            return float(value)
        except ValueError:
            return default
    return float(match.group(1)) * _UNIT_SECONDS[match.group(2)]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class SlaConfig(_CamelModel):
    """Instance-level SLA: warn after alert_after_minutes, critical after max_duration_minutes."""

    max_duration_minutes: float | None = None
    alert_after_minutes: float | None = None


class CompletionNotify(_CamelModel):
    notify_to: str | None = None


class FailureAlert(_CamelModel):
    alert_to: str | None = None


class StepDefinition(_CamelModel):
    """One declared unit of work; instantiated as exactly one task per run."""

    id: str
    name: str = ""
    agent: str
    action: str
    input: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    delay: float | str | None = None
    timeout: float | str | None = None
    retries: int | None = Field(default=None, ge=0)
    priority: int | None = None
    on_failure: Literal["abort", "continue"] = "continue"

    @field_validator("id", "agent", "action")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value

    @property
    def delay_seconds(self) -> float:
        return parse_duration(self.delay)

    def timeout_seconds(self, default: float = DEFAULT_TIMEOUT_SEC) -> float:
        """Step timeout, falling back to ``default`` when unset, unparseable or zero."""
        return parse_duration(self.timeout, default) or default

    @property
    def aborts_on_failure(self) -> bool:
        return self.on_failure == "abort"


class WorkflowDefinition(_CamelModel):
    """Declarative multi-step workflow. Read-only for the core."""

    id: str
    name: str = ""
    description: str = ""
    priority: int | None = None
    sla: SlaConfig | None = None
    steps: list[StepDefinition] = Field(min_length=1)
    on_complete: CompletionNotify | None = None
    on_failure: FailureAlert | None = None

    @model_validator(mode="after")
    def _validate_graph(self) -> "WorkflowDefinition":
        ids = [s.id for s in self.steps]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"Duplicate step ids: {', '.join(duplicates)}")
        known = set(ids)
        for step in self.steps:
            missing = [d for d in step.depends_on if d not in known]
            if missing:
                raise ValueError(f"Step {step.id} depends on unknown steps: {', '.join(missing)}")
            if step.id in step.depends_on:
                raise ValueError(f"Step {step.id} depends on itself")
        cycle = _find_cycle({s.id: s.depends_on for s in self.steps})
        if cycle:
            raise ValueError(f"Dependency cycle: {' -> '.join(cycle)}")
        return self

    def get_step(self, step_id: str) -> StepDefinition | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def step_priority(self, step: StepDefinition) -> int:
        """Step override, else workflow priority, else derived from the SLA."""
        if step.priority is not None:
            return step.priority
        if self.priority is not None:
            return self.priority
        return priority_from_sla(self.sla)


def priority_from_sla(sla: SlaConfig | None) -> int:
    """Tighter SLAs get more urgent (smaller) priority numbers."""
    if sla is None or sla.max_duration_minutes is None:
        return DEFAULT_PRIORITY
    if sla.max_duration_minutes <= 30:
        return 1
    if sla.max_duration_minutes <= 120:
        return 3
    return DEFAULT_PRIORITY


def _find_cycle(graph: dict[str, list[str]]) -> list[str] | None:
    """Return one dependency cycle as a list of step ids, or None."""
    visiting: set[str] = set()
    done: set[str] = set()
    path: list[str] = []

    def visit(node: str) -> list[str] | None:
        visiting.add(node)
        path.append(node)
        for dep in graph.get(node, []):
            if dep in visiting:
                return path[path.index(dep):] + [dep]
            if dep not in done:
                found = visit(dep)
                if found:
                    return found
        visiting.discard(node)
        done.add(node)
        path.pop()
        return None

    for node in graph:
        if node not in done:
            found = visit(node)
            if found:
                return found
    return None


def load_workflow(path: Path) -> WorkflowDefinition:
    """Read and validate one definition file. Raises on invalid YAML or validation error."""
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError(f"Workflow definition must be a YAML object: {path}")
    return WorkflowDefinition.model_validate(data)
