"""Template Resolver: replace exact ``{{dotted.path}}`` strings from trigger data and step outputs.

Resolution is total: an unresolvable reference stays as the literal template
string, so it is visible when debugging a task's input.
"""

from typing import Any, Iterable

from taskflow.queue.models import Task, TaskStatus

_MISSING = object()


def build_context(
    trigger_data: dict[str, Any] | None,
    step_outputs: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Context shape: {trigger: {data}, steps: {<step_id>: {output}}}."""
    return {
        "trigger": {"data": trigger_data or {}},
        "steps": {step_id: {"output": output} for step_id, output in (step_outputs or {}).items()},
    }


def completed_outputs(tasks: Iterable[Task]) -> dict[str, Any]:
    """Map step_id -> output for COMPLETED tasks."""
    return {
        t.step_id: t.output
        for t in tasks
        if t.status is TaskStatus.COMPLETED and t.output is not None
    }


def get_nested_value(obj: Any, path: str) -> Any:
    """Dotted-path lookup through dicts (and list indexes). Returns None if any part is missing."""
    value = _lookup(obj, path)
    return None if value is _MISSING else value


def _lookup(obj: Any, path: str) -> Any:
    current = obj
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _template_path(value: str) -> str | None:
    if value.startswith("{{") and value.endswith("}}") and len(value) > 4:
        return value[2:-2].strip()
    return None


def resolve_templates(value: Any, context: dict[str, Any]) -> Any:
    """Resolve templates in ``value`` recursively. Never raises; input is not mutated."""
    if isinstance(value, str):
        path = _template_path(value)
        if path is None:
            return value
        resolved = _lookup(context, path)
        if resolved is _MISSING or resolved is None:
            return value
        return resolved
    if isinstance(value, dict):
        return {key: resolve_templates(item, context) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_templates(item, context) for item in value]
    return value
