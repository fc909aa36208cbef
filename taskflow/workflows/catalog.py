"""WorkflowCatalog: loaded workflow definitions keyed by ID."""

import logging
from pathlib import Path
from typing import Iterator

import yaml
from pydantic import ValidationError

from taskflow.workflows.definition import WorkflowDefinition, load_workflow

logger = logging.getLogger(__name__)

_PATTERNS = ("*.yaml", "*.yml", "*.json")


class WorkflowCatalog:
    """Read-only lookup of workflow definitions for the engine."""

    def __init__(self, definitions: list[WorkflowDefinition] | None = None) -> None:
        self._definitions: dict[str, WorkflowDefinition] = {}
        for definition in definitions or []:
            self.register(definition)

    @classmethod
    def from_directory(cls, directory: Path) -> "WorkflowCatalog":
        catalog = cls()
        catalog.load_directory(directory)
        return catalog

    def register(self, definition: WorkflowDefinition) -> None:
        if definition.id in self._definitions:
            logger.warning("workflows: replacing definition %s", definition.id)
        self._definitions[definition.id] = definition

    def load_directory(self, directory: Path) -> int:
        """Load every definition file in ``directory``. Invalid files are logged and skipped."""
        if not directory.is_dir():
            logger.warning("workflows: directory not found: %s", directory)
            return 0
        loaded = 0
        paths = sorted({p for pattern in _PATTERNS for p in directory.glob(pattern)})
        for path in paths:
            try:
                self.register(load_workflow(path))
                loaded += 1
            except (yaml.YAMLError, ValueError, ValidationError, OSError) as e:
                logger.error("workflows: failed to load %s: %s", path.name, e)
        logger.info(
            "workflows: loaded %d definitions: %s", loaded, ", ".join(sorted(self._definitions))
        )
        return loaded

    def get(self, workflow_id: str) -> WorkflowDefinition | None:
        return self._definitions.get(workflow_id)

    def __contains__(self, workflow_id: object) -> bool:
        return workflow_id in self._definitions

    def __iter__(self) -> Iterator[WorkflowDefinition]:
        return iter(self._definitions.values())

    def __len__(self) -> int:
        return len(self._definitions)
