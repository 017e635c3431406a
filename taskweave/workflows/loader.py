"""Load workflow definitions from YAML or JSON files.

A file holds either one definition or ``{"workflows": [...]}``.  Keys may use
the camelCase names of the definition source (``stepType``, ``itemsPath``...)
or their snake_case equivalents.
"""

import json
from pathlib import Path
from typing import Union

import yaml

from taskweave.types import WorkflowDefinition

_SUFFIXES = (".yaml", ".yml", ".json")


def load_definitions(path: Union[str, Path]) -> list[WorkflowDefinition]:
    """Parse one definition file into validated WorkflowDefinition models.

    Raises:
        FileNotFoundError: if *path* does not exist.
        pydantic.ValidationError: if the content does not describe a workflow.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Workflow file not found: {p}")
    text = p.read_text()
    raw = json.loads(text) if p.suffix == ".json" else yaml.safe_load(text)
    entries = raw.get("workflows", [raw]) if isinstance(raw, dict) else (raw or [])
    return [WorkflowDefinition.model_validate(entry) for entry in entries]


def load_directory(directory: Union[str, Path]) -> list[WorkflowDefinition]:
    """Load every definition file in *directory*, sorted by file name."""
    definitions: list[WorkflowDefinition] = []
    for p in sorted(Path(directory).iterdir()):
        if p.suffix in _SUFFIXES:
            definitions.extend(load_definitions(p))
    return definitions
