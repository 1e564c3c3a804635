"""
Workflow loader.

Loads serialized workflow graphs from JSON or YAML text and files, validates
them against the SerializedWorkflow models, and checks graph integrity.

Features:
- Load workflows from .json, .yaml, and .yml files or strings
- Clear error messages (pydantic and integrity problems listed per line)
- Returns LoadResult instead of raising
- Directory discovery for the workflow registry
"""

import json
import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from .exceptions import GraphIntegrityError
from .load_result import LoadResult
from .serialized import SerializedWorkflow, check_graph_integrity

logger = logging.getLogger(__name__)

WORKFLOW_SUFFIXES = (".json", ".yaml", ".yml")


def load_workflow_from_dict(
    data: Any, source: str = "<dict>"
) -> LoadResult[SerializedWorkflow]:
    """
    Validate an already-parsed workflow mapping.

    Args:
        data: Parsed workflow (blocks, connections/edges, loops, parallels, variables)
        source: Source identifier for error messages

    Returns:
        LoadResult.success(SerializedWorkflow) if valid
        LoadResult.failure(error_message) with validation or integrity errors
    """
    if not isinstance(data, dict):
        return LoadResult.failure(
            f"Workflow {source} must be a mapping, got {type(data).__name__}"
        )

    try:
        workflow = SerializedWorkflow.model_validate(data)
    except PydanticValidationError as e:
        problems = "\n".join(
            f"  - {'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        return LoadResult.failure(f"Workflow validation failed in {source}:\n{problems}")

    try:
        check_graph_integrity(workflow)
    except GraphIntegrityError as e:
        return LoadResult.failure(f"{source}: {e}")

    return LoadResult.success(workflow)


def load_workflow_from_yaml(
    yaml_content: str, source: str = "<string>"
) -> LoadResult[SerializedWorkflow]:
    """
    Load and validate a workflow from YAML text.

    YAML is a superset of JSON, so JSON text is accepted too.

    Example:
        yaml_str = '''
        id: greet
        blocks:
          - id: start
            metadata: {id: starter, name: Start}
          - id: hello
            metadata: {id: echo, name: Hello}
            config: {tool: echo, params: {text: "<start.input>"}}
        connections:
          - {source: start, target: hello}
        '''
        result = load_workflow_from_yaml(yaml_str)
    """
    try:
        data = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        return LoadResult.failure(f"Invalid YAML syntax in {source}: {e}")

    return load_workflow_from_dict(data, source)


def load_workflow_from_json(
    json_content: str, source: str = "<string>"
) -> LoadResult[SerializedWorkflow]:
    """Load and validate a workflow from JSON text."""
    try:
        data = json.loads(json_content)
    except json.JSONDecodeError as e:
        return LoadResult.failure(f"Invalid JSON in {source}: {e}")

    return load_workflow_from_dict(data, source)


def load_workflow_from_text(
    content: str, source: str = "<string>"
) -> LoadResult[SerializedWorkflow]:
    """Load a workflow from JSON or YAML text (JSON tried first when it looks like JSON)."""
    if content.lstrip().startswith("{"):
        return load_workflow_from_json(content, source)
    return load_workflow_from_yaml(content, source)


def load_workflow_from_file(file_path: str | Path) -> LoadResult[SerializedWorkflow]:
    """
    Load and validate a workflow from a .json/.yaml/.yml file.

    Args:
        file_path: Path to the workflow file

    Returns:
        LoadResult.success(SerializedWorkflow) if valid
        LoadResult.failure(error_message) otherwise

    Example:
        result = load_workflow_from_file("workflows/summarize.json")
        if result.is_success:
            registry.register(result.value)
        else:
            print(f"Failed to load: {result.error}")
    """
    path = Path(file_path)

    if not path.exists():
        return LoadResult.failure(f"Workflow file not found: {file_path}")

    if not path.is_file():
        return LoadResult.failure(f"Path is not a file: {file_path}")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        return LoadResult.failure(f"Failed to read file '{file_path}': {e}")

    if path.suffix == ".json":
        return load_workflow_from_json(content, source=str(file_path))
    return load_workflow_from_yaml(content, source=str(file_path))


def discover_workflows(directory: str | Path) -> LoadResult[list[SerializedWorkflow]]:
    """
    Discover and load all workflows in a directory (recursively).

    Invalid workflows are skipped with warnings, but don't fail the entire
    operation.

    Returns:
        LoadResult.success(list[SerializedWorkflow]) with valid workflows
        LoadResult.failure(error_message) if the directory doesn't exist
    """
    dir_path = Path(directory)

    if not dir_path.exists():
        return LoadResult.failure(f"Directory not found: {directory}")

    if not dir_path.is_dir():
        return LoadResult.failure(f"Path is not a directory: {directory}")

    workflows: list[SerializedWorkflow] = []
    errors: list[str] = []

    files = sorted(p for p in dir_path.rglob("*") if p.is_file() and p.suffix in WORKFLOW_SUFFIXES)
    for file in files:
        result = load_workflow_from_file(file)
        if result.is_success and result.value is not None:
            workflows.append(result.value)
        else:
            errors.append(f"{file.name}: {result.error}")

    if errors:
        logger.warning(f"{len(errors)} workflow(s) failed to load:")
        for error in errors:
            logger.warning(f"  - {error}")

    return LoadResult.success(workflows, metadata={"errors": errors})


__all__ = [
    "discover_workflows",
    "load_workflow_from_dict",
    "load_workflow_from_file",
    "load_workflow_from_json",
    "load_workflow_from_text",
    "load_workflow_from_yaml",
]
