"""
Workflow registry for child workflows and MCP tools.

Holds SerializedWorkflow instances keyed by workflow id. Workflow blocks look
their child workflow up here, and the MCP server lists and executes the
registered workflows.

Features:
- Register workflows with duplicate detection
- Retrieve workflows by id
- Load workflows from directories (recursive) in priority order
- Track source directories for each workflow
"""

import logging
from pathlib import Path
from typing import Any, Literal

from .load_result import LoadResult
from .loader import WORKFLOW_SUFFIXES, load_workflow_from_file
from .serialized import SerializedWorkflow

logger = logging.getLogger(__name__)


class WorkflowRegistry:
    """
    Central registry of loaded workflows.

    Example:
        registry = WorkflowRegistry()
        registry.load_from_directory("workflows/")

        workflow = registry.get("summarize")
        result = await runner.execute(workflow, workflow_input={"text": "..."})
    """

    def __init__(self) -> None:
        """Initialize empty registry."""
        self._workflows: dict[str, SerializedWorkflow] = {}
        self._workflow_sources: dict[str, Path] = {}

    def register(self, workflow: SerializedWorkflow, source_dir: Path | None = None) -> None:
        """
        Register a workflow.

        Args:
            workflow: Workflow to register
            source_dir: Optional source directory path for tracking

        Raises:
            ValueError: If a workflow with the same id already exists
        """
        if workflow.id in self._workflows:
            raise ValueError(
                f"Workflow '{workflow.id}' already registered. Use unregister() first."
            )

        self._workflows[workflow.id] = workflow
        if source_dir is not None:
            self._workflow_sources[workflow.id] = source_dir

        logger.info(f"Registered workflow: {workflow.id} ({workflow.display_name})")

    def unregister(self, workflow_id: str) -> None:
        """
        Unregister a workflow by id.

        Raises:
            KeyError: If workflow not found
        """
        if workflow_id not in self._workflows:
            raise KeyError(f"Workflow '{workflow_id}' not found in registry")

        del self._workflows[workflow_id]
        self._workflow_sources.pop(workflow_id, None)
        logger.info(f"Unregistered workflow: {workflow_id}")

    def get(self, workflow_id: str) -> SerializedWorkflow:
        """
        Get workflow by id.

        Raises:
            KeyError: If workflow not found
        """
        if workflow_id not in self._workflows:
            available = sorted(self._workflows)
            raise KeyError(f"Workflow '{workflow_id}' not found. Available workflows: {available}")

        return self._workflows[workflow_id]

    def exists(self, workflow_id: str) -> bool:
        """Check if workflow exists in registry."""
        return workflow_id in self._workflows

    def list_ids(self) -> list[str]:
        """Sorted list of registered workflow ids."""
        return sorted(self._workflows)

    def get_workflow_metadata(self, workflow_id: str) -> dict[str, Any]:
        """
        Get workflow metadata as dictionary (for MCP tools).

        Returns:
            {"id", "name", "version", "blocks", "loops", "parallels", "source"}
        """
        workflow = self.get(workflow_id)
        source = self._workflow_sources.get(workflow_id)
        return {
            "id": workflow.id,
            "name": workflow.display_name,
            "version": workflow.version,
            "blocks": len(workflow.blocks),
            "loops": len(workflow.loops),
            "parallels": len(workflow.parallels),
            "source": str(source) if source else None,
        }

    def list_all_metadata(self) -> list[dict[str, Any]]:
        """Metadata of every registered workflow, sorted by id."""
        return [self.get_workflow_metadata(workflow_id) for workflow_id in self.list_ids()]

    def get_workflow_source(self, workflow_id: str) -> Path | None:
        """Source directory a workflow was loaded from, if tracked."""
        return self._workflow_sources.get(workflow_id)

    def load_from_directory(
        self,
        directory: str | Path,
        on_duplicate: Literal["skip", "overwrite", "error"] = "skip",
    ) -> LoadResult[int]:
        """
        Load all workflows from a directory (recursive).

        1. Finds all .json/.yaml/.yml files
        2. Registers each successfully loaded workflow
        3. Logs warnings for invalid workflows (but continues loading)

        Args:
            directory: Directory to search
            on_duplicate: What to do with an id that is already registered

        Returns:
            LoadResult.success(count) with number of workflows loaded
            LoadResult.failure(error_message) if the directory doesn't exist
                or on_duplicate="error" met a duplicate
        """
        dir_path = Path(directory)
        logger.info(f"Loading workflows from directory: {dir_path}")

        if not dir_path.exists():
            return LoadResult.failure(f"Directory not found: {dir_path}")
        if not dir_path.is_dir():
            return LoadResult.failure(f"Not a directory: {dir_path}")

        files = sorted(
            p for p in dir_path.rglob("*") if p.is_file() and p.suffix in WORKFLOW_SUFFIXES
        )

        loaded_count = 0
        for file in files:
            result = load_workflow_from_file(file)
            if not result.is_success or result.value is None:
                logger.warning(f"Failed to load workflow from {file.name}: {result.error}")
                continue

            workflow = result.value
            if workflow.id in self._workflows:
                if on_duplicate == "error":
                    return LoadResult.failure(
                        f"Duplicate workflow id '{workflow.id}' in {file} "
                        f"(already loaded from {self._workflow_sources.get(workflow.id)})"
                    )
                if on_duplicate == "skip":
                    logger.warning(f"Skipping duplicate workflow '{workflow.id}' from {file}")
                    continue
                self.unregister(workflow.id)

            self.register(workflow, source_dir=dir_path)
            loaded_count += 1

        logger.info(
            f"Loaded {loaded_count} workflows from {dir_path} ({len(files)} files found)"
        )
        return LoadResult.success(loaded_count)

    def load_from_directories(
        self,
        directories: list[str | Path],
        on_duplicate: Literal["skip", "overwrite", "error"] = "skip",
    ) -> LoadResult[dict[str, int]]:
        """
        Load workflows from several directories in priority order.

        With the default on_duplicate="skip", the first directory that defines
        an id wins.

        Returns:
            LoadResult.success({directory: count}); directories that don't
            exist are logged and counted as 0
        """
        counts: dict[str, int] = {}
        for directory in directories:
            result = self.load_from_directory(directory, on_duplicate=on_duplicate)
            if result.is_failure:
                if on_duplicate == "error" and "Duplicate" in (result.error or ""):
                    return LoadResult.failure(result.error or "Duplicate workflow")
                logger.warning(result.error)
                counts[str(directory)] = 0
                continue
            counts[str(directory)] = result.value or 0

        logger.info(f"Loaded {sum(counts.values())} total workflows from {len(counts)} directories")
        return LoadResult.success(counts)

    def __len__(self) -> int:
        """Return number of registered workflows."""
        return len(self._workflows)

    def __contains__(self, workflow_id: object) -> bool:
        """Check if workflow exists using 'in' operator."""
        return workflow_id in self._workflows

    def __repr__(self) -> str:
        """String representation of registry."""
        return f"<WorkflowRegistry: {len(self._workflows)} workflows>"


__all__ = ["WorkflowRegistry"]
