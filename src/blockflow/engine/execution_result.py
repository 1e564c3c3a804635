"""
Execution result monad for workflow runs.

Aligned with the LoadResult pattern: type-safe result handling that keeps the
full execution context for debugging, whatever the outcome.

Design Principles:
- context ALWAYS present (never None), including partial state on failure
- status determines interpretation (completed/error/cancelled)
- Factory methods ensure valid state combinations
- to_response() is the single source of truth for formatting
- Debug mode writes full details (block states and logs) to a temp file
"""

from __future__ import annotations

import json
import logging
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from .block_status import RunStatus
from .exceptions import ToolExecutionError
from .execution_context import ExecutionContext

logger = logging.getLogger(__name__)


@dataclass
class ExecutionResult:
    """
    Terminal outcome of one run.

    Example Usage:
        # Completed
        result = ExecutionResult.completed(ctx)

        # Failure with partial state
        result = ExecutionResult.failure(ctx, exc, failed_block_id="fetch")

        # Format for MCP tool
        return result.to_response(debug=True)
    """

    status: RunStatus
    context: ExecutionContext  # ALWAYS present - complete run state
    error: str | None = None
    exception: BaseException | None = None  # Original exception of a failed run
    failed_block_id: str | None = None
    duration_ms: int = 0

    # Factory Methods (Type-Safe Construction)

    @staticmethod
    def completed(context: ExecutionContext, duration_ms: int = 0) -> ExecutionResult:
        """
        Create a completed result.

        Args:
            context: Run state; final_output holds the run's output
            duration_ms: Wall-clock duration of the run

        Returns:
            ExecutionResult with status=COMPLETED
        """
        return ExecutionResult(
            status=RunStatus.COMPLETED, context=context, duration_ms=duration_ms
        )

    @staticmethod
    def failure(
        context: ExecutionContext,
        exception: BaseException,
        failed_block_id: str | None = None,
        duration_ms: int = 0,
    ) -> ExecutionResult:
        """
        Create a failed result with partial state for debugging.

        Preserves every block state recorded up to the failure, including the
        failed block's own error state.

        Args:
            context: Run state up to the failure point
            exception: Original exception (block/tool context attached)
            failed_block_id: Block whose failure ended the run
            duration_ms: Wall-clock duration of the run

        Returns:
            ExecutionResult with status=ERROR
        """
        return ExecutionResult(
            status=RunStatus.ERROR,
            context=context,
            error=str(exception) or type(exception).__name__,
            exception=exception,
            failed_block_id=failed_block_id,
            duration_ms=duration_ms,
        )

    @staticmethod
    def cancelled(context: ExecutionContext, duration_ms: int = 0) -> ExecutionResult:
        """Create a cancelled result (blocks not yet started were skipped)."""
        return ExecutionResult(
            status=RunStatus.CANCELLED,
            context=context,
            error="Workflow execution was cancelled",
            duration_ms=duration_ms,
        )

    # Accessors

    @property
    def is_success(self) -> bool:
        """Check if the run completed."""
        return self.status == RunStatus.COMPLETED

    @property
    def output(self) -> Any:
        """Output of the last top-level block that completed successfully."""
        return self.context.final_output

    @property
    def block_states(self) -> dict[str, dict[str, Any]]:
        """JSON-ready snapshot of every recorded block state."""
        return self.context.snapshot()

    # Formatting Methods

    def to_response(self, debug: bool = False) -> dict[str, Any]:
        """
        Format the result for an MCP tool response.

        The terminal status and the block state snapshot are always included,
        so callers can see which blocks succeeded, failed, and why.

        Args:
            debug: Write full details (block logs included) to a temp file

        Returns:
            Dict ready for MCP tool return

        Examples:
            {"status": "completed", "output": {...}, "blockStates": {...}}
            {"status": "error", "error": "...", "failedBlockId": "fetch", "blockStates": {...}}
            {"status": "cancelled", "error": "...", "blockStates": {...}, "logfile": "/tmp/..."}
        """
        response: dict[str, Any] = {
            "status": self.status.value,
            "executionId": self.context.execution_id,
        }

        if self.status == RunStatus.COMPLETED:
            response["output"] = self.output
        else:
            response["error"] = self.error
            if self.failed_block_id:
                response["failedBlockId"] = self.failed_block_id
            if isinstance(self.exception, ToolExecutionError):
                response["errorDetails"] = self.exception.details()

        response["blockStates"] = self.block_states

        if debug:
            response["logfile"] = self._write_debug_file()

        return response

    def _build_debug_data(self) -> dict[str, Any]:
        """Full run details: status, output, error, block states, logs, and metadata."""
        ctx = self.context
        return {
            "status": self.status.value,
            "output": self.output if self.status == RunStatus.COMPLETED else None,
            "error": self.error,
            "failedBlockId": self.failed_block_id,
            "blockStates": self.block_states,
            "logs": [log.model_dump(mode="json") for log in ctx.block_logs],
            "metadata": {
                "workflowId": ctx.workflow_id,
                "workflowName": ctx.workflow.display_name,
                "workspaceId": ctx.workspace_id,
                "executionId": ctx.execution_id,
                "correlationId": ctx.correlation_id,
                "durationMs": self.duration_ms,
                "activeExecutionPath": sorted(ctx.active_execution_path),
                "pruned": sorted(ctx.pruned),
                "loopIterations": ctx.loop_iterations,
                "parallelProgress": ctx.parallel_progress,
            },
        }

    def _write_debug_file(self) -> str:
        """
        Write complete run details to a temp file for debugging.

        File Naming:
            <tmpdir>/<workflow-name>-<timestamp-ms>.json

        Returns:
            Path to the created debug file, or an error message if writing failed
        """
        debug_data = self._build_debug_data()

        workflow_name = self.context.workflow.display_name
        safe_workflow_name = "".join(c if c.isalnum() or c in "-_" else "-" for c in workflow_name)
        timestamp_ms = int(datetime.now().timestamp() * 1000)
        filename = Path(tempfile.gettempdir()) / f"{safe_workflow_name}-{timestamp_ms}.json"

        try:
            with open(filename, "w", encoding="utf-8") as f:
                json.dump(debug_data, f, indent=2, default=str, ensure_ascii=False)
        except OSError as e:
            logger.error(f"Failed to write debug file {filename}: {e}")
            return f"ERROR: Failed to write debug file: {e}"

        logger.info(f"Debug file written: {filename}")
        return str(filename)


__all__ = ["ExecutionResult"]
