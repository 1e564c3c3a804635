"""
Workflow handler: runs another workflow as a block (child workflow).

The child workflow is looked up in the WorkflowRegistry and executed by the
same runner with its own ExecutionContext. The parent's environment
variables and cancellation signal are shared with the child; block states
are not.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from .block_status import RunStatus
from .exceptions import ExecutionCancelled, RecursionDepthExceededError, ToolExecutionError
from .handler_base import BlockHandler
from .serialized import SerializedBlock

if TYPE_CHECKING:
    from .execution_context import ExecutionContext
    from .execution_result import ExecutionResult

logger = logging.getLogger(__name__)

WORKFLOW_TYPE = "workflow"
WORKFLOW_TOOL_ID = "workflow_executor"
CHILD_ERROR_PREFIX = "Error in child workflow"


class WorkflowInput(BaseModel):
    """Inputs of a workflow block."""

    workflow_id: str | None = Field(
        default=None, alias="workflowId", description="Id of the child workflow"
    )
    input: Any = Field(default=None, description="Input passed to the child's starter block")

    model_config = {"populate_by_name": True, "extra": "allow"}


def child_trace_spans(result: ExecutionResult, child_name: str) -> list[dict[str, Any]]:
    """Block logs of a child run, tagged for display under the parent block."""
    spans = []
    for log in result.context.block_logs:
        span = log.model_dump(mode="json")
        span["metadata"] = {"isFromChildWorkflow": True, "childWorkflowName": child_name}
        spans.append(span)
    return spans


class WorkflowHandler(BlockHandler):
    """
    Child workflow execution.

    Guards:
    - Depth: nesting beyond EngineSettings.max_workflow_depth raises
      RecursionDepthExceededError
    - Cycles: a call key ``{parentId}_sub_{childId}_{blockId}`` already on the
      execution stack raises ToolExecutionError

    Output:
        {
            "success": True,
            "childWorkflowName": "...",
            "result": <child final output>,
            "childTraceSpans": [...]
        }
    """

    block_types = frozenset({WORKFLOW_TYPE})
    input_type = WorkflowInput

    async def execute(
        self, block: SerializedBlock, inputs: WorkflowInput, ctx: ExecutionContext
    ) -> Any:
        diagnostics: dict[str, Any] = {
            "tool_id": WORKFLOW_TOOL_ID,
            "tool_name": "Workflow",
            "block_id": block.id,
            "block_name": block.metadata.name or "Unnamed Block",
        }

        # 1. Validate selection
        child_id = inputs.workflow_id
        if not child_id:
            raise ToolExecutionError("No workflow selected for execution", **diagnostics)

        # 2. Depth and cycle guards
        max_depth = ctx.services.settings.max_workflow_depth
        if ctx.depth >= max_depth:
            raise RecursionDepthExceededError(child_id, ctx.depth + 1, max_depth)

        call_key = f"{ctx.workflow_id}_sub_{child_id}_{block.id}"
        if call_key in ctx.execution_stack:
            raise ToolExecutionError(
                f"Cyclic workflow dependency detected: {call_key}", **diagnostics
            )

        # 3. Look up child workflow
        registry = ctx.services.workflow_registry
        if registry is None or not registry.exists(child_id):
            raise ToolExecutionError(f"Child workflow {child_id} not found", **diagnostics)
        child = registry.get(child_id)
        child_name = child.display_name

        # 4. Execute child with the same services
        runner = ctx.runner
        if runner is None:
            from .workflow_runner import WorkflowRunner

            runner = WorkflowRunner(ctx.services)

        logger.info(
            f"Executing child workflow '{child_name}' from block {block.id} "
            f"(depth {ctx.depth + 1}/{max_depth})"
        )
        result = await runner.execute(
            child,
            workflow_input=inputs.input,
            environment_variables=ctx.environment_variables,
            workflow_id=child.id,
            workspace_id=ctx.workspace_id,
            cancel_event=ctx.cancel_event,
            depth=ctx.depth + 1,
            execution_stack=(*ctx.execution_stack, call_key),
        )

        # 5. Map child outcome
        if result.status == RunStatus.CANCELLED:
            raise ExecutionCancelled(block.id)

        if result.status == RunStatus.ERROR:
            if isinstance(result.exception, RecursionDepthExceededError):
                raise result.exception
            error = result.error or "Unknown error"
            message = (
                error
                if error.startswith(CHILD_ERROR_PREFIX)
                else f'{CHILD_ERROR_PREFIX} "{child_name}": {error}'
            )
            raise ToolExecutionError(message, **diagnostics) from result.exception

        logger.info(f"Child workflow '{child_name}' completed in {result.duration_ms}ms")
        return {
            "success": True,
            "childWorkflowName": child_name,
            "result": result.output,
            "childTraceSpans": child_trace_spans(result, child_name),
        }


__all__ = ["WorkflowHandler", "WorkflowInput", "child_trace_spans"]
