"""
Generic tool handler: the default dispatch arm.

Accepts every block not claimed by a specialized handler. The block's
``config.tool`` is looked up in the ToolRegistry, the block type's parameter
transform (if any) is applied, and the tool is invoked through the injected
ToolInvoker. Failures become ToolExecutionError with tool and block context
attached, so error-routing branches can inspect structured diagnostics.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import httpx

from .exceptions import MissingRequiredInput, ToolExecutionError, ToolTimeoutError
from .handler_base import BlockHandler
from .registries import ToolConfig
from .serialized import SerializedBlock
from .services import InvocationContext

if TYPE_CHECKING:
    from .execution_context import ExecutionContext

logger = logging.getLogger(__name__)

MCP_TOOL_PREFIX = "mcp-"
KNOWLEDGE_TOOL_PREFIX = "knowledge_"


async def invoke_tool(
    tool_id: str,
    params: dict[str, Any],
    block: SerializedBlock,
    ctx: ExecutionContext,
    tool: ToolConfig | None = None,
) -> Any:
    """
    Invoke a tool for a block and return its output.

    Args:
        tool_id: Tool identifier
        params: Final tool params
        block: Block invoking the tool
        ctx: Current execution context
        tool: Registered tool config (for the display name), if known

    Returns:
        The tool's output on success

    Raises:
        ToolTimeoutError: Transport timeout talking to the tool service
        ToolExecutionError: Tool reported failure or the call raised
    """
    tool_name = tool.display_name if tool else None
    label = tool_name or tool_id
    diagnostics: dict[str, Any] = {
        "tool_id": tool_id,
        "tool_name": tool_name or "Unknown tool",
        "block_id": block.id,
        "block_name": block.metadata.name or "Unnamed Block",
    }

    invoker = ctx.services.tool_invoker
    if invoker is None:
        raise ToolExecutionError(f"No tool invoker configured to run {label}", **diagnostics)

    context = InvocationContext(
        workflow_id=ctx.workflow_id,
        workspace_id=ctx.workspace_id,
        execution_id=ctx.execution_id,
        block_id=block.id,
    )

    try:
        result = await invoker.invoke(tool_id, params, context)
    except ToolExecutionError:
        raise
    except httpx.TimeoutException as e:
        raise ToolTimeoutError(f"Block execution of {label} timed out", **diagnostics) from e
    except Exception as e:
        message = str(e) or f"Block execution of {label} failed: {type(e).__name__}"
        raise ToolExecutionError(message, **diagnostics) from e

    if not result.success:
        message = result.error or f"Block execution of {label} failed with no error message"
        raise ToolExecutionError(
            message,
            output=result.output if result.output is not None else {},
            status=result.status,
            **diagnostics,
        )

    return result.output


def lift_knowledge_cost(tool_id: str, output: Any) -> Any:
    """Expose cost/token usage of knowledge tools at the top level of the output."""
    if not tool_id.startswith(KNOWLEDGE_TOOL_PREFIX) or not isinstance(output, dict):
        return output

    cost = output.get("cost")
    if not isinstance(cost, dict) or not cost:
        return output

    return {
        **output,
        "cost": {
            "input": cost.get("input"),
            "output": cost.get("output"),
            "total": cost.get("total"),
        },
        "tokens": cost.get("tokens"),
        "model": cost.get("model"),
    }


class GenericToolHandler(BlockHandler):
    """
    Default handler for tool-backed blocks (accepts every block type).

    Must be registered last. Tools whose id starts with ``mcp-`` are not
    required to be in the ToolRegistry; they are resolved by the invoker.

    Example block:
        {
            "id": "fetch",
            "metadata": {"id": "http_request", "name": "Fetch Data"},
            "config": {"tool": "http_request", "params": {"url": "{{API_URL}}"}}
        }
    """

    def can_handle(self, block: SerializedBlock, ctx: ExecutionContext) -> bool:
        return True

    def validate_inputs(
        self, block: SerializedBlock, inputs: dict[str, Any], ctx: ExecutionContext
    ) -> Any:
        """Apply tool param defaults and check tool params flagged required."""
        validated = super().validate_inputs(block, inputs, ctx)

        tool = ctx.services.tool_registry.get(block.config.tool) if block.config.tool else None
        if tool is None:
            return validated

        validated = tool.apply_defaults(validated)
        for param_name in tool.required_params():
            value = validated.get(param_name)
            if value is None or (isinstance(value, str) and not value.strip()):
                raise MissingRequiredInput(block.display_name, param_name, block_id=block.id)
        return validated

    async def execute(
        self, block: SerializedBlock, inputs: dict[str, Any], ctx: ExecutionContext
    ) -> Any:
        tool_id = block.config.tool
        logger.info(f"Executing block: {block.id} (type: {block.type}, tool: {tool_id})")

        if not tool_id:
            raise ToolExecutionError(
                f"Block '{block.display_name}' of type '{block.type}' has no tool configured",
                block_id=block.id,
                block_name=block.metadata.name or "Unnamed Block",
            )

        tool = ctx.services.tool_registry.get(tool_id)
        if tool is None and not tool_id.startswith(MCP_TOOL_PREFIX):
            raise ToolExecutionError(
                f"Tool not found: {tool_id}",
                tool_id=tool_id,
                tool_name="Unknown tool",
                block_id=block.id,
                block_name=block.metadata.name or "Unnamed Block",
            )

        params = dict(inputs)
        block_config = ctx.services.block_registry.get(block.type)
        if block_config is not None and block_config.transform_params is not None:
            try:
                transformed = block_config.transform_params(inputs)
            except Exception as e:
                logger.warning(
                    f"Failed to apply parameter transformation for block type {block.type}: {e}"
                )
            else:
                params = {**inputs, **transformed}
                logger.debug(f"Applied parameter transformation for block type: {block.type}")

        output = await invoke_tool(tool_id, params, block, ctx, tool)
        return lift_knowledge_cost(tool_id, output)


__all__ = ["GenericToolHandler", "invoke_tool", "lift_knowledge_cost"]
