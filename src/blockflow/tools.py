"""MCP tool implementations for workflow execution.

This module contains the MCP tool functions that expose the workflow engine
over the MCP protocol.

- Tool functions decorated with @mcp.tool()
- Flat parameter signatures with Annotated types for validation
- Async functions for all tools
- Docstrings become tool descriptions
"""

import json
from typing import Annotated, Any, Literal

from mcp.types import ToolAnnotations
from pydantic import Field

from .context import AppContextType
from .engine import GraphIntegrityError, SerializedWorkflow, load_workflow_from_text
from .engine.handlers_tool import MCP_TOOL_PREFIX
from .engine.handlers_workflow import WORKFLOW_TYPE
from .engine.serialized import execution_waves
from .formatting import (
    format_workflow_info_markdown,
    format_workflow_list_markdown,
    format_workflow_not_found_error,
)
from .server import mcp

# =============================================================================
# Execution Tools
# =============================================================================


async def _run(
    workflow: SerializedWorkflow,
    workflow_input: Any,
    variables: dict[str, Any] | None,
    debug: bool,
    ctx: AppContextType,
) -> dict[str, Any]:
    app_ctx = ctx.request_context.lifespan_context
    runner = app_ctx.create_runner()
    try:
        result = await runner.execute(
            workflow,
            workflow_input=workflow_input,
            workflow_variables=variables,
            environment_variables=app_ctx.environment_variables,
        )
    except GraphIntegrityError as e:
        return {"status": "error", "error": str(e), "problems": e.problems}
    return result.to_response(debug)


@mcp.tool(
    annotations=ToolAnnotations(
        title="Execute Workflow",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=False,  # Tools may have side effects
        openWorldHint=True,  # Calls the tool and code-execution services
    )
)
async def execute_workflow(
    workflow: Annotated[
        str,
        Field(
            description="Workflow id (use list_workflows() to discover)",
            min_length=1,
            max_length=200,
        ),
    ],
    input: Annotated[  # noqa: A002
        Any,
        Field(description="Workflow input, exposed through the starter block as <start.input>"),
    ] = None,
    variables: Annotated[
        dict[str, Any] | None,
        Field(description="Overrides for workflow variables (<variable.name>)"),
    ] = None,
    debug: Annotated[
        bool,
        Field(description="Write full block states and logs to a temp file"),
    ] = False,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Run a registered workflow. Required: workflow. Optional: input, variables, debug."""
    registry = ctx.request_context.lifespan_context.registry

    if workflow not in registry:
        error = format_workflow_not_found_error(workflow, registry.list_ids())
        assert isinstance(error, dict)
        return error

    return await _run(registry.get(workflow), input, variables, debug, ctx)


@mcp.tool(
    annotations=ToolAnnotations(
        title="Execute Inline Workflow",
        readOnlyHint=False,
        destructiveHint=False,
        idempotentHint=False,
        openWorldHint=True,
    )
)
async def execute_inline_workflow(
    workflow_text: Annotated[
        str,
        Field(
            description="Serialized workflow as JSON or YAML (blocks, connections, loops, parallels)",
            min_length=2,
            max_length=500_000,
        ),
    ],
    input: Annotated[  # noqa: A002
        Any,
        Field(description="Workflow input, exposed through the starter block"),
    ] = None,
    variables: Annotated[
        dict[str, Any] | None,
        Field(description="Overrides for workflow variables"),
    ] = None,
    debug: Annotated[
        bool,
        Field(description="Write full block states and logs to a temp file"),
    ] = False,
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Run a workflow given as JSON/YAML text. Required: workflow_text."""
    load_result = load_workflow_from_text(workflow_text, source="<inline-workflow>")
    if not load_result.is_success or load_result.value is None:
        return {
            "status": "error",
            "error": (
                f"Failed to load workflow: {load_result.error}. "
                "Use validate_workflow() to check a workflow before execution."
            ),
        }

    return await _run(load_result.value, input, variables, debug, ctx)


# =============================================================================
# Inspection Tools
# =============================================================================


@mcp.tool(
    annotations=ToolAnnotations(
        title="Validate Workflow",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def validate_workflow(
    workflow_text: Annotated[
        str,
        Field(description="Serialized workflow as JSON or YAML", min_length=2, max_length=500_000),
    ],
    *,
    ctx: AppContextType,
) -> dict[str, Any]:
    """Validate a workflow without running it and preview its execution waves."""
    app_ctx = ctx.request_context.lifespan_context

    load_result = load_workflow_from_text(workflow_text, source="<validation>")
    if not load_result.is_success or load_result.value is None:
        return {"valid": False, "errors": [load_result.error], "warnings": []}

    workflow = load_result.value
    try:
        waves = execution_waves(workflow)
    except GraphIntegrityError as e:
        return {"valid": False, "errors": e.problems, "warnings": []}

    warnings: list[str] = []
    for block in workflow.blocks:
        tool_id = block.config.tool
        if tool_id and tool_id not in app_ctx.tool_registry and not tool_id.startswith(
            MCP_TOOL_PREFIX
        ):
            warnings.append(f"Block '{block.id}' uses unknown tool '{tool_id}'")
        child_id = block.config.params.get("workflowId")
        if (
            block.type == WORKFLOW_TYPE
            and isinstance(child_id, str)
            and child_id not in app_ctx.registry
        ):
            warnings.append(f"Block '{block.id}' calls unregistered workflow '{child_id}'")

    return {
        "valid": True,
        "errors": [],
        "warnings": warnings,
        "block_types_used": sorted({block.type for block in workflow.blocks}),
        "execution_waves": waves,
    }


@mcp.tool(
    annotations=ToolAnnotations(
        title="List Workflows",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def list_workflows(
    format: Annotated[  # noqa: A002
        Literal["json", "markdown"],
        Field(description="Output format"),
    ] = "json",
    *,
    ctx: AppContextType,
) -> str:
    """List registered workflows. Optional: format (json|markdown)."""
    registry = ctx.request_context.lifespan_context.registry
    workflows = registry.list_all_metadata()

    if format == "markdown":
        return format_workflow_list_markdown(workflows)
    return json.dumps(workflows)


@mcp.tool(
    annotations=ToolAnnotations(
        title="Get Workflow Info",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def get_workflow_info(
    workflow: Annotated[
        str,
        Field(description="Workflow id to inspect", min_length=1, max_length=200),
    ],
    format: Annotated[  # noqa: A002
        Literal["json", "markdown"],
        Field(description="Output format"),
    ] = "json",
    *,
    ctx: AppContextType,
) -> dict[str, Any] | str:
    """Get workflow details (blocks, dependencies, variables). Required: workflow."""
    registry = ctx.request_context.lifespan_context.registry

    if workflow not in registry:
        return format_workflow_not_found_error(workflow, registry.list_ids(), format)

    workflow_def = registry.get(workflow)
    info: dict[str, Any] = {
        "id": workflow_def.id,
        "name": workflow_def.display_name,
        "version": workflow_def.version,
        "total_blocks": len(workflow_def.blocks),
        "blocks": [
            {
                "id": block.id,
                "type": block.type,
                "name": block.metadata.name,
                "depends_on": [conn.source for conn in workflow_def.incoming(block.id)],
            }
            for block in workflow_def.blocks
        ],
        "loops": sorted(workflow_def.loops),
        "parallels": sorted(workflow_def.parallels),
        "variables": workflow_def.variables,
    }

    if format == "markdown":
        return format_workflow_info_markdown(info)
    return info


@mcp.tool(
    annotations=ToolAnnotations(
        title="List Tools",
        readOnlyHint=True,
        destructiveHint=False,
        idempotentHint=True,
        openWorldHint=False,
    )
)
async def list_tools(*, ctx: AppContextType) -> list[dict[str, Any]]:
    """List tools declared in the engine configuration."""
    tool_registry = ctx.request_context.lifespan_context.tool_registry
    tools = []
    for tool_id in tool_registry.list_ids():
        tool = tool_registry.get(tool_id)
        assert tool is not None
        tools.append(
            {
                "id": tool.id,
                "name": tool.display_name,
                "description": tool.description,
                "params": {name: param.model_dump() for name, param in tool.params.items()},
            }
        )
    return tools
