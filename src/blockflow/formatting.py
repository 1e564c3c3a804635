"""Shared formatting utilities for MCP tool responses.

- Markdown format: Human-readable with headers and lists
- JSON format: Machine-readable structured data for programmatic access
"""

from typing import Any, Literal

# =============================================================================
# Markdown Formatting Utilities
# =============================================================================


def format_workflow_list_markdown(workflows: list[dict[str, Any]]) -> str:
    """Format workflow metadata list as markdown.

    Args:
        workflows: Metadata dicts from WorkflowRegistry.list_all_metadata()

    Returns:
        Markdown-formatted workflow list with header
    """
    if not workflows:
        return "No workflows found"

    lines = [f"## Available Workflows ({len(workflows)})", ""]
    for meta in workflows:
        line = f"- **{meta['id']}**"
        if meta.get("name") and meta["name"] != meta["id"]:
            line += f" ({meta['name']})"
        line += f": {meta['blocks']} blocks"
        lines.append(line)
    return "\n".join(lines)


def format_workflow_info_markdown(info: dict[str, Any]) -> str:
    """Format workflow info as markdown.

    Args:
        info: Workflow information dictionary built by get_workflow_info

    Returns:
        Markdown-formatted workflow information with sections
    """
    lines = [
        f"# Workflow: {info['name']}",
        "",
        "## Configuration",
        f"- **Id**: {info['id']}",
        f"- **Version**: {info.get('version', '1.0')}",
        f"- **Total Blocks**: {info['total_blocks']}",
    ]

    lines.append("")
    lines.append("## Blocks")
    for block in info["blocks"]:
        block_line = f"- **{block['id']}** ({block['type']})"
        if block.get("name"):
            block_line += f" {block['name']}"
        if block.get("depends_on"):
            block_line += f" - depends on: {', '.join(block['depends_on'])}"
        lines.append(block_line)

    if info.get("variables"):
        lines.append("")
        lines.append("## Variables")
        for name, value in info["variables"].items():
            lines.append(f"- **{name}**: `{value}`")

    return "\n".join(lines)


# =============================================================================
# Error Formatting Utilities
# =============================================================================


def format_workflow_not_found_error(
    workflow_id: str,
    available: list[str],
    format: Literal["json", "markdown"] = "json",  # noqa: A002
) -> dict[str, Any] | str:
    """Format a workflow-not-found error.

    Args:
        workflow_id: Requested workflow id
        available: Registered workflow ids
        format: Output format

    Returns:
        Error dict (json) or markdown message
    """
    preview = ", ".join(available[:5]) + (" (and more)" if len(available) > 5 else "")
    message = (
        f"Workflow '{workflow_id}' not found. "
        f"Available workflows: {preview or 'none'}. "
        "Use list_workflows() to see all workflows."
    )
    if format == "markdown":
        return f"**Error**: {message}"
    return {"status": "error", "error": message, "available_workflows": available}


__all__ = [
    "format_workflow_info_markdown",
    "format_workflow_list_markdown",
    "format_workflow_not_found_error",
]
