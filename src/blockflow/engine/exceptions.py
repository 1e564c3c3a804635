"""Workflow execution exceptions.

Taxonomy:
- ValidationError (MissingRequiredInput, AmbiguousReferenceError): a block's
  resolved inputs are unusable; the block's handler is never invoked.
- ToolExecutionError (ToolTimeoutError): an external tool or function call
  failed; carries structured diagnostics for error-routing branches.
- GraphIntegrityError: malformed input graph, detected before the run loop.
- RecursionDepthExceededError: child-workflow nesting limit reached.
- ExecutionCancelled: a controller stopped because the run was cancelled.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any


class ValidationError(Exception):
    """
    A block's resolved inputs failed validation.

    Attributes:
        block_id: Block whose inputs were rejected
        block_name: Display name of that block
        field: Offending input field (if known)
    """

    def __init__(
        self,
        message: str,
        block_id: str | None = None,
        block_name: str | None = None,
        field: str | None = None,
    ):
        self.block_id = block_id
        self.block_name = block_name
        self.field = field
        super().__init__(message)

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return (
            f"{type(self).__name__}(block={self.block_id!r}, field={self.field!r}, "
            f"message={str(self)!r})"
        )


class MissingRequiredInput(ValidationError):  # noqa: N818
    """A required input resolved to nothing."""

    def __init__(self, block_name: str, field: str, block_id: str | None = None):
        super().__init__(
            f"Block '{block_name}' is missing required input '{field}'",
            block_id=block_id,
            block_name=block_name,
            field=field,
        )


class AmbiguousReferenceError(ValidationError):
    """
    A name-based reference matches more than one block.

    Raised instead of silently picking one of the candidates.

    Attributes:
        reference: Normalized name used in the reference
        candidates: Block ids sharing that normalized name
    """

    def __init__(self, reference: str, candidates: list[str]):
        self.reference = reference
        self.candidates = candidates
        super().__init__(
            f"Reference '<{reference}>' is ambiguous: blocks {', '.join(candidates)} "
            f"share the same normalized name. Reference the block by id instead."
        )


class ToolExecutionError(Exception):
    """
    A tool or function invocation failed or returned success=false.

    Carries the structured failure context so that error-routing branches
    can inspect more than a message string.

    Attributes:
        tool_id: Tool identifier that was invoked
        tool_name: Human-readable tool name
        block_id: Block that invoked the tool
        block_name: Display name of that block
        output: Raw output returned by the tool (may be None)
        timestamp: ISO-8601 time at which the failure was recorded
        status: Optional upstream status code
    """

    def __init__(
        self,
        message: str,
        *,
        tool_id: str | None = None,
        tool_name: str | None = None,
        block_id: str | None = None,
        block_name: str | None = None,
        output: Any = None,
        status: int | None = None,
    ):
        self.tool_id = tool_id
        self.tool_name = tool_name
        self.block_id = block_id
        self.block_name = block_name
        self.output = output
        self.status = status
        self.timestamp = datetime.now(UTC).isoformat()
        super().__init__(message)

    def details(self) -> dict[str, Any]:
        """Diagnostic fields recorded into the failing block's state."""
        return {
            "toolId": self.tool_id,
            "toolName": self.tool_name,
            "blockId": self.block_id,
            "blockName": self.block_name,
            "output": self.output,
            "status": self.status,
            "timestamp": self.timestamp,
        }

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return (
            f"{type(self).__name__}(tool={self.tool_id!r}, block={self.block_id!r}, "
            f"message={str(self)!r})"
        )


class ToolTimeoutError(ToolExecutionError):
    """A bounded tool or function call exceeded its configured timeout."""

    def __init__(self, message: str, *, timeout_ms: int | None = None, **kwargs: Any):
        self.timeout_ms = timeout_ms
        super().__init__(message, **kwargs)


class GraphIntegrityError(Exception):
    """
    The serialized workflow graph is malformed.

    Always fatal and raised before any block runs.

    Attributes:
        problems: Every integrity violation found
    """

    def __init__(self, problems: list[str]):
        self.problems = problems
        summary = problems[0] if len(problems) == 1 else f"{len(problems)} problems"
        details = "\n".join(f"  - {p}" for p in problems)
        super().__init__(f"Invalid workflow graph ({summary}):\n{details}")

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return f"GraphIntegrityError(problems={self.problems!r})"


class RecursionDepthExceededError(Exception):
    """
    Child-workflow nesting exceeded the configured maximum depth.

    The limit comes from EngineSettings.max_workflow_depth
    (BLOCKFLOW_MAX_WORKFLOW_DEPTH, default: 10).

    Attributes:
        workflow_id: Child workflow that would exceed the limit
        current_depth: Depth the child would run at
        max_depth: Configured maximum depth
    """

    def __init__(self, workflow_id: str, current_depth: int, max_depth: int):
        self.workflow_id = workflow_id
        self.current_depth = current_depth
        self.max_depth = max_depth
        super().__init__(
            f"Maximum workflow nesting depth of {max_depth} exceeded while calling "
            f"workflow '{workflow_id}' (depth: {current_depth}). To increase the limit, "
            f"set the BLOCKFLOW_MAX_WORKFLOW_DEPTH environment variable."
        )

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return (
            f"RecursionDepthExceededError(workflow={self.workflow_id!r}, "
            f"depth={self.current_depth}, limit={self.max_depth})"
        )


class ExecutionCancelled(Exception):  # noqa: N818
    """
    Raised by loop/parallel controllers when their sub-run was cancelled.

    The run loop records the controller block as cancelled and finishes the
    run with RunStatus.CANCELLED instead of ERROR.
    """

    def __init__(self, block_id: str):
        self.block_id = block_id
        super().__init__(f"Execution cancelled inside block '{block_id}'")

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return f"ExecutionCancelled(block={self.block_id!r})"
