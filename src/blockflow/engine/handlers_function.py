"""
Function handler: runs user-authored code in the code-execution service.

The handler holds no state. It collects block outputs and the block name
mapping so the sandbox can look up ``<block.path>`` references inside the
code, sends code, environment variables, and workflow variables to the
injected CodeExecutor, and enforces a local deadline on the call.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, ClassVar

import httpx
from pydantic import BaseModel, Field

from .exceptions import ToolExecutionError, ToolTimeoutError
from .handler_base import BlockHandler
from .serialized import SerializedBlock
from .services import CodeExecutionRequest

if TYPE_CHECKING:
    from .execution_context import ExecutionContext

logger = logging.getLogger(__name__)

FUNCTION_TYPE = "function"
FUNCTION_TOOL_ID = "function_execute"
DEFAULT_CODE_LANGUAGE = "javascript"

# Seconds granted beyond the block timeout before the local deadline fires
LOCAL_DEADLINE_GRACE_SECONDS = 1.0


class FunctionInput(BaseModel):
    """
    Inputs of a function block.

    ``code`` is either source text or the editor's list of
    ``{"content": ...}`` segments, joined with newlines.
    """

    code: str | list[Any] = Field(default="", description="Source code or code segments")
    language: str = Field(default=DEFAULT_CODE_LANGUAGE, description="Sandbox language")
    timeout: int | None = Field(
        default=None, ge=1, le=900_000, description="Execution timeout in milliseconds"
    )

    model_config = {"extra": "allow"}

    def source(self) -> str:
        """Code as a single string."""
        if isinstance(self.code, str):
            return self.code
        parts = []
        for segment in self.code:
            if isinstance(segment, dict):
                parts.append(str(segment.get("content", "")))
            else:
                parts.append(str(segment))
        return "\n".join(parts)


class FunctionHandler(BlockHandler):
    """
    Function blocks: execute code through the CodeExecutor.

    Failure:
    - Non-success response: ToolExecutionError carrying the service's message
      (or "Function execution failed")
    - Deadline exceeded: ToolTimeoutError
    """

    block_types = frozenset({FUNCTION_TYPE})
    input_type: ClassVar[type[BaseModel] | None] = FunctionInput

    # References in code are resolved by the sandbox from blockData/blockNameMapping
    raw_params = frozenset({"code"})

    async def execute(
        self, block: SerializedBlock, inputs: FunctionInput, ctx: ExecutionContext
    ) -> Any:
        diagnostics: dict[str, Any] = {
            "tool_id": FUNCTION_TOOL_ID,
            "tool_name": "Function",
            "block_id": block.id,
            "block_name": block.metadata.name or "Unnamed Block",
        }

        executor = ctx.services.code_executor
        if executor is None:
            raise ToolExecutionError("No code execution service configured", **diagnostics)

        timeout_ms = inputs.timeout or ctx.services.settings.function_timeout_ms
        request = CodeExecutionRequest(
            code=inputs.source(),
            language=inputs.language or DEFAULT_CODE_LANGUAGE,
            timeout_ms=timeout_ms,
            env_vars=dict(ctx.environment_variables),
            workflow_variables=dict(ctx.workflow_variables),
            block_data=ctx.block_outputs(),
            block_name_mapping=ctx.block_name_mapping(),
            workflow_id=ctx.workflow_id,
        )

        logger.info(
            f"Executing function block {block.id} ({request.language}, timeout {timeout_ms}ms)"
        )
        deadline = timeout_ms / 1000 + LOCAL_DEADLINE_GRACE_SECONDS
        try:
            result = await asyncio.wait_for(executor.execute(request), timeout=deadline)
        except (TimeoutError, httpx.TimeoutException) as e:
            raise ToolTimeoutError(
                f"Function execution timed out after {timeout_ms}ms",
                timeout_ms=timeout_ms,
                **diagnostics,
            ) from e
        except httpx.HTTPError as e:
            raise ToolExecutionError(f"Function execution failed: {e}", **diagnostics) from e

        if not result.success:
            raise ToolExecutionError(
                result.error or "Function execution failed",
                output=result.output,
                **diagnostics,
            )

        return result.output


__all__ = ["FunctionHandler", "FunctionInput"]
