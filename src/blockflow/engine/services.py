"""
External service boundaries: tool invocation and sandboxed code execution.

The executor depends only on the shape of these contracts:
- ToolInvoker.invoke(tool_id, params, context) -> ToolResult
- CodeExecutor.execute(request) -> CodeExecutionResult

Implementations:
- LocalToolInvoker: in-process callables keyed by tool id (embedding, tests)
- HttpToolInvoker: JSON over HTTP to a tool-execution service (httpx)
- HttpCodeExecutor: JSON over HTTP to a function-execution service (httpx)

Transport errors (httpx.TimeoutException, httpx.NetworkError) propagate to the
calling handler, which converts them into ToolExecutionError/ToolTimeoutError
with block context attached.
"""

from __future__ import annotations

import inspect
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


@dataclass(frozen=True)
class InvocationContext:
    """Correlation identifiers passed along with every tool call."""

    workflow_id: str
    workspace_id: str | None = None
    execution_id: str | None = None
    block_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """Wire form of the context (camelCase keys)."""
        return {
            "workflowId": self.workflow_id,
            "workspaceId": self.workspace_id,
            "executionId": self.execution_id,
            "blockId": self.block_id,
        }


class ToolResult(BaseModel):
    """Uniform tool response: {success, output, error?}."""

    success: bool
    output: Any = None
    error: str | None = None
    status: int | None = Field(default=None, description="Upstream HTTP status, if any")

    model_config = {"extra": "allow"}


class CodeExecutionRequest(BaseModel):
    """Parameters of one sandboxed code execution."""

    code: str
    language: str = "javascript"
    timeout_ms: int = Field(default=5000, ge=1)
    env_vars: dict[str, str] = Field(default_factory=dict)
    workflow_variables: dict[str, Any] = Field(default_factory=dict)
    block_data: dict[str, Any] = Field(default_factory=dict)
    block_name_mapping: dict[str, str] = Field(default_factory=dict)
    workflow_id: str | None = None

    def to_payload(self) -> dict[str, Any]:
        """Wire form of the request (camelCase keys)."""
        return {
            "code": self.code,
            "language": self.language,
            "timeout": self.timeout_ms,
            "envVars": self.env_vars,
            "workflowVariables": self.workflow_variables,
            "blockData": self.block_data,
            "blockNameMapping": self.block_name_mapping,
            "workflowId": self.workflow_id,
            "isCustomTool": False,
        }


class CodeExecutionResult(BaseModel):
    """Response of the code-execution service."""

    success: bool
    output: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None

    model_config = {"extra": "allow"}


class ToolInvoker(Protocol):
    """Async tool-execution layer."""

    async def invoke(
        self, tool_id: str, params: dict[str, Any], context: InvocationContext
    ) -> ToolResult: ...


class CodeExecutor(Protocol):
    """Async sandboxed code-execution service."""

    async def execute(self, request: CodeExecutionRequest) -> CodeExecutionResult: ...


# Sync callables return the output; async callables return an awaitable of it
ToolCallable = Callable[[dict[str, Any], InvocationContext], Any]


class LocalToolInvoker:
    """
    Tool invoker backed by in-process callables.

    A callable may be sync or async. It may return a ToolResult, a
    {success, output, error} mapping, or any other value (treated as a
    successful output). Exceptions propagate to the tool handler.

    Example:
        invoker = LocalToolInvoker({"echo": lambda params, ctx: {"value": params["value"]}})
    """

    def __init__(self, tools: Mapping[str, ToolCallable] | None = None):
        self._tools = dict(tools or {})

    def has(self, tool_id: str) -> bool:
        """Check if a callable is bound to tool_id."""
        return tool_id in self._tools

    async def invoke(
        self, tool_id: str, params: dict[str, Any], context: InvocationContext
    ) -> ToolResult:
        """Call the bound callable and normalize its result."""
        func = self._tools.get(tool_id)
        if func is None:
            return ToolResult(success=False, error=f"No local implementation for tool: {tool_id}")

        result = func(params, context)
        if inspect.isawaitable(result):
            result = await result
        return _normalize_tool_result(result)


class HttpToolInvoker:
    """
    Tool invoker that POSTs to a tool-execution service.

    Request:  POST {base_url}/tools/{tool_id}
              {"params": {...}, "context": {"workflowId": ..., "workspaceId": ...}}
    Response: {"success": bool, "output": ..., "error": "..."}
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.headers = headers or {}

    async def invoke(
        self, tool_id: str, params: dict[str, Any], context: InvocationContext
    ) -> ToolResult:
        """Invoke tool_id over HTTP."""
        url = f"{self.base_url}/tools/{tool_id}"
        payload = {"params": params, "context": context.to_payload()}

        async with httpx.AsyncClient(timeout=self.timeout, headers=self.headers) as client:
            response = await client.post(url, json=payload)

        logger.debug(f"Tool {tool_id} responded with HTTP {response.status_code}")
        return _parse_service_response(response, ToolResult)


class HttpCodeExecutor:
    """
    Code executor that POSTs to a function-execution service.

    Request:  POST {url}  (CodeExecutionRequest.to_payload())
    Response: {"success": bool, "output": {"result": ..., "stdout": "..."}, "error": "..."}
    """

    # Extra seconds granted to the HTTP round trip beyond the execution timeout
    TRANSPORT_GRACE_SECONDS = 5.0

    def __init__(self, url: str, headers: dict[str, str] | None = None):
        self.url = url
        self.headers = headers or {}

    async def execute(self, request: CodeExecutionRequest) -> CodeExecutionResult:
        """Run code remotely and return the service's result."""
        timeout = request.timeout_ms / 1000 + self.TRANSPORT_GRACE_SECONDS

        async with httpx.AsyncClient(timeout=timeout, headers=self.headers) as client:
            response = await client.post(self.url, json=request.to_payload())

        return _parse_service_response(response, CodeExecutionResult)


def _normalize_tool_result(result: Any) -> ToolResult:
    """Coerce a local tool's return value into a ToolResult."""
    if isinstance(result, ToolResult):
        return result
    if isinstance(result, Mapping) and "success" in result:
        return ToolResult.model_validate(dict(result))
    return ToolResult(success=True, output=result)


def _parse_service_response(response: httpx.Response, model: type[M]) -> M:
    """
    Parse a {success, output, error} JSON response.

    Non-JSON bodies and non-2xx responses without a success flag become
    failures carrying the HTTP status.
    """
    try:
        body = response.json()
    except json.JSONDecodeError:
        body = None

    if isinstance(body, dict) and "success" in body:
        if model is ToolResult and body.get("status") is None and not response.is_success:
            body = {**body, "status": response.status_code}
        return model.model_validate(body)

    if response.is_success:
        output = body if body is not None else {}
        if model is CodeExecutionResult and not isinstance(output, dict):
            output = {"result": output}
        return model.model_validate({"success": True, "output": output})

    detail = body.get("error") if isinstance(body, dict) else None
    message = detail or response.text[:500] or response.reason_phrase
    data: dict[str, Any] = {"success": False, "error": f"HTTP {response.status_code}: {message}"}
    if model is ToolResult:
        data["status"] = response.status_code
    return model.model_validate(data)
