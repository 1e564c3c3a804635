"""Shared test configuration for blockflow tests.

Provides:
- In-process tools (LocalToolInvoker) with an event log for ordering checks
- Engine services and a runner wired to those tools
- A fake code-execution service
- HTTP mock of the tool-execution service (pytest-httpserver)
"""

import asyncio
import json
from collections.abc import Iterator
from typing import Any

import pytest
from pytest_httpserver import HTTPServer
from werkzeug.wrappers import Request, Response
from workflow_builders import FakeCodeExecutor

from blockflow.engine import (
    EngineServices,
    EngineSettings,
    InvocationContext,
    LocalToolInvoker,
    ToolConfig,
    ToolRegistry,
    WorkflowRegistry,
    WorkflowRunner,
)

TEST_TOOL_IDS = ["echo", "identity", "fail", "explode", "slow", "fail_on", "append"]


@pytest.fixture
def events() -> list[str]:
    """Ordered start/end events recorded by the ``slow`` tool."""
    return []


@pytest.fixture
def accumulator() -> list[Any]:
    """Values collected by the ``append`` tool."""
    return []


@pytest.fixture
def tool_impls(events: list[str], accumulator: list[Any]) -> dict[str, Any]:
    """
    In-process tool implementations.

    - echo: returns its params
    - identity: returns params["value"]
    - fail: reports success=false with params["message"]
    - explode: raises RuntimeError
    - slow: sleeps params["delay"] seconds, records start/end events labelled with
      params["tag"] (or the block id), returns params
    - fail_on: fails when params["value"] == params["bad"], else returns the value
    - append: appends params["value"] to the accumulator and returns a copy
    """

    def echo(params: dict[str, Any], ctx: InvocationContext) -> dict[str, Any]:
        return dict(params)

    def identity(params: dict[str, Any], ctx: InvocationContext) -> Any:
        return params.get("value")

    def fail(params: dict[str, Any], ctx: InvocationContext) -> dict[str, Any]:
        return {"success": False, "error": params.get("message", "boom")}

    def explode(params: dict[str, Any], ctx: InvocationContext) -> Any:
        raise RuntimeError(params.get("message", "kaput"))

    async def slow(params: dict[str, Any], ctx: InvocationContext) -> dict[str, Any]:
        label = params.get("tag") or ctx.block_id
        events.append(f"start:{label}")
        await asyncio.sleep(float(params.get("delay") or 0))
        events.append(f"end:{label}")
        return dict(params)

    def fail_on(params: dict[str, Any], ctx: InvocationContext) -> Any:
        value = params.get("value")
        if value == params.get("bad"):
            return {"success": False, "error": f"bad value {value}"}
        return value

    def append(params: dict[str, Any], ctx: InvocationContext) -> list[Any]:
        accumulator.append(params.get("value"))
        return list(accumulator)

    return {
        "echo": echo,
        "identity": identity,
        "fail": fail,
        "explode": explode,
        "slow": slow,
        "fail_on": fail_on,
        "append": append,
    }


@pytest.fixture
def tool_registry() -> ToolRegistry:
    return ToolRegistry([ToolConfig(id=tool_id) for tool_id in TEST_TOOL_IDS])


@pytest.fixture
def code_executor() -> FakeCodeExecutor:
    return FakeCodeExecutor()


@pytest.fixture
def workflow_registry() -> WorkflowRegistry:
    return WorkflowRegistry()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings()


@pytest.fixture
def services(
    tool_registry: ToolRegistry,
    tool_impls: dict[str, Any],
    code_executor: FakeCodeExecutor,
    workflow_registry: WorkflowRegistry,
    settings: EngineSettings,
) -> EngineServices:
    """Engine services wired to the in-process tools and fakes."""
    return EngineServices(
        tool_registry=tool_registry,
        tool_invoker=LocalToolInvoker(tool_impls),
        code_executor=code_executor,
        workflow_registry=workflow_registry,
        settings=settings,
    )


@pytest.fixture
def runner(services: EngineServices) -> WorkflowRunner:
    return WorkflowRunner(services)


@pytest.fixture
def tool_service(httpserver: HTTPServer) -> Iterator[str]:
    """
    Local HTTP mock of the tool-execution service.

    Endpoints:
    - POST /api/tools/echo: {"success": true, "output": <params>, "context": <context>}
    - POST /api/tools/broken: HTTP 500 with a plain-text body
    - POST /api/tools/refused: HTTP 422 with {"success": false, "error": "..."}

    Yields:
        Base URL of the service (``http://localhost:<port>/api``)
    """

    def echo_handler(request: Request) -> Response:
        body = request.get_json()
        data = {"success": True, "output": body["params"], "context": body["context"]}
        return Response(json.dumps(data), content_type="application/json")

    httpserver.expect_request("/api/tools/echo", method="POST").respond_with_handler(
        echo_handler
    )
    httpserver.expect_request("/api/tools/broken", method="POST").respond_with_data(
        "upstream exploded", status=500
    )
    httpserver.expect_request("/api/tools/refused", method="POST").respond_with_json(
        {"success": False, "error": "quota exceeded"}, status=422
    )

    yield httpserver.url_for("/api")
    httpserver.clear()
