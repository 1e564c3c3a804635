"""Block handlers: trigger, condition, router, function, and generic tool.

Handlers are exercised through the runner so that input resolution,
validation, and state recording are part of every test.
"""

import asyncio
import json
from dataclasses import replace
from typing import Any

import httpx
import pytest
from workflow_builders import FakeCodeExecutor, block, chain, edge, starter, workflow

from blockflow.engine import (
    BlockConfig,
    BlockHandler,
    BlockRegistry,
    CodeExecutionResult,
    EngineServices,
    HandlerRegistry,
    LocalToolInvoker,
    RunStatus,
    ToolConfig,
    ToolParam,
    ToolRegistry,
    ToolTimeoutError,
    ValidationError,
    WorkflowRunner,
    create_default_handlers,
)
from blockflow.engine import handlers_function
from blockflow.engine.handlers_core import TriggerHandler, parse_conditions, starter_output
from blockflow.engine.handlers_function import FunctionInput
from blockflow.engine.handlers_tool import GenericToolHandler, lift_knowledge_cost
from blockflow.engine.serialized import SerializedBlock


class TestTriggerHandler:
    """Starter and trigger blocks provide the run's input."""

    def test_starter_output_spreads_mapping_input(self):
        assert starter_output({"q": "hi"}) == {"q": "hi", "input": {"q": "hi"}}

    def test_starter_output_wraps_scalar_input(self):
        assert starter_output("hi") == {"input": "hi"}

    async def test_trigger_mode_block_returns_params(self, runner: WorkflowRunner):
        wf = workflow(
            [
                block("hook", "webhook", params={"triggerMode": True, "topic": "orders"}),
                block("use", params={"topic": "<hook.topic>"}),
            ],
            chain("hook", "use"),
        )

        result = await runner.execute(wf)

        assert result.context.block_states["hook"].output == {"topic": "orders"}
        assert result.output == {"topic": "orders"}


class TestConditionHandler:
    """Branch selection."""

    def test_parse_conditions_from_json_text(self):
        spec = SerializedBlock.model_validate({"id": "c", "metadata": {"id": "condition"}})
        text = json.dumps([{"id": "a", "title": "if", "value": "1 > 0"}, {"id": "b", "title": "else"}])

        conditions = parse_conditions(text, spec)

        assert [c.id for c in conditions] == ["a", "b"]
        assert conditions[1].is_else

    def test_parse_conditions_rejects_empty(self):
        spec = SerializedBlock.model_validate({"id": "c", "metadata": {"id": "condition"}})

        with pytest.raises(ValueError, match="has no conditions"):
            parse_conditions([], spec)

    def test_parse_conditions_rejects_bad_json(self):
        spec = SerializedBlock.model_validate({"id": "c", "metadata": {"id": "condition"}})

        with pytest.raises(ValueError, match="Invalid conditions format"):
            parse_conditions("[{", spec)

    async def test_no_match_without_else_fails(self, runner: WorkflowRunner):
        wf = workflow(
            [
                starter(),
                block(
                    "cond",
                    "condition",
                    name="Gate",
                    params={"conditions": [{"id": "a", "title": "if", "value": "<start.n> > 5"}]},
                ),
                block("a"),
            ],
            [edge("start", "cond"), edge("cond", "a", "condition-a")],
        )

        result = await runner.execute(wf, workflow_input={"n": 1})

        assert result.status == RunStatus.ERROR
        assert result.error == (
            "No matching path found for condition block 'Gate', and no 'else' block exists"
        )

    async def test_condition_passes_through_predecessor_output(self, runner: WorkflowRunner):
        wf = workflow(
            [
                starter(),
                block(
                    "cond",
                    "condition",
                    params={
                        "conditions": json.dumps(
                            [{"id": "big", "title": "if", "value": "<start.n> >= 10"}]
                        )
                    },
                ),
                block("a"),
            ],
            [edge("start", "cond"), edge("cond", "a", "condition-big")],
        )

        result = await runner.execute(wf, workflow_input={"n": 10})

        output = result.context.block_states["cond"].output
        assert output["n"] == 10
        assert output["conditionResult"] is True
        assert output["selectedOption"] == "big"
        assert output["selectedPath"] == {"blockId": "a", "blockType": "echo", "blockTitle": "a"}

    async def test_evaluation_error_names_condition(self, runner: WorkflowRunner):
        wf = workflow(
            [
                starter(),
                block(
                    "cond",
                    "condition",
                    params={"conditions": [{"id": "a", "title": "if", "value": "<start.n> >"}]},
                ),
                block("a"),
            ],
            [edge("start", "cond"), edge("cond", "a", "condition-a")],
        )

        result = await runner.execute(wf, workflow_input={"n": 1})

        assert result.status == RunStatus.ERROR
        assert result.error.startswith("Evaluation error in condition 'if' of block 'cond'")

    async def test_comparison_with_missing_value_names_condition(self, runner: WorkflowRunner):
        wf = workflow(
            [
                starter(),
                block(
                    "cond",
                    "condition",
                    params={
                        "conditions": [{"id": "a", "title": "if", "value": "<start.count> > 0"}]
                    },
                ),
                block("a"),
            ],
            [edge("start", "cond"), edge("cond", "a", "condition-a")],
        )

        result = await runner.execute(wf, workflow_input={})

        assert result.status == RunStatus.ERROR
        assert result.failed_block_id == "cond"
        assert result.error.startswith("Evaluation error in condition 'if' of block 'cond'")
        assert "TypeError" in result.error


class TestRouterHandler:
    """Target selection by id, name, or routing tool."""

    def router_workflow(self, route_params: dict[str, Any], tool: str | None = None):
        return workflow(
            [
                starter(),
                block("rt", "router", tool=tool, params=route_params),
                block("a", name="Alpha", params={"picked": "a"}),
                block("b", name="Beta", params={"picked": "b"}),
            ],
            [edge("start", "rt"), edge("rt", "a"), edge("rt", "b")],
        )

    async def test_route_by_id(self, runner: WorkflowRunner):
        result = await runner.execute(self.router_workflow({"route": "a"}))

        assert result.output == {"picked": "a"}
        assert result.context.block_states["rt"].output["route"] == "a"

    async def test_invalid_route(self, runner: WorkflowRunner):
        result = await runner.execute(self.router_workflow({"route": "gamma"}))

        assert result.status == RunStatus.ERROR
        assert result.error.startswith("Invalid routing decision 'gamma' in block 'rt'")

    async def test_empty_route(self, runner: WorkflowRunner):
        result = await runner.execute(self.router_workflow({}))

        assert result.status == RunStatus.ERROR
        assert result.error == "Router block 'rt' produced no route"

    async def test_route_from_tool(self, services: EngineServices, tool_impls):
        seen: list[dict[str, Any]] = []

        def pick(params, ctx):
            seen.append(params)
            return {"content": "Beta", "model": "router-small"}

        runner = WorkflowRunner(
            replace(services, tool_invoker=LocalToolInvoker({**tool_impls, "pick": pick}))
        )

        result = await runner.execute(self.router_workflow({"prompt": "choose"}, tool="pick"))

        assert result.output == {"picked": "b"}
        router_output = result.context.block_states["rt"].output
        assert router_output["prompt"] == "choose"
        assert router_output["model"] == "router-small"
        assert router_output["selectedPath"]["blockId"] == "b"
        assert [t["id"] for t in seen[0]["targets"]] == ["a", "b"]


class TestFunctionHandler:
    """Code blocks delegate to the code-execution service."""

    def function_workflow(self, params: dict[str, Any]):
        return workflow(
            [starter(), block("fn", "function", name="Compute", params=params)],
            chain("start", "fn"),
        )

    async def test_request_carries_run_state(
        self, runner: WorkflowRunner, code_executor: FakeCodeExecutor
    ):
        wf = self.function_workflow({"code": "return <start.x> * 2", "language": "python"})

        result = await runner.execute(
            wf,
            workflow_input={"x": 2},
            environment_variables={"KEY": "v"},
            workflow_variables={"limit": 3},
        )

        assert result.status == RunStatus.COMPLETED
        assert result.output == {"result": "return <start.x> * 2"}
        request = code_executor.requests[0]
        assert request.language == "python"
        assert request.timeout_ms == 5000
        assert request.env_vars == {"KEY": "v"}
        assert request.workflow_variables == {"limit": 3}
        assert request.block_data["start"] == {"x": 2, "input": {"x": 2}}
        assert request.block_name_mapping["Start"] == "start"
        assert request.block_name_mapping["compute"] == "fn"
        assert "fn" not in request.block_data
        assert request.workflow_id == "test-workflow"

    def test_code_segments_are_joined(self):
        inputs = FunctionInput(code=[{"content": "a = 1"}, {"content": "return a"}])

        assert inputs.source() == "a = 1\nreturn a"

    async def test_service_failure(self, services: EngineServices):
        executor = FakeCodeExecutor(
            respond=lambda request: CodeExecutionResult(success=False, error="ReferenceError: y")
        )
        runner = WorkflowRunner(replace(services, code_executor=executor))

        result = await runner.execute(self.function_workflow({"code": "return y"}))

        assert result.status == RunStatus.ERROR
        assert result.error == "ReferenceError: y"
        assert result.context.block_states["fn"].error_details["toolId"] == "function_execute"

    async def test_local_deadline(self, services: EngineServices, monkeypatch):
        monkeypatch.setattr(handlers_function, "LOCAL_DEADLINE_GRACE_SECONDS", 0.0)
        runner = WorkflowRunner(replace(services, code_executor=FakeCodeExecutor(delay=1.0)))

        result = await runner.execute(self.function_workflow({"code": "loop()", "timeout": 20}))

        assert result.status == RunStatus.ERROR
        assert isinstance(result.exception, ToolTimeoutError)
        assert result.exception.timeout_ms == 20
        assert result.error == "Function execution timed out after 20ms"

    async def test_transport_error(self, services: EngineServices):
        def refuse(request):
            raise httpx.ConnectError("connection refused")

        runner = WorkflowRunner(
            replace(services, code_executor=FakeCodeExecutor(respond=refuse))
        )

        result = await runner.execute(self.function_workflow({"code": "1"}))

        assert result.status == RunStatus.ERROR
        assert result.error == "Function execution failed: connection refused"

    async def test_invalid_timeout_is_validation_error(self, runner: WorkflowRunner):
        result = await runner.execute(self.function_workflow({"code": "1", "timeout": 0}))

        assert result.status == RunStatus.ERROR
        assert isinstance(result.exception, ValidationError)
        assert result.exception.field == "timeout"

    async def test_no_executor_configured(self, services: EngineServices):
        runner = WorkflowRunner(replace(services, code_executor=None))

        result = await runner.execute(self.function_workflow({"code": "1"}))

        assert result.error == "No code execution service configured"


class TestGenericToolHandler:
    """Tool lookup, params, and failure mapping."""

    async def test_unknown_tool(self, runner: WorkflowRunner):
        wf = workflow([starter(), block("x", "custom", tool="nope")], chain("start", "x"))

        result = await runner.execute(wf)

        assert result.error == "Tool not found: nope"

    async def test_block_without_tool(self, runner: WorkflowRunner):
        wf = workflow([starter(), block("x", "custom", tool="")], chain("start", "x"))

        result = await runner.execute(wf)

        assert result.error == "Block 'x' of type 'custom' has no tool configured"

    async def test_mcp_tool_bypasses_registry(self, services: EngineServices, tool_impls):
        runner = WorkflowRunner(
            replace(
                services,
                tool_invoker=LocalToolInvoker(
                    {**tool_impls, "mcp-search": lambda params, ctx: {"hits": [params["q"]]}}
                ),
            )
        )
        wf = workflow(
            [starter(), block("s", "mcp", tool="mcp-search", params={"q": "docs"})],
            chain("start", "s"),
        )

        result = await runner.execute(wf)

        assert result.output == {"hits": ["docs"]}

    async def test_declared_defaults_and_required_params(self, services: EngineServices):
        registry = ToolRegistry(
            [
                ToolConfig(
                    id="echo",
                    params={
                        "url": ToolParam(required=True),
                        "method": ToolParam(default="GET"),
                    },
                )
            ]
        )
        runner = WorkflowRunner(replace(services, tool_registry=registry))
        wf = workflow(
            [starter(), block("req", params={"url": "<start.url>"})],
            chain("start", "req"),
        )

        ok = await runner.execute(wf, workflow_input={"url": "http://x"})
        missing = await runner.execute(wf, workflow_input={})

        assert ok.output == {"url": "http://x", "method": "GET"}
        assert missing.status == RunStatus.ERROR
        assert missing.error == "Block 'req' is missing required input 'url'"

    async def test_block_type_transform(self, services: EngineServices):
        blocks = BlockRegistry(
            [BlockConfig(type="echo", transform_params=lambda p: {"url": p["url"].upper()})]
        )
        runner = WorkflowRunner(replace(services, block_registry=blocks))
        wf = workflow([starter(), block("t", params={"url": "http://x"})], chain("start", "t"))

        result = await runner.execute(wf)

        assert result.output == {"url": "HTTP://X"}

    async def test_failing_transform_is_ignored(self, services: EngineServices):
        blocks = BlockRegistry([BlockConfig(type="echo", transform_params=lambda p: p["nope"])])
        runner = WorkflowRunner(replace(services, block_registry=blocks))
        wf = workflow([starter(), block("t", params={"url": "u"})], chain("start", "t"))

        result = await runner.execute(wf)

        assert result.output == {"url": "u"}

    async def test_transport_timeout_becomes_tool_timeout(
        self, services: EngineServices, tool_impls
    ):
        def stall(params, ctx):
            raise httpx.ReadTimeout("read timed out")

        runner = WorkflowRunner(
            replace(services, tool_invoker=LocalToolInvoker({**tool_impls, "echo": stall}))
        )
        wf = workflow([starter(), block("e", name="Echo")], chain("start", "e"))

        result = await runner.execute(wf)

        assert isinstance(result.exception, ToolTimeoutError)
        assert result.error == "Block execution of echo timed out"

    async def test_no_invoker_configured(self, services: EngineServices):
        runner = WorkflowRunner(replace(services, tool_invoker=None))
        wf = workflow([starter(), block("e")], chain("start", "e"))

        result = await runner.execute(wf)

        assert result.error == "No tool invoker configured to run echo"

    def test_knowledge_cost_is_lifted(self):
        output = {
            "results": [],
            "cost": {"input": 1, "output": 2, "total": 3, "tokens": {"total": 30}, "model": "m"},
        }

        lifted = lift_knowledge_cost("knowledge_search", output)

        assert lifted["cost"] == {"input": 1, "output": 2, "total": 3}
        assert lifted["tokens"] == {"total": 30}
        assert lifted["model"] == "m"
        assert lift_knowledge_cost("other", output) is output


class TestHandlerRegistry:
    """Dispatch order and custom handlers."""

    def test_default_handlers_end_with_generic_tool_handler(self):
        handlers = create_default_handlers()

        assert isinstance(handlers[0], TriggerHandler)
        assert isinstance(handlers[-1], GenericToolHandler)

    def test_empty_registry_rejected(self):
        with pytest.raises(ValueError, match="at least one handler"):
            HandlerRegistry([])

    async def test_custom_handler_takes_priority(self, services: EngineServices):
        class ShoutHandler(BlockHandler):
            block_types = frozenset({"shout"})

            async def execute(self, block, inputs, ctx):
                await asyncio.sleep(0)
                return {"text": str(inputs.get("text", "")).upper()}

        runner = WorkflowRunner(services, handlers=[ShoutHandler(), *create_default_handlers()])
        wf = workflow(
            [starter(), block("s", "shout", params={"text": "<start.word>"})],
            chain("start", "s"),
        )

        result = await runner.execute(wf, workflow_input={"word": "hey"})

        assert result.output == {"text": "HEY"}

    async def test_block_without_handler_fails(self, services: EngineServices):
        runner = WorkflowRunner(services, handlers=[TriggerHandler()])
        wf = workflow([starter(), block("x")], chain("start", "x"))

        result = await runner.execute(wf)

        assert result.status == RunStatus.ERROR
        assert result.error == "No handler accepts block 'x' of type 'echo'"
