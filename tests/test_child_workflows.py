"""Child workflow execution through workflow blocks.

Tests:
- Child output, input mapping, and trace spans
- Shared environment variables and cancellation
- Depth limit and cycle detection
- Error propagation without nested prefixes
"""

import asyncio
from dataclasses import replace

from workflow_builders import block, chain, starter, workflow

from blockflow.engine import (
    BlockStatus,
    EngineServices,
    EngineSettings,
    LocalToolInvoker,
    RecursionDepthExceededError,
    RunStatus,
    ToolConfig,
    ToolExecutionError,
    ToolRegistry,
    WorkflowRegistry,
    WorkflowRunner,
)


def call_block(block_id: str, child_id: str | None, child_input=None):
    params = {"input": child_input} if child_input is not None else {}
    if child_id is not None:
        params["workflowId"] = child_id
    return block(block_id, "workflow", name=f"Call {block_id}", params=params)


def caller(workflow_id: str, child_id: str | None, child_input=None):
    return workflow(
        [starter(), call_block("call", child_id, child_input)],
        chain("start", "call"),
        id=workflow_id,
        name=workflow_id.capitalize(),
    )


class TestChildWorkflowExecution:
    """Successful child runs."""

    async def test_child_result_and_trace_spans(
        self, runner: WorkflowRunner, workflow_registry: WorkflowRegistry
    ):
        workflow_registry.register(
            workflow(
                [starter(), block("double", params={"x": "<start.x>"})],
                chain("start", "double"),
                id="child",
                name="Child",
            )
        )
        parent = caller("parent", "child", {"x": "<start.x>"})

        result = await runner.execute(parent, workflow_input={"x": 5})

        assert result.status == RunStatus.COMPLETED
        output = result.output
        assert output["success"] is True
        assert output["childWorkflowName"] == "Child"
        assert output["result"] == {"x": 5}
        spans = output["childTraceSpans"]
        assert [span["block_id"] for span in spans] == ["start", "double"]
        assert spans[0]["metadata"] == {"isFromChildWorkflow": True, "childWorkflowName": "Child"}

    async def test_child_block_states_stay_in_child(
        self, runner: WorkflowRunner, workflow_registry: WorkflowRegistry
    ):
        workflow_registry.register(
            workflow([starter(), block("inner")], chain("start", "inner"), id="child")
        )

        result = await runner.execute(caller("parent", "child"))

        assert set(result.context.block_states) == {"start", "call"}

    async def test_environment_shared_with_child(
        self, runner: WorkflowRunner, workflow_registry: WorkflowRegistry
    ):
        workflow_registry.register(
            workflow(
                [starter(), block("use", params={"token": "{{TOKEN}}"})],
                chain("start", "use"),
                id="child",
            )
        )

        result = await runner.execute(
            caller("parent", "child"), environment_variables={"TOKEN": "t-1"}
        )

        assert result.output["result"] == {"token": "t-1"}


class TestChildWorkflowErrors:
    """Guards and failure mapping."""

    async def test_missing_workflow_id(self, runner: WorkflowRunner):
        result = await runner.execute(caller("parent", None))

        assert result.status == RunStatus.ERROR
        assert result.error == "No workflow selected for execution"

    async def test_child_not_found(self, runner: WorkflowRunner):
        result = await runner.execute(caller("parent", "missing"))

        assert result.status == RunStatus.ERROR
        assert result.error == "Child workflow missing not found"
        assert isinstance(result.exception, ToolExecutionError)
        assert result.exception.tool_id == "workflow_executor"

    async def test_depth_limit(self, services: EngineServices, workflow_registry: WorkflowRegistry):
        runner = WorkflowRunner(replace(services, settings=EngineSettings(max_workflow_depth=1)))
        workflow_registry.register(caller("middle", "leaf"))
        workflow_registry.register(workflow([starter()], [], id="leaf"))

        result = await runner.execute(caller("top", "middle"))

        assert result.status == RunStatus.ERROR
        assert isinstance(result.exception, RecursionDepthExceededError)
        assert result.exception.workflow_id == "leaf"
        assert result.exception.current_depth == 2
        assert result.exception.max_depth == 1

    async def test_self_call_is_detected_as_cycle(
        self, runner: WorkflowRunner, workflow_registry: WorkflowRegistry
    ):
        recursive = caller("recursive", "recursive")
        workflow_registry.register(recursive)

        result = await runner.execute(recursive)

        assert result.status == RunStatus.ERROR
        assert "Cyclic workflow dependency detected: recursive_sub_recursive_call" in result.error
        assert result.error.startswith('Error in child workflow "Recursive"')

    async def test_nested_failure_keeps_single_prefix(
        self, runner: WorkflowRunner, workflow_registry: WorkflowRegistry
    ):
        workflow_registry.register(
            workflow(
                [starter(), block("bad", "fail")],
                chain("start", "bad"),
                id="leaf",
                name="Leaf",
            )
        )
        workflow_registry.register(caller("middle", "leaf"))

        result = await runner.execute(caller("top", "middle"))

        assert result.status == RunStatus.ERROR
        assert result.error == 'Error in child workflow "Leaf": boom'
        assert result.failed_block_id == "call"
        assert result.context.block_states["call"].status == BlockStatus.ERROR

    async def test_child_cancellation_cancels_parent(
        self, services: EngineServices, tool_impls, workflow_registry: WorkflowRegistry
    ):
        event = asyncio.Event()

        def halt(params, ctx):
            event.set()
            return {}

        runner = WorkflowRunner(
            replace(
                services,
                tool_registry=ToolRegistry([ToolConfig(id="halt")]),
                tool_invoker=LocalToolInvoker({**tool_impls, "halt": halt}),
            )
        )
        workflow_registry.register(
            workflow(
                [starter(), block("h", "halt"), block("never", "halt")],
                chain("start", "h", "never"),
                id="child",
            )
        )

        result = await runner.execute(caller("parent", "child"), cancel_event=event)

        assert result.status == RunStatus.CANCELLED
        assert result.context.block_states["call"].status == BlockStatus.CANCELLED
