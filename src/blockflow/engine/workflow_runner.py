"""
Workflow executor (WorkflowRunner).

Drives one run through the state machine Idle -> Running -> {Completed,
Error, Cancelled} and returns an ExecutionResult.

Design Principles:
- Stateless between runs (all run state lives in ExecutionContext)
- Registries and services injected through EngineServices
- Single writer: only the run loop records block states; handlers return values
- Eligible blocks run as concurrent asyncio tasks; the scheduler fixpoint is
  re-evaluated after every completion
- Partial state preserved on errors for debugging

Loops and parallels run their member frame through run_subgraph(), which
forks the context per iteration/branch and runs the same loop on the
grouping's members.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

from .block_status import BlockStatus, RunStatus
from .context_vars import correlation_id, get_run_logger
from .exceptions import ExecutionCancelled, ToolExecutionError
from .execution_context import (
    BlockLog,
    BlockState,
    EngineServices,
    ExecutionContext,
    IterationScope,
)
from .execution_result import ExecutionResult
from .handler_base import (
    BlockHandler,
    HandlerRegistry,
    HandlerResult,
    SubflowError,
    create_default_handlers,
)
from .resolver import ReferenceResolver, prepare_workflow_variables
from .scheduler import PathManager
from .serialized import SerializedWorkflow, check_graph_integrity

logger = get_run_logger(__name__)


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _advance(current: RunStatus, target: RunStatus) -> RunStatus:
    if not current.can_transition_to(target):
        raise RuntimeError(f"Invalid run transition: {current.value} -> {target.value}")
    return target


@dataclass
class FrameResult:
    """
    Outcome of running one frame (top-level graph, loop iteration, or branch).

    Attributes:
        output: Output of the last block in the frame that completed successfully
        states: Block states recorded while running the frame
        logs: Block logs appended while running the frame
        error: Original exception of the fatal failure, if any
        failed_block_id: Block whose failure stopped the frame
        cancelled: The run was cancelled while the frame was running
    """

    output: Any = None
    states: dict[str, BlockState] = field(default_factory=dict)
    logs: list[BlockLog] = field(default_factory=list)
    error: BaseException | None = None
    failed_block_id: str | None = None
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        """Check if the frame finished without fatal error or cancellation."""
        return self.error is None and not self.cancelled


@dataclass
class _BlockOutcome:
    state: BlockState
    log: BlockLog
    result: HandlerResult | None = None
    error: BaseException | None = None
    failed_block_id: str | None = None


class WorkflowRunner:
    """
    Executes serialized workflows.

    Usage:
        runner = WorkflowRunner(EngineServices(tool_registry=..., tool_invoker=...))
        result = await runner.execute(workflow, workflow_input={"query": "hi"})
        response = result.to_response(debug=False)
    """

    def __init__(
        self,
        services: EngineServices | None = None,
        handlers: Iterable[BlockHandler] | None = None,
    ):
        """
        Initialize runner.

        Args:
            services: Registries and external services (defaults: empty registries,
                no tool invoker, no code executor)
            handlers: Handlers in priority order (default: create_default_handlers())
        """
        self.services = services or EngineServices()
        self.handlers = HandlerRegistry(
            handlers if handlers is not None else create_default_handlers()
        )

    async def execute(
        self,
        workflow: SerializedWorkflow,
        *,
        workflow_input: Any = None,
        workflow_variables: Mapping[str, Any] | None = None,
        environment_variables: Mapping[str, str] | None = None,
        workflow_id: str | None = None,
        workspace_id: str | None = None,
        trigger_payloads: Mapping[str, Any] | None = None,
        cancel_event: asyncio.Event | None = None,
        depth: int = 0,
        execution_stack: tuple[str, ...] = (),
    ) -> ExecutionResult:
        """
        Run a workflow to a terminal state.

        Args:
            workflow: Serialized workflow graph
            workflow_input: Input exposed through the starter block
            workflow_variables: Overrides for the workflow's declared variables
            environment_variables: Values for {{NAME}} references
            workflow_id: Correlation id passed to tools (default: workflow.id)
            workspace_id: Workspace correlation id passed to tools
            trigger_payloads: Pre-computed outputs for trigger blocks, by block id
            cancel_event: Set to request cooperative cancellation
            depth: Child-workflow nesting depth (0 for top-level runs)
            execution_stack: Child-workflow call keys of enclosing runs

        Returns:
            ExecutionResult (completed/error/cancelled) with the full context

        Raises:
            GraphIntegrityError: If the graph is malformed (before any block runs)

        Examples:
            # Failure (partial state preserved)
            result = await runner.execute(workflow)
            # result.status == RunStatus.ERROR
            # result.failed_block_id == "b"
            # result.context.block_states["a"].status == BlockStatus.COMPLETED
        """
        check_graph_integrity(workflow)

        variables = prepare_workflow_variables(workflow.variables)
        variables.update(prepare_workflow_variables(workflow_variables or {}))

        ctx = ExecutionContext(
            workflow=workflow,
            services=self.services,
            workflow_id=workflow_id or workflow.id,
            workspace_id=workspace_id,
            environment_variables=MappingProxyType(dict(environment_variables or {})),
            workflow_variables=MappingProxyType(variables),
            workflow_input=workflow_input,
            trigger_payloads=MappingProxyType(dict(trigger_payloads or {})),
            execution_stack=tuple(execution_stack),
            depth=depth,
            cancel_event=cancel_event if cancel_event is not None else asyncio.Event(),
            runner=self,
        )

        token = correlation_id.set(ctx.correlation_id)
        status = RunStatus.IDLE
        started = time.perf_counter()
        try:
            status = _advance(status, RunStatus.RUNNING)
            logger.info(
                f"Starting workflow '{workflow.display_name}' "
                f"(execution {ctx.execution_id}, depth {depth}, {len(workflow.blocks)} blocks)"
            )

            frame = await self._run_frame(ctx, None)
            ctx.final_output = frame.output
            duration_ms = int((time.perf_counter() - started) * 1000)

            if frame.cancelled:
                _advance(status, RunStatus.CANCELLED)
                logger.info(f"Workflow '{workflow.display_name}' cancelled after {duration_ms}ms")
                return ExecutionResult.cancelled(ctx, duration_ms)

            if frame.error is not None:
                _advance(status, RunStatus.ERROR)
                logger.error(
                    f"Workflow '{workflow.display_name}' failed at block "
                    f"'{frame.failed_block_id}': {frame.error}"
                )
                return ExecutionResult.failure(
                    ctx, frame.error, frame.failed_block_id, duration_ms
                )

            _advance(status, RunStatus.COMPLETED)
            logger.info(
                f"Workflow '{workflow.display_name}' completed in {duration_ms}ms "
                f"({len(ctx.block_states)} block states, {len(ctx.pruned)} pruned)"
            )
            return ExecutionResult.completed(ctx, duration_ms)
        finally:
            correlation_id.reset(token)

    async def run_subgraph(
        self, ctx: ExecutionContext, grouping_id: str, scope: IterationScope
    ) -> FrameResult:
        """
        Run one iteration/branch of a loop or parallel grouping.

        Member states start empty in a forked context, so each iteration
        re-executes every member; the caller's context is never written.

        Args:
            ctx: Context of the loop/parallel block
            grouping_id: Loop/parallel id (its container block id)
            scope: Iteration exposed to the resolver

        Returns:
            FrameResult with the states and logs recorded by the iteration
        """
        sub = ctx.fork(grouping_id, scope)
        return await self._run_frame(sub, grouping_id)

    async def _run_frame(self, ctx: ExecutionContext, grouping_id: str | None) -> FrameResult:
        """
        Run loop for one frame.

        1. Ask the PathManager for eligible blocks
        2. Start each as an asyncio task (unless stopping)
        3. Wait for the first completion, record it, and re-run the fixpoint
        4. Stop starting new work on fatal error or cancellation; let
           in-flight blocks settle
        """
        manager = PathManager(
            ctx.workflow,
            grouping_id,
            ctx.active_execution_path,
            ctx.pruned,
            ctx.services.block_registry,
        )
        frame = FrameResult()
        initial_states = set(ctx.block_states)
        initial_logs = len(ctx.block_logs)

        ready = deque(manager.start())
        running: dict[asyncio.Task[_BlockOutcome], str] = {}

        try:
            while True:
                if not frame.cancelled and ctx.is_cancelled():
                    frame.cancelled = True
                    logger.info(
                        f"Cancellation requested; {len(ready)} eligible block(s) will not start"
                    )

                if frame.succeeded:
                    while ready:
                        block_id = ready.popleft()
                        ctx.block_states[block_id] = BlockState(
                            status=BlockStatus.RUNNING, started_at=_now()
                        )
                        task = asyncio.create_task(
                            self._execute_block(ctx, block_id), name=f"block:{block_id}"
                        )
                        running[task] = block_id

                if not running:
                    break

                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    block_id = running.pop(task)
                    outcome = task.result()
                    self._record(ctx, block_id, outcome)
                    state = outcome.state

                    if state.status == BlockStatus.CANCELLED:
                        frame.cancelled = True
                        continue

                    if state.status == BlockStatus.ERROR:
                        if not manager.routes_error(block_id):
                            if frame.error is None:
                                frame.error = outcome.error
                                frame.failed_block_id = outcome.failed_block_id or block_id
                                logger.error(
                                    f"Block '{block_id}' failed with no error route: "
                                    f"{state.error}. No new blocks will start"
                                )
                            continue
                        logger.warning(
                            f"Block '{block_id}' failed; error routed by workflow: {state.error}"
                        )
                    else:
                        frame.output = state.output

                    ready.extend(manager.complete(block_id, state))
        finally:
            for task in running:
                task.cancel()

        if frame.succeeded:
            pending = manager.pending_blocks()
            if pending:
                logger.warning(f"Frame finished with unscheduled blocks: {', '.join(pending)}")

        frame.states = {
            block_id: state
            for block_id, state in ctx.block_states.items()
            if block_id not in initial_states
        }
        frame.logs = ctx.block_logs[initial_logs:]
        return frame

    async def _execute_block(self, ctx: ExecutionContext, block_id: str) -> _BlockOutcome:
        """
        Resolve, validate, and dispatch one block.

        Never raises for block failures: the outcome carries the error so
        that the run loop can record it and decide whether it is fatal.
        """
        block = ctx.workflow.get_block(block_id)
        running_state = ctx.block_states.get(block_id)
        started_at = running_state.started_at if running_state else _now()
        started = time.perf_counter()

        output: Any = None
        result: HandlerResult | None = None
        error: BaseException | None = None
        failed_block_id: str | None = None
        cancelled = False

        try:
            handler = self.handlers.select(block, ctx)
            logger.debug(f"Block '{block.display_name}' ({block.id}) -> {handler.name}")
            inputs = handler.prepare_inputs(block, ReferenceResolver.from_context(ctx))
            validated = handler.validate_inputs(block, inputs, ctx)
            returned = await handler.execute(block, validated, ctx)
        except ExecutionCancelled:
            cancelled = True
        except SubflowError as e:
            error, failed_block_id, result = e.cause, e.failed_block_id, e.partial
        except Exception as e:
            error, failed_block_id = e, block_id
        else:
            if isinstance(returned, HandlerResult):
                result = returned
                output = returned.output
            else:
                output = returned

        ended_at = _now()
        duration_ms = int((time.perf_counter() - started) * 1000)

        if cancelled:
            state = BlockState(
                status=BlockStatus.CANCELLED,
                started_at=started_at,
                ended_at=ended_at,
                error="Execution cancelled",
            )
            logger.info(f"Block '{block.display_name}' ({block.id}) cancelled")
        elif error is not None:
            message = str(error) or type(error).__name__
            state = BlockState(
                output={"error": message},
                status=BlockStatus.ERROR,
                started_at=started_at,
                ended_at=ended_at,
                error=message,
                error_details=error.details() if isinstance(error, ToolExecutionError) else None,
            )
            logger.warning(f"Block '{block.display_name}' ({block.id}) failed: {message}")
        else:
            state = BlockState(
                output=output,
                status=BlockStatus.COMPLETED,
                started_at=started_at,
                ended_at=ended_at,
            )
            logger.info(f"Block '{block.display_name}' ({block.id}) completed in {duration_ms}ms")

        log = BlockLog(
            block_id=block.id,
            block_name=block.display_name,
            block_type=block.type,
            started_at=started_at,
            ended_at=ended_at,
            duration_ms=duration_ms,
            success=state.status == BlockStatus.COMPLETED,
            output=state.output,
            error=state.error,
            iteration=self._iteration_info(ctx),
        )
        return _BlockOutcome(state, log, result, error, failed_block_id)

    @staticmethod
    def _iteration_info(ctx: ExecutionContext) -> dict[str, Any] | None:
        if not ctx.scopes:
            return None
        scope = ctx.scopes[-1]
        return {"kind": scope.kind, "groupingId": scope.grouping_id, "index": scope.index}

    @staticmethod
    def _record(ctx: ExecutionContext, block_id: str, outcome: _BlockOutcome) -> None:
        """Write a block outcome into the context (run loop only)."""
        if outcome.result is not None:
            ctx.block_states.update(outcome.result.child_states)
            ctx.block_logs.extend(outcome.result.child_logs)
            if outcome.result.loop_iterations is not None:
                ctx.loop_iterations[block_id] = outcome.result.loop_iterations
            if outcome.result.parallel_progress is not None:
                ctx.parallel_progress[block_id] = dict(outcome.result.parallel_progress)

        ctx.block_states[block_id] = outcome.state
        ctx.block_logs.append(outcome.log)


__all__ = ["FrameResult", "WorkflowRunner"]
