"""
Loop and parallel controllers.

Both controllers own a grouping of member blocks and run that member frame
through WorkflowRunner.run_subgraph(), once per iteration (loop, sequential)
or once per branch (parallel, concurrent). Every run gets a forked context in
which member states start empty, so members re-execute and never see the
states of another iteration or branch.

Member states and logs are returned in a HandlerResult; the run loop records
them together with the controller's own output.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from .exceptions import ExecutionCancelled
from .execution_context import IterationScope
from .handler_base import BlockHandler, HandlerResult, SubflowError
from .resolver import ReferenceResolver
from .serialized import LOOP_TYPE, PARALLEL_TYPE, SerializedBlock

if TYPE_CHECKING:
    from .execution_context import BlockLog, BlockState, ExecutionContext
    from .workflow_runner import FrameResult, WorkflowRunner

logger = logging.getLogger(__name__)


def resolve_collection(raw: Any, resolver: ReferenceResolver, label: str) -> list[Any]:
    """
    Turn a loop/parallel collection setting into a list of items.

    Accepts a list, a dict (iterated as ``[key, value]`` entries), JSON text,
    or a reference resolving to any of these. None and empty text yield [].

    Raises:
        ValueError: If the setting does not describe a collection
    """
    value = resolver.resolve(raw)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return []
        try:
            value = json.loads(text)
        except json.JSONDecodeError as e:
            raise ValueError(f"{label} must be a list, an object, or JSON text: {e}") from e

    if value is None:
        return []
    if isinstance(value, Mapping):
        return [[key, item] for key, item in value.items()]
    if isinstance(value, list | tuple):
        return list(value)
    raise ValueError(f"{label} must be a list or an object, got {type(value).__name__}")


def _runner_of(ctx: ExecutionContext) -> WorkflowRunner:
    if ctx.runner is None:
        raise RuntimeError("Loop and parallel blocks require a runner-owned execution context")
    return ctx.runner


class LoopHandler(BlockHandler):
    """
    Loop controller: re-runs the member frame once per iteration, in order.

    Loop types:
    - ``for``: ``iterations`` passes, ``<loop.currentItem>`` is the index
    - ``forEach``: one pass per item of ``for_each_items``

    Output:
        {"results": [...], "iterations": N, "loopType": "forEach", "completed": True}

    ``results[i]`` is the output of the last member block that completed in
    iteration i. Member states of the final iteration are kept in the run's
    block states; every iteration's logs are kept.
    """

    block_types = frozenset({LOOP_TYPE})

    async def execute(
        self, block: SerializedBlock, inputs: dict[str, Any], ctx: ExecutionContext
    ) -> HandlerResult:
        loop = ctx.workflow.loops.get(block.id)
        if loop is None:
            raise ValueError(f"Loop block '{block.display_name}' has no loop configuration")

        settings = ctx.services.settings
        if loop.loop_type == "forEach":
            items: list[Any] | None = resolve_collection(
                loop.for_each_items,
                ReferenceResolver.from_context(ctx),
                f"Items of forEach loop '{block.display_name}'",
            )
            count = len(items)
        else:
            items = None
            count = loop.iterations

        if count > settings.max_loop_iterations:
            raise ValueError(
                f"Loop '{block.display_name}' requests {count} iterations, "
                f"more than the maximum of {settings.max_loop_iterations}"
            )

        runner = _runner_of(ctx)
        logger.info(f"Loop {block.id} ({loop.loop_type}): {count} iteration(s)")

        results: list[Any] = []
        logs: list[BlockLog] = []
        states: dict[str, BlockState] = {}
        for index in range(count):
            if ctx.is_cancelled():
                raise ExecutionCancelled(block.id)

            scope = IterationScope(
                kind="loop",
                grouping_id=loop.id,
                index=index,
                item=items[index] if items is not None else index,
                items=items,
                variable=loop.iteration_variable,
            )
            frame = await runner.run_subgraph(ctx, loop.id, scope)
            logs.extend(frame.logs)
            states = frame.states

            if frame.cancelled:
                raise ExecutionCancelled(block.id)
            if frame.error is not None:
                partial = HandlerResult(
                    output=None, child_states=states, child_logs=logs, loop_iterations=index + 1
                )
                raise SubflowError(frame.error, frame.failed_block_id or block.id, partial)

            results.append(frame.output)
            logger.debug(f"Loop {block.id} iteration {index + 1}/{count} completed")

        return HandlerResult(
            output={
                "results": results,
                "iterations": count,
                "loopType": loop.loop_type,
                "completed": True,
            },
            child_states=states,
            child_logs=logs,
            loop_iterations=count,
        )


def branch_state_id(block_id: str, parallel_id: str, index: int) -> str:
    """Virtual block-state id of a member block inside one parallel branch."""
    return f"{block_id}_parallel_{parallel_id}_iteration_{index}"


class ParallelHandler(BlockHandler):
    """
    Parallel controller: runs the member frame once per item, concurrently.

    Parallel types:
    - ``collection``: one branch per item of ``distribution``
    - ``count``: ``count`` branches, ``<parallel.currentItem>`` is the index

    Branches start together, bounded by EngineSettings.max_parallel_branches,
    and the block completes once every branch reached a terminal state.

    Output:
        {"results": [...], "completedBranches": K, "totalBranches": K}

    ``results`` follows source-collection order whatever the completion order.
    When a branch fails and continue_on_error is off, the first failed branch
    (in source order) fails the parallel block. With continue_on_error the
    failed slot is None and ``errors`` lists ``{"index", "error"}`` entries.
    """

    block_types = frozenset({PARALLEL_TYPE})

    async def execute(
        self, block: SerializedBlock, inputs: dict[str, Any], ctx: ExecutionContext
    ) -> HandlerResult:
        parallel = ctx.workflow.parallels.get(block.id)
        if parallel is None:
            raise ValueError(f"Parallel block '{block.display_name}' has no parallel configuration")

        settings = ctx.services.settings
        if parallel.parallel_type == "count":
            items: list[Any] | None = None
            total = parallel.count
        else:
            items = resolve_collection(
                parallel.distribution,
                ReferenceResolver.from_context(ctx),
                f"Distribution of parallel '{block.display_name}'",
            )
            total = len(items)

        continue_on_error = (
            parallel.continue_on_error
            if parallel.continue_on_error is not None
            else settings.parallel_continue_on_error
        )
        runner = _runner_of(ctx)
        semaphore = asyncio.Semaphore(settings.max_parallel_branches)
        logger.info(
            f"Parallel {block.id} ({parallel.parallel_type}): {total} branch(es), "
            f"up to {settings.max_parallel_branches} at a time"
        )

        async def run_branch(index: int) -> FrameResult:
            scope = IterationScope(
                kind="parallel",
                grouping_id=parallel.id,
                index=index,
                item=items[index] if items is not None else index,
                items=items,
                variable=parallel.iteration_variable,
            )
            async with semaphore:
                return await runner.run_subgraph(ctx, parallel.id, scope)

        # Every branch settles before an unexpected branch exception is re-raised
        outcomes = await asyncio.gather(
            *(run_branch(i) for i in range(total)), return_exceptions=True
        )
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
        frames: list[FrameResult] = list(outcomes)

        # Collect in source order
        states: dict[str, BlockState] = {}
        logs: list[BlockLog] = []
        results: list[Any] = []
        errors: list[dict[str, Any]] = []
        first_failure: tuple[int, FrameResult] | None = None
        for index, frame in enumerate(frames):
            for member_id, state in frame.states.items():
                states[branch_state_id(member_id, parallel.id, index)] = state
            logs.extend(frame.logs)
            if frame.error is not None:
                errors.append({"index": index, "error": str(frame.error)})
                if first_failure is None:
                    first_failure = (index, frame)
                results.append(None)
            else:
                results.append(frame.output)

        completed = sum(1 for frame in frames if frame.succeeded)
        progress = {"completed": completed, "failed": len(errors), "total": total}

        if any(frame.cancelled for frame in frames):
            raise ExecutionCancelled(block.id)

        if first_failure is not None and not continue_on_error:
            index, frame = first_failure
            logger.warning(f"Parallel {block.id}: branch {index} failed: {frame.error}")
            partial = HandlerResult(
                output=None, child_states=states, child_logs=logs, parallel_progress=progress
            )
            raise SubflowError(frame.error, frame.failed_block_id or block.id, partial)

        output: dict[str, Any] = {
            "results": results,
            "completedBranches": completed,
            "totalBranches": total,
        }
        if errors:
            output["errors"] = errors
            logger.warning(f"Parallel {block.id}: {len(errors)} of {total} branch(es) failed")

        return HandlerResult(
            output=output, child_states=states, child_logs=logs, parallel_progress=progress
        )


__all__ = ["LoopHandler", "ParallelHandler", "branch_state_id", "resolve_collection"]
