"""
Core control-flow handlers: trigger/starter, condition, and router.

These handlers never call external services (except a router configured
with a routing tool). Condition and router outputs carry the selected branch,
which the PathManager reads to prune the branches that were not chosen.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field

from .conditions import evaluate_condition
from .handler_base import BlockHandler
from .handlers_tool import invoke_tool
from .resolver import ReferenceResolver
from .scheduler import is_trigger_block
from .serialized import (
    CONDITION_HANDLE_PREFIX,
    CONDITION_TYPE,
    ERROR_HANDLE,
    ROUTER_TYPE,
    STARTER_TYPE,
    SerializedBlock,
    normalize_block_name,
)

if TYPE_CHECKING:
    from .execution_context import ExecutionContext

logger = logging.getLogger(__name__)


def starter_output(workflow_input: Any) -> dict[str, Any]:
    """
    Output of a starter block for a run's workflow input.

    Mapping inputs are spread at the top level and also kept under ``input``,
    so both ``<start.query>`` and ``<start.input.query>`` resolve.
    """
    if isinstance(workflow_input, dict):
        return {**workflow_input, "input": workflow_input}
    return {"input": workflow_input}


class TriggerHandler(BlockHandler):
    """
    Starter and trigger blocks: provide input data to the workflow.

    Output priority:
    1. Trigger payload supplied for this block when the run started
    2. The run's workflow input (starter blocks), or the starter's output
       (other trigger blocks)
    3. Resolved params
    4. Empty mapping
    """

    def can_handle(self, block: SerializedBlock, ctx: ExecutionContext) -> bool:
        return is_trigger_block(block, ctx.services.block_registry)

    async def execute(
        self, block: SerializedBlock, inputs: dict[str, Any], ctx: ExecutionContext
    ) -> Any:
        logger.info(f"Executing trigger block: {block.id} (type: {block.type})")

        payload = ctx.trigger_payloads.get(block.id)
        if payload:
            return payload

        if block.type == STARTER_TYPE:
            if ctx.workflow_input is not None:
                return starter_output(ctx.workflow_input)
        else:
            starter = next((b for b in ctx.workflow.blocks if b.type == STARTER_TYPE), None)
            if starter is not None:
                state = ctx.block_states.get(starter.id)
                if state is not None and state.status.is_completed() and state.output:
                    return state.output

        params = {k: v for k, v in inputs.items() if k != "triggerMode"}
        if params:
            logger.debug(f"Returning trigger params for block {block.id}: {sorted(params)}")
            return params

        return {}


class ConditionSpec(BaseModel):
    """One branch of a condition block."""

    id: str = Field(min_length=1)
    title: str = "if"
    value: Any = ""

    model_config = {"extra": "ignore"}

    @property
    def is_else(self) -> bool:
        return self.title.strip().lower() == "else"

    @property
    def expression(self) -> str:
        if self.value is None:
            return ""
        return self.value if isinstance(self.value, str) else json.dumps(self.value)


def parse_conditions(raw: Any, block: SerializedBlock) -> list[ConditionSpec]:
    """
    Parse a condition block's ``conditions`` param (list or JSON text).

    Raises:
        ValueError: If the param is missing or malformed
    """
    data = raw
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(
                f"Invalid conditions format in block '{block.display_name}': {e}"
            ) from e

    if not isinstance(data, list) or not data:
        raise ValueError(f"Condition block '{block.display_name}' has no conditions")

    try:
        return [ConditionSpec.model_validate(item) for item in data]
    except ValueError as e:
        raise ValueError(
            f"Invalid conditions format in block '{block.display_name}': {e}"
        ) from e


def describe_target(ctx: ExecutionContext, block_id: str | None) -> dict[str, Any] | None:
    """``selectedPath`` entry for a chosen target block."""
    if block_id is None or block_id not in ctx.workflow.block_map:
        return None
    target = ctx.workflow.get_block(block_id)
    return {"blockId": target.id, "blockType": target.type, "blockTitle": target.display_name}


class ConditionHandler(BlockHandler):
    """
    Condition blocks: choose exactly one outgoing branch.

    Conditions are evaluated in order; the first truthy ``if``/``else if``
    wins and ``else`` is the fallback. The output passes through the first
    predecessor's output, plus:

        conditionResult      True when a branch was selected
        selectedConditionId  Id of the chosen condition (edge handle suffix)
        selectedOption       Same as selectedConditionId
        selectedPath         {blockId, blockType, blockTitle} of the target
    """

    block_types = frozenset({CONDITION_TYPE})
    raw_params = frozenset({"conditions"})

    async def execute(
        self, block: SerializedBlock, inputs: dict[str, Any], ctx: ExecutionContext
    ) -> dict[str, Any]:
        conditions = parse_conditions(inputs.get("conditions"), block)
        resolver = ReferenceResolver.from_context(ctx)

        selected: ConditionSpec | None = None
        for condition in conditions:
            if condition.is_else:
                selected = condition
                break
            try:
                matched = evaluate_condition(condition.expression, resolver)
            except ValueError as e:
                raise ValueError(
                    f"Evaluation error in condition '{condition.title}' of block "
                    f"'{block.display_name}': {e}"
                ) from e
            if matched:
                selected = condition
                break

        if selected is None:
            raise ValueError(
                f"No matching path found for condition block '{block.display_name}', "
                f"and no 'else' block exists"
            )

        handle = f"{CONDITION_HANDLE_PREFIX}{selected.id}"
        target_id = next(
            (c.target for c in ctx.workflow.outgoing(block.id) if c.source_handle == handle),
            None,
        )
        logger.info(
            f"Condition block {block.id} selected '{selected.title}' -> {target_id or 'no target'}"
        )

        output: dict[str, Any] = {}
        incoming = ctx.workflow.incoming(block.id)
        if incoming:
            source_output = ctx.block_outputs().get(incoming[0].source)
            if isinstance(source_output, dict):
                output.update(source_output)

        output.update(
            {
                "conditionResult": True,
                "selectedConditionId": selected.id,
                "selectedOption": selected.id,
                "selectedPath": describe_target(ctx, target_id),
            }
        )
        return output


class RouterHandler(BlockHandler):
    """
    Router blocks: choose one outgoing target by id or display name.

    The route comes from the resolved ``route`` param, or, when the block
    binds a tool and sets ``prompt``, from that tool's ``content`` output.
    The tool receives the prompt and the candidate targets.
    """

    block_types = frozenset({ROUTER_TYPE})

    async def execute(
        self, block: SerializedBlock, inputs: dict[str, Any], ctx: ExecutionContext
    ) -> dict[str, Any]:
        targets = [
            ctx.workflow.get_block(conn.target)
            for conn in ctx.workflow.outgoing(block.id)
            if conn.source_handle != ERROR_HANDLE
        ]
        if not targets:
            raise ValueError(f"Router block '{block.display_name}' has no outgoing connections")

        route = inputs.get("route")
        tool_output: Any = None
        if not route and block.config.tool and inputs.get("prompt"):
            params = {
                **inputs,
                "targets": [
                    {"id": t.id, "type": t.type, "title": t.display_name} for t in targets
                ],
            }
            tool_output = await invoke_tool(block.config.tool, params, block, ctx)
            if isinstance(tool_output, dict):
                route = tool_output.get("content")

        if not isinstance(route, str) or not route.strip():
            raise ValueError(f"Router block '{block.display_name}' produced no route")

        choice = route.strip()
        target = next((t for t in targets if t.id == choice), None)
        if target is None:
            wanted = normalize_block_name(choice)
            matches = [t for t in targets if normalize_block_name(t.display_name) == wanted]
            if len(matches) > 1:
                raise ValueError(
                    f"Router block '{block.display_name}' route '{choice}' matches several "
                    f"targets: {', '.join(t.id for t in matches)}"
                )
            target = matches[0] if matches else None

        if target is None:
            raise ValueError(
                f"Invalid routing decision '{choice}' in block '{block.display_name}'. "
                f"Targets: {', '.join(t.id for t in targets)}"
            )

        logger.info(f"Router block {block.id} selected {target.id}")
        output: dict[str, Any] = {
            "route": choice,
            "selectedPath": describe_target(ctx, target.id),
        }
        if inputs.get("prompt"):
            output["prompt"] = inputs["prompt"]
        if isinstance(tool_output, dict):
            output.update({k: v for k, v in tool_output.items() if k not in output})
        return output


__all__ = [
    "ConditionHandler",
    "ConditionSpec",
    "RouterHandler",
    "TriggerHandler",
    "describe_target",
    "parse_conditions",
    "starter_output",
]
