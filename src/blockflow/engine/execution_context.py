"""
Per-run execution state and injected services.

Provides:
- BlockState: recorded result of one block (output, status, timing)
- BlockLog: trace entry appended for every block execution
- IterationScope: loop/parallel iteration visible to the resolver
- EngineServices: registries and external services injected into the runner
- ExecutionContext: mutable state of one run (or one loop iteration /
  parallel branch, via fork())

Single-writer discipline: only the run loop that owns a context writes its
block_states, active_execution_path, and pruned sets. Handlers read the
context and return values. Parallel branches get their own forked context, so
concurrent branches never write to the same mapping.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from functools import cached_property
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, Field

from .block_status import BlockStatus
from .config import EngineSettings
from .registries import BlockRegistry, ToolRegistry
from .serialized import SerializedWorkflow, normalize_block_name

if TYPE_CHECKING:
    from .registry import WorkflowRegistry
    from .services import CodeExecutor, ToolInvoker
    from .workflow_runner import WorkflowRunner


class BlockState(BaseModel):
    """
    Recorded state of one block.

    Failed blocks keep ``output = {"error": message}`` so that downstream
    error-routing conditions can reference ``<block.error>``.
    """

    output: Any = None
    status: BlockStatus
    started_at: str | None = None
    ended_at: str | None = None
    error: str | None = None
    error_details: dict[str, Any] | None = Field(
        default=None, description="Structured diagnostics of a ToolExecutionError"
    )

    def to_dict(self) -> dict[str, Any]:
        """JSON-ready form with camelCase timing keys."""
        data: dict[str, Any] = {
            "output": self.output,
            "status": self.status.value,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.error_details:
            data["errorDetails"] = self.error_details
        return data


class BlockLog(BaseModel):
    """Trace entry for one block execution."""

    block_id: str
    block_name: str
    block_type: str
    started_at: str | None = None
    ended_at: str | None = None
    duration_ms: int = 0
    success: bool
    output: Any = None
    error: str | None = None
    iteration: dict[str, Any] | None = Field(
        default=None, description="Enclosing loop/parallel scope, if any"
    )


@dataclass(frozen=True)
class IterationScope:
    """
    One loop iteration or parallel branch, as seen by the resolver.

    Resolvable as ``<loop.index>``, ``<loop.currentItem>``, ``<loop.items>``
    (or ``parallel.*``), and as ``<variable>`` when a variable name is set.
    """

    kind: Literal["loop", "parallel"]
    grouping_id: str
    index: int
    item: Any = None
    items: Any = None
    variable: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Fields exposed through <loop.*> / <parallel.*> references."""
        return {"index": self.index, "currentItem": self.item, "items": self.items}


@dataclass(frozen=True)
class EngineServices:
    """
    Registries and external services injected at runner construction.

    Explicitly constructed lookup tables instead of module-level singletons,
    so a runner can be tested in isolation with fakes.
    """

    tool_registry: ToolRegistry = field(default_factory=ToolRegistry)
    block_registry: BlockRegistry = field(default_factory=BlockRegistry)
    tool_invoker: ToolInvoker | None = None
    code_executor: CodeExecutor | None = None
    workflow_registry: WorkflowRegistry | None = None
    settings: EngineSettings = field(default_factory=EngineSettings)


@dataclass(eq=False)
class ExecutionContext:
    """
    Mutable state of one run.

    Created when a run starts, written only by the owning run loop, and
    returned inside the ExecutionResult when the run reaches a terminal state.
    """

    workflow: SerializedWorkflow
    services: EngineServices
    workflow_id: str
    workspace_id: str | None = None
    execution_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    correlation_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    environment_variables: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({})
    )
    workflow_variables: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    workflow_input: Any = None
    trigger_payloads: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))

    # Run state (single writer: the owning run loop)
    block_states: dict[str, BlockState] = field(default_factory=dict)
    active_execution_path: set[str] = field(default_factory=set)
    pruned: set[str] = field(default_factory=set)
    loop_iterations: dict[str, int] = field(default_factory=dict)
    parallel_progress: dict[str, dict[str, int]] = field(default_factory=dict)
    block_logs: list[BlockLog] = field(default_factory=list)
    final_output: Any = None

    # Nesting
    scopes: tuple[IterationScope, ...] = ()
    execution_stack: tuple[str, ...] = ()
    depth: int = 0
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    runner: WorkflowRunner | None = None
    parent: ExecutionContext | None = None

    @cached_property
    def name_index(self) -> dict[str, list[str]]:
        """Normalized block name -> block ids carrying that name."""
        index: dict[str, list[str]] = {}
        for block in self.workflow.blocks:
            if block.metadata.name:
                index.setdefault(normalize_block_name(block.metadata.name), []).append(block.id)
        return index

    def block_outputs(self) -> dict[str, Any]:
        """Outputs of every block that reached a terminal state (id -> output)."""
        return {
            block_id: state.output
            for block_id, state in self.block_states.items()
            if state.status.is_terminal()
        }

    def block_name_mapping(self) -> dict[str, str]:
        """
        Name -> block id mapping for the code-execution service.

        Contains raw and normalized display names; names shared by several
        blocks are omitted.
        """
        mapping: dict[str, str] = {}
        for normalized, ids in self.name_index.items():
            if len(ids) != 1:
                continue
            block = self.workflow.get_block(ids[0])
            mapping[normalized] = block.id
            if block.metadata.name:
                mapping[block.metadata.name] = block.id
        return mapping

    def current_scope(self, kind: str) -> IterationScope | None:
        """Innermost enclosing scope of kind ("loop" or "parallel")."""
        for scope in reversed(self.scopes):
            if scope.kind == kind:
                return scope
        return None

    def is_cancelled(self) -> bool:
        """Check whether cancellation was requested."""
        return self.cancel_event.is_set()

    def fork(self, grouping_id: str, scope: IterationScope) -> ExecutionContext:
        """
        Create the context of one loop iteration or parallel branch.

        Member states of the grouping start empty, which is how an
        iteration resets them. States of every other block are copied, so
        members can reference outer outputs.

        Args:
            grouping_id: Loop/parallel whose members run in the fork
            scope: Iteration exposed to the resolver

        Returns:
            New context sharing services, variables, and cancellation
        """
        members = self.workflow.descendants(grouping_id)
        return replace(
            self,
            block_states={k: v for k, v in self.block_states.items() if k not in members},
            active_execution_path=set(),
            pruned=set(),
            loop_iterations={},
            parallel_progress={},
            block_logs=[],
            final_output=None,
            scopes=(*self.scopes, scope),
            parent=self,
        )

    def snapshot(self) -> dict[str, dict[str, Any]]:
        """JSON-ready copy of block_states."""
        return {block_id: state.to_dict() for block_id, state in self.block_states.items()}
