"""
Path manager: decides which blocks of a frame become eligible next.

A frame is the top-level graph (every block outside loop/parallel groupings)
or the members of one grouping. Each frame is scheduled independently: the
run loop asks for the entry blocks, then reports every block result and gets
back the blocks that just became eligible.

Every in-frame connection is PENDING until its source finishes, then TAKEN or
NOT_TAKEN:
- A pruned or disabled source never takes an edge
- A condition takes only its ``condition-<selectedConditionId>`` edge
- A router takes only the edge to its selected target
- A failed block takes only ``error`` edges and edges into condition blocks
  whose expressions read its ``error`` field
- Any other completed block takes every non-``error`` edge

A block joins the active execution path once any incoming edge is taken and
becomes eligible when none of its incoming edges is still pending. A block
whose incoming edges are all decided and none taken is pruned, and pruning
cascades downstream. The computation is a fixpoint re-run after every block
result, never a single topological pass.
"""

from __future__ import annotations

import logging
from collections import deque
from enum import Enum
from typing import Any

from .block_status import BlockStatus
from .execution_context import BlockState
from .registries import BlockRegistry
from .resolver import references_block_error
from .serialized import (
    CONDITION_HANDLE_PREFIX,
    CONDITION_TYPE,
    ERROR_HANDLE,
    ROUTER_TYPE,
    START_HANDLES,
    STARTER_TYPE,
    TRIGGER_CATEGORY,
    SerializedBlock,
    SerializedConnection,
    SerializedWorkflow,
)

logger = logging.getLogger(__name__)


class EdgeState(str, Enum):
    """Decision state of one in-frame connection."""

    PENDING = "pending"
    TAKEN = "taken"
    NOT_TAKEN = "not_taken"


def is_trigger_block(block: SerializedBlock, block_registry: BlockRegistry | None = None) -> bool:
    """
    Check whether a block is a run entry point (starter or trigger).

    A block is a trigger when its type is ``starter``, its category (declared
    on the block or in the block registry) is ``triggers``, or its params
    enable ``triggerMode``.
    """
    if block.type == STARTER_TYPE or block.metadata.category == TRIGGER_CATEGORY:
        return True
    if block_registry is not None and block_registry.category_of(block.type) == TRIGGER_CATEGORY:
        return True
    return block.config.params.get("triggerMode") is True


class PathManager:
    """
    Incremental scheduler for one frame.

    The active-path and pruned sets are owned by the caller's
    ExecutionContext and updated in place; the run loop is the only caller.

    Example:
        manager = PathManager(workflow, None, ctx.active_execution_path, ctx.pruned)
        ready = manager.start()
        ...
        ready = manager.complete("fetch", ctx.block_states["fetch"])
    """

    def __init__(
        self,
        workflow: SerializedWorkflow,
        grouping_id: str | None,
        active: set[str] | None = None,
        pruned: set[str] | None = None,
        block_registry: BlockRegistry | None = None,
    ):
        self.workflow = workflow
        self.grouping_id = grouping_id
        self.block_registry = block_registry
        self.active = active if active is not None else set()
        self.pruned = pruned if pruned is not None else set()

        self.nodes = workflow.frame_nodes(grouping_id)
        node_set = set(self.nodes)

        # In-frame connections; container -> member start edges belong to no frame
        self.edges: list[SerializedConnection] = [
            conn
            for conn in workflow.connections
            if conn.source in node_set
            and conn.target in node_set
            and conn.source_handle not in START_HANDLES
        ]
        self.edge_state: list[EdgeState] = [EdgeState.PENDING] * len(self.edges)
        self._incoming: dict[str, list[int]] = {node: [] for node in self.nodes}
        self._outgoing: dict[str, list[int]] = {node: [] for node in self.nodes}
        for index, conn in enumerate(self.edges):
            self._outgoing[conn.source].append(index)
            self._incoming[conn.target].append(index)

        self.entries = self._find_entries()
        self._started: set[str] = set()

    def _find_entries(self) -> list[str]:
        """Blocks that start the frame without any taken incoming edge."""
        if self.grouping_id is None:
            triggers = [
                node
                for node in self.nodes
                if is_trigger_block(self.workflow.get_block(node), self.block_registry)
            ]
            if triggers:
                return triggers
            return [node for node in self.nodes if not self._incoming[node]]

        start_targets = [
            conn.target
            for conn in self.workflow.outgoing(self.grouping_id)
            if conn.source_handle in START_HANDLES and conn.target in self._incoming
        ]
        if start_targets:
            return list(dict.fromkeys(start_targets))
        return [node for node in self.nodes if not self._incoming[node]]

    # ------------------------------------------------------------------
    # Run loop API
    # ------------------------------------------------------------------

    def start(self) -> list[str]:
        """
        Activate entry blocks and prune blocks that can never be reached.

        Returns:
            Block ids eligible to run now
        """
        for entry in self.entries:
            self.active.add(entry)

        entry_set = set(self.entries)
        unreachable = [
            node for node in self.nodes if node not in entry_set and not self._incoming[node]
        ]
        if unreachable:
            logger.debug(f"Blocks without an entry path are pruned: {', '.join(unreachable)}")

        ready: list[str] = []
        self._settle([*self.entries, *unreachable], ready)
        return ready

    def complete(self, block_id: str, state: BlockState) -> list[str]:
        """
        Decide the outgoing edges of a finished block.

        Args:
            block_id: Block that reached a terminal state
            state: Its recorded state

        Returns:
            Block ids that became eligible as a result
        """
        block = self.workflow.get_block(block_id)
        touched: list[str] = []
        for index in self._outgoing.get(block_id, []):
            conn = self.edges[index]
            taken = self._edge_taken(conn, block, state)
            self.edge_state[index] = EdgeState.TAKEN if taken else EdgeState.NOT_TAKEN
            if taken:
                self.active.add(conn.target)
            touched.append(conn.target)

        ready: list[str] = []
        self._settle(touched, ready)
        return ready

    def routes_error(self, block_id: str) -> bool:
        """
        Check whether the workflow models error handling for a block.

        True when the block has an outgoing ``error`` connection or a
        connection into a condition block that reads its ``error`` field.
        """
        block = self.workflow.get_block(block_id)
        return any(
            self._routes_failure(self.edges[index], block)
            for index in self._outgoing.get(block_id, [])
        )

    def pending_blocks(self) -> list[str]:
        """Blocks neither started nor pruned (diagnostics for unfinished frames)."""
        return [n for n in self.nodes if n not in self._started and n not in self.pruned]

    # ------------------------------------------------------------------
    # Fixpoint
    # ------------------------------------------------------------------

    def _settle(self, candidates: list[str], ready: list[str]) -> None:
        """Classify candidates as ready, pruned, or waiting; cascade pruning."""
        queue = deque(candidates)
        while queue:
            node = queue.popleft()
            if node in self._started or node in self.pruned:
                continue

            incoming = [self.edge_state[i] for i in self._incoming[node]]
            if EdgeState.PENDING in incoming:
                continue

            if node not in self.active:
                self._prune(node, queue, reason="no incoming connection was taken")
                continue

            if not self.workflow.get_block(node).enabled:
                self.active.discard(node)
                self._prune(node, queue, reason="block is disabled")
                continue

            self._started.add(node)
            ready.append(node)

    def _prune(self, node: str, queue: deque[str], reason: str) -> None:
        self.pruned.add(node)
        logger.debug(f"Pruned block '{node}': {reason}")
        for index in self._outgoing[node]:
            self.edge_state[index] = EdgeState.NOT_TAKEN
            queue.append(self.edges[index].target)

    def _routes_failure(self, conn: SerializedConnection, block: SerializedBlock) -> bool:
        if conn.source_handle == ERROR_HANDLE:
            return True
        target = self.workflow.get_block(conn.target)
        if target.type != CONDITION_TYPE:
            return False
        return references_block_error(target.config.params.get("conditions"), block)

    def _edge_taken(
        self, conn: SerializedConnection, block: SerializedBlock, state: BlockState
    ) -> bool:
        if state.status == BlockStatus.ERROR:
            return self._routes_failure(conn, block)

        if state.status != BlockStatus.COMPLETED:
            return False

        if conn.source_handle == ERROR_HANDLE:
            return False

        output: Any = state.output if isinstance(state.output, dict) else {}

        if block.type == CONDITION_TYPE:
            selected = output.get("selectedConditionId")
            return selected is not None and conn.source_handle == (
                f"{CONDITION_HANDLE_PREFIX}{selected}"
            )

        if block.type == ROUTER_TYPE:
            path = output.get("selectedPath") or {}
            return conn.target == path.get("blockId")

        return True


__all__ = ["EdgeState", "PathManager", "is_trigger_block"]
