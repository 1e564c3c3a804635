"""
Serialized workflow graph with Pydantic v2 models.

The serialized workflow is the executor's input contract: an immutable
description of blocks, connections, and loop/parallel groupings produced by an
external serializer from the visual editor's state.

This module defines:
- Frozen models for blocks, connections, loops, parallels, and the workflow
- Connection handle constants understood by the scheduler
- check_graph_integrity(): eager structural validation before any block runs

The models accept both snake_case and the camelCase keys emitted by the
editor's JSON serializer (e.g. ``sourceHandle``, ``forEachItems``).
"""

from collections.abc import Iterator
from functools import cached_property
from typing import Any, Literal

from pydantic import BaseModel, Field

from .dag import DAGResolver
from .exceptions import GraphIntegrityError

# Connection handles
LOOP_START_HANDLE = "loop-start-source"
LOOP_END_HANDLE = "loop-end-source"
PARALLEL_START_HANDLE = "parallel-start-source"
PARALLEL_END_HANDLE = "parallel-end-source"
ERROR_HANDLE = "error"
CONDITION_HANDLE_PREFIX = "condition-"

START_HANDLES = frozenset({LOOP_START_HANDLE, PARALLEL_START_HANDLE})

# Block type tags with dedicated handling in the scheduler
LOOP_TYPE = "loop"
PARALLEL_TYPE = "parallel"
CONDITION_TYPE = "condition"
ROUTER_TYPE = "router"
STARTER_TYPE = "starter"
TRIGGER_CATEGORY = "triggers"

_FROZEN = {"frozen": True, "populate_by_name": True, "extra": "ignore"}


def normalize_block_name(name: str) -> str:
    """Normalize a display name for reference lookup (whitespace removed, lower-cased)."""
    return "".join(name.split()).lower()


class BlockMetadata(BaseModel):
    """
    Block type tag and display metadata.

    Attributes:
        id: Block type tag (function, condition, router, loop, parallel, workflow,
            starter, or any tool-backed type)
        name: Human-readable label used by name-based references
        category: Registry category ("blocks", "tools", "triggers")
    """

    id: str = Field(description="Block type tag", min_length=1)
    name: str | None = Field(default=None, description="Display name")
    category: str | None = Field(default=None, description="Block category")
    description: str | None = Field(default=None, description="Block description")

    model_config = _FROZEN


class BlockToolConfig(BaseModel):
    """Tool binding and input templates for a block."""

    tool: str | None = Field(default=None, description="External tool identifier")
    params: dict[str, Any] = Field(
        default_factory=dict,
        description="Input templates (may contain <block.path>, <variable.x>, {{ENV}})",
    )

    model_config = _FROZEN


class InputFieldSpec(BaseModel):
    """Declared input field of a block."""

    type: str = Field(default="string", description="Declared value type")
    required: bool = Field(default=False, description="Whether the field must resolve")
    description: str | None = Field(default=None, description="Field description")

    model_config = _FROZEN


class SerializedBlock(BaseModel):
    """
    One node of the workflow graph.

    Created when the workflow is serialized and never mutated during execution.

    Example:
        {
            "id": "fetch",
            "metadata": {"id": "http_request", "name": "Fetch Data"},
            "config": {"tool": "http_request", "params": {"url": "{{API_URL}}/items"}}
        }
    """

    id: str = Field(description="Unique block id", min_length=1)
    metadata: BlockMetadata
    config: BlockToolConfig = Field(default_factory=BlockToolConfig)
    inputs: dict[str, InputFieldSpec] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = Field(default=True, description="Disabled blocks are never executed")

    model_config = _FROZEN

    @property
    def type(self) -> str:
        """Block type tag (``metadata.id``)."""
        return self.metadata.id

    @property
    def display_name(self) -> str:
        """Display name, falling back to the block id."""
        return self.metadata.name or self.id


class SerializedConnection(BaseModel):
    """Directed edge between two blocks, optionally tagged with a source handle."""

    source: str = Field(min_length=1)
    target: str = Field(min_length=1)
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")

    model_config = _FROZEN


class SerializedLoop(BaseModel):
    """
    Loop grouping: members re-run once per iteration, sequentially.

    Attributes:
        id: Id of the loop container block
        nodes: Member block ids
        iterations: Iteration count for ``for`` loops
        loop_type: ``for`` (bounded) or ``forEach`` (collection-driven)
        for_each_items: Collection, JSON text, or reference for ``forEach`` loops
        iteration_variable: Optional extra reference name bound to the current item
    """

    id: str = Field(min_length=1)
    nodes: list[str] = Field(default_factory=list)
    iterations: int = Field(default=5, ge=0)
    loop_type: Literal["for", "forEach"] = Field(default="for", alias="loopType")
    for_each_items: Any = Field(default=None, alias="forEachItems")
    iteration_variable: str | None = Field(default=None, alias="iterationVariable")

    model_config = _FROZEN


class SerializedParallel(BaseModel):
    """
    Parallel grouping: members fan out once per element, concurrently.

    Attributes:
        id: Id of the parallel container block
        nodes: Member block ids
        distribution: Collection, JSON text, or reference (``collection`` type)
        count: Branch count (``count`` type)
        parallel_type: ``collection`` or ``count``
        iteration_variable: Optional extra reference name bound to the branch item
        continue_on_error: Keep other branches' results when one fails
            (None means use the engine default)
    """

    id: str = Field(min_length=1)
    nodes: list[str] = Field(default_factory=list)
    distribution: Any = None
    count: int = Field(default=5, ge=0)
    parallel_type: Literal["count", "collection"] = Field(
        default="collection", alias="parallelType"
    )
    iteration_variable: str | None = Field(default=None, alias="iterationVariable")
    continue_on_error: bool | None = Field(default=None, alias="continueOnError")

    model_config = _FROZEN


class SerializedWorkflow(BaseModel):
    """
    Immutable workflow graph: blocks, connections, and groupings.

    Structural validity beyond field types is checked by check_graph_integrity(),
    which the runner calls before starting.
    """

    id: str = Field(default="workflow", min_length=1)
    name: str | None = None
    version: str = "1.0"
    blocks: list[SerializedBlock] = Field(default_factory=list)
    connections: list[SerializedConnection] = Field(default_factory=list, alias="edges")
    loops: dict[str, SerializedLoop] = Field(default_factory=dict)
    parallels: dict[str, SerializedParallel] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(
        default_factory=dict,
        description="Workflow variables: plain values or {name, type, value} records",
    )

    model_config = {"frozen": True, "populate_by_name": True, "extra": "ignore"}

    @property
    def display_name(self) -> str:
        """Workflow name, falling back to its id."""
        return self.name or self.id

    @cached_property
    def block_map(self) -> dict[str, SerializedBlock]:
        """Blocks keyed by id (first occurrence wins; duplicates fail integrity)."""
        blocks: dict[str, SerializedBlock] = {}
        for block in self.blocks:
            blocks.setdefault(block.id, block)
        return blocks

    def get_block(self, block_id: str) -> SerializedBlock:
        """Get block by id (KeyError if absent)."""
        return self.block_map[block_id]

    @cached_property
    def grouping_of(self) -> dict[str, str]:
        """Member block id -> id of the loop/parallel grouping containing it."""
        owner: dict[str, str] = {}
        for group_id, nodes in self.iter_groupings():
            for node in nodes:
                owner.setdefault(node, group_id)
        return owner

    def iter_groupings(self) -> Iterator[tuple[str, list[str]]]:
        """Yield (grouping id, member ids) for loops then parallels."""
        for loop_id, loop in self.loops.items():
            yield loop_id, loop.nodes
        for parallel_id, parallel in self.parallels.items():
            yield parallel_id, parallel.nodes

    def frame_nodes(self, grouping_id: str | None) -> list[str]:
        """Block ids of a frame in declaration order (None = top-level frame)."""
        if grouping_id is None:
            return [b.id for b in self.blocks if b.id not in self.grouping_of]
        members = set(self._grouping_nodes(grouping_id))
        return [b.id for b in self.blocks if b.id in members]

    def _grouping_nodes(self, grouping_id: str) -> list[str]:
        if grouping_id in self.loops:
            return self.loops[grouping_id].nodes
        if grouping_id in self.parallels:
            return self.parallels[grouping_id].nodes
        raise KeyError(f"Unknown loop/parallel grouping: {grouping_id}")

    def descendants(self, grouping_id: str) -> set[str]:
        """Members of a grouping, including members of groupings nested inside it."""
        found: set[str] = set()
        pending = [grouping_id]
        while pending:
            for node in self._grouping_nodes(pending.pop()):
                if node not in found:
                    found.add(node)
                    if node in self.loops or node in self.parallels:
                        pending.append(node)
        return found

    def outgoing(self, block_id: str) -> list[SerializedConnection]:
        """Connections leaving a block."""
        return [c for c in self.connections if c.source == block_id]

    def incoming(self, block_id: str) -> list[SerializedConnection]:
        """Connections entering a block."""
        return [c for c in self.connections if c.target == block_id]


def check_graph_integrity(workflow: SerializedWorkflow) -> None:
    """
    Validate graph structure before execution.

    Checks:
    1. Block ids are unique
    2. Every connection endpoint references an existing block
    3. Every grouping id names a container block of the matching type
    4. Every grouping member exists, is not its own container, and belongs to
       exactly one grouping
    5. Container nesting is acyclic
    6. Connections stay within one frame, except container -> member start handles
    7. Every frame is acyclic

    Args:
        workflow: Workflow to check

    Raises:
        GraphIntegrityError: With every problem found
    """
    problems: list[str] = []

    # 1. Unique block ids
    seen: set[str] = set()
    for block in workflow.blocks:
        if block.id in seen:
            problems.append(f"Duplicate block id '{block.id}'")
        seen.add(block.id)

    blocks = workflow.block_map

    # 2. Dangling connections
    for conn in workflow.connections:
        for end, block_id in (("source", conn.source), ("target", conn.target)):
            if block_id not in blocks:
                problems.append(
                    f"Connection {conn.source} -> {conn.target} has unknown {end} '{block_id}'"
                )

    # 3-4. Groupings
    membership: dict[str, list[str]] = {}
    for group_id, expected_type in [(g, "loop") for g in workflow.loops] + [
        (g, "parallel") for g in workflow.parallels
    ]:
        container = blocks.get(group_id)
        if container is None:
            problems.append(f"{expected_type.capitalize()} '{group_id}' has no container block")
        elif container.type != expected_type:
            problems.append(
                f"{expected_type.capitalize()} '{group_id}' container block has type "
                f"'{container.type}'"
            )

    for group_id, nodes in workflow.iter_groupings():
        for node in nodes:
            if node not in blocks:
                problems.append(f"Grouping '{group_id}' references unknown block '{node}'")
            if node == group_id:
                problems.append(f"Grouping '{group_id}' lists its own container as a member")
            membership.setdefault(node, []).append(group_id)

    for node, groups in membership.items():
        if len(groups) > 1:
            problems.append(
                f"Block '{node}' belongs to more than one grouping: {', '.join(groups)}"
            )

    # 5. Nesting cycles (A contains B's container, B contains A's container)
    owner = workflow.grouping_of
    for group_id, _ in workflow.iter_groupings():
        chain = [group_id]
        current = owner.get(group_id)
        while current is not None:
            if current in chain:
                problems.append(f"Grouping nesting cycle: {' -> '.join(chain + [current])}")
                break
            chain.append(current)
            current = owner.get(current)

    if problems:
        raise GraphIntegrityError(problems)

    # 6. Frame boundaries
    frame_edges: dict[str | None, dict[str, list[str]]] = {}
    for conn in workflow.connections:
        source_frame = owner.get(conn.source)
        target_frame = owner.get(conn.target)
        if conn.source_handle in START_HANDLES:
            if target_frame != conn.source:
                problems.append(
                    f"Start connection {conn.source} -> {conn.target} must target a member "
                    f"of '{conn.source}'"
                )
            continue
        if source_frame != target_frame:
            problems.append(
                f"Connection {conn.source} -> {conn.target} crosses a loop/parallel boundary"
            )
            continue
        frame_edges.setdefault(source_frame, {}).setdefault(conn.target, []).append(conn.source)

    # 7. Acyclic frames
    frames: list[str | None] = [None, *[g for g, _ in workflow.iter_groupings()]]
    for frame in frames:
        nodes = workflow.frame_nodes(frame)
        deps = frame_edges.get(frame, {})
        order = DAGResolver(nodes, {n: deps.get(n, []) for n in nodes}).topological_sort()
        if not order.is_success:
            label = "top-level graph" if frame is None else f"grouping '{frame}'"
            problems.append(f"{order.error} ({label})")

    if problems:
        raise GraphIntegrityError(problems)


def execution_waves(workflow: SerializedWorkflow) -> dict[str, list[list[str]]]:
    """
    Static execution preview: waves of blocks per frame.

    Blocks in one wave have no dependency on each other. The live run may
    skip blocks on branches that are not taken.

    Returns:
        {"main": waves, "<grouping id>": waves, ...}

    Raises:
        GraphIntegrityError: If the graph is malformed
    """
    check_graph_integrity(workflow)

    preview: dict[str, list[list[str]]] = {}
    frames: list[str | None] = [None, *[g for g, _ in workflow.iter_groupings()]]
    for frame in frames:
        nodes = workflow.frame_nodes(frame)
        members = set(nodes)
        deps: dict[str, list[str]] = {node: [] for node in nodes}
        for conn in workflow.connections:
            if conn.source_handle in START_HANDLES:
                continue
            if conn.source in members and conn.target in members:
                deps[conn.target].append(conn.source)
        preview[frame or "main"] = DAGResolver(nodes, deps).get_execution_waves().unwrap()
    return preview
