"""
Tool and block registries.

Read-only lookup tables consulted by handlers:
- ToolRegistry: tool id -> ToolConfig (name, declared params)
- BlockRegistry: block type -> BlockConfig (category, parameter transform)

Both are constructed explicitly and injected into the runner through
EngineServices; there are no module-level singletons. Once built they cannot
be modified: to change the set of tools, build a new registry.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, Field

ParamTransform = Callable[[dict[str, Any]], dict[str, Any]]


class ToolParam(BaseModel):
    """Declared parameter of a tool."""

    type: str = Field(default="string", description="Parameter type")
    required: bool = Field(default=False, description="Whether the parameter must resolve")
    description: str | None = Field(default=None, description="Parameter description")
    default: Any = Field(default=None, description="Default used when the value is missing")

    model_config = {"frozen": True, "extra": "forbid"}


class ToolConfig(BaseModel):
    """
    Configuration of one external tool.

    Example (config file):
        tools:
          - id: http_request
            name: HTTP Request
            params:
              url: {type: string, required: true}
    """

    id: str = Field(description="Tool identifier", min_length=1)
    name: str | None = Field(default=None, description="Human-readable tool name")
    description: str | None = Field(default=None, description="Tool description")
    version: str = Field(default="1.0.0", description="Tool version")
    params: dict[str, ToolParam] = Field(default_factory=dict, description="Declared params")

    model_config = {"frozen": True, "extra": "forbid"}

    @property
    def display_name(self) -> str:
        """Tool name, falling back to its id."""
        return self.name or self.id

    def required_params(self) -> list[str]:
        """Names of params flagged required."""
        return [name for name, param in self.params.items() if param.required]

    def apply_defaults(self, params: dict[str, Any]) -> dict[str, Any]:
        """Fill missing/None params from declared defaults."""
        merged = dict(params)
        for name, param in self.params.items():
            if merged.get(name) is None and param.default is not None:
                merged[name] = param.default
        return merged


class BlockConfig(BaseModel):
    """
    Configuration of one block type.

    Attributes:
        type: Block type tag (matches SerializedBlock.metadata.id)
        name: Human-readable block type name
        category: "blocks", "tools", or "triggers"
        tools: Tool ids this block type may invoke
        transform_params: Optional pure function mapping resolved inputs to
            extra/overridden tool params
    """

    type: str = Field(min_length=1)
    name: str | None = None
    category: str = "blocks"
    tools: list[str] = Field(default_factory=list)
    transform_params: ParamTransform | None = Field(default=None, exclude=True)

    model_config = {"frozen": True, "arbitrary_types_allowed": True}


class ToolRegistry:
    """Immutable registry of tool configurations keyed by tool id."""

    def __init__(self, tools: Iterable[ToolConfig] = ()):
        """
        Build the registry.

        Args:
            tools: Tool configurations

        Raises:
            ValueError: If two tools share an id
        """
        entries: dict[str, ToolConfig] = {}
        for tool in tools:
            if tool.id in entries:
                raise ValueError(f"Tool already registered: {tool.id}")
            entries[tool.id] = tool
        self._tools = MappingProxyType(entries)

    def get(self, tool_id: str) -> ToolConfig | None:
        """Get tool config by id (None if unknown)."""
        return self._tools.get(tool_id)

    def has(self, tool_id: str) -> bool:
        """Check if a tool id is registered."""
        return tool_id in self._tools

    def list_ids(self) -> list[str]:
        """List registered tool ids."""
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, tool_id: object) -> bool:
        return tool_id in self._tools


class BlockRegistry:
    """Immutable registry of block type configurations keyed by type tag."""

    def __init__(self, blocks: Iterable[BlockConfig] = ()):
        """
        Build the registry.

        Args:
            blocks: Block type configurations

        Raises:
            ValueError: If two configs share a type tag
        """
        entries: dict[str, BlockConfig] = {}
        for block in blocks:
            if block.type in entries:
                raise ValueError(f"Block type already registered: {block.type}")
            entries[block.type] = block
        self._blocks = MappingProxyType(entries)

    def get(self, block_type: str) -> BlockConfig | None:
        """Get block config by type tag (None if unknown)."""
        return self._blocks.get(block_type)

    def has(self, block_type: str) -> bool:
        """Check if a block type is registered."""
        return block_type in self._blocks

    def list_types(self) -> list[str]:
        """List registered block types."""
        return list(self._blocks.keys())

    def category_of(self, block_type: str) -> str | None:
        """Registry category of a block type (None if unknown)."""
        config = self._blocks.get(block_type)
        return config.category if config else None
