"""Shared context types for the MCP server.

This module contains context types used across server and tools modules,
separated to avoid circular imports.
"""

from dataclasses import dataclass, field

from mcp.server.fastmcp import Context
from mcp.server.session import ServerSession

from .engine import (
    BlockRegistry,
    EngineServices,
    EngineSettings,
    ToolRegistry,
    WorkflowRegistry,
    WorkflowRunner,
)
from .engine.services import CodeExecutor, ToolInvoker


@dataclass
class AppContext:
    """Application context containing shared resources for MCP tools.

    Created during server startup and made available to all tools through
    the Context parameter.
    """

    settings: EngineSettings
    registry: WorkflowRegistry
    tool_registry: ToolRegistry
    block_registry: BlockRegistry
    tool_invoker: ToolInvoker | None = None
    code_executor: CodeExecutor | None = None
    environment_variables: dict[str, str] = field(default_factory=dict)  # {{NAME}} values for runs

    def create_services(self) -> EngineServices:
        """Bundle shared resources for injection into a runner."""
        return EngineServices(
            tool_registry=self.tool_registry,
            block_registry=self.block_registry,
            tool_invoker=self.tool_invoker,
            code_executor=self.code_executor,
            workflow_registry=self.registry,
            settings=self.settings,
        )

    def create_runner(self) -> WorkflowRunner:
        """Create a WorkflowRunner over the shared resources."""
        return WorkflowRunner(self.create_services())


# Type alias for MCP tool context parameter
AppContextType = Context[ServerSession, AppContext]


__all__ = ["AppContext", "AppContextType"]
