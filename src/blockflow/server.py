"""FastMCP server initialization for blockflow.

This module initializes the MCP server and manages shared resources via the
lifespan context. All tool implementations are in the tools module.

- Lifespan context manager for resource initialization
- Context injection for tool access to shared resources
- FastMCP server with stdio transport
"""

import logging
import os
import sys
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from pathlib import Path

from mcp.server.fastmcp import FastMCP

from .context import AppContext, AppContextType
from .engine import (
    BlockRegistry,
    EngineSettings,
    HttpCodeExecutor,
    HttpToolInvoker,
    SettingsLoader,
    ToolRegistry,
    WorkflowRegistry,
)

logger = logging.getLogger(__name__)

ENV_VAR_PREFIX = "BLOCKFLOW_ENV_"

# =============================================================================
# Shared Resources and Lifespan Management
# =============================================================================


def load_workflows(registry: WorkflowRegistry, settings: EngineSettings) -> int:
    """Load workflows from the configured directories.

    Directories come from EngineSettings.workflow_paths (config file and
    BLOCKFLOW_WORKFLOW_PATHS). Earlier directories win on duplicate ids.
    Paths can use ~ for home directory; missing directories are skipped.

    Args:
        registry: Registry to load workflows into
        settings: Engine settings holding the directory list

    Returns:
        Number of workflows loaded
    """
    directories: list[str | Path] = []
    for path_str in settings.workflow_paths:
        expanded_path = Path(path_str).expanduser()
        if not expanded_path.is_dir():
            logger.warning(f"Workflow path is not a directory, skipping: {expanded_path}")
            continue
        directories.append(expanded_path)

    if not directories:
        logger.info("No workflow directories configured; only inline workflows can run")
        return 0

    result = registry.load_from_directories(directories, on_duplicate="skip")
    if not result.is_success:
        raise RuntimeError(f"Failed to load workflows: {result.error}")

    load_counts = result.value or {}
    for directory, count in load_counts.items():
        logger.info(f"  {directory}: {count} workflows")

    total = sum(load_counts.values())
    logger.info(f"Successfully loaded {total} total workflows into registry")
    return total


def collect_environment_variables(environ: Mapping[str, str] | None = None) -> dict[str, str]:
    """Collect {{NAME}} values for runs from BLOCKFLOW_ENV_<NAME> variables.

    Example:
        BLOCKFLOW_ENV_API_KEY=abc  ->  {"API_KEY": "abc"}
    """
    source = os.environ if environ is None else environ
    return {
        key[len(ENV_VAR_PREFIX) :]: value
        for key, value in source.items()
        if key.startswith(ENV_VAR_PREFIX) and len(key) > len(ENV_VAR_PREFIX)
    }


def create_app_context(settings: EngineSettings) -> AppContext:
    """Build shared resources from settings (without loading workflows)."""
    tool_invoker = (
        HttpToolInvoker(settings.tool_service_url, timeout=settings.service_timeout)
        if settings.tool_service_url
        else None
    )
    code_executor = (
        HttpCodeExecutor(settings.code_execution_url) if settings.code_execution_url else None
    )
    if tool_invoker is None:
        logger.warning(
            "No tool service configured (BLOCKFLOW_TOOL_SERVICE_URL); tool blocks will fail"
        )
    if code_executor is None:
        logger.warning(
            "No code execution service configured (BLOCKFLOW_CODE_EXECUTION_URL); "
            "function blocks will fail"
        )

    return AppContext(
        settings=settings,
        registry=WorkflowRegistry(),
        tool_registry=ToolRegistry(settings.tools),
        block_registry=BlockRegistry(),
        tool_invoker=tool_invoker,
        code_executor=code_executor,
        environment_variables=collect_environment_variables(),
    )


@asynccontextmanager
async def app_lifespan(_server: FastMCP) -> AsyncIterator[AppContext]:
    """Manage application lifecycle with resource initialization.

    1. Loads engine settings (config file + BLOCKFLOW_* overrides)
    2. Creates registries and service clients
    3. Loads workflows from the configured directories
    4. Yields context to make resources available to tools

    Args:
        _server: FastMCP server instance (unused, required by FastMCP signature)

    Yields:
        AppContext with initialized resources
    """
    logger.info("Initializing MCP server resources...")

    settings = SettingsLoader().load()
    app_context = create_app_context(settings)
    load_workflows(app_context.registry, settings)

    try:
        yield app_context
    finally:
        # Registries are in-memory and HTTP clients are opened per call
        logger.info("Shutting down MCP server...")


mcp = FastMCP("blockflow", lifespan=app_lifespan)


# =============================================================================
# Server Entry Point
# =============================================================================


def main() -> None:
    """Entry point for running the MCP server.

    This function is called when the server is run via:
    - python -m blockflow
    - blockflow (console script)

    Defaults to stdio transport for MCP protocol communication.
    """
    valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    log_level_str = os.getenv("BLOCKFLOW_LOG_LEVEL", "INFO").upper()

    if log_level_str not in valid_log_levels:
        print(
            f"Warning: Invalid BLOCKFLOW_LOG_LEVEL '{log_level_str}'. "
            f"Valid levels: {', '.join(sorted(valid_log_levels))}. "
            "Using INFO.",
            file=sys.stderr,
        )
        log_level_str = "INFO"

    # Configure logging to stderr (stdout carries the MCP protocol)
    logging.basicConfig(
        level=getattr(logging, log_level_str),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    logger.info("Starting MCP server (press Ctrl+C to stop)...")

    try:
        mcp.run()
    except KeyboardInterrupt:
        logger.info("Received interrupt signal, shutting down gracefully...")
    except Exception as e:
        logger.exception(f"Server error: {e}")
        sys.exit(1)

    logger.info("Server shutdown complete")


__all__ = [
    "AppContext",
    "AppContextType",
    "app_lifespan",
    "collect_environment_variables",
    "create_app_context",
    "load_workflows",
    "main",
    "mcp",
]
