"""Workflow engine core.

Runs serialized block graphs (blocks, connections, loops, parallels) to a
terminal state.

Key Components:

- WorkflowRunner: Stateless run loop (returns ExecutionResult)
- ExecutionResult: Monad for run results (completed/error/cancelled)
- ExecutionContext: Mutable state of one run, written only by the run loop
- EngineServices: Injected registries, tool invoker, and code executor
- PathManager: Edge-driven scheduler (active path, branch pruning)
- ReferenceResolver: <block.path>, {{ENV}}, and workflow variable references
- BlockHandler: Base class for handlers, tried in priority order
- SerializedWorkflow: Frozen Pydantic v2 models of the input graph
- WorkflowRegistry: Child workflows by id
- LoadResult: Error monad for loader/registry operations

Architecture:
- Handlers return values; exceptions mark a block as failed
- Failures are fatal unless the workflow routes them (error edge or
  condition target)
- Block states survive failures for diagnostics
"""

from .block_status import BlockStatus, RunStatus
from .config import EngineSettings, SettingsLoader
from .dag import DAGResolver
from .exceptions import (
    AmbiguousReferenceError,
    ExecutionCancelled,
    GraphIntegrityError,
    MissingRequiredInput,
    RecursionDepthExceededError,
    ToolExecutionError,
    ToolTimeoutError,
    ValidationError,
)
from .execution_context import (
    BlockLog,
    BlockState,
    EngineServices,
    ExecutionContext,
    IterationScope,
)
from .execution_result import ExecutionResult
from .handler_base import BlockHandler, HandlerRegistry, HandlerResult, create_default_handlers
from .load_result import LoadResult
from .loader import (
    discover_workflows,
    load_workflow_from_dict,
    load_workflow_from_file,
    load_workflow_from_text,
)
from .registries import BlockConfig, BlockRegistry, ToolConfig, ToolParam, ToolRegistry
from .registry import WorkflowRegistry
from .resolver import ReferenceResolver
from .scheduler import PathManager
from .serialized import (
    SerializedBlock,
    SerializedConnection,
    SerializedLoop,
    SerializedParallel,
    SerializedWorkflow,
    check_graph_integrity,
)
from .services import (
    CodeExecutionRequest,
    CodeExecutionResult,
    HttpCodeExecutor,
    HttpToolInvoker,
    InvocationContext,
    LocalToolInvoker,
    ToolResult,
)
from .workflow_runner import FrameResult, WorkflowRunner

__all__ = [
    "AmbiguousReferenceError",
    "BlockConfig",
    "BlockHandler",
    "BlockLog",
    "BlockRegistry",
    "BlockState",
    "BlockStatus",
    "CodeExecutionRequest",
    "CodeExecutionResult",
    "DAGResolver",
    "EngineServices",
    "EngineSettings",
    "ExecutionCancelled",
    "ExecutionContext",
    "ExecutionResult",
    "FrameResult",
    "GraphIntegrityError",
    "HandlerRegistry",
    "HandlerResult",
    "HttpCodeExecutor",
    "HttpToolInvoker",
    "InvocationContext",
    "IterationScope",
    "LoadResult",
    "LocalToolInvoker",
    "MissingRequiredInput",
    "PathManager",
    "RecursionDepthExceededError",
    "ReferenceResolver",
    "RunStatus",
    "SerializedBlock",
    "SerializedConnection",
    "SerializedLoop",
    "SerializedParallel",
    "SerializedWorkflow",
    "SettingsLoader",
    "ToolConfig",
    "ToolExecutionError",
    "ToolParam",
    "ToolRegistry",
    "ToolResult",
    "ToolTimeoutError",
    "ValidationError",
    "WorkflowRegistry",
    "WorkflowRunner",
    "check_graph_integrity",
    "create_default_handlers",
    "discover_workflows",
    "load_workflow_from_dict",
    "load_workflow_from_file",
    "load_workflow_from_text",
]
