"""Block handler architecture.

Handlers are stateless strategy objects that implement one or more block
kinds. The runner picks the first handler whose can_handle() accepts a block,
trying specialized handlers before the generic tool handler, which accepts
every block and must be registered last.

Key principles:
- Handlers are stateless (one instance serves every block of its kinds)
- execute() returns the block output (or a HandlerResult) directly
- Exceptions indicate block failure; the runner records them
- Handlers never write ExecutionContext.block_states
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, ClassVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from .exceptions import MissingRequiredInput, ValidationError
from .serialized import SerializedBlock

if TYPE_CHECKING:
    from .execution_context import BlockLog, BlockState, ExecutionContext
    from .resolver import ReferenceResolver


@dataclass
class HandlerResult:
    """
    Output of a handler that ran a sub-run (loop, parallel).

    The run loop records ``output`` for the handling block and merges the
    member states and logs collected by the sub-run. Plain handlers return
    their output directly instead.
    """

    output: Any
    child_states: dict[str, BlockState] = field(default_factory=dict)
    child_logs: list[BlockLog] = field(default_factory=list)
    loop_iterations: int | None = None
    parallel_progress: dict[str, int] | None = None


class SubflowError(Exception):
    """
    A member block failed inside a loop iteration or parallel branch.

    Raised by loop/parallel handlers so the run loop can record the partial
    sub-run (member states and logs) and surface the member's original
    exception instead of a wrapper.

    Attributes:
        cause: Original exception raised by the member block
        failed_block_id: Member block that failed
        partial: Member states and logs collected before the failure
    """

    def __init__(self, cause: BaseException, failed_block_id: str, partial: HandlerResult):
        self.cause = cause
        self.failed_block_id = failed_block_id
        self.partial = partial
        super().__init__(str(cause))

    def __repr__(self) -> str:
        """Developer-friendly representation."""
        return f"SubflowError(block={self.failed_block_id!r}, cause={self.cause!r})"


class BlockHandler(ABC):
    """Base class for block handlers.

    Subclasses must:
    1. Set block_types (or override can_handle())
    2. Implement execute()
    3. Optionally set input_type to validate resolved inputs with Pydantic

    Example:
        class EchoHandler(BlockHandler):
            block_types = frozenset({"echo"})

            async def execute(self, block, inputs, ctx):
                return {"value": inputs.get("value")}
    """

    # Block type tags accepted by the default can_handle()
    block_types: ClassVar[frozenset[str]] = frozenset()

    # Optional Pydantic model for resolved inputs; execute() then receives an instance
    input_type: ClassVar[type[BaseModel] | None] = None

    # Params passed to the handler unresolved (e.g. condition expressions)
    raw_params: ClassVar[frozenset[str]] = frozenset()

    @property
    def name(self) -> str:
        """Handler name used in logs."""
        return type(self).__name__

    def can_handle(self, block: SerializedBlock, ctx: ExecutionContext) -> bool:
        """Check whether this handler executes block."""
        return block.type in self.block_types

    def prepare_inputs(
        self, block: SerializedBlock, resolver: ReferenceResolver
    ) -> dict[str, Any]:
        """
        Resolve the block's param templates against current run state.

        Params listed in raw_params are passed through untouched.
        """
        return {
            key: value if key in self.raw_params else resolver.resolve(value)
            for key, value in block.config.params.items()
        }

    def validate_inputs(
        self, block: SerializedBlock, inputs: dict[str, Any], ctx: ExecutionContext
    ) -> Any:
        """
        Validate resolved inputs before execution.

        Checks block-declared required inputs, then input_type (if set).

        Args:
            block: Block about to run
            inputs: Resolved params
            ctx: Current execution context

        Returns:
            inputs, or an input_type instance when the handler declares one

        Raises:
            MissingRequiredInput: A required field resolved to nothing
            ValidationError: Inputs do not match input_type
        """
        for field_name, spec in block.inputs.items():
            if spec.required and _is_empty(inputs.get(field_name)):
                raise MissingRequiredInput(block.display_name, field_name, block_id=block.id)

        if self.input_type is None:
            return inputs

        try:
            return self.input_type.model_validate(inputs)
        except PydanticValidationError as e:
            for error in e.errors():
                if error["type"] == "missing" and error["loc"]:
                    raise MissingRequiredInput(
                        block.display_name, str(error["loc"][0]), block_id=block.id
                    ) from e
            first = e.errors()[0]
            field_name = ".".join(str(part) for part in first["loc"]) or None
            raise ValidationError(
                f"Block '{block.display_name}' has invalid input"
                f"{f' {field_name!r}' if field_name else ''}: {first['msg']}",
                block_id=block.id,
                block_name=block.display_name,
                field=field_name,
            ) from e

    @abstractmethod
    async def execute(
        self, block: SerializedBlock, inputs: Any, ctx: ExecutionContext
    ) -> Any | HandlerResult:
        """Execute block logic with validated inputs.

        Args:
            block: Block being executed
            inputs: Validated inputs (dict, or input_type instance)
            ctx: Current execution context (read-only for handlers)

        Returns:
            Block output, or HandlerResult for handlers that run sub-runs

        Raises:
            Exception: Any exception marks the block as failed
        """


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class HandlerRegistry:
    """
    Ordered handler list; the first handler accepting a block wins.

    Example:
        registry = HandlerRegistry(create_default_handlers())
        handler = registry.select(block, ctx)
    """

    def __init__(self, handlers: Iterable[BlockHandler]):
        self._handlers = list(handlers)
        if not self._handlers:
            raise ValueError("HandlerRegistry requires at least one handler")

    @property
    def handlers(self) -> list[BlockHandler]:
        """Handlers in priority order."""
        return list(self._handlers)

    def select(self, block: SerializedBlock, ctx: ExecutionContext) -> BlockHandler:
        """
        Pick the handler for block.

        Raises:
            ValueError: If no handler accepts the block (no generic fallback registered)
        """
        for handler in self._handlers:
            if handler.can_handle(block, ctx):
                return handler
        raise ValueError(f"No handler accepts block '{block.id}' of type '{block.type}'")


def create_default_handlers() -> list[BlockHandler]:
    """
    Build the standard handler list in dispatch priority order.

    Returns:
        Trigger, condition, router, function, workflow, loop, parallel, and
        (last) the generic tool handler
    """
    from .handlers_core import ConditionHandler, RouterHandler, TriggerHandler
    from .handlers_function import FunctionHandler
    from .handlers_subflow import LoopHandler, ParallelHandler
    from .handlers_tool import GenericToolHandler
    from .handlers_workflow import WorkflowHandler

    return [
        TriggerHandler(),
        ConditionHandler(),
        RouterHandler(),
        FunctionHandler(),
        WorkflowHandler(),
        LoopHandler(),
        ParallelHandler(),
        GenericToolHandler(),
    ]


__all__ = [
    "BlockHandler",
    "HandlerRegistry",
    "HandlerResult",
    "SubflowError",
    "create_default_handlers",
]
