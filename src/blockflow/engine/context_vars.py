"""Async-local context variables for workflow execution.

Uses Python's contextvars module so that every asyncio task spawned by a run
sees that run's correlation id without passing it through every call.
Concurrent runs (and child workflows) each keep their own value.
"""

import logging
from collections.abc import MutableMapping
from contextvars import ContextVar
from typing import Any

# Correlation id of the run currently executing in this task.
#
# Set by: WorkflowRunner.execute() for the lifetime of a run
# Read by: RunLogger when formatting engine log records
correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


class RunLogger(logging.LoggerAdapter):  # type: ignore[type-arg]
    """
    Logger adapter that tags records with the active run's correlation id.

    Records get a ``correlation_id`` attribute and a ``[id]`` message prefix.

    Example:
        logger = RunLogger(logging.getLogger(__name__))
        logger.info("Block started")  # "[3f9c2a1b] Block started"
    """

    def __init__(self, logger: logging.Logger):
        super().__init__(logger, {})

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        run_id = correlation_id.get()
        extra = dict(kwargs.get("extra") or {})
        extra.setdefault("correlation_id", run_id or "-")
        kwargs["extra"] = extra
        if run_id:
            msg = f"[{run_id}] {msg}"
        return msg, kwargs


def get_run_logger(name: str) -> RunLogger:
    """Create a correlation-aware logger for module name."""
    return RunLogger(logging.getLogger(name))
