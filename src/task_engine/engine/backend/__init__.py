"""Backend executors and the dispatcher that routes between them."""

from task_engine.engine.backend.base import (
    BackendContext,
    BackendRequest,
    BackendRunError,
    ExecutionResult,
    ToolDefinition,
)
from task_engine.engine.backend.dispatcher import BackendDispatcher
from task_engine.engine.backend.routing import BackendKind, ModelRoute, parse_model_identifier

__all__ = [
    "BackendContext",
    "BackendDispatcher",
    "BackendKind",
    "BackendRequest",
    "BackendRunError",
    "ExecutionResult",
    "ModelRoute",
    "ToolDefinition",
    "parse_model_identifier",
]
