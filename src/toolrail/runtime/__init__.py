"""Runtime registry, execution engine, and conversation state."""

from toolrail.runtime.engine import ExecutionContext, ExecutionEngine, HandlerContext
from toolrail.runtime.registry import RegistrySnapshot, ToolMetadata, ToolRegistry
from toolrail.runtime.state import StateController

__all__ = [
    "ExecutionContext",
    "ExecutionEngine",
    "HandlerContext",
    "RegistrySnapshot",
    "StateController",
    "ToolMetadata",
    "ToolRegistry",
]
