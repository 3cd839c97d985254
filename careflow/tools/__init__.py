"""Tool system: registry, executor, per-dispatch context, and record tools."""
from careflow.tools.context import ToolContext, current_tool_context, tool_context
from careflow.tools.executor import ToolExecutionResult, ToolExecutor
from careflow.tools.records import RecordTools
from careflow.tools.registry import ToolDefinition, ToolRegistry

__all__ = [
    "RecordTools",
    "ToolContext",
    "ToolDefinition",
    "ToolExecutionResult",
    "ToolExecutor",
    "ToolRegistry",
    "current_tool_context",
    "tool_context",
]
