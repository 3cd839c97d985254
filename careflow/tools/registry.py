"""
Tool Registry: the typed map from tool name to handler.

Every tool a task executor can use is registered here with its JSON Schema,
description, and async handler. The registry serves two purposes:

1. DISCOVERY: building the ``tools`` array for an inference call, restricted
   to the subset an executor profile is allowed to see.

2. DISPATCH: mapping a ``tool_use`` name back to its handler.

Profiles reference tools by name. ``require()`` is called at startup so a
profile that names a tool nobody registered fails immediately instead of on
the first request that happens to need it.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional

import structlog

logger = structlog.get_logger(__name__)

ToolHandler = Callable[..., Awaitable[Any]]


@dataclass
class ToolDefinition:
    """
    A registered tool with its schema, description, and handler.

    The JSON schema is exactly what gets sent to the Messages API in the
    ``tools`` array. Handlers must be coroutine functions; they may raise
    ``ToolExecutionError`` subclasses, which the executor converts into
    structured results.
    """
    name: str
    description: str
    input_schema: dict[str, Any]
    handler: ToolHandler
    mutating: bool = False                # Goes through the confirmation gate
    category: str = "records"
    timeout: Optional[float] = None       # Per-tool timeout in seconds (None = use default)

    def __post_init__(self) -> None:
        if not inspect.iscoroutinefunction(self.handler):
            raise TypeError(f"Tool '{self.name}' handler must be an async function")
        if self.input_schema.get("type") != "object":
            raise ValueError(f"Tool '{self.name}' input_schema must describe an object")

    def to_api_format(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolRegistry:
    def __init__(self):
        self._tools: dict[str, ToolDefinition] = {}

    def register(self, tool: ToolDefinition, *, allow_override: bool = False) -> None:
        """Register a tool, blocking accidental name collisions by default."""
        if tool.name in self._tools and not allow_override:
            raise ValueError(
                f"Tool '{tool.name}' is already registered. "
                "Use allow_override=True for an explicit replacement."
            )
        self._tools[tool.name] = tool
        logger.debug("tool_registry.registered", name=tool.name, mutating=tool.mutating)

    def get(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def require(self, names: Iterable[str]) -> None:
        """Raise ValueError naming every entry of ``names`` that is not registered."""
        missing = sorted(set(names) - self._tools.keys())
        if missing:
            raise ValueError(f"Unknown tool name(s) referenced: {', '.join(missing)}")

    def get_api_tools(self, names: Optional[Iterable[str]] = None) -> list[dict[str, Any]]:
        """
        Tool definitions for an inference call, in registration order.

        With ``names`` given, only those tools are returned; unknown names
        raise rather than being silently dropped.
        """
        if names is None:
            return [tool.to_api_format() for tool in self._tools.values()]
        wanted = set(names)
        self.require(wanted)
        return [tool.to_api_format() for tool in self._tools.values() if tool.name in wanted]

    def list_tools(self) -> list[dict[str, Any]]:
        return [
            {"name": tool.name, "category": tool.category, "mutating": tool.mutating}
            for tool in self._tools.values()
        ]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    @property
    def names(self) -> list[str]:
        return list(self._tools)

    @property
    def count(self) -> int:
        return len(self._tools)
