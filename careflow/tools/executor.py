"""
Tool Executor: the boundary where tool failures stop being exceptions.

When the model asks for a tool, this module runs it. Whatever happens
inside the handler (bad arguments, missing records, a pending confirmation,
a timeout, a bug) comes back as a ``ToolExecutionResult`` that the reasoning
loop feeds to the model as a ``tool_result`` block, so the model can see what
went wrong and try something else on the next iteration.

The only things that cross this boundary as exceptions are turn
cancellation and task cancellation; those must unwind the whole turn.
"""

from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

from careflow.errors import ToolExecutionError, TurnCancelledError
from careflow.tools.registry import ToolRegistry

logger = structlog.get_logger(__name__)


@dataclass
class ToolExecutionResult:
    """
    Outcome of one tool call, success or failure.

    ``error_kind`` is a short machine-readable tag (``not_found``,
    ``pending_confirmation``, ``invalid_arguments``, ``timeout``, ...)
    and ``payload`` carries structured detail for the model.
    """
    tool_use_id: str
    tool_name: str
    success: bool
    result: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    payload: dict[str, Any] = field(default_factory=dict)
    execution_time: float = 0.0

    @property
    def evaluation(self) -> str:
        return "ok" if self.success else f"error:{self.error_kind or 'tool_error'}"

    def as_structured(self) -> dict[str, Any]:
        """The structured form recorded on ToolCalls and sent to the model."""
        if self.success:
            return {"ok": True, "result": self.result}
        return {
            "ok": False,
            "error": {"kind": self.error_kind, "message": self.error, **self.payload},
        }


# JSON Schema type -> Python types (for lightweight validation)
_JSON_TYPE_MAP: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


def _validate_tool_input(
    schema: dict[str, Any],
    tool_input: dict[str, Any],
) -> Optional[str]:
    """
    Check required fields, unknown fields, basic JSON types and enums.

    Returns an error message on failure, or None if the input is valid.
    """
    required = schema.get("required", [])
    properties = schema.get("properties", {})

    missing = [name for name in required if name not in tool_input]
    if missing:
        return f"Missing required parameter(s): {', '.join(missing)}"

    if schema.get("additionalProperties") is False:
        unknown = sorted(set(tool_input) - set(properties))
        if unknown:
            return f"Unknown parameter(s): {', '.join(unknown)}"

    for name, value in tool_input.items():
        prop_schema = properties.get(name)
        if not isinstance(prop_schema, dict):
            continue
        expected_type = prop_schema.get("type")
        py_types = _JSON_TYPE_MAP.get(expected_type) if expected_type else None
        if py_types is not None:
            # bool is a subclass of int, but JSON booleans are distinct
            if isinstance(value, bool) and expected_type in ("integer", "number"):
                return f"Parameter '{name}' expected {expected_type}, got boolean"
            if not isinstance(value, py_types):
                return f"Parameter '{name}' expected {expected_type}, got {type(value).__name__}"
        allowed = prop_schema.get("enum")
        if allowed is not None and value not in allowed:
            return f"Parameter '{name}' must be one of: {', '.join(map(str, allowed))}"

    return None


def serialize_tool_result_content(result: ToolExecutionResult, max_length: int) -> str:
    """Render a result as the text body of a ``tool_result`` block."""
    text = json.dumps(result.as_structured(), default=str, ensure_ascii=False)
    if len(text) > max_length:
        text = (
            text[: max_length - 100]
            + f"\n\n[Output truncated: {len(text)} chars total, "
            f"showing first {max_length - 100}]"
        )
    return text


class ToolExecutor:
    """
    Runs registered tools with input validation and timeouts.

    Tool calls within one model turn are executed by the reasoning loop one
    at a time, in the order requested, so this class holds no concurrency
    controls of its own.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        default_timeout: float = 30.0,
        max_output_length: int = 25000,
    ):
        self._registry = registry
        self._default_timeout = default_timeout
        self._max_output_length = max_output_length

        self._total_executions = 0
        self._total_successes = 0
        self._total_failures = 0

    @property
    def max_output_length(self) -> int:
        return self._max_output_length

    def _fail(
        self,
        tool_use_id: str,
        tool_name: str,
        error: str,
        kind: str,
        payload: Optional[dict[str, Any]] = None,
        elapsed: float = 0.0,
    ) -> ToolExecutionResult:
        self._total_failures += 1
        return ToolExecutionResult(
            tool_use_id=tool_use_id,
            tool_name=tool_name,
            success=False,
            error=error,
            error_kind=kind,
            payload=payload or {},
            execution_time=elapsed,
        )

    async def execute(
        self,
        tool_use_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
    ) -> ToolExecutionResult:
        """
        Execute one tool call. Never raises for tool-level failures.

        Args:
            tool_use_id: The id from the model's tool_use block (for correlation)
            tool_name: Which tool to execute
            tool_input: The arguments the model provided
        """
        start_time = time.monotonic()
        self._total_executions += 1

        logger.info(
            "tool_executor.executing",
            tool_name=tool_name,
            tool_use_id=tool_use_id,
            input_keys=sorted(tool_input) if isinstance(tool_input, dict) else None,
        )

        tool_def = self._registry.get(tool_name)
        if tool_def is None:
            return self._fail(tool_use_id, tool_name, f"Unknown tool: {tool_name}", "unknown_tool")

        if not isinstance(tool_input, dict):
            return self._fail(
                tool_use_id, tool_name, "Tool input must be a JSON object", "invalid_arguments"
            )

        validation_error = _validate_tool_input(tool_def.input_schema, tool_input)
        if validation_error:
            return self._fail(tool_use_id, tool_name, validation_error, "invalid_arguments")

        timeout = tool_def.timeout if tool_def.timeout is not None else self._default_timeout
        try:
            result = await asyncio.wait_for(tool_def.handler(**tool_input), timeout=timeout)
        except TurnCancelledError:
            raise
        except ToolExecutionError as e:
            elapsed = time.monotonic() - start_time
            logger.info(
                "tool_executor.structured_failure",
                tool_name=tool_name,
                kind=e.kind,
                elapsed=round(elapsed, 3),
            )
            return self._fail(tool_use_id, tool_name, str(e), e.kind, e.payload, elapsed)
        except asyncio.TimeoutError:
            elapsed = time.monotonic() - start_time
            logger.warning("tool_executor.timeout", tool_name=tool_name, timeout=timeout)
            return self._fail(
                tool_use_id,
                tool_name,
                f"Tool execution timed out after {timeout}s",
                "timeout",
                elapsed=elapsed,
            )
        except Exception as e:
            elapsed = time.monotonic() - start_time
            logger.exception("tool_executor.error", tool_name=tool_name, error_type=type(e).__name__)
            return self._fail(
                tool_use_id,
                tool_name,
                f"{type(e).__name__}: {e}",
                "tool_error",
                elapsed=elapsed,
            )

        elapsed = time.monotonic() - start_time
        self._total_successes += 1
        logger.info("tool_executor.success", tool_name=tool_name, elapsed=round(elapsed, 3))
        return ToolExecutionResult(
            tool_use_id=tool_use_id,
            tool_name=tool_name,
            success=True,
            result=result,
            execution_time=elapsed,
        )

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_executions": self._total_executions,
            "successes": self._total_successes,
            "failures": self._total_failures,
            "success_rate": self._total_successes / max(1, self._total_executions),
        }
