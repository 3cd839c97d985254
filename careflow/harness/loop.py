"""
The Reasoning Loop: bounded tool use for one task.

The pattern is the plain agentic loop:

    while iterations remain:
        completion = inference.complete(system_prompt, messages, tools)
        if completion has no tool calls:
            break
        messages.append(assistant turn)
        messages.append(tool results, executed one by one in order)

One iteration is one model call plus the tool calls it asked for. When the
budget runs out the loop stops without another model call and hands back the
last text the model produced; the caller decides how to phrase the partial
answer. Tool failures never escape: they come back from the executor as
structured results and are fed to the model like any other result.

Cancellation is checked before every model call and wraps every external
await, so a cancelled turn stops at the next suspension point.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import structlog

from careflow.api.inference import Completion, InferenceMode, InferenceService, ToolInvocation
from careflow.harness.cancellation import CancellationToken
from careflow.tools.executor import ToolExecutionResult, ToolExecutor, serialize_tool_result_content
from careflow.tools.records import REQUEST_CLARIFICATION

logger = structlog.get_logger(__name__)

ToolResultCallback = Callable[[ToolInvocation, ToolExecutionResult], Awaitable[None]]


@dataclass
class LoopResult:
    """
    Everything one loop run produced: the last text, every tool call with
    its result in execution order, the final transcript, and whether the
    run ended early.
    """
    text: str
    tool_results: list[tuple[ToolInvocation, ToolExecutionResult]] = field(default_factory=list)
    iterations: int = 0
    elapsed_seconds: float = 0.0
    messages: list[dict[str, Any]] = field(default_factory=list)
    was_truncated: bool = False
    clarification: Optional[str] = None

    @property
    def used_tools(self) -> bool:
        return bool(self.tool_results)

    @property
    def tool_names_used(self) -> list[str]:
        return list(dict.fromkeys(inv.name for inv, _ in self.tool_results))

    def results_for(self, tool_name: str) -> list[ToolExecutionResult]:
        return [res for inv, res in self.tool_results if inv.name == tool_name]


class ReasoningLoop:
    def __init__(
        self,
        inference: InferenceService,
        executor: ToolExecutor,
        max_iterations: int = 10,
    ):
        self._inference = inference
        self._executor = executor
        self._max_iterations = max(1, int(max_iterations))

        self._total_runs = 0
        self._total_iterations = 0
        self._total_tool_calls = 0

    @property
    def max_iterations(self) -> int:
        return self._max_iterations

    async def run(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
        mode: InferenceMode = InferenceMode.CONVERSATIONAL,
        token: Optional[CancellationToken] = None,
        on_tool_result: Optional[ToolResultCallback] = None,
        max_iterations: Optional[int] = None,
    ) -> LoopResult:
        """
        Run the loop to a final answer, a clarification request, or the
        iteration budget, whichever comes first.

        Args:
            system_prompt: Instructions for this task executor
            messages: Seed transcript (context plus the user's request)
            tools: Tool definitions in Messages API format
            mode: Sampling mode for every model call in this run
            token: Cancellation token for the enclosing turn
            on_tool_result: Awaited after each tool call; exceptions propagate
            max_iterations: Per-run override of the budget

        Raises:
            InferenceUnavailableError: the backend could not be reached
            TurnCancelledError: the token fired
        """
        budget = max(1, int(max_iterations)) if max_iterations is not None else self._max_iterations
        token = token or CancellationToken()
        self._total_runs += 1
        start_time = time.monotonic()
        iteration = 0
        last_text = ""
        clarification: Optional[str] = None
        truncated = False
        tool_results: list[tuple[ToolInvocation, ToolExecutionResult]] = []
        loop_messages = list(messages)

        logger.info(
            "reasoning_loop.starting",
            message_count=len(loop_messages),
            tool_count=len(tools) if tools else 0,
            budget=budget,
        )

        while iteration < budget:
            token.raise_if_cancelled()
            iteration += 1
            self._total_iterations += 1

            completion: Completion = await token.run(
                self._inference.complete(system_prompt, loop_messages, tools, mode)
            )
            if completion.text:
                last_text = completion.text

            loop_messages.append({
                "role": "assistant",
                "content": completion.assistant_content or completion.text,
            })

            if completion.is_final:
                logger.info(
                    "reasoning_loop.complete",
                    iterations=iteration,
                    tool_calls=len(tool_results),
                    response_length=len(completion.text),
                )
                break

            result_blocks: list[dict[str, Any]] = []
            for call in completion.tool_calls:
                self._total_tool_calls += 1
                result = await token.run(self._executor.execute(call.id, call.name, call.input))
                tool_results.append((call, result))
                if on_tool_result is not None:
                    await on_tool_result(call, result)

                result_blocks.append({
                    "type": "tool_result",
                    "tool_use_id": result.tool_use_id,
                    "content": serialize_tool_result_content(result, self._executor.max_output_length),
                    "is_error": not result.success,
                })
                logger.debug(
                    "reasoning_loop.tool_executed",
                    tool=call.name,
                    success=result.success,
                    iteration=iteration,
                )

                if call.name == REQUEST_CLARIFICATION and result.success:
                    clarification = result.result.get("question") if isinstance(result.result, dict) else None
                    break

            loop_messages.append({"role": "user", "content": result_blocks})

            if clarification:
                logger.info("reasoning_loop.clarification_requested", iterations=iteration)
                break
        else:
            truncated = True
            logger.warning(
                "reasoning_loop.max_iterations",
                max=budget,
                tool_calls=len(tool_results),
            )

        return LoopResult(
            text=clarification or last_text,
            tool_results=tool_results,
            iterations=iteration,
            elapsed_seconds=time.monotonic() - start_time,
            messages=loop_messages,
            was_truncated=truncated,
            clarification=clarification,
        )

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "total_runs": self._total_runs,
            "total_iterations": self._total_iterations,
            "total_tool_calls": self._total_tool_calls,
            "avg_iterations_per_run": self._total_iterations / max(1, self._total_runs),
        }
