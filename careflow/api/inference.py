"""
Inference Service: the single seam to the reasoning backend.

Everything that asks a model for something passes through an object that
satisfies ``InferenceService``. The production implementation wraps the
Anthropic Messages API; tests substitute a scripted fake with the same shape.

Two sampling modes exist. ``DETERMINISTIC`` is used for intent classification
and anything risk-relevant; ``CONVERSATIONAL`` is used for free-text answers
and synthesis.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable

import anthropic
import httpx
import structlog

from careflow.config import InferenceConfig
from careflow.errors import InferenceUnavailableError
from careflow.harness.retry import RetryConfig, with_retries

logger = structlog.get_logger(__name__)


class InferenceMode(str, Enum):
    DETERMINISTIC = "deterministic"
    CONVERSATIONAL = "conversational"


@dataclass
class ToolInvocation:
    """One tool-use request emitted by the model."""

    id: str
    name: str
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class Completion:
    """
    Normalized model response.

    ``assistant_content`` holds the raw content blocks so the reasoning loop
    can append the assistant turn to the transcript verbatim, which the
    Messages API requires before any ``tool_result`` blocks that answer it.
    """

    text: str = ""
    tool_calls: list[ToolInvocation] = field(default_factory=list)
    assistant_content: list[dict[str, Any]] = field(default_factory=list)
    stop_reason: Optional[str] = None

    @property
    def is_final(self) -> bool:
        return not self.tool_calls


@runtime_checkable
class InferenceService(Protocol):
    async def complete(
        self,
        system_prompt: str,
        transcript: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
        mode: InferenceMode = InferenceMode.CONVERSATIONAL,
    ) -> Completion: ...

    async def classify(
        self,
        system_prompt: str,
        content: str,
        schema_name: str,
        schema: dict[str, Any],
    ) -> Optional[dict[str, Any]]: ...

    async def generate_text(
        self,
        system_prompt: str,
        prompt: str,
        mode: InferenceMode = InferenceMode.CONVERSATIONAL,
        max_tokens: Optional[int] = None,
    ) -> str: ...


def _block_to_dict(block: Any) -> dict[str, Any]:
    if hasattr(block, "model_dump"):
        return block.model_dump(mode="json", exclude_none=True)
    return dict(block)


class AnthropicInferenceService:
    """
    ``InferenceService`` backed by ``anthropic.AsyncAnthropic``.

    The service holds no conversation state. It receives a transcript and
    returns a normalized ``Completion``; state lives in working memory and
    the conversation log above it.
    """

    def __init__(self, config: InferenceConfig, client: Optional[anthropic.AsyncAnthropic] = None):
        # Retries happen in with_retries, so the SDK's own retry loop is off.
        self._client = client or anthropic.AsyncAnthropic(
            api_key=config.require_api_key(),
            max_retries=0,
            http_client=httpx.AsyncClient(timeout=httpx.Timeout(config.request_timeout_seconds)),
        )
        self._model = config.model
        self._max_tokens = config.max_tokens
        self._temperatures = {
            InferenceMode.DETERMINISTIC: config.deterministic_temperature,
            InferenceMode.CONVERSATIONAL: config.conversational_temperature,
        }
        self._request_timeout_seconds = float(config.request_timeout_seconds)
        self._retry_config = RetryConfig.from_inference_config(config)

        self._total_input_tokens = 0
        self._total_output_tokens = 0
        self._total_calls = 0

        logger.info("inference.initialized", model=self._model)

    async def _create(self, **kwargs: Any) -> anthropic.types.Message:
        start_time = time.monotonic()

        async def _call() -> anthropic.types.Message:
            return await asyncio.wait_for(
                self._client.messages.create(**kwargs),
                timeout=self._request_timeout_seconds,
            )

        try:
            response = await with_retries(_call, config=self._retry_config)
        except (anthropic.APIError, TimeoutError, asyncio.TimeoutError, ConnectionError) as e:
            logger.error(
                "inference.unavailable",
                error_type=type(e).__name__,
                status=getattr(e, "status_code", None),
            )
            raise InferenceUnavailableError(f"Inference backend unavailable: {e}") from e

        self._total_calls += 1
        self._total_input_tokens += response.usage.input_tokens
        self._total_output_tokens += response.usage.output_tokens
        logger.debug(
            "inference.call_complete",
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
            elapsed_seconds=round(time.monotonic() - start_time, 2),
            stop_reason=response.stop_reason,
        )
        return response

    async def complete(
        self,
        system_prompt: str,
        transcript: list[dict[str, Any]],
        tools: Optional[list[dict[str, Any]]] = None,
        mode: InferenceMode = InferenceMode.CONVERSATIONAL,
    ) -> Completion:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "temperature": self._temperatures[mode],
            "system": system_prompt,
            "messages": transcript,
        }
        if tools:
            kwargs["tools"] = tools
        response = await self._create(**kwargs)
        return self.to_completion(response)

    async def classify(
        self,
        system_prompt: str,
        content: str,
        schema_name: str,
        schema: dict[str, Any],
    ) -> Optional[dict[str, Any]]:
        """
        Request a structured object by forcing a single tool call whose input
        schema is ``schema``. Returns the tool input, or None when the model
        did not produce one.
        """
        response = await self._create(
            model=self._model,
            max_tokens=512,
            temperature=self._temperatures[InferenceMode.DETERMINISTIC],
            system=system_prompt,
            messages=[{"role": "user", "content": content}],
            tools=[{
                "name": schema_name,
                "description": "Record the structured classification.",
                "input_schema": schema,
            }],
            tool_choice={"type": "tool", "name": schema_name},
        )
        for block in response.content:
            if block.type == "tool_use" and block.name == schema_name:
                return dict(block.input)
        return None

    async def generate_text(
        self,
        system_prompt: str,
        prompt: str,
        mode: InferenceMode = InferenceMode.CONVERSATIONAL,
        max_tokens: Optional[int] = None,
    ) -> str:
        response = await self._create(
            model=self._model,
            max_tokens=max_tokens or self._max_tokens,
            temperature=self._temperatures[mode],
            system=system_prompt,
            messages=[{"role": "user", "content": prompt}],
        )
        return self.extract_text(response)

    async def close(self) -> None:
        await self._client.close()

    # -------------------------------------------------------------------------
    # Utility methods
    # -------------------------------------------------------------------------

    @staticmethod
    def extract_text(response: anthropic.types.Message) -> str:
        """Extract all text content from a response, ignoring tool calls."""
        return "\n".join(block.text for block in response.content if block.type == "text")

    @classmethod
    def to_completion(cls, response: anthropic.types.Message) -> Completion:
        calls = [
            ToolInvocation(id=block.id, name=block.name, input=dict(block.input or {}))
            for block in response.content
            if block.type == "tool_use"
        ]
        return Completion(
            text=cls.extract_text(response),
            tool_calls=calls,
            assistant_content=[_block_to_dict(block) for block in response.content],
            stop_reason=response.stop_reason,
        )

    @property
    def telemetry(self) -> dict[str, Any]:
        return {
            "total_calls": self._total_calls,
            "total_input_tokens": self._total_input_tokens,
            "total_output_tokens": self._total_output_tokens,
        }
