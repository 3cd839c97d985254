"""
Tests for careflow.api.inference: the Anthropic-backed InferenceService.

The SDK client is replaced by a mock whose ``messages.create`` returns
lightweight stand-ins for the SDK response types, so no network is touched.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Optional
from unittest.mock import AsyncMock, MagicMock

import anthropic
import httpx
import pytest

from careflow.api.inference import AnthropicInferenceService, InferenceMode, InferenceService
from careflow.config import InferenceConfig
from careflow.errors import InferenceUnavailableError

_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


# ---------------------------------------------------------------------------
# Mock API types
# ---------------------------------------------------------------------------

@dataclass
class MockTextBlock:
    text: str
    type: str = "text"

    def model_dump(self, mode: Optional[str] = None, exclude_none: bool = False) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MockToolUseBlock:
    id: str
    name: str
    input: dict[str, Any]
    type: str = "tool_use"

    def model_dump(self, mode: Optional[str] = None, exclude_none: bool = False) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MockUsage:
    input_tokens: int = 100
    output_tokens: int = 50


@dataclass
class MockMessage:
    content: list[Any] = field(default_factory=list)
    stop_reason: str = "end_turn"
    usage: MockUsage = field(default_factory=MockUsage)


def _config(**overrides) -> InferenceConfig:
    values = {"ANTHROPIC_API_KEY": "test-key", "CAREFLOW_RETRY_MAX_RETRIES": 0}
    values.update(overrides)
    return InferenceConfig(**values)


def _service(*responses, **config_overrides):
    client = MagicMock()
    client.messages.create = AsyncMock(side_effect=list(responses))
    client.close = AsyncMock()
    return AnthropicInferenceService(_config(**config_overrides), client=client), client


def _status_error(cls, status: int):
    response = httpx.Response(status, request=_REQUEST)
    return cls(message=f"status {status}", response=response, body={})


class TestComplete:
    @pytest.mark.asyncio
    async def test_text_and_tool_calls_are_normalized(self):
        response = MockMessage(
            content=[
                MockTextBlock("Let me search."),
                MockToolUseBlock(id="toolu_1", name="search_records", input={"query": "labs"}),
            ],
            stop_reason="tool_use",
        )
        service, client = _service(response)

        completion = await service.complete(
            "system", [{"role": "user", "content": "find labs"}], tools=[{"name": "search_records"}]
        )

        assert completion.text == "Let me search."
        assert completion.is_final is False
        assert completion.tool_calls[0].name == "search_records"
        assert completion.tool_calls[0].input == {"query": "labs"}
        assert completion.assistant_content[1]["type"] == "tool_use"
        assert completion.stop_reason == "tool_use"

        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["tools"] == [{"name": "search_records"}]
        assert kwargs["temperature"] == 0.3

    @pytest.mark.asyncio
    async def test_deterministic_mode_uses_its_temperature(self):
        service, client = _service(MockMessage(content=[MockTextBlock("ok")]))
        await service.complete("system", [], mode=InferenceMode.DETERMINISTIC)

        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["temperature"] == 0.0
        assert "tools" not in kwargs

    @pytest.mark.asyncio
    async def test_telemetry_accumulates(self):
        service, _ = _service(MockMessage(content=[MockTextBlock("a")]), MockMessage(content=[MockTextBlock("b")]))
        await service.complete("s", [])
        await service.complete("s", [])

        assert service.telemetry == {"total_calls": 2, "total_input_tokens": 200, "total_output_tokens": 100}


class TestClassify:
    @pytest.mark.asyncio
    async def test_returns_forced_tool_input(self):
        response = MockMessage(content=[
            MockToolUseBlock(id="toolu_1", name="record_intent", input={"intent": "retrieve"}),
        ])
        service, client = _service(response)

        result = await service.classify("system", "show labs", "record_intent", {"type": "object"})

        assert result == {"intent": "retrieve"}
        kwargs = client.messages.create.call_args.kwargs
        assert kwargs["tool_choice"] == {"type": "tool", "name": "record_intent"}
        assert kwargs["temperature"] == 0.0

    @pytest.mark.asyncio
    async def test_missing_tool_call_is_none(self):
        service, _ = _service(MockMessage(content=[MockTextBlock("retrieve")]))
        assert await service.classify("system", "show labs", "record_intent", {}) is None


class TestGenerateText:
    @pytest.mark.asyncio
    async def test_joins_text_blocks(self):
        service, client = _service(MockMessage(content=[MockTextBlock("one"), MockTextBlock("two")]))

        text = await service.generate_text("system", "prompt", max_tokens=64)

        assert text == "one\ntwo"
        assert client.messages.create.call_args.kwargs["max_tokens"] == 64


class TestFailures:
    @pytest.mark.asyncio
    async def test_api_error_becomes_unavailable(self):
        service, _ = _service(_status_error(anthropic.InternalServerError, 503))
        with pytest.raises(InferenceUnavailableError):
            await service.complete("s", [])

    @pytest.mark.asyncio
    async def test_client_errors_are_not_retried(self):
        service, client = _service(_status_error(anthropic.BadRequestError, 400), CAREFLOW_RETRY_MAX_RETRIES=3)
        with pytest.raises(InferenceUnavailableError):
            await service.generate_text("s", "p")
        assert client.messages.create.await_count == 1

    @pytest.mark.asyncio
    async def test_transient_errors_are_retried(self, monkeypatch):
        async def _fake_sleep(seconds):
            return None

        monkeypatch.setattr("careflow.harness.retry.asyncio.sleep", _fake_sleep)
        service, client = _service(
            anthropic.APIConnectionError(message="Connection error.", request=_REQUEST),
            MockMessage(content=[MockTextBlock("recovered")]),
            CAREFLOW_RETRY_MAX_RETRIES=2,
        )

        assert await service.generate_text("s", "p") == "recovered"
        assert client.messages.create.await_count == 2


def test_missing_api_key_fails_fast():
    with pytest.raises(ValueError, match="ANTHROPIC_API_KEY"):
        AnthropicInferenceService(InferenceConfig(ANTHROPIC_API_KEY=""))


def test_service_satisfies_protocol():
    service, _ = _service()
    assert isinstance(service, InferenceService)


@pytest.mark.asyncio
async def test_close_closes_client():
    service, client = _service()
    await service.close()
    client.close.assert_awaited_once()
