from __future__ import annotations

from unittest.mock import AsyncMock

import anthropic
import httpx
import pytest

from careflow.config import InferenceConfig
from careflow.harness.retry import RetryConfig, compute_delay, is_retryable_error, with_retries

_REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def _status_error(cls, status: int, headers: dict | None = None):
    response = httpx.Response(status, request=_REQUEST, headers=headers or {})
    return cls(message=f"status {status}", response=response, body={})


def _no_jitter(**overrides) -> RetryConfig:
    values = dict(max_retries=3, base_delay=1.0, max_delay=10.0, exponential_base=2.0, jitter_range=0.0)
    values.update(overrides)
    return RetryConfig(**values)


def test_api_connection_error_is_retryable():
    error = anthropic.APIConnectionError(message="Connection error.", request=_REQUEST)
    assert is_retryable_error(error) is True


def test_api_timeout_error_is_retryable():
    assert is_retryable_error(anthropic.APITimeoutError(request=_REQUEST)) is True


def test_rate_limit_and_overload_are_retryable():
    assert is_retryable_error(_status_error(anthropic.RateLimitError, 429)) is True
    assert is_retryable_error(_status_error(anthropic.InternalServerError, 529)) is True


def test_client_errors_are_final():
    assert is_retryable_error(_status_error(anthropic.BadRequestError, 400)) is False
    assert is_retryable_error(_status_error(anthropic.AuthenticationError, 401)) is False


def test_value_error_is_not_retryable():
    assert is_retryable_error(ValueError("bad request shape")) is False


def test_compute_delay_is_exponential_and_capped():
    config = _no_jitter(max_delay=5.0)
    assert compute_delay(0, config) == 1.0
    assert compute_delay(1, config) == 2.0
    assert compute_delay(5, config) == 5.0


def test_compute_delay_prefers_retry_after_but_caps_it():
    config = _no_jitter(max_delay=5.0)
    assert compute_delay(0, config, retry_after=3.0) == 3.0
    assert compute_delay(0, config, retry_after=60.0) == 5.0


def test_retry_config_from_inference_config():
    config = RetryConfig.from_inference_config(
        InferenceConfig(CAREFLOW_RETRY_MAX_RETRIES=7, CAREFLOW_RETRY_BASE_DELAY=0.2)
    )
    assert config.max_retries == 7
    assert config.base_delay == 0.2


@pytest.mark.asyncio
async def test_with_retries_returns_after_transient_failures(monkeypatch):
    error = _status_error(anthropic.RateLimitError, 429)
    func = AsyncMock(side_effect=[error, error, "ok"])
    delays: list[float] = []

    async def _fake_sleep(delay: float) -> None:
        delays.append(delay)

    monkeypatch.setattr("careflow.harness.retry.asyncio.sleep", _fake_sleep)

    assert await with_retries(func, config=_no_jitter()) == "ok"
    assert func.await_count == 3
    assert delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_with_retries_uses_retry_after_header(monkeypatch):
    error = _status_error(anthropic.RateLimitError, 429, headers={"retry-after": "4"})
    func = AsyncMock(side_effect=[error, "ok"])
    delays: list[float] = []

    async def _fake_sleep(delay: float) -> None:
        delays.append(delay)

    monkeypatch.setattr("careflow.harness.retry.asyncio.sleep", _fake_sleep)

    await with_retries(func, config=_no_jitter())
    assert delays == [4.0]


@pytest.mark.asyncio
async def test_with_retries_reraises_after_exhaustion(monkeypatch):
    error = _status_error(anthropic.InternalServerError, 503)
    func = AsyncMock(side_effect=error)
    retries: list[int] = []

    async def _fake_sleep(delay: float) -> None:
        return None

    monkeypatch.setattr("careflow.harness.retry.asyncio.sleep", _fake_sleep)

    with pytest.raises(anthropic.InternalServerError):
        await with_retries(
            func,
            config=_no_jitter(max_retries=2),
            on_retry=lambda attempt, exc, delay: retries.append(attempt),
        )
    assert func.await_count == 3
    assert retries == [1, 2]


@pytest.mark.asyncio
async def test_with_retries_does_not_retry_client_errors():
    func = AsyncMock(side_effect=_status_error(anthropic.BadRequestError, 400))

    with pytest.raises(anthropic.BadRequestError):
        await with_retries(func, config=_no_jitter())
    assert func.await_count == 1
