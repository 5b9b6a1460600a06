"""Provider SDK errors mapped onto the retry taxonomy."""

import asyncio

import anthropic
import httpx
import pytest

from coursegen.errors import PermanentError, RateLimitedError, TransientError
from coursegen.generation.provider import map_provider_error

REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def status_error(cls, status_code, headers=None):
    response = httpx.Response(status_code, headers=headers or {}, request=REQUEST)
    return cls("provider error", response=response, body=None)


def test_rate_limit_carries_retry_after():
    mapped = map_provider_error(status_error(anthropic.RateLimitError, 429, {"retry-after": "12"}))
    assert isinstance(mapped, RateLimitedError)
    assert mapped.retry_after == 12.0


@pytest.mark.parametrize("error", [
    asyncio.TimeoutError(),
    anthropic.APITimeoutError(request=REQUEST),
    anthropic.APIConnectionError(request=REQUEST),
    status_error(anthropic.InternalServerError, 529),
    RuntimeError("socket closed"),
])
def test_retryable_errors_are_transient(error):
    assert type(map_provider_error(error)) is TransientError


def test_client_errors_are_permanent():
    mapped = map_provider_error(status_error(anthropic.BadRequestError, 400))
    assert isinstance(mapped, PermanentError)
    assert "400" in str(mapped)
