"""
Tests for the OpenAI client wrapper.

The SDK is mocked at the beta.chat.completions.parse boundary; no network
calls are made.

Tests cover:
- API key resolution from arguments and environment
- Structured output parsing
- Refusals / empty parses raising OpenAIModelError
- Transient SDK errors retried, others failing on the first attempt
- SDK exceptions wrapped into the error hierarchy
"""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest
from pydantic import BaseModel
from tenacity import wait_none

from deal_extraction.clients.openai_client import OpenAIClient
from deal_extraction.errors import OpenAIError, OpenAIModelError, OpenAIRateLimitError


class Answer(BaseModel):
    value: float


def _rate_limit_error():
    request = httpx.Request('POST', 'https://api.openai.com/v1/chat/completions')
    return openai.RateLimitError(
        'Rate limit exceeded',
        response=httpx.Response(429, request=request),
        body=None,
    )


def _parse_response(parsed, refusal=None):
    message = MagicMock()
    message.parsed = parsed
    message.refusal = refusal
    response = MagicMock()
    response.choices = [MagicMock(message=message)]
    return response


@pytest.fixture
def client():
    c = OpenAIClient(api_key='sk-test', chat_model='gpt-4.1-mini')
    c._client = MagicMock()
    c._client.beta.chat.completions.parse = AsyncMock()
    c._client.close = AsyncMock()
    return c


class TestInit:
    def test_missing_key_raises(self, monkeypatch):
        monkeypatch.delenv('OPENAI_API_KEY', raising=False)

        with pytest.raises(ValueError):
            OpenAIClient()

    def test_key_and_model_from_env(self, monkeypatch):
        monkeypatch.setenv('OPENAI_API_KEY', 'sk-env')
        monkeypatch.setenv('OPENAI_CHAT_MODEL', 'gpt-4.1')

        c = OpenAIClient()

        assert c.api_key == 'sk-env'
        assert c.chat_model == 'gpt-4.1'


class TestStructuredCompletion:
    @pytest.mark.asyncio
    async def test_returns_parsed_model(self, client):
        client._client.beta.chat.completions.parse.return_value = _parse_response(
            Answer(value=0.82)
        )
        messages = [{'role': 'user', 'content': 'occupancy?'}]

        result = await client.chat_completion_structured(messages, Answer)

        assert result == Answer(value=0.82)
        kwargs = client._client.beta.chat.completions.parse.call_args.kwargs
        assert kwargs['model'] == 'gpt-4.1-mini'
        assert kwargs['response_format'] is Answer
        assert kwargs['temperature'] == 0.0

    @pytest.mark.asyncio
    async def test_model_override(self, client):
        client._client.beta.chat.completions.parse.return_value = _parse_response(
            Answer(value=1)
        )

        await client.chat_completion_structured([], Answer, model='gpt-4.1')

        kwargs = client._client.beta.chat.completions.parse.call_args.kwargs
        assert kwargs['model'] == 'gpt-4.1'

    @pytest.mark.asyncio
    async def test_refusal_raises_model_error(self, client):
        client._client.beta.chat.completions.parse.return_value = _parse_response(
            None, refusal='I cannot help with that'
        )

        with pytest.raises(OpenAIModelError) as exc_info:
            await client.chat_completion_structured([], Answer)
        assert exc_info.value.context['refusal'] == 'I cannot help with that'

    @pytest.mark.asyncio
    async def test_rate_limit_retried_then_wrapped(self, client):
        client._client.beta.chat.completions.parse.side_effect = _rate_limit_error()

        with patch.object(OpenAIClient._parse.retry, 'wait', wait_none()):
            with pytest.raises(OpenAIRateLimitError):
                await client.chat_completion_structured([], Answer)

        assert client._client.beta.chat.completions.parse.await_count == 3

    @pytest.mark.asyncio
    async def test_transient_failure_then_success(self, client):
        client._client.beta.chat.completions.parse.side_effect = [
            _rate_limit_error(),
            _parse_response(Answer(value=2)),
        ]

        with patch.object(OpenAIClient._parse.retry, 'wait', wait_none()):
            result = await client.chat_completion_structured([], Answer)

        assert result.value == 2
        assert client._client.beta.chat.completions.parse.await_count == 2

    @pytest.mark.asyncio
    async def test_generic_error(self, client):
        client._client.beta.chat.completions.parse.side_effect = Exception('boom')

        with patch.object(OpenAIClient._parse.retry, 'wait', wait_none()):
            with pytest.raises(OpenAIError) as exc_info:
                await client.chat_completion_structured([], Answer)
        assert exc_info.value.context['model'] == 'gpt-4.1-mini'
        assert client._client.beta.chat.completions.parse.await_count == 1


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_healthy(self, client):
        client._client.models.retrieve = AsyncMock()

        assert await client.health_check() == {'healthy': True, 'chat_model': 'gpt-4.1-mini'}

    @pytest.mark.asyncio
    async def test_unhealthy(self, client):
        client._client.models.retrieve = AsyncMock(side_effect=Exception('401'))

        result = await client.health_check()

        assert result['healthy'] is False
        assert result['error'] == '401'

    @pytest.mark.asyncio
    async def test_close(self, client):
        await client.close()

        client._client.close.assert_awaited_once()
