"""
OpenAI client for the structuring stage.

Only structured output is used: the model answers directly into a pydantic
model through beta.chat.completions.parse. Transient failures (rate limits,
timeouts, dropped connections, 5xx) are retried with exponential backoff;
everything else fails on the first attempt. Failures leave this module as
OpenAIError subclasses.
"""

import os
from typing import TypeVar

import openai
import structlog
from openai import AsyncOpenAI
from pydantic import BaseModel
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..errors import OpenAIModelError, wrap_openai_error

logger = structlog.get_logger(__name__)

T = TypeVar('T', bound=BaseModel)

# Seconds per structuring request; workbooks produce long prompts
DEFAULT_TIMEOUT = 120.0

TRANSIENT_ERRORS = (
    openai.RateLimitError,
    openai.APITimeoutError,
    openai.APIConnectionError,
    openai.InternalServerError,
)


def _log_retry(retry_state) -> None:
    logger.warning(
        'openai.retrying',
        attempt=retry_state.attempt_number,
        error=str(retry_state.outcome.exception()),
    )


class OpenAIClient:
    """
    Async OpenAI client returning parsed pydantic models.

    Configuration via environment variables:
    - OPENAI_API_KEY: Required API key
    - OPENAI_CHAT_MODEL: Structuring model (default: gpt-4.1-mini)
    """

    def __init__(
        self,
        api_key: str | None = None,
        chat_model: str | None = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.api_key = api_key or os.getenv('OPENAI_API_KEY')
        if not self.api_key:
            raise ValueError('OPENAI_API_KEY environment variable is required')

        self.chat_model = chat_model or os.getenv('OPENAI_CHAT_MODEL', 'gpt-4.1-mini')

        # tenacity owns retries
        self._client = AsyncOpenAI(api_key=self.api_key, timeout=timeout, max_retries=0)

    @retry(
        retry=retry_if_exception_type(TRANSIENT_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        before_sleep=_log_retry,
        reraise=True,
    )
    async def _parse(
        self,
        messages: list[dict[str, str]],
        response_model: type[T],
        model: str,
        temperature: float,
    ):
        return await self._client.beta.chat.completions.parse(
            model=model,
            messages=messages,  # type: ignore
            response_format=response_model,
            temperature=temperature,
        )

    async def chat_completion_structured(
        self,
        messages: list[dict[str, str]],
        response_model: type[T],
        model: str | None = None,
        temperature: float = 0.0,
    ) -> T:
        """
        Run a chat completion whose answer is parsed into `response_model`.

        Raises:
            OpenAIRateLimitError: Still rate limited after retries
            OpenAIModelError: The model refused or returned nothing parseable
            OpenAIError: Any other API failure
        """
        model = model or self.chat_model
        try:
            response = await self._parse(messages, response_model, model, temperature)
        except Exception as e:
            raise wrap_openai_error(e, context={'model': model})

        usage = getattr(response, 'usage', None)
        if usage is not None:
            logger.debug(
                'openai.usage',
                model=model,
                response_model=response_model.__name__,
                prompt_tokens=getattr(usage, 'prompt_tokens', None),
                completion_tokens=getattr(usage, 'completion_tokens', None),
            )

        message = response.choices[0].message
        if message.parsed is None:
            raise OpenAIModelError(
                f"No parseable {response_model.__name__} in response",
                context={'model': model, 'refusal': getattr(message, 'refusal', None)},
            )
        return message.parsed

    async def health_check(self) -> dict[str, bool | str]:
        """Confirm the API key works and the structuring model exists."""
        try:
            await self._client.models.retrieve(self.chat_model)
            return {'healthy': True, 'chat_model': self.chat_model}
        except Exception as e:
            return {'healthy': False, 'error': str(e)}

    async def close(self):
        await self._client.close()
