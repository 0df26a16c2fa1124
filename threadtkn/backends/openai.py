"""OpenAI chat-completions backend built on the official SDK.

The assembled prompt is sent as a single user message, so chat models can
be driven by the same history assembly as text-completion models.
"""

import logging
from typing import Any

import httpx
import openai

from threadtkn.backends.base import CompletionResult, DeltaCallback
from threadtkn.cancellation import CancellationToken
from threadtkn.config import SessionConfig
from threadtkn.errors import (
    BackendError,
    MalformedResponseError,
    NetworkError,
    StreamInterruptedError,
    ValidationError,
)


logger = logging.getLogger(__name__)


class OpenAIChatBackend:
    """Backend for OpenAI chat models.

    Wraps an AsyncOpenAI client and provides the CompletionBackend interface.
    The client's own ``http_client`` is the transport; pass
    ``max_retries=0`` to the client if retries should stay with the caller.

    Example:
        >>> from openai import AsyncOpenAI
        >>> from threadtkn.backends.openai import OpenAIChatBackend
        >>>
        >>> client = AsyncOpenAI(max_retries=0)
        >>> backend = OpenAIChatBackend(client, model="gpt-4.1")
    """

    name = "openai-chat"

    def __init__(
        self,
        client: openai.AsyncOpenAI,
        model: str = "gpt-4.1",
        temperature: float = 0.8,
        completion_params: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the OpenAI chat backend.

        Args:
            client: An initialized AsyncOpenAI client.
            model: Model name to use for completions.
            temperature: Sampling temperature.
            completion_params: Extra arguments for ``chat.completions.create``
                (presence_penalty, stop, ...).
        """
        if not client.api_key:
            raise ValidationError(code="MISSING_API_KEY", message=f"{self.name}: api_key is required")
        self._client = client
        self._model = model
        self._temperature = temperature
        self._params = dict(completion_params or {})

    @property
    def model_name(self) -> str:
        """Return the model name being used."""
        return self._model

    @property
    def api_key(self) -> str:
        return self._client.api_key

    @api_key.setter
    def api_key(self, value: str) -> None:
        if not value:
            raise ValidationError(code="MISSING_API_KEY", message=f"{self.name}: api_key is required")
        self._client.api_key = value

    @property
    def supports_streaming(self) -> bool:
        return True

    def default_session_config(self) -> SessionConfig:
        return SessionConfig(
            max_model_tokens=8192,
            max_response_tokens=1000,
            assistant_label="ChatGPT",
            trained_by="OpenAI",
        )

    def _request(self, prompt: str, max_tokens: int) -> dict[str, Any]:
        return {
            "model": self._model,
            "temperature": self._temperature,
            **self._params,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": max_tokens,
        }

    async def complete(
        self,
        prompt: str,
        max_tokens: int,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> CompletionResult:
        token = cancel_token or CancellationToken()
        return await token.guard(self._complete(prompt, max_tokens))

    async def _complete(self, prompt: str, max_tokens: int) -> CompletionResult:
        try:
            response = await self._client.chat.completions.create(**self._request(prompt, max_tokens))
        except openai.APIStatusError as e:
            raise self._backend_error(e) from e
        except openai.APIConnectionError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), provider=self.name) from e

        choices = getattr(response, "choices", None) or []
        content = choices[0].message.content if choices else None
        if content is None:
            raise MalformedResponseError(f"{self.name} error: response has no message content", provider=self.name)

        return CompletionResult(
            text=content.strip(),
            response_id=response.id,
            finish_reason=choices[0].finish_reason,
            detail=response.model_dump(),
        )

    async def complete_stream(
        self,
        prompt: str,
        max_tokens: int,
        *,
        on_delta: DeltaCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> CompletionResult:
        token = cancel_token or CancellationToken()
        return await token.guard(self._stream(prompt, max_tokens, on_delta))

    async def _stream(self, prompt: str, max_tokens: int, on_delta: DeltaCallback | None) -> CompletionResult:
        try:
            stream = await self._client.chat.completions.create(
                **self._request(prompt, max_tokens), stream=True
            )
        except openai.APIStatusError as e:
            raise self._backend_error(e) from e
        except openai.APIConnectionError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), provider=self.name) from e

        text = ""
        result = CompletionResult(text="")
        try:
            async for chunk in stream:
                result.response_id = chunk.id or result.response_id
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.finish_reason:
                    result.finish_reason = choice.finish_reason
                delta = choice.delta.content if choice.delta else None
                if delta:
                    text += delta
                    result.detail = chunk.model_dump()
                    if on_delta is not None:
                        on_delta(text, result.detail)
        except (httpx.TransportError, openai.APIConnectionError) as e:
            if not text:
                raise StreamInterruptedError(
                    code="STREAM_INTERRUPTED",
                    message=f"{self.name} stream terminated before any content: {e}",
                    provider=self.name,
                ) from e
            logger.warning(
                "%s stream terminated early (%s); keeping %d chars of partial output",
                self.name, e, len(text),
            )

        if not text:
            raise MalformedResponseError(f"{self.name} error: stream ended without content", provider=self.name)
        result.text = text.strip()
        return result

    def _backend_error(self, e: openai.APIStatusError) -> BackendError:
        return BackendError(
            f"{self.name} error {e.status_code}: {e.response.text}",
            status_code=e.status_code,
            status_text=e.response.reason_phrase,
            reason=e.response.text,
            provider=self.name,
        )
