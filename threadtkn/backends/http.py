"""Shared HTTP plumbing for JSON completion endpoints.

HttpCompletionBackend does the transport work every provider shares:

1. Build headers and the request body (provider hook).
2. POST through the injected ``httpx.AsyncClient`` and map HTTP/network
   failures onto threadTKN errors.
3. Parse a single JSON response, or aggregate an SSE stream of deltas
   (provider hooks extract the text).
4. Race the request against a CancellationToken.

Concrete backends only describe their wire format.
"""

import json
import logging
from typing import Any

import httpx

from threadtkn.backends.base import CompletionResult, DeltaCallback
from threadtkn.backends.sse import DONE_SENTINEL, SSEDecoder, ServerSentEvent
from threadtkn.cancellation import CancellationToken
from threadtkn.config import BackendConfig, SessionConfig
from threadtkn.errors import (
    BackendError,
    MalformedResponseError,
    NetworkError,
    StreamInterruptedError,
    ValidationError,
)


logger = logging.getLogger(__name__)


class _StreamAggregator:
    """Accumulates streamed deltas into one completion.

    Only the task consuming the stream touches this state, and ``on_delta``
    runs synchronously inside that task.
    """

    def __init__(self, on_delta: DeltaCallback | None) -> None:
        self._on_delta = on_delta
        self.text = ""
        self.response_id: str | None = None
        self.finish_reason: str | None = None
        self.detail: dict[str, Any] = {}
        self.done = False

    def add(self, frame: dict[str, Any], delta: str | None, response_id: str | None, finish_reason: str | None) -> None:
        if response_id:
            self.response_id = response_id
        if finish_reason:
            self.finish_reason = finish_reason
        self.detail = frame
        if delta:
            self.text += delta
            if self._on_delta is not None:
                self._on_delta(self.text, frame)

    def result(self) -> CompletionResult:
        return CompletionResult(
            text=self.text.strip(),
            response_id=self.response_id,
            finish_reason=self.finish_reason,
            detail=self.detail,
        )


class HttpCompletionBackend:
    """Base class for completion backends speaking JSON over HTTP.

    Subclasses set ``name``, ``default_base_url`` and ``completion_path`` and
    implement ``default_completion_params``, ``_build_body``,
    ``_parse_completion`` and, for streaming providers,
    ``_parse_stream_frame``.
    """

    name = "http"
    default_base_url = ""
    completion_path = ""

    def __init__(self, http_client: httpx.AsyncClient, config: BackendConfig) -> None:
        """Initialize the backend.

        Args:
            http_client: Transport used for every request. Its lifetime is
                owned by the caller.
            config: Credentials, endpoint and completion parameters.

        Raises:
            ValidationError: If the api key or the client is missing.
        """
        if not config.api_key:
            raise ValidationError(code="MISSING_API_KEY", message=f"{self.name}: api_key is required")
        if http_client is None:
            raise ValidationError(code="MISSING_TRANSPORT", message=f"{self.name}: http_client is required")

        self._http = http_client
        self._config = config
        self._completion_params = {
            **self.default_completion_params(),
            **config.completion_params,
        }

    @property
    def model_name(self) -> str:
        """Return the model name being used."""
        return self._completion_params.get("model", "")

    @property
    def api_key(self) -> str:
        return self._config.api_key

    @api_key.setter
    def api_key(self, value: str) -> None:
        if not value:
            raise ValidationError(code="MISSING_API_KEY", message=f"{self.name}: api_key is required")
        self._config.api_key = value

    @property
    def completion_params(self) -> dict[str, Any]:
        return dict(self._completion_params)

    @property
    def supports_streaming(self) -> bool:
        return False

    @property
    def url(self) -> str:
        """Completion endpoint, honouring a reverse proxy override."""
        if self._config.api_reverse_proxy_url:
            return self._config.api_reverse_proxy_url
        base = (self._config.api_base_url or self.default_base_url).rstrip("/")
        return f"{base}{self.completion_path}"

    # --- Provider hooks ---

    def default_completion_params(self) -> dict[str, Any]:
        return {}

    def default_session_config(self) -> SessionConfig:
        return SessionConfig()

    def _build_body(self, prompt: str, max_tokens: int, stream: bool) -> dict[str, Any]:
        raise NotImplementedError

    def _parse_completion(self, payload: dict[str, Any]) -> CompletionResult:
        raise NotImplementedError

    def _parse_stream_frame(self, frame: dict[str, Any]) -> tuple[str | None, str | None, str | None]:
        """Extract ``(delta_text, response_id, finish_reason)`` from a frame."""
        raise NotImplementedError

    def _headers(self, stream: bool) -> dict[str, str]:
        return {
            **self._config.headers,
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
            "Authorization": f"Bearer {self._config.api_key}",
        }

    # --- Public API ---

    async def complete(
        self,
        prompt: str,
        max_tokens: int,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> CompletionResult:
        body = self._build_body(prompt, max_tokens, stream=False)
        token = cancel_token or CancellationToken()
        return await token.guard(self._post(body))

    async def complete_stream(
        self,
        prompt: str,
        max_tokens: int,
        *,
        on_delta: DeltaCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> CompletionResult:
        if not self.supports_streaming:
            raise ValidationError(
                code="STREAMING_UNSUPPORTED",
                message=f"{self.name} backend does not support streaming",
            )
        body = self._build_body(prompt, max_tokens, stream=True)
        token = cancel_token or CancellationToken()
        return await token.guard(self._stream(body, on_delta))

    # --- Transport ---

    async def _post(self, body: dict[str, Any]) -> CompletionResult:
        logger.debug("POST %s %s", self.url, body)
        try:
            resp = await self._http.post(self.url, json=body, headers=self._headers(stream=False))
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e), provider=self.name) from e

        if not resp.is_success:
            raise self._backend_error(resp, resp.text)

        try:
            payload = resp.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"{self.name} error: response is not JSON", provider=self.name
            ) from e
        logger.debug("%s response: %s", self.name, payload)

        if not isinstance(payload, dict):
            raise MalformedResponseError(f"{self.name} error: unknown", provider=self.name)
        return self._parse_completion(payload)

    async def _stream(self, body: dict[str, Any], on_delta: DeltaCallback | None) -> CompletionResult:
        logger.debug("POST (stream) %s %s", self.url, body)
        aggregator = _StreamAggregator(on_delta)
        decoder = SSEDecoder()
        connected = False

        try:
            async with self._http.stream(
                "POST", self.url, json=body, headers=self._headers(stream=True)
            ) as resp:
                connected = True
                if not resp.is_success:
                    raw = await resp.aread()
                    raise self._backend_error(resp, raw.decode("utf-8", errors="replace"))

                async for line in resp.aiter_lines():
                    event = decoder.decode(line)
                    if event is not None:
                        self._handle_event(event, aggregator)
                    if aggregator.done:
                        return aggregator.result()

                event = decoder.flush()
                if event is not None:
                    self._handle_event(event, aggregator)
        except httpx.RequestError as e:
            if not connected:
                raise NetworkError(code="NETWORK_ERROR", message=str(e), provider=self.name) from e
            if aggregator.text:
                logger.warning(
                    "%s stream terminated early (%s); keeping %d chars of partial output",
                    self.name, e, len(aggregator.text),
                )
                return aggregator.result()
            raise StreamInterruptedError(
                code="STREAM_INTERRUPTED",
                message=f"{self.name} stream terminated before any content: {e}",
                provider=self.name,
            ) from e

        if aggregator.done:
            return aggregator.result()
        if aggregator.text:
            logger.warning("%s stream ended without %s; keeping partial output", self.name, DONE_SENTINEL)
            return aggregator.result()
        raise MalformedResponseError(
            f"{self.name} error: stream ended without a completion", provider=self.name
        )

    def _handle_event(self, event: ServerSentEvent, aggregator: _StreamAggregator) -> None:
        if event.data == DONE_SENTINEL:
            aggregator.done = True
            return

        try:
            frame = json.loads(event.data)
        except json.JSONDecodeError as e:
            logger.warning("%s stream event unexpected error: %s", self.name, e)
            raise MalformedResponseError(
                f"{self.name} error: invalid stream event {event.data!r}", provider=self.name
            ) from e
        if not isinstance(frame, dict):
            raise MalformedResponseError(
                f"{self.name} error: invalid stream event {event.data!r}", provider=self.name
            )

        delta, response_id, finish_reason = self._parse_stream_frame(frame)
        aggregator.add(frame, delta, response_id, finish_reason)

    def _backend_error(self, resp: httpx.Response, reason: str) -> BackendError:
        status = resp.status_code or resp.reason_phrase
        return BackendError(
            f"{self.name} error {status}: {reason}",
            status_code=resp.status_code,
            status_text=resp.reason_phrase,
            reason=reason,
            provider=self.name,
        )

    @staticmethod
    def _detail_message(payload: dict[str, Any]) -> str:
        """Best diagnostic text from an error-ish payload."""
        detail = payload.get("detail")
        if isinstance(detail, dict) and detail.get("message"):
            return str(detail["message"])
        if detail:
            return str(detail)
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        return "unknown"
