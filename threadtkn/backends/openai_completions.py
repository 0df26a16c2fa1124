"""OpenAI text completions backend (``/v1/completions``)."""

from typing import Any

from threadtkn.backends.base import CompletionResult
from threadtkn.backends.http import HttpCompletionBackend
from threadtkn.config import ENDOFTEXT_TOKEN, SessionConfig
from threadtkn.errors import MalformedResponseError
from threadtkn.token_counter import is_chat_model


DEFAULT_MODEL = "text-davinci-003"

IM_END_TOKEN = "<|im_end|>"
IM_SEP_TOKEN = "<|im_sep|>"


class OpenAICompletionsBackend(HttpCompletionBackend):
    """Backend for OpenAI's completion API, blocking or streamed.

    Example:
        >>> import httpx
        >>> from threadtkn import BackendConfig, ChatSession, OpenAICompletionsBackend
        >>>
        >>> async with httpx.AsyncClient(timeout=60) as http:
        ...     backend = OpenAICompletionsBackend(http, BackendConfig(api_key="sk-..."))
        ...     session = ChatSession(backend)
        ...     reply = await session.send_message("Hello")
    """

    name = "openai"
    default_base_url = "https://api.openai.com"
    completion_path = "/v1/completions"

    @property
    def supports_streaming(self) -> bool:
        return True

    @property
    def end_token(self) -> str:
        return IM_END_TOKEN if is_chat_model(self.model_name) else ENDOFTEXT_TOKEN

    @property
    def sep_token(self) -> str:
        return IM_SEP_TOKEN if is_chat_model(self.model_name) else ENDOFTEXT_TOKEN

    def default_completion_params(self) -> dict[str, Any]:
        return {
            "model": DEFAULT_MODEL,
            "temperature": 0.8,
            "top_p": 1.0,
            "presence_penalty": 1.0,
        }

    def default_session_config(self) -> SessionConfig:
        return SessionConfig(
            max_model_tokens=4096,
            max_response_tokens=1000,
            user_label="User",
            assistant_label="ChatGPT",
            end_token=self.end_token,
            sep_token=self.sep_token,
            trained_by="OpenAI",
        )

    def _build_body(self, prompt: str, max_tokens: int, stream: bool) -> dict[str, Any]:
        body: dict[str, Any] = {"max_tokens": max_tokens, **self._completion_params}
        if not body.get("stop"):
            if is_chat_model(self.model_name):
                body["stop"] = [IM_END_TOKEN, IM_SEP_TOKEN]
            else:
                body["stop"] = [ENDOFTEXT_TOKEN]
        body["prompt"] = prompt
        body["stream"] = stream
        return body

    def _parse_completion(self, payload: dict[str, Any]) -> CompletionResult:
        choices = payload.get("choices") or []
        if not choices or not isinstance(choices[0], dict) or choices[0].get("text") is None:
            raise MalformedResponseError(
                f"{self.name} error: {self._detail_message(payload)}",
                provider=self.name,
                payload=payload,
            )
        return CompletionResult(
            text=str(choices[0]["text"]).strip(),
            response_id=payload.get("id"),
            finish_reason=choices[0].get("finish_reason"),
            detail=payload,
        )

    def _parse_stream_frame(self, frame: dict[str, Any]) -> tuple[str | None, str | None, str | None]:
        choices = frame.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return None, frame.get("id"), None
        return choices[0].get("text"), frame.get("id"), choices[0].get("finish_reason")
