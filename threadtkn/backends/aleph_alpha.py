"""Aleph Alpha completion backend (``/complete``).

The Aleph Alpha endpoint answers with one JSON document; this backend does
not stream.
"""

from typing import Any

from threadtkn.backends.base import CompletionResult
from threadtkn.backends.http import HttpCompletionBackend
from threadtkn.config import ENDOFTEXT_TOKEN, SessionConfig
from threadtkn.errors import MalformedResponseError


DEFAULT_MODEL = "luminous-base"


class AlephAlphaBackend(HttpCompletionBackend):
    """Backend for the Aleph Alpha completion API."""

    name = "aleph-alpha"
    default_base_url = "https://api.aleph-alpha.com"
    completion_path = "/complete"

    def default_completion_params(self) -> dict[str, Any]:
        return {
            "model": DEFAULT_MODEL,
            "temperature": 0.8,
            "top_p": 1.0,
            "presence_penalty": 1.0,
            "stop_sequences": [ENDOFTEXT_TOKEN],
        }

    def default_session_config(self) -> SessionConfig:
        return SessionConfig(
            max_model_tokens=2048,
            max_response_tokens=500,
            user_label="User",
            assistant_label="GPT",
            end_token=ENDOFTEXT_TOKEN,
            trained_by="Aleph Alpha",
        )

    def _build_body(self, prompt: str, max_tokens: int, stream: bool) -> dict[str, Any]:
        return {"maximum_tokens": max_tokens, **self._completion_params, "prompt": prompt}

    def _parse_completion(self, payload: dict[str, Any]) -> CompletionResult:
        completions = payload.get("completions") or []
        if not completions or not isinstance(completions[0], dict) or completions[0].get("completion") is None:
            raise MalformedResponseError(
                f"{self.name} error: {self._detail_message(payload)}",
                provider=self.name,
                payload=payload,
            )
        return CompletionResult(
            text=str(completions[0]["completion"]).strip(),
            response_id=payload.get("id"),
            finish_reason=completions[0].get("finish_reason"),
            detail=payload,
        )
