"""Configuration dataclasses for threadTKN."""

from dataclasses import dataclass, field
from typing import Any


ENDOFTEXT_TOKEN = "<|endoftext|>"


@dataclass(frozen=True)
class SessionConfig:
    """Prompt layout and token budget for a ChatSession.

    Attributes:
        max_model_tokens: Context size of the model (prompt + response).
        max_response_tokens: Tokens reserved for the response.
        user_label: Label written before user turns in the prompt.
        assistant_label: Label written before assistant turns.
        end_token: Token appended after every turn.
        sep_token: Token closing the preamble. Defaults to ``end_token``.
        trained_by: Organisation named in the default preamble.
        debug: Log prompts, request bodies and store traffic at DEBUG level.
            A session built with it sets the shared ``threadtkn`` logger to
            DEBUG for the rest of the process.
    """

    max_model_tokens: int = 4096
    max_response_tokens: int = 1000
    user_label: str = "User"
    assistant_label: str = "ChatGPT"
    end_token: str = ENDOFTEXT_TOKEN
    sep_token: str | None = None
    trained_by: str = "OpenAI"
    debug: bool = False

    def __post_init__(self) -> None:
        if self.max_model_tokens <= 0:
            raise ValueError("max_model_tokens must be positive")
        if self.max_response_tokens <= 0:
            raise ValueError("max_response_tokens must be positive")
        if self.max_response_tokens >= self.max_model_tokens:
            raise ValueError("max_response_tokens must be less than max_model_tokens")
        if not self.user_label or not self.assistant_label:
            raise ValueError("user_label and assistant_label must be non-empty")

        # frozen dataclass: fill the default separator through object.__setattr__
        if self.sep_token is None:
            object.__setattr__(self, "sep_token", self.end_token)

    @property
    def max_prompt_tokens(self) -> int:
        """Token budget left for the prompt."""
        return self.max_model_tokens - self.max_response_tokens


@dataclass
class BackendConfig:
    """Connection settings and completion parameters for an HTTP backend.

    Attributes:
        api_key: Provider credential (required).
        api_base_url: Base URL of the provider API.
        api_reverse_proxy_url: Full URL used instead of the provider's
            completion endpoint when set.
        completion_params: Extra body fields (model, temperature, stop, ...).
            Backend defaults are merged underneath.
        headers: Extra HTTP headers sent with every request.
    """

    api_key: str
    api_base_url: str | None = None
    api_reverse_proxy_url: str | None = None
    completion_params: dict[str, Any] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
