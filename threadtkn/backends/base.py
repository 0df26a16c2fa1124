"""Base protocol for completion backends."""

from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, runtime_checkable

from threadtkn.cancellation import CancellationToken
from threadtkn.config import SessionConfig


# Called with (cumulative_text, raw_frame) for every streamed delta.
DeltaCallback = Callable[[str, dict[str, Any]], None]


@dataclass
class CompletionResult:
    """Text generated by a backend plus provider metadata.

    Attributes:
        text: Generated text, stripped of surrounding whitespace.
        response_id: Provider's id for the response, if any.
        finish_reason: Why generation stopped, if reported.
        detail: Last raw response payload (or stream frame).
    """
    text: str
    response_id: str | None = None
    finish_reason: str | None = None
    detail: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class CompletionBackend(Protocol):
    """Protocol that all completion backends must implement.

    A backend owns one provider's wire format: it turns a prompt string and a
    response budget into a request, sends it, and extracts the generated
    text. ChatSession is written against this protocol only, so new
    providers plug in by implementing it.
    """

    name: str

    @property
    def model_name(self) -> str:
        """Return the model name being used."""
        ...

    @property
    def api_key(self) -> str:
        """Credential sent with every request."""
        ...

    @api_key.setter
    def api_key(self, value: str) -> None:
        ...

    @property
    def supports_streaming(self) -> bool:
        """Whether ``complete_stream`` is available."""
        ...

    def default_session_config(self) -> SessionConfig:
        """Token limits, labels and end tokens suited to this model."""
        ...

    async def complete(
        self,
        prompt: str,
        max_tokens: int,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> CompletionResult:
        """Send a prompt and wait for the full completion.

        Args:
            prompt: Fully assembled prompt.
            max_tokens: Response token budget.
            cancel_token: Aborts the request when fired.

        Returns:
            The completion.

        Raises:
            BackendError: Non-success HTTP status.
            MalformedResponseError: No completion in the payload.
            NetworkError: Transport failure.
            RequestCancelledError: The token fired.
        """
        ...

    async def complete_stream(
        self,
        prompt: str,
        max_tokens: int,
        *,
        on_delta: DeltaCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> CompletionResult:
        """Send a prompt and aggregate the streamed completion.

        ``on_delta`` receives the cumulative text after every delta.
        Raises the same errors as ``complete``, plus StreamInterruptedError
        when the stream breaks before any content arrived.
        """
        ...
