"""Token counting utilities."""

from typing import Awaitable, Protocol, runtime_checkable

import tiktoken


# Cache for tokenizer encodings
_ENCODING_CACHE: dict[str, tiktoken.Encoding] = {}

# Chat-tuned completion models use these markers, which tiktoken's
# encodings do not know. They are counted as <|endoftext|>.
_CHAT_SPECIAL_TOKENS = ("<|im_end|>", "<|im_sep|>")


@runtime_checkable
class TokenCounter(Protocol):
    """Maps text to a token count for one model family.

    ``count`` may be a plain or an async function.
    """

    def count(self, text: str) -> int | Awaitable[int]:
        ...


def _get_encoding(model: str) -> tiktoken.Encoding:
    """Get or create a tiktoken encoding for a model.

    Args:
        model: Model name (e.g., "text-davinci-003", "gpt-4").

    Returns:
        Tiktoken encoding for the model.
    """
    if model not in _ENCODING_CACHE:
        try:
            _ENCODING_CACHE[model] = tiktoken.encoding_for_model(model)
        except KeyError:
            # Fallback to cl100k_base for unknown models
            _ENCODING_CACHE[model] = tiktoken.get_encoding("cl100k_base")

    return _ENCODING_CACHE[model]


def is_chat_model(model: str) -> bool:
    """Whether ``model`` is a chat-tuned completion model with im_* markers."""
    return model.startswith("text-chat") or model.startswith("text-davinci-002-render")


def count_tokens_text(text: str, model: str = "text-davinci-003") -> int:
    """Count tokens in a single text string.

    Special tokens inside ``text`` (such as ``<|endoftext|>``) count as one
    token each instead of raising.

    Args:
        text: Text to count tokens for.
        model: Model name for encoding selection.

    Returns:
        Token count.
    """
    encoding = _get_encoding(model)
    return len(encoding.encode(text, allowed_special="all"))


class TiktokenCounter:
    """TokenCounter backed by tiktoken.

    Example:
        >>> counter = TiktokenCounter("text-davinci-003")
        >>> counter.count("Hello, world!")
        4
    """

    def __init__(self, model: str = "text-davinci-003") -> None:
        self._model = model

    @property
    def model(self) -> str:
        return self._model

    def count(self, text: str) -> int:
        if is_chat_model(self._model):
            for marker in _CHAT_SPECIAL_TOKENS:
                text = text.replace(marker, "<|endoftext|>")
        return count_tokens_text(text, self._model)
