"""Completion backends for different LLM providers."""

from threadtkn.backends.base import CompletionBackend, CompletionResult
from threadtkn.backends.http import HttpCompletionBackend
from threadtkn.backends.openai_completions import OpenAICompletionsBackend
from threadtkn.backends.aleph_alpha import AlephAlphaBackend

__all__ = [
    "CompletionBackend",
    "CompletionResult",
    "HttpCompletionBackend",
    "OpenAICompletionsBackend",
    "AlephAlphaBackend",
]

# Lazy imports for optional dependencies
def __getattr__(name: str):
    if name == "OpenAIChatBackend":
        from threadtkn.backends.openai import OpenAIChatBackend
        return OpenAIChatBackend
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
