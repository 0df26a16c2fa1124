"""threadTKN - Threaded conversations over flat completion APIs.

Multi-turn chat on top of a token-limited text completion endpoint.
Every turn is stored with a pointer to its parent; each new prompt is
rebuilt from that chain, keeping as much recent history as fits in the
model's token budget.

Example:
    >>> import httpx
    >>> from threadtkn import BackendConfig, ChatSession, OpenAICompletionsBackend
    >>>
    >>> async with httpx.AsyncClient(timeout=60) as http:
    ...     backend = OpenAICompletionsBackend(http, BackendConfig(api_key="sk-..."))
    ...     session = ChatSession(backend)
    ...     reply = await session.send_message("Help me design a distributed system")
    ...     follow_up = await session.send_message(
    ...         "What about caching?",
    ...         conversation_id=reply.conversation_id,
    ...         parent_message_id=reply.id,
    ...     )
"""

from threadtkn.assembler import AssembledPrompt, ContextAssembler
from threadtkn.backends.base import CompletionBackend, CompletionResult
from threadtkn.backends.aleph_alpha import AlephAlphaBackend
from threadtkn.backends.openai_completions import OpenAICompletionsBackend
from threadtkn.cancellation import CancellationToken
from threadtkn.config import BackendConfig, SessionConfig
from threadtkn.errors import (
    BackendError,
    CompletionTimeoutError,
    MalformedResponseError,
    NetworkError,
    RequestCancelledError,
    StoreError,
    StreamInterruptedError,
    ThreadTknError,
    ValidationError,
)
from threadtkn.message import ChatMessage
from threadtkn.session import ChatSession
from threadtkn.storage.base import MessageStore
from threadtkn.storage.file import FileMessageStore
from threadtkn.storage.memory import MemoryMessageStore
from threadtkn.token_counter import TiktokenCounter, TokenCounter

__version__ = "0.1.0"

__all__ = [
    # Core
    "ChatSession",
    "ChatMessage",
    "SessionConfig",
    "BackendConfig",
    "ContextAssembler",
    "AssembledPrompt",
    "CancellationToken",
    # Backends
    "CompletionBackend",
    "CompletionResult",
    "OpenAICompletionsBackend",
    "AlephAlphaBackend",
    # Storage
    "MessageStore",
    "MemoryMessageStore",
    "FileMessageStore",
    # Tokens
    "TokenCounter",
    "TiktokenCounter",
    # Errors
    "ThreadTknError",
    "ValidationError",
    "BackendError",
    "MalformedResponseError",
    "CompletionTimeoutError",
    "RequestCancelledError",
    "NetworkError",
    "StreamInterruptedError",
    "StoreError",
    # Version
    "__version__",
]


# Lazy import for OpenAIChatBackend to avoid requiring openai as dependency
def __getattr__(name: str):
    if name == "OpenAIChatBackend":
        from threadtkn.backends.openai import OpenAIChatBackend
        return OpenAIChatBackend
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
