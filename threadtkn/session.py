"""Core ChatSession implementation.

The orchestrator that turns a stateless completion backend into a threaded
conversation: it records every turn in the message store, assembles the
context window from the parent chain, calls the backend (blocking or
streamed) under an optional timeout, and records the reply.
"""

import asyncio
import logging
from dataclasses import replace
from datetime import date
from typing import Callable

from threadtkn.assembler import AssembledPrompt, ContextAssembler
from threadtkn.backends.base import CompletionBackend, CompletionResult
from threadtkn.cancellation import CancellationToken
from threadtkn.config import SessionConfig
from threadtkn.errors import CompletionTimeoutError, ValidationError
from threadtkn.ids import new_id, require_uuid_v4
from threadtkn.message import ChatMessage
from threadtkn.storage.base import MessageStore
from threadtkn.storage.memory import MemoryMessageStore
from threadtkn.token_counter import TiktokenCounter, TokenCounter


logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ChatMessage], None]
PersistErrorCallback = Callable[[ChatMessage, Exception], None]


class ChatSession:
    """Stateful multi-turn chat on top of a completion backend.

    Every call to ``send_message`` is one turn: the user message is stored
    before the backend is called, so a failed call can be retried against
    the same history, and the reply is linked to the user message through
    ``parent_message_id``. To continue a conversation, pass the id of the
    last reply as ``parent_message_id``.

    Example:
        >>> import httpx
        >>> from threadtkn import BackendConfig, ChatSession, OpenAICompletionsBackend
        >>>
        >>> async with httpx.AsyncClient(timeout=60) as http:
        ...     backend = OpenAICompletionsBackend(http, BackendConfig(api_key="sk-..."))
        ...     session = ChatSession(backend)
        ...     first = await session.send_message("Help me design a system")
        ...     second = await session.send_message(
        ...         "Now add caching",
        ...         conversation_id=first.conversation_id,
        ...         parent_message_id=first.id,
        ...     )
    """

    def __init__(
        self,
        backend: CompletionBackend,
        config: SessionConfig | None = None,
        store: MessageStore | None = None,
        token_counter: TokenCounter | None = None,
        on_persist_error: PersistErrorCallback | None = None,
        today: Callable[[], date] | None = None,
    ) -> None:
        """Initialize the ChatSession.

        Args:
            backend: Completion backend for LLM calls.
            config: Prompt layout and token limits. Uses the backend's
                defaults if None.
            store: Message store. Uses a bounded MemoryMessageStore if None.
            token_counter: Token counter for prompt assembly. Uses tiktoken
                for the backend's model if None.
            on_persist_error: Optional callback called when storing a reply
                fails after the call already succeeded.
                Receives (message, exception).
            today: Returns the date used in the default preamble.

        Note:
            With ``config.debug`` set, the process-wide ``threadtkn`` logger is
            raised to DEBUG and left there after the session is gone.
        """
        if backend is None:
            raise ValidationError(code="MISSING_BACKEND", message="backend is required")

        self._backend = backend
        self._config = config or backend.default_session_config()
        self._store = store if store is not None else MemoryMessageStore()
        self._token_counter = token_counter or TiktokenCounter(backend.model_name)
        self._on_persist_error = on_persist_error

        assembler_kwargs = {"today": today} if today is not None else {}
        self._assembler = ContextAssembler(
            self._config, self._store, self._token_counter, **assembler_kwargs
        )

        self._pending_writes: set[asyncio.Task] = set()

        # Stats tracking
        self._messages_sent: int = 0
        self._total_prompt_tokens: int = 0
        self._last_prompt_tokens: int = 0
        self._persist_failures: int = 0

        if self._config.debug:
            logging.getLogger("threadtkn").setLevel(logging.DEBUG)

    @property
    def backend(self) -> CompletionBackend:
        """The completion backend being used."""
        return self._backend

    @property
    def config(self) -> SessionConfig:
        """The session configuration."""
        return self._config

    @property
    def store(self) -> MessageStore:
        """The message store being used."""
        return self._store

    @property
    def assembler(self) -> ContextAssembler:
        return self._assembler

    @property
    def api_key(self) -> str:
        return self._backend.api_key

    @api_key.setter
    def api_key(self, value: str) -> None:
        self._backend.api_key = value

    async def send_message(
        self,
        text: str,
        *,
        conversation_id: str | None = None,
        parent_message_id: str | None = None,
        message_id: str | None = None,
        timeout: float | None = None,
        cancel_token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
        stream: bool | None = None,
        precomputed_response: str | None = None,
        prompt_prefix: str | None = None,
        prompt_suffix: str | None = None,
    ) -> ChatMessage:
        """Send a message and get the assistant's reply.

        This is the main entry point:

        1. Validates arguments (before any I/O)
        2. Stores the user message
        3. Assembles the prompt from the parent chain
        4. Calls the backend, or uses ``precomputed_response``
        5. Stores the reply in the background and returns it

        Args:
            text: The user message. Must be non-empty.
            conversation_id: Conversation to continue (new UUID if None).
            parent_message_id: Id of the turn this message replies to.
                Without it the model sees no history.
            message_id: Id for the user message (new UUID if None).
            timeout: Seconds to wait for the backend before failing with
                CompletionTimeoutError. None waits forever.
            cancel_token: Aborts the backend request when fired. Created
                internally when only ``timeout`` is set.
            on_progress: Called with the partial reply after every streamed
                delta. Implies ``stream=True``.
            stream: Request a streamed response. Defaults to whether
                ``on_progress`` is set.
            precomputed_response: When non-empty, used verbatim as the reply
                and the backend is not called. Useful for scripted or
                instructive turns that should not consume quota.
            prompt_prefix: Replaces the default preamble.
            prompt_suffix: Replaces the default assistant cue.

        Returns:
            The assistant message, linked to the user message.

        Raises:
            ValidationError: Bad arguments.
            BackendError: The endpoint returned an error status.
            MalformedResponseError: The response held no completion.
            CompletionTimeoutError: ``timeout`` elapsed.
            RequestCancelledError: ``cancel_token`` fired.
            NetworkError: Transport failure.
        """
        if not isinstance(text, str) or not text.strip():
            raise ValidationError(code="EMPTY_MESSAGE", message="text must be a non-empty string")
        require_uuid_v4(conversation_id, "conversation_id")
        require_uuid_v4(parent_message_id, "parent_message_id")
        require_uuid_v4(message_id, "message_id")
        if timeout is not None and timeout <= 0:
            raise ValidationError(code="INVALID_TIMEOUT", message="timeout must be positive")

        use_backend = not precomputed_response
        if stream is None:
            stream = on_progress is not None
        if stream and use_backend and not self._backend.supports_streaming:
            raise ValidationError(
                code="STREAMING_UNSUPPORTED",
                message=f"{self._backend.name} backend does not support streaming",
            )

        conversation_id = conversation_id or new_id()
        message_id = message_id or new_id()

        owns_token = cancel_token is None and timeout is not None
        token = CancellationToken() if owns_token else cancel_token

        # Replies from earlier turns must be readable before the chain is walked
        await self.drain()

        user_message = ChatMessage(
            id=message_id,
            role="user",
            text=text,
            conversation_id=conversation_id,
            parent_message_id=parent_message_id,
        )
        await self._upsert_message(user_message)

        assembled = await self._assembler.build_prompt(
            text,
            parent_message_id,
            prompt_prefix=prompt_prefix,
            prompt_suffix=prompt_suffix,
        )
        self._messages_sent += 1
        self._last_prompt_tokens = assembled.num_tokens
        self._total_prompt_tokens += assembled.num_tokens

        reply = ChatMessage(
            id=new_id(),
            role="assistant",
            text="",
            conversation_id=conversation_id,
            parent_message_id=message_id,
        )

        if not use_backend:
            reply.text = precomputed_response
        else:
            logger.debug("sendMessage (%d tokens) %r", assembled.num_tokens, assembled.prompt)
            call = self._call_backend(assembled, reply, stream, on_progress, token)
            if timeout is not None:
                completion = await self._with_timeout(call, timeout, token if owns_token else None)
            else:
                completion = await call

            reply.text = completion.text
            reply.detail = {
                "provider": self._backend.name,
                "response_id": completion.response_id,
                "finish_reason": completion.finish_reason,
                "response": completion.detail,
            }

        self._schedule_persist(reply)
        return reply

    async def _call_backend(
        self,
        assembled: AssembledPrompt,
        reply: ChatMessage,
        stream: bool,
        on_progress: ProgressCallback | None,
        token: CancellationToken | None,
    ) -> CompletionResult:
        if not stream:
            return await self._backend.complete(
                assembled.prompt, assembled.max_tokens, cancel_token=token
            )

        def on_delta(cumulative: str, frame: dict) -> None:
            reply.text = cumulative
            if on_progress is not None:
                on_progress(reply)

        return await self._backend.complete_stream(
            assembled.prompt, assembled.max_tokens, on_delta=on_delta, cancel_token=token
        )

    async def _with_timeout(
        self,
        call,
        timeout: float,
        owned_token: CancellationToken | None,
    ) -> CompletionResult:
        try:
            return await asyncio.wait_for(call, timeout)
        except asyncio.TimeoutError as e:
            if owned_token is not None:
                owned_token.cancel("timeout")
            raise CompletionTimeoutError(
                f"{self._backend.name} timed out waiting for response",
                timeout=timeout,
                provider=self._backend.name,
            ) from e

    # --- Persistence ---

    async def _upsert_message(self, message: ChatMessage) -> None:
        logger.debug("upsertMessage %s %r", message.id, message)
        await self._store.set(message.id, message)

    def _schedule_persist(self, message: ChatMessage) -> None:
        task = asyncio.create_task(self._persist_reply(replace(message)))
        self._pending_writes.add(task)
        task.add_done_callback(self._pending_writes.discard)

    async def _persist_reply(self, message: ChatMessage) -> None:
        try:
            await self._upsert_message(message)
        except Exception as e:
            self._persist_failures += 1
            logger.error(
                "Failed to store reply %s (conversation %s): %s",
                message.id, message.conversation_id, e,
            )
            if self._on_persist_error is not None:
                try:
                    self._on_persist_error(message, e)
                except Exception:
                    logger.exception("on_persist_error callback failed for reply %s", message.id)

    async def drain(self) -> None:
        """Wait until every reply scheduled for storage has been written."""
        if self._pending_writes:
            await asyncio.gather(*list(self._pending_writes), return_exceptions=True)

    # --- History ---

    async def get_message(self, message_id: str) -> ChatMessage | None:
        """Look up a stored message by id."""
        message = await self._store.get(message_id)
        logger.debug("getMessageById %s %r", message_id, message)
        return message

    async def get_thread(self, message_id: str) -> list[ChatMessage]:
        """Get the conversation leading up to (and including) a message.

        Args:
            message_id: Last message of the thread.

        Pending reply writes are awaited first, so a reply that was just
        returned is part of its own thread.

        Returns:
            Messages oldest first. Stops early where a parent is missing
            (e.g. evicted from the store).
        """
        await self.drain()

        thread: list[ChatMessage] = []
        seen: set[str] = set()
        current_id: str | None = message_id

        while current_id and current_id not in seen:
            seen.add(current_id)
            message = await self.get_message(current_id)
            if message is None:
                break
            thread.append(message)
            current_id = message.parent_message_id

        thread.reverse()
        return thread

    def get_stats(self) -> dict:
        """Get session statistics.

        Returns:
            Dictionary with stats:
            - messages_sent: Number of send_message calls that reached assembly
            - last_prompt_tokens: Token count of the most recent prompt
            - total_prompt_tokens: Prompt tokens across all calls
            - max_prompt_tokens: Prompt budget from the config
            - pending_writes: Replies not yet stored
            - persist_failures: Replies that could not be stored
        """
        return {
            "messages_sent": self._messages_sent,
            "last_prompt_tokens": self._last_prompt_tokens,
            "total_prompt_tokens": self._total_prompt_tokens,
            "max_prompt_tokens": self._config.max_prompt_tokens,
            "pending_writes": len(self._pending_writes),
            "persist_failures": self._persist_failures,
        }
