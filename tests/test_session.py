"""Tests for ChatSession."""

import asyncio
import json
import logging
import uuid
from datetime import date

import httpx
import pytest

from threadtkn import (
    BackendConfig,
    BackendError,
    CancellationToken,
    ChatMessage,
    ChatSession,
    CompletionResult,
    CompletionTimeoutError,
    MalformedResponseError,
    MemoryMessageStore,
    OpenAICompletionsBackend,
    AlephAlphaBackend,
    RequestCancelledError,
    SessionConfig,
    StoreError,
    ValidationError,
)


class WordCounter:
    def count(self, text: str) -> int:
        return len(text.split())


class MockBackend:
    """Mock backend for testing."""

    name = "mock"

    def __init__(self, responses: list[str] | None = None, error: Exception | None = None):
        self._responses = responses or ["Mock response"]
        self._error = error
        self._api_key = "sk-mock"
        self.calls: list[tuple[str, int]] = []

    @property
    def model_name(self) -> str:
        return "mock-model"

    @property
    def api_key(self) -> str:
        return self._api_key

    @api_key.setter
    def api_key(self, value: str) -> None:
        self._api_key = value

    @property
    def supports_streaming(self) -> bool:
        return True

    def default_session_config(self) -> SessionConfig:
        return SessionConfig(max_model_tokens=200, max_response_tokens=50)

    async def complete(self, prompt, max_tokens, *, cancel_token=None):
        self.calls.append((prompt, max_tokens))
        if self._error is not None:
            raise self._error
        text = self._responses[(len(self.calls) - 1) % len(self._responses)]
        return CompletionResult(text=text, response_id=f"cmpl-{len(self.calls)}", finish_reason="stop")

    async def complete_stream(self, prompt, max_tokens, *, on_delta=None, cancel_token=None):
        self.calls.append((prompt, max_tokens))
        text = ""
        for part in self._responses:
            text += part
            if on_delta is not None:
                on_delta(text, {"text": part})
        return CompletionResult(text=text.strip(), response_id="cmpl-stream", finish_reason="stop")


class FailingReplyStore(MemoryMessageStore):
    """Accepts user messages, rejects assistant replies."""

    async def set(self, message_id, message):
        if message.role == "assistant":
            raise StoreError(code="STORE_WRITE_ERROR", message="disk full")
        await super().set(message_id, message)


def _session(backend=None, **kwargs) -> ChatSession:
    kwargs.setdefault("token_counter", WordCounter())
    kwargs.setdefault("today", lambda: date(2023, 2, 1))
    return ChatSession(backend or MockBackend(), **kwargs)


def _hanging_client() -> httpx.AsyncClient:
    async def handler(request: httpx.Request) -> httpx.Response:
        await asyncio.sleep(30)
        return httpx.Response(200, json={"choices": [{"text": "too late"}]})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class TestSendMessage:
    """Tests for the basic send/receive cycle."""

    @pytest.mark.asyncio
    async def test_basic_reply(self):
        """Test a reply is returned and linked to the user message."""
        backend = MockBackend(["  Hello there!  "])
        session = _session(backend)
        message_id = str(uuid.uuid4())

        reply = await session.send_message("Hello", message_id=message_id)

        assert reply.role == "assistant"
        assert reply.text == "  Hello there!  "
        assert reply.parent_message_id == message_id
        assert uuid.UUID(reply.id).version == 4
        assert uuid.UUID(reply.conversation_id).version == 4
        assert len(backend.calls) == 1

    @pytest.mark.asyncio
    async def test_both_messages_stored(self):
        """Test the user message and the reply both end up in the store."""
        store = MemoryMessageStore()
        session = _session(store=store)

        reply = await session.send_message("Hello")
        await session.drain()

        stored_reply = await store.get(reply.id)
        stored_user = await store.get(reply.parent_message_id)
        assert stored_reply.text == reply.text
        assert stored_user.role == "user"
        assert stored_user.text == "Hello"
        assert stored_user.conversation_id == reply.conversation_id

    @pytest.mark.asyncio
    async def test_reply_detail(self):
        """Test provider metadata is attached to the reply."""
        session = _session()

        reply = await session.send_message("Hello")

        assert reply.detail["provider"] == "mock"
        assert reply.detail["response_id"] == "cmpl-1"
        assert reply.detail["finish_reason"] == "stop"

    @pytest.mark.asyncio
    async def test_follow_up_sees_history(self):
        """Test a reply to the previous answer carries the whole thread."""
        backend = MockBackend(["Paris is the capital.", "About two million."])
        session = _session(backend)

        first = await session.send_message("Capital of France?")
        second = await session.send_message(
            "Population?",
            conversation_id=first.conversation_id,
            parent_message_id=first.id,
        )

        prompt, _ = backend.calls[1]
        assert "Capital of France?" in prompt
        assert "Paris is the capital." in prompt
        assert prompt.index("Paris is the capital.") < prompt.index("Population?")
        assert second.conversation_id == first.conversation_id

    @pytest.mark.asyncio
    async def test_follow_up_user_message_links_to_reply(self):
        """Test the stored follow-up points at the reply it answers."""
        store = MemoryMessageStore()
        session = _session(MockBackend(["First answer", "Second answer"]), store=store)

        first = await session.send_message("First question")
        second = await session.send_message(
            "Second question",
            conversation_id=first.conversation_id,
            parent_message_id=first.id,
        )
        await session.drain()

        stored_user = await store.get(second.parent_message_id)
        assert stored_user.role == "user"
        assert stored_user.text == "Second question"
        assert stored_user.parent_message_id == first.id
        assert (await store.get(second.id)).parent_message_id == stored_user.id

    @pytest.mark.asyncio
    async def test_get_thread(self):
        """Test the thread is returned oldest first."""
        session = _session(MockBackend(["A", "B"]))

        first = await session.send_message("one")
        second = await session.send_message(
            "two", conversation_id=first.conversation_id, parent_message_id=first.id
        )
        await session.drain()

        thread = await session.get_thread(second.id)

        assert [m.text for m in thread] == ["one", "A", "two", "B"]
        assert [m.role for m in thread] == ["user", "assistant", "user", "assistant"]

    @pytest.mark.asyncio
    async def test_max_tokens_passed_to_backend(self):
        """Test the response budget from assembly reaches the backend."""
        backend = MockBackend()
        session = _session(backend)

        await session.send_message("Hello")

        _, max_tokens = backend.calls[0]
        assert max_tokens == 50

    @pytest.mark.asyncio
    async def test_stats_tracking(self):
        """Test that stats are tracked correctly."""
        session = _session()

        await session.send_message("Hello")
        await session.send_message("Again")
        stats = session.get_stats()

        assert stats["messages_sent"] == 2
        assert stats["last_prompt_tokens"] > 0
        assert stats["total_prompt_tokens"] >= stats["last_prompt_tokens"]
        assert stats["max_prompt_tokens"] == 150
        assert stats["persist_failures"] == 0


class TestPrecomputedResponse:
    """Tests for replies supplied by the caller."""

    @pytest.mark.asyncio
    async def test_backend_not_called(self):
        """Test the backend is skipped and both messages are stored."""
        backend = MockBackend()
        store = MemoryMessageStore()
        session = _session(backend, store=store)

        reply = await session.send_message("Hello", precomputed_response="Scripted answer")
        await session.drain()

        assert backend.calls == []
        assert reply.text == "Scripted answer"
        assert reply.detail is None
        assert len(store) == 2

    @pytest.mark.asyncio
    async def test_empty_precomputed_calls_backend(self):
        """Test an empty precomputed response is ignored."""
        backend = MockBackend(["From model"])
        session = _session(backend)

        reply = await session.send_message("Hello", precomputed_response="")

        assert len(backend.calls) == 1
        assert reply.text == "From model"


class TestValidation:
    """Tests for argument checks done before any I/O."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", "   "])
    async def test_empty_text(self, text):
        """Test empty messages are rejected."""
        backend = MockBackend()
        store = MemoryMessageStore()
        session = _session(backend, store=store)

        with pytest.raises(ValidationError) as exc_info:
            await session.send_message(text)

        assert exc_info.value.code == "EMPTY_MESSAGE"
        assert len(store) == 0
        assert backend.calls == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("field", ["conversation_id", "parent_message_id", "message_id"])
    async def test_invalid_ids(self, field):
        """Test ids that are not UUID v4 are rejected."""
        store = MemoryMessageStore()
        session = _session(store=store)

        with pytest.raises(ValidationError) as exc_info:
            await session.send_message("Hello", **{field: "not-a-uuid"})

        assert exc_info.value.code == "INVALID_ID"
        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_uuid_v1_rejected(self):
        """Test a valid UUID of another version is rejected."""
        session = _session()

        with pytest.raises(ValidationError):
            await session.send_message("Hello", message_id=str(uuid.uuid1()))

    @pytest.mark.asyncio
    async def test_non_positive_timeout(self):
        """Test a zero timeout is rejected."""
        session = _session()

        with pytest.raises(ValidationError) as exc_info:
            await session.send_message("Hello", timeout=0)

        assert exc_info.value.code == "INVALID_TIMEOUT"

    @pytest.mark.asyncio
    async def test_streaming_unsupported(self):
        """Test streaming from a non-streaming backend fails up front."""
        async with httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500))) as http:
            backend = AlephAlphaBackend(http, BackendConfig(api_key="key"))
            store = MemoryMessageStore()
            session = _session(backend, store=store)

            with pytest.raises(ValidationError) as exc_info:
                await session.send_message("Hello", on_progress=lambda m: None)

        assert exc_info.value.code == "STREAMING_UNSUPPORTED"
        assert len(store) == 0

    def test_missing_backend(self):
        """Test a session needs a backend."""
        with pytest.raises(ValidationError):
            ChatSession(None)


class TestFailures:
    """Tests for backend failures and what gets stored."""

    @pytest.mark.asyncio
    async def test_user_message_kept_on_backend_error(self):
        """Test the user message survives a failed call, the reply is never written."""
        error = BackendError("mock error 500: boom", status_code=500, reason="boom")
        store = MemoryMessageStore()
        session = _session(MockBackend(error=error), store=store)
        message_id = str(uuid.uuid4())

        with pytest.raises(BackendError):
            await session.send_message("Hello", message_id=message_id)
        await session.drain()

        assert len(store) == 1
        assert (await store.get(message_id)).text == "Hello"

    @pytest.mark.asyncio
    async def test_malformed_response_not_stored(self):
        """Test a payload without choices raises and writes no reply."""
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"id": "cmpl-1", "choices": []})

        store = MemoryMessageStore()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            backend = OpenAICompletionsBackend(http, BackendConfig(api_key="sk-test"))
            session = _session(backend, store=store)

            with pytest.raises(MalformedResponseError):
                await session.send_message("Hello")
            await session.drain()

        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_timeout(self):
        """Test a response slower than the timeout fails and is not stored."""
        store = MemoryMessageStore()
        async with _hanging_client() as http:
            backend = OpenAICompletionsBackend(http, BackendConfig(api_key="sk-test"))
            session = _session(backend, store=store)

            with pytest.raises(CompletionTimeoutError) as exc_info:
                await session.send_message("Hello", timeout=0.05)
            await session.drain()

        assert exc_info.value.code == "TIMEOUT"
        assert exc_info.value.timeout == 0.05
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_cancel_token(self):
        """Test firing the token aborts the request."""
        store = MemoryMessageStore()
        token = CancellationToken()
        async with _hanging_client() as http:
            backend = OpenAICompletionsBackend(http, BackendConfig(api_key="sk-test"))
            session = _session(backend, store=store)

            task = asyncio.create_task(session.send_message("Hello", cancel_token=token))
            await asyncio.sleep(0.05)
            token.cancel("user pressed stop")

            with pytest.raises(RequestCancelledError) as exc_info:
                await task
            await session.drain()

        assert "user pressed stop" in str(exc_info.value)
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_already_cancelled_token(self):
        """Test a token fired before the call short-circuits the backend."""
        token = CancellationToken()
        token.cancel()
        async with _hanging_client() as http:
            backend = OpenAICompletionsBackend(http, BackendConfig(api_key="sk-test"))
            session = _session(backend)

            with pytest.raises(RequestCancelledError):
                await session.send_message("Hello", cancel_token=token)

    @pytest.mark.asyncio
    async def test_persist_error_callback(self):
        """Test a failed reply write is reported, not raised."""
        failures: list[tuple[ChatMessage, Exception]] = []
        session = _session(
            MockBackend(["Saved?"]),
            store=FailingReplyStore(),
            on_persist_error=lambda message, error: failures.append((message, error)),
        )

        reply = await session.send_message("Hello")
        await session.drain()

        assert reply.text == "Saved?"
        assert len(failures) == 1
        assert failures[0][0].id == reply.id
        assert isinstance(failures[0][1], StoreError)
        assert session.get_stats()["persist_failures"] == 1

    @pytest.mark.asyncio
    async def test_failing_persist_error_callback_is_logged(self, caplog):
        """Test an exception from the callback is logged, not lost."""
        def on_persist_error(message, error):
            raise RuntimeError("alerting is down")

        session = _session(
            MockBackend(["Saved?"]),
            store=FailingReplyStore(),
            on_persist_error=on_persist_error,
        )

        with caplog.at_level(logging.ERROR, logger="threadtkn"):
            reply = await session.send_message("Hello")
            await session.drain()

        callback_records = [r for r in caplog.records if "callback failed" in r.getMessage()]
        assert len(callback_records) == 1
        assert reply.id in callback_records[0].getMessage()
        assert callback_records[0].exc_info[0] is RuntimeError
        assert session.get_stats()["persist_failures"] == 1


class TestStreaming:
    """Tests for streamed replies."""

    @pytest.mark.asyncio
    async def test_progress_sees_cumulative_text(self):
        """Test on_progress gets the reply growing delta by delta."""
        seen: list[str] = []
        session = _session(MockBackend(["Hel", "lo"]))

        reply = await session.send_message("Hi", on_progress=lambda m: seen.append(m.text))

        assert seen == ["Hel", "Hello"]
        assert reply.text == "Hello"
        assert reply.detail["response_id"] == "cmpl-stream"

    @pytest.mark.asyncio
    async def test_streamed_reply_over_http(self):
        """Test a streamed OpenAI completion end to end."""
        frames = [
            {"id": "cmpl-9", "choices": [{"text": "Hel", "finish_reason": None}]},
            {"id": "cmpl-9", "choices": [{"text": "lo", "finish_reason": "stop"}]},
        ]
        body = "".join(f"data: {json.dumps(f)}\n\n" for f in frames) + "data: [DONE]\n\n"
        requests: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(json.loads(request.content))
            return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

        seen: list[str] = []
        store = MemoryMessageStore()
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            backend = OpenAICompletionsBackend(http, BackendConfig(api_key="sk-test"))
            session = _session(backend, store=store)

            reply = await session.send_message("Hi", on_progress=lambda m: seen.append(m.text))
            await session.drain()

        assert requests[0]["stream"] is True
        assert seen == ["Hel", "Hello"]
        assert reply.text == "Hello"
        assert reply.detail["response_id"] == "cmpl-9"
        assert reply.detail["finish_reason"] == "stop"
        assert (await store.get(reply.id)).text == "Hello"

    @pytest.mark.asyncio
    async def test_stream_flag_without_callback(self):
        """Test stream=True works without a progress callback."""
        backend = MockBackend(["a", "b"])
        session = _session(backend)

        reply = await session.send_message("Hi", stream=True)

        assert reply.text == "ab"


class TestApiKey:
    """Tests for the api_key accessor."""

    def test_get_and_set(self):
        """Test the key is read from and written to the backend."""
        backend = MockBackend()
        session = _session(backend)

        assert session.api_key == "sk-mock"
        session.api_key = "sk-new"

        assert backend.api_key == "sk-new"

    @pytest.mark.asyncio
    async def test_new_key_used_for_requests(self):
        """Test later requests carry the replaced key."""
        seen_auth: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen_auth.append(request.headers["Authorization"])
            return httpx.Response(200, json={"choices": [{"text": "ok"}]})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            backend = OpenAICompletionsBackend(http, BackendConfig(api_key="sk-old"))
            session = _session(backend)
            session.api_key = "sk-new"

            await session.send_message("Hello")

        assert seen_auth == ["Bearer sk-new"]


class TestDefaults:
    """Tests for defaults derived from the backend."""

    def test_config_from_backend(self):
        """Test the backend's session config is used when none is given."""
        session = _session()

        assert session.config.max_model_tokens == 200
        assert session.config.max_response_tokens == 50

    def test_explicit_config_wins(self):
        """Test an explicit config overrides the backend defaults."""
        config = SessionConfig(max_model_tokens=1000, max_response_tokens=100)
        session = _session(config=config)

        assert session.config is config
        assert session.assembler is not None

    def test_debug_raises_package_logger(self):
        """Test debug=True sets the shared threadtkn logger to DEBUG."""
        package_logger = logging.getLogger("threadtkn")
        previous = package_logger.level
        try:
            package_logger.setLevel(logging.WARNING)
            _session(config=SessionConfig(debug=True))

            assert package_logger.level == logging.DEBUG
        finally:
            package_logger.setLevel(previous)

    def test_no_debug_leaves_logger_alone(self):
        """Test a session without debug does not touch logging levels."""
        package_logger = logging.getLogger("threadtkn")
        previous = package_logger.level
        try:
            package_logger.setLevel(logging.WARNING)
            _session()

            assert package_logger.level == logging.WARNING
        finally:
            package_logger.setLevel(previous)
