"""
Stream Coordinator Tests
------------------------
Tests for streamed generation, fallback, cancellation and persistence.

Test Cases:
1. Chunks forwarded in order and the reply stored once
2. Generation failure streams and stores the fallback reply
3. Cancellation stops generation and stores nothing
4. Persistence failure surfaces on the error sequence
5. An undrained consumer never blocks the producer
"""

import asyncio
import gc
from pathlib import Path

import pytest

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from api.client import MockLLMClient
from core.errors import InvalidInputError, UnavailableError
from core.state_machine import SessionState
from core.streaming import FALLBACK_REPLY, StreamCoordinator
from infra.database import SenderKind

PROMPT = [{"role": "user", "content": "hi"}]
TIMEOUT = 5.0


class FailingRepository:
    """Repository whose writes always fail."""

    def __init__(self):
        self.summaries = []

    def save_message(self, conversation_id, sender_kind, content, sender_id=0):
        raise RuntimeError("disk full")

    def update_conversation_summary(self, conversation_id, last_text):
        self.summaries.append(last_text)

    def get_recent_messages(self, conversation_id, count=10):
        return []


async def hang_after_first_chunk(messages, on_chunk):
    await on_chunk("first")
    await asyncio.Event().wait()


async def drain(session):
    return await asyncio.wait_for(session.data.collect(), TIMEOUT)


@pytest.fixture
def coordinator(temp_db, memory_store):
    return StreamCoordinator(temp_db, memory_store, long_term_weight=0.8)


class TestSuccessfulStream:
    """Generation that completes normally."""

    @pytest.mark.asyncio
    async def test_chunks_in_order_and_persisted(self, coordinator, temp_db, memory_store, conversation, persona):
        client = MockLLMClient(chunks=["Hel", "lo", "!"])

        session = coordinator.begin(conversation.id, persona.id, PROMPT, client.generate_stream)
        chunks = await drain(session)
        state = await session.wait()

        assert chunks == ["Hel", "lo", "!"]
        assert state == SessionState.COMPLETED
        assert await session.errors.collect() == []
        assert session.used_fallback is False

        stored = temp_db.get_message(session.message_id)
        assert stored.content == "Hello!"
        assert stored.sender_kind == SenderKind.STAR
        assert stored.sender_id == persona.id
        assert temp_db.get_conversation(conversation.id).last_message == "Hello!"

        assert memory_store.get_short_term_memory(conversation.id) == ["Hello!"]
        items = memory_store.get_items(conversation.id)
        assert [item.weight for item in items if item.content == "Hello!"] == [1.0, 0.8]

    @pytest.mark.asyncio
    async def test_undrained_consumer_does_not_block(self, coordinator, temp_db, conversation, persona):
        client = MockLLMClient(chunks=[f"c{i}" for i in range(200)])

        session = coordinator.begin(conversation.id, persona.id, PROMPT, client.generate_stream)
        state = await asyncio.wait_for(session.wait(), TIMEOUT)

        assert state == SessionState.COMPLETED
        assert session.data.closed and session.errors.closed
        assert temp_db.count_messages(conversation.id) == 1

    @pytest.mark.asyncio
    async def test_history_records_single_transition(self, coordinator, conversation, persona):
        session = coordinator.begin(conversation.id, persona.id, PROMPT, MockLLMClient().generate_stream)
        await session.wait()

        assert [t.to_state for t in session.history] == [SessionState.COMPLETED]
        assert coordinator.active_sessions == 0


class TestFallback:
    """Generation failures become the fallback reply."""

    @pytest.mark.asyncio
    async def test_failure_before_any_chunk(self, coordinator, temp_db, conversation, persona):
        client = MockLLMClient(fail=True)

        session = coordinator.begin(conversation.id, persona.id, PROMPT, client.generate_stream)
        chunks = await drain(session)

        assert chunks == [FALLBACK_REPLY]
        assert await session.wait() == SessionState.COMPLETED
        assert session.used_fallback is True
        assert temp_db.get_message(session.message_id).content == FALLBACK_REPLY

    @pytest.mark.asyncio
    async def test_failure_mid_stream_keeps_partial_text(self, coordinator, temp_db, conversation, persona):
        client = MockLLMClient(chunks=["Hi ", "there", "!"], fail=True, fail_after=1)

        session = coordinator.begin(conversation.id, persona.id, PROMPT, client.generate_stream)
        chunks = await drain(session)
        await session.wait()

        assert chunks == ["Hi ", FALLBACK_REPLY]
        assert temp_db.get_message(session.message_id).content == "Hi " + FALLBACK_REPLY

    @pytest.mark.asyncio
    async def test_empty_completion_uses_fallback(self, coordinator, conversation, persona):
        client = MockLLMClient(chunks=[])

        session = coordinator.begin(conversation.id, persona.id, PROMPT, client.generate_stream)

        assert await drain(session) == [FALLBACK_REPLY]
        assert await session.wait() == SessionState.COMPLETED

    @pytest.mark.asyncio
    async def test_custom_fallback_reply(self, temp_db, memory_store, conversation, persona):
        coordinator = StreamCoordinator(temp_db, memory_store, fallback_reply="brb")

        session = coordinator.begin(conversation.id, persona.id, PROMPT, MockLLMClient(fail=True).generate_stream)

        assert await drain(session) == ["brb"]


class TestCancellation:
    """Caller cancellation before completion stores nothing."""

    @pytest.mark.asyncio
    async def test_cancel_after_first_chunk(self, coordinator, temp_db, memory_store, conversation, persona):
        session = coordinator.begin(conversation.id, persona.id, PROMPT, hang_after_first_chunk)

        first = await asyncio.wait_for(session.data.__anext__(), TIMEOUT)
        session.cancel()
        rest = await drain(session)
        state = await session.wait()

        assert first == "first"
        assert rest == []
        assert state == SessionState.CANCELLED
        assert await session.errors.collect() == []
        assert session.message_id is None
        assert temp_db.count_messages(conversation.id) == 0
        assert memory_store.get_items(conversation.id) == []

    @pytest.mark.asyncio
    async def test_cancel_event_set_before_start(self, coordinator, temp_db, conversation, persona):
        client = MockLLMClient()
        cancel_event = asyncio.Event()
        cancel_event.set()

        session = coordinator.begin(conversation.id, persona.id, PROMPT, client.generate_stream, cancel_event)

        assert await drain(session) == []
        assert await session.wait() == SessionState.CANCELLED
        assert client.calls == []

    @pytest.mark.asyncio
    async def test_cancel_between_chunks(self, coordinator, temp_db, conversation, persona):
        client = MockLLMClient(chunks=["a", "b", "c", "d"], delay=0.05)

        session = coordinator.begin(conversation.id, persona.id, PROMPT, client.generate_stream)
        first = await asyncio.wait_for(session.data.__anext__(), TIMEOUT)
        session.cancel()
        await drain(session)

        assert first == "a"
        assert await session.wait() == SessionState.CANCELLED
        assert session.chunk_count < 4
        assert temp_db.count_messages(conversation.id) == 0

    @pytest.mark.asyncio
    async def test_shutdown_cancels_active_sessions(self, coordinator, conversation, persona):
        session = coordinator.begin(conversation.id, persona.id, PROMPT, hang_after_first_chunk)
        await asyncio.wait_for(session.data.__anext__(), TIMEOUT)

        await asyncio.wait_for(coordinator.shutdown(), TIMEOUT)

        assert session.state == SessionState.CANCELLED
        assert session.data.closed
        assert coordinator.active_sessions == 0

    @pytest.mark.asyncio
    async def test_cancel_after_completion_is_noop(self, coordinator, conversation, persona):
        session = coordinator.begin(conversation.id, persona.id, PROMPT, MockLLMClient().generate_stream)
        await session.wait()

        session.cancel()

        assert session.state == SessionState.COMPLETED


class TestCancelRacingWrappedErrors:
    """A cancel landing with the next chunk is still a cancel, however the backend reports it."""

    @staticmethod
    def backend(tick, chained=True):
        async def generate(messages, on_chunk):
            try:
                await on_chunk("first")
                await tick.wait()
                await on_chunk("second")
            except Exception as e:
                if chained:
                    raise UnavailableError(f"callback error: {e}", backend="llm") from e
                raise RuntimeError(f"callback error: {e}") from None
        return generate

    @pytest.mark.asyncio
    @pytest.mark.parametrize("chained", [True, False])
    async def test_wrapped_cancel_stores_nothing(self, coordinator, temp_db, memory_store, conversation, persona, chained):
        tick = asyncio.Event()
        session = coordinator.begin(conversation.id, persona.id, PROMPT, self.backend(tick, chained))

        first = await asyncio.wait_for(session.data.__anext__(), TIMEOUT)
        session.cancel()
        tick.set()
        rest = await drain(session)

        assert first == "first"
        assert rest == []
        assert await session.wait() == SessionState.CANCELLED
        assert session.used_fallback is False
        assert session.message_id is None
        assert temp_db.count_messages(conversation.id) == 0
        assert memory_store.get_items(conversation.id) == []

    @pytest.mark.asyncio
    async def test_failure_without_cancel_still_falls_back(self, coordinator, temp_db, conversation, persona):
        async def generate(messages, on_chunk):
            await on_chunk("first")
            raise UnavailableError("callback error: connection reset", backend="llm")

        session = coordinator.begin(conversation.id, persona.id, PROMPT, generate)

        assert await drain(session) == ["first", FALLBACK_REPLY]
        assert await session.wait() == SessionState.COMPLETED


class TestConversationLocks:
    """Commit locks do not outlive their users."""

    @pytest.mark.asyncio
    async def test_locks_released_after_sessions_finish(self, coordinator, conversation, persona):
        sessions = [
            coordinator.begin(conversation.id, persona.id, PROMPT, MockLLMClient(chunks=[str(i)]).generate_stream)
            for i in range(3)
        ]
        await asyncio.wait_for(asyncio.gather(*(s.wait() for s in sessions)), TIMEOUT)
        gc.collect()

        assert len(coordinator._locks) == 0

    @pytest.mark.asyncio
    async def test_same_lock_while_held(self, coordinator):
        lock = coordinator.conversation_lock(5)
        async with lock:
            assert coordinator.conversation_lock(5) is lock
            assert coordinator.conversation_lock(6) is not lock


class TestPersistenceFailure:
    """A failing repository ends the session FAILED with one error."""

    @pytest.mark.asyncio
    async def test_error_sequence_carries_unavailable(self, memory_store):
        repository = FailingRepository()
        coordinator = StreamCoordinator(repository, memory_store)

        session = coordinator.begin(1, 2, PROMPT, MockLLMClient(chunks=["x"]).generate_stream)
        chunks = await drain(session)
        errors = await asyncio.wait_for(session.errors.collect(), TIMEOUT)

        assert chunks == ["x"]
        assert len(errors) == 1
        assert isinstance(errors[0], UnavailableError)
        assert "disk full" in str(errors[0])
        assert await session.wait() == SessionState.FAILED
        assert session.error is errors[0]
        assert memory_store.get_items(1) == []
        assert repository.summaries == []

    @pytest.mark.asyncio
    async def test_unknown_conversation_fails(self, coordinator, memory_store):
        session = coordinator.begin(9999, 1, PROMPT, MockLLMClient().generate_stream)
        await drain(session)

        assert await session.wait() == SessionState.FAILED
        assert len(await session.errors.collect()) == 1
        assert memory_store.get_items(9999) == []


class TestBeginValidation:
    """begin() validates its arguments synchronously."""

    @pytest.mark.asyncio
    async def test_negative_conversation_id(self, coordinator):
        with pytest.raises(InvalidInputError):
            coordinator.begin(-1, 1, PROMPT, MockLLMClient().generate_stream)

    @pytest.mark.asyncio
    async def test_non_integer_persona_id(self, coordinator):
        with pytest.raises(InvalidInputError):
            coordinator.begin(1, "star", PROMPT, MockLLMClient().generate_stream)

    @pytest.mark.asyncio
    async def test_generator_must_be_callable(self, coordinator):
        with pytest.raises(InvalidInputError):
            coordinator.begin(1, 1, PROMPT, None)
        assert coordinator.active_sessions == 0


class TestSameConversation:
    """Concurrent sessions on one conversation both persist."""

    @pytest.mark.asyncio
    async def test_two_sessions_both_stored(self, coordinator, temp_db, memory_store, conversation, persona):
        first = coordinator.begin(conversation.id, persona.id, PROMPT, MockLLMClient(chunks=["one"]).generate_stream)
        second = coordinator.begin(conversation.id, persona.id, PROMPT, MockLLMClient(chunks=["two"]).generate_stream)

        states = await asyncio.wait_for(asyncio.gather(first.wait(), second.wait()), TIMEOUT)

        assert states == [SessionState.COMPLETED, SessionState.COMPLETED]
        assert temp_db.count_messages(conversation.id) == 2
        assert sorted(memory_store.get_short_term_memory(conversation.id)) == ["one", "two"]
