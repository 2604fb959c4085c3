"""
Stream Coordinator
------------------
Drives one token-streaming generation per session, republishes every chunk
to the caller while assembling the full reply, and persists that reply
exactly once.

Session lifecycle:
    RUNNING -> COMPLETED   generation finished (or fell back) and reply stored
    RUNNING -> FAILED      a persistence step raised; error on the error sequence
    RUNNING -> CANCELLED   caller cancelled before generation finished; nothing stored

Rules:
- One producer task per session, chunks forwarded in generation order
- Both sequences are closed by a single teardown on every exit path
- Sequences are unbounded queues, so an undrained consumer never blocks the producer
- Generation failures become the fallback reply; persistence failures do not
"""

from typing import Awaitable, Callable, Dict, List, Optional, Protocol, Set
import asyncio
import weakref

from core.errors import (
    InvalidInputError,
    SessionCancelledError,
    StarChatError,
    UnavailableError,
    validate_entity_id,
)
from core.state_machine import SessionState, SessionStateMachine, StateTransition
from infra.database import Message, SenderKind
from infra.logging import SessionContext, generate_session_id, get_logger, log_session_end
from memory.store import MemoryStore

FALLBACK_REPLY = (
    "Hi! I'm really happy to chat with you. My AI features aren't available "
    "right now, but I'm still here with you. What would you like to talk about?"
)

DEFAULT_LONG_TERM_WEIGHT = 1.0
DEFAULT_CANCEL_GRACE_SECONDS = 2.0

ChatMessages = List[Dict[str, str]]
OnChunk = Callable[[str], Awaitable[None]]
GenerateStream = Callable[[ChatMessages, OnChunk], Awaitable[None]]


class ChatRepository(Protocol):
    """Persistence collaborator consumed by the coordinator and chat service."""

    def save_message(
        self,
        conversation_id: int,
        sender_kind: SenderKind,
        content: str,
        sender_id: int = 0,
    ) -> int: ...

    def update_conversation_summary(self, conversation_id: int, last_text: str) -> None: ...

    def get_recent_messages(self, conversation_id: int, count: int = 10) -> List[Message]: ...


_CLOSED = object()


def _caused_by_cancel(error: BaseException) -> bool:
    """True if a SessionCancelledError appears anywhere in the exception chain."""
    seen = set()
    while error is not None and id(error) not in seen:
        if isinstance(error, SessionCancelledError):
            return True
        seen.add(id(error))
        error = error.__cause__ or error.__context__
    return False


class ChunkStream:
    """
    Read-only async sequence with a single producer.

    Iterate with `async for`; iteration ends once the producer closes it.
    """

    def __init__(self, name: str):
        self.name = name
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._exhausted = False

    @property
    def closed(self) -> bool:
        """True once the producer has closed the sequence."""
        return self._closed

    def _put(self, value) -> None:
        if self._closed:
            raise RuntimeError(f"{self.name} sequence is closed")
        self._queue.put_nowait(value)

    def _close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "ChunkStream":
        return self

    async def __anext__(self):
        if self._exhausted:
            raise StopAsyncIteration
        value = await self._queue.get()
        if value is _CLOSED:
            self._exhausted = True
            raise StopAsyncIteration
        return value

    async def collect(self) -> list:
        """Drain the sequence until it closes."""
        return [value async for value in self]


class StreamSession:
    """Ephemeral coordination record owned by one streaming call."""

    def __init__(self, conversation_id: int, persona_id: int, cancel_event: asyncio.Event):
        self.session_id = generate_session_id()
        self.conversation_id = conversation_id
        self.persona_id = persona_id
        self.data = ChunkStream("data")
        self.errors = ChunkStream("errors")
        self.used_fallback = False
        self.message_id: Optional[int] = None
        self.error: Optional[StarChatError] = None

        self._buffer: List[str] = []
        self._cancel_event = cancel_event
        self._machine = SessionStateMachine(name=self.session_id)
        self._task: Optional[asyncio.Task] = None

    @property
    def state(self) -> SessionState:
        return self._machine.state

    @property
    def history(self) -> List[StateTransition]:
        return self._machine.history

    @property
    def text(self) -> str:
        """Everything streamed so far."""
        return "".join(self._buffer)

    @property
    def chunk_count(self) -> int:
        return len(self._buffer)

    @property
    def done(self) -> bool:
        return self._machine.is_terminal

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_event.is_set()

    def cancel(self) -> None:
        """Ask the producer to stop; no-op once the session has finished."""
        self._cancel_event.set()

    async def wait(self) -> SessionState:
        """Wait for the terminal state without cancelling the producer."""
        if self._task is not None:
            await asyncio.shield(self._task)
        return self.state

    def _emit(self, chunk: str) -> None:
        self._buffer.append(chunk)
        self.data._put(chunk)

    def _finish(self, state: SessionState, reason: str) -> None:
        if not self._machine.is_terminal:
            self._machine.transition(state, reason)

    def _fail(self, error: StarChatError) -> None:
        self.error = error
        self.errors._put(error)
        self._finish(SessionState.FAILED, str(error))

    def _teardown(self) -> None:
        self.data._close()
        self.errors._close()

    def __repr__(self) -> str:
        return (
            f"StreamSession({self.session_id}, conversation={self.conversation_id}, "
            f"state={self.state.name}, chunks={self.chunk_count})"
        )


class StreamCoordinator:
    """
    Turns a chunk-callback generation capability into a data sequence and
    an error sequence, and owns the persistence side effects of the reply.
    """

    def __init__(
        self,
        repository: ChatRepository,
        memory: MemoryStore,
        long_term_weight: float = DEFAULT_LONG_TERM_WEIGHT,
        fallback_reply: str = FALLBACK_REPLY,
        cancel_grace: float = DEFAULT_CANCEL_GRACE_SECONDS,
    ):
        self._repository = repository
        self._memory = memory
        self.long_term_weight = long_term_weight
        self.fallback_reply = fallback_reply
        self.cancel_grace = cancel_grace
        self._locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._active: Set[StreamSession] = set()
        self._logger = get_logger("core.streaming")

    @property
    def active_sessions(self) -> int:
        return len(self._active)

    def begin(
        self,
        conversation_id: int,
        persona_id: int,
        messages: ChatMessages,
        generate_stream: GenerateStream,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> StreamSession:
        """
        Start a streaming session. Must be called from a running event loop.

        Args:
            conversation_id: Conversation receiving the reply
            persona_id: Persona credited as the sender
            messages: Prompt messages from the prompt builder
            generate_stream: async (messages, on_chunk) -> None
            cancel_event: Caller-owned cancellation signal

        Returns:
            StreamSession whose `data` and `errors` close at the terminal state

        Raises:
            InvalidInputError: On malformed ids or a non-callable generator
        """
        validate_entity_id(conversation_id, "conversation_id")
        validate_entity_id(persona_id, "persona_id")
        if not callable(generate_stream):
            raise InvalidInputError("generate_stream must be callable", "generate_stream")

        session = StreamSession(conversation_id, persona_id, cancel_event or asyncio.Event())
        task = asyncio.get_running_loop().create_task(
            self._run(session, list(messages), generate_stream),
            name=f"stream-{session.session_id}",
        )
        session._task = task
        self._active.add(session)
        task.add_done_callback(lambda _: self._active.discard(session))
        return session

    async def shutdown(self) -> None:
        """Cancel every in-flight session and wait for their teardown."""
        sessions = list(self._active)
        for session in sessions:
            session.cancel()
        tasks = [s._task for s in sessions if s._task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def conversation_lock(self, conversation_id: int) -> asyncio.Lock:
        """Per-conversation commit lock; dropped once nobody holds or awaits it."""
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    async def _run(
        self,
        session: StreamSession,
        messages: ChatMessages,
        generate_stream: GenerateStream,
    ) -> None:
        with SessionContext(session.session_id):
            self._logger.info(
                f"Session started for conversation {session.conversation_id} "
                f"(persona {session.persona_id})",
                extra={"conversation_id": session.conversation_id, "persona_id": session.persona_id},
            )
            try:
                if await self._generate(session, messages, generate_stream):
                    await self._commit(session)
                else:
                    self._logger.info("Caller cancelled before completion; reply not stored")
                    session._finish(SessionState.CANCELLED, "caller cancelled before completion")
            except asyncio.CancelledError:
                session._finish(SessionState.CANCELLED, "producer task cancelled")
                raise
            except Exception as e:
                self._logger.exception(f"Unexpected session failure: {e}")
                if not session.done:
                    session._fail(UnavailableError(f"Streaming session failed: {e}"))
            finally:
                session._teardown()
                log_session_end(
                    session.session_id,
                    state=session.state.name,
                    chunks=session.chunk_count,
                    chars=len(session.text),
                    error=str(session.error) if session.error else None,
                )

    async def _generate(
        self,
        session: StreamSession,
        messages: ChatMessages,
        generate_stream: GenerateStream,
    ) -> bool:
        """Run generation until it finishes or the caller cancels. True if finished."""
        cancel_event = session._cancel_event
        if cancel_event.is_set():
            return False

        async def on_chunk(chunk: str) -> None:
            if cancel_event.is_set():
                raise SessionCancelledError("session cancelled by caller")
            session._emit(chunk)

        async def drive() -> None:
            await generate_stream(messages, on_chunk)

        generation = asyncio.ensure_future(drive())
        cancelled = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({generation, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await self._stop(generation)
            raise
        finally:
            cancelled.cancel()

        if generation.done() and not generation.cancelled():
            error = generation.exception()
            if error is None:
                if not session.text:
                    self._use_fallback(session, "generation produced no text")
                return True
            # Any failure once the caller has cancelled is a cancellation,
            # however the backend wrapped the callback's error.
            if not cancel_event.is_set() and not _caused_by_cancel(error):
                self._use_fallback(session, error)
                return True

        await self._stop(generation)
        return False

    async def _stop(self, generation: asyncio.Future) -> None:
        """Cancel generation and give it a bounded time to unwind."""
        if not generation.done():
            generation.cancel()
            await asyncio.wait({generation}, timeout=self.cancel_grace)
            if not generation.done():
                self._logger.warning(
                    f"Generation did not stop within {self.cancel_grace}s of cancellation"
                )
                return
        if not generation.cancelled():
            # Mark the outcome as retrieved; it is irrelevant once cancelled.
            generation.exception()

    def _use_fallback(self, session: StreamSession, reason) -> None:
        self._logger.warning(f"Generation unavailable, streaming fallback reply: {reason}")
        session.used_fallback = True
        session._emit(self.fallback_reply)

    async def _commit(self, session: StreamSession) -> None:
        """Store the reply, refresh the conversation summary, then update memory."""
        conversation_id = session.conversation_id
        text = session.text

        async with self.conversation_lock(conversation_id):
            try:
                session.message_id = await asyncio.to_thread(
                    self._repository.save_message,
                    conversation_id,
                    SenderKind.STAR,
                    text,
                    session.persona_id,
                )
                await asyncio.to_thread(
                    self._repository.update_conversation_summary, conversation_id, text
                )
                self._memory.add_short_term_memory(conversation_id, text)
                self._memory.add_long_term_memory(conversation_id, text, self.long_term_weight)
            except Exception as e:
                error = e if isinstance(e, StarChatError) else UnavailableError(
                    f"Persisting reply failed: {e}", backend="persistence"
                )
                self._logger.error(f"Persistence aborted: {error}")
                session._fail(error)
                return

        session._finish(SessionState.COMPLETED, "reply persisted")
