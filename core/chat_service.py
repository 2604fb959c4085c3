"""
Chat Service
------------
Conversation handler that ties persistence, memory, prompting and
generation together for one user message.

Flow per message:
1. Load conversation and persona
2. Read recent history, then store the user message
3. Build the prompt with long-term memory, record the user text short-term
4. Generate (one-shot here, streaming via the StreamCoordinator)
5. Store the reply and feed it to both memory tiers
"""

from functools import partial
from typing import Any, Callable, List, Optional, Protocol, Tuple
import asyncio

from core.errors import InvalidInputError, NotFoundError, StarChatError, UnavailableError, validate_entity_id
from core.streaming import ChatMessages, ChatRepository, StreamCoordinator, StreamSession
from infra.database import Conversation, Message, Persona, SenderKind
from infra.logging import get_logger
from memory.prompt import PromptBuilder
from memory.store import MemoryStore

HISTORY_MESSAGES = 10
MEMORY_CONTEXT_ITEMS = 10


class ChatStore(ChatRepository, Protocol):
    """Persistence collaborator with the lookups the handler needs."""

    def get_conversation(self, conversation_id: int) -> Optional[Conversation]: ...

    def get_persona(self, persona_id: int) -> Optional[Persona]: ...


class ChatService:
    """
    Consumes the memory store and the stream coordinator on behalf of
    the HTTP surface.
    """

    def __init__(
        self,
        repository: ChatStore,
        memory: MemoryStore,
        client: Any,
        coordinator: StreamCoordinator,
        prompt_builder: Optional[PromptBuilder] = None,
    ):
        self._repository = repository
        self._memory = memory
        self._client = client
        self._coordinator = coordinator
        self._prompts = prompt_builder or PromptBuilder()
        self._logger = get_logger("core.chat")

    @property
    def memory(self) -> MemoryStore:
        return self._memory

    async def _call(self, func: Callable, *args) -> Any:
        """Run a blocking repository call off the loop, mapping failures to UnavailableError."""
        try:
            return await asyncio.to_thread(func, *args)
        except StarChatError:
            raise
        except Exception as e:
            raise UnavailableError(f"Persistence call {getattr(func, '__name__', func)} failed: {e}", backend="persistence") from e

    async def _load(self, conversation_id: int) -> Tuple[Conversation, Persona]:
        validate_entity_id(conversation_id, "conversation_id")

        conversation = await self._call(self._repository.get_conversation, conversation_id)
        if conversation is None:
            raise NotFoundError(f"conversation {conversation_id} not found", {"conversation_id": conversation_id})

        persona = await self._call(self._repository.get_persona, conversation.persona_id)
        if persona is None or not persona.is_active:
            raise NotFoundError(
                f"persona {conversation.persona_id} not available",
                {"persona_id": conversation.persona_id},
            )

        return conversation, persona

    async def _prepare(self, conversation: Conversation, persona: Persona, content: str) -> ChatMessages:
        if not isinstance(content, str) or not content.strip():
            raise InvalidInputError("message content must be a non-empty string", "content")

        conversation_id = conversation.id
        history: List[Message] = await self._call(
            self._repository.get_recent_messages, conversation_id, HISTORY_MESSAGES
        )

        await self._call(
            self._repository.save_message, conversation_id, SenderKind.USER, content, conversation.user_id
        )
        await self._call(self._repository.update_conversation_summary, conversation_id, content)

        memories = self._memory.get_long_term_memory(conversation_id, MEMORY_CONTEXT_ITEMS)
        messages = self._prompts.build_messages(persona, history, content, memories)

        self._memory.add_short_term_memory(conversation_id, content)
        return messages

    async def send_message(self, conversation_id: int, content: str, model: Optional[str] = None) -> Message:
        """Send a message and wait for the full reply."""
        conversation, persona = await self._load(conversation_id)
        messages = await self._prepare(conversation, persona, content)

        try:
            reply = await self._client.generate_once(messages, model=model)
        except Exception as e:
            self._logger.warning(f"Generation unavailable, answering with fallback reply: {e}")
            reply = self._coordinator.fallback_reply

        async with self._coordinator.conversation_lock(conversation_id):
            message_id = await self._call(
                self._repository.save_message, conversation_id, SenderKind.STAR, reply, persona.id
            )
            await self._call(self._repository.update_conversation_summary, conversation_id, reply)
            self._memory.add_short_term_memory(conversation_id, reply)
            self._memory.add_long_term_memory(conversation_id, reply, self._coordinator.long_term_weight)

        return Message(
            id=message_id,
            conversation_id=conversation_id,
            sender_kind=SenderKind.STAR,
            sender_id=persona.id,
            content=reply,
        )

    async def send_message_stream(
        self,
        conversation_id: int,
        content: str,
        model: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> StreamSession:
        """Send a message and return the live streaming session for the reply."""
        conversation, persona = await self._load(conversation_id)
        messages = await self._prepare(conversation, persona, content)

        generate = partial(self._client.generate_stream, model=model)
        return self._coordinator.begin(conversation_id, persona.id, messages, generate, cancel_event)
