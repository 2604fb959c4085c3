"""
Memory Store
------------
Per-conversation working memory in two tiers.

Rules:
- Short-term: newest first, at most 10 entries per conversation
- Long-term: weight-descending, deduplicated by content, at most 50 entries
- Clearing one tier never touches the other
- Volatile: nothing survives the process
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional
import itertools
import json
import math
import threading
import time

from core.errors import InvalidInputError, MemoryNotFoundError, validate_entity_id
from infra.logging import get_logger

SHORT_TERM_LIMIT = 10
LONG_TERM_LIMIT = 50

DEFAULT_SHORT_TERM_RESULTS = 10
DEFAULT_LONG_TERM_RESULTS = 20
DEFAULT_SEARCH_RESULTS = 5

DEFAULT_SHORT_TERM_WEIGHT = 1.0


class MemoryKind(Enum):
    """Memory tier."""
    SHORT_TERM = "short_term"
    LONG_TERM = "long_term"


@dataclass
class MemoryItem:
    """A single remembered piece of conversation."""
    id: str
    conversation_id: int
    kind: MemoryKind
    content: str
    weight: float = DEFAULT_SHORT_TERM_WEIGHT
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "kind": self.kind.value,
            "content": self.content,
            "weight": self.weight,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MemoryItem":
        return cls(
            id=data["id"],
            conversation_id=int(data["conversation_id"]),
            kind=MemoryKind(data["kind"]),
            content=data["content"],
            weight=float(data.get("weight", DEFAULT_SHORT_TERM_WEIGHT)),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )

    def __repr__(self) -> str:
        preview = self.content[:40] + "..." if len(self.content) > 40 else self.content
        return f"MemoryItem({self.kind.value}, w={self.weight}: {preview})"


def sort_by_weight(items: Iterable[MemoryItem]) -> List[MemoryItem]:
    """Order items by weight descending; equal weights keep their prior order."""
    return sorted(items, key=lambda item: item.weight, reverse=True)


def serialize_memory(items: Iterable[MemoryItem]) -> str:
    """Serialize memory items to a JSON array."""
    return json.dumps([item.to_dict() for item in items], ensure_ascii=False)


def deserialize_memory(data: str) -> List[MemoryItem]:
    """Parse a JSON array produced by serialize_memory()."""
    return [MemoryItem.from_dict(entry) for entry in json.loads(data)]


@dataclass
class _ConversationMemory:
    """Both tiers of one conversation, guarded by their own lock."""
    short_term: List[MemoryItem] = field(default_factory=list)  # newest first
    long_term: List[MemoryItem] = field(default_factory=list)   # weight desc
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def find(self, memory_id: str) -> Optional[MemoryItem]:
        for item in itertools.chain(self.short_term, self.long_term):
            if item.id == memory_id:
                return item
        return None


class MemoryStore:
    """
    Bounded short-term and long-term memory keyed by conversation.

    Thread-safe: a registry lock guards the conversation map and each
    conversation serializes its own mutations.
    """

    def __init__(
        self,
        short_term_limit: int = SHORT_TERM_LIMIT,
        long_term_limit: int = LONG_TERM_LIMIT,
    ):
        self.short_term_limit = short_term_limit
        self.long_term_limit = long_term_limit
        self._conversations: Dict[int, _ConversationMemory] = {}
        self._registry_lock = threading.Lock()
        self._sequence = itertools.count(1)
        self._logger = get_logger("memory.store")

    def _get(self, conversation_id: int) -> Optional[_ConversationMemory]:
        with self._registry_lock:
            return self._conversations.get(conversation_id)

    def _get_or_create(self, conversation_id: int) -> _ConversationMemory:
        with self._registry_lock:
            memory = self._conversations.get(conversation_id)
            if memory is None:
                memory = _ConversationMemory()
                self._conversations[conversation_id] = memory
            return memory

    def _new_item(
        self,
        conversation_id: int,
        kind: MemoryKind,
        content: str,
        weight: float,
    ) -> MemoryItem:
        now = datetime.now()
        return MemoryItem(
            id=f"{conversation_id}_{time.time_ns()}_{next(self._sequence)}",
            conversation_id=conversation_id,
            kind=kind,
            content=content,
            weight=weight,
            created_at=now,
            updated_at=now,
        )

    def _rebalance_long_term(self, memory: _ConversationMemory) -> int:
        """Sort long-term items by weight and drop the overflow. Caller holds the lock."""
        ordered = sort_by_weight(memory.long_term)
        evicted = len(ordered) - self.long_term_limit
        memory.long_term = ordered[:self.long_term_limit]
        return max(0, evicted)

    @staticmethod
    def _check_content(content: Any) -> str:
        if not isinstance(content, str):
            raise InvalidInputError(f"content must be a string, got {type(content).__name__}", "content")
        return content

    @staticmethod
    def _check_weight(weight: Any) -> float:
        if isinstance(weight, bool) or not isinstance(weight, (int, float)) or not math.isfinite(weight):
            raise InvalidInputError(f"weight must be a finite number, got {weight!r}", "weight")
        return float(weight)

    @staticmethod
    def _resolve_limit(limit: Optional[int], default: int) -> int:
        if limit is None or limit <= 0:
            return default
        return limit

    # ===== Short-term =====

    def add_short_term_memory(self, conversation_id: int, content: str) -> MemoryItem:
        """Insert at the head of the short-term list, evicting the oldest beyond the cap."""
        validate_entity_id(conversation_id, "conversation_id")
        self._check_content(content)

        memory = self._get_or_create(conversation_id)
        item = self._new_item(conversation_id, MemoryKind.SHORT_TERM, content, DEFAULT_SHORT_TERM_WEIGHT)

        with memory.lock:
            memory.short_term.insert(0, item)
            if len(memory.short_term) > self.short_term_limit:
                evicted = len(memory.short_term) - self.short_term_limit
                del memory.short_term[self.short_term_limit:]
                self._logger.debug(f"Evicted {evicted} short-term item(s) from conversation {conversation_id}")

        return item

    def get_short_term_memory(self, conversation_id: int, limit: Optional[int] = None) -> List[str]:
        """Most recent short-term contents, newest first."""
        validate_entity_id(conversation_id, "conversation_id")
        limit = self._resolve_limit(limit, DEFAULT_SHORT_TERM_RESULTS)

        memory = self._get(conversation_id)
        if memory is None:
            return []

        with memory.lock:
            return [item.content for item in memory.short_term[:limit]]

    def clear_short_term_memory(self, conversation_id: int) -> int:
        """Drop every short-term item of a conversation. Returns count removed."""
        validate_entity_id(conversation_id, "conversation_id")

        memory = self._get(conversation_id)
        if memory is None:
            return 0

        with memory.lock:
            count = len(memory.short_term)
            memory.short_term = []

        if count:
            self._logger.info(f"Cleared {count} short-term item(s) from conversation {conversation_id}")
        return count

    # ===== Long-term =====

    def add_long_term_memory(
        self,
        conversation_id: int,
        content: str,
        weight: float,
    ) -> Optional[MemoryItem]:
        """
        Insert a long-term item unless identical content is already stored.

        Returns the new item, or None when the content was a duplicate or
        the item fell outside the retained top-weight set.
        """
        validate_entity_id(conversation_id, "conversation_id")
        self._check_content(content)
        weight = self._check_weight(weight)

        memory = self._get_or_create(conversation_id)

        with memory.lock:
            if any(existing.content == content for existing in memory.long_term):
                self._logger.debug(f"Skipped duplicate long-term memory for conversation {conversation_id}")
                return None

            item = self._new_item(conversation_id, MemoryKind.LONG_TERM, content, weight)
            memory.long_term.append(item)
            evicted = self._rebalance_long_term(memory)
            retained = any(existing is item for existing in memory.long_term)

        if evicted:
            self._logger.debug(f"Evicted {evicted} long-term item(s) from conversation {conversation_id}")
        return item if retained else None

    def get_long_term_memory(self, conversation_id: int, limit: Optional[int] = None) -> List[str]:
        """Long-term contents ordered by weight descending."""
        validate_entity_id(conversation_id, "conversation_id")
        limit = self._resolve_limit(limit, DEFAULT_LONG_TERM_RESULTS)

        memory = self._get(conversation_id)
        if memory is None:
            return []

        with memory.lock:
            return [item.content for item in sort_by_weight(memory.long_term)[:limit]]

    def update_memory_weight(self, memory_id: str, weight: float) -> MemoryItem:
        """
        Reweight an item wherever it lives, then re-sort and trim that
        conversation's long-term set.

        Raises:
            MemoryNotFoundError: If no item has that id
        """
        weight = self._check_weight(weight)

        with self._registry_lock:
            conversations = list(self._conversations.items())

        for conversation_id, memory in conversations:
            with memory.lock:
                item = memory.find(memory_id)
                if item is None:
                    continue
                item.weight = weight
                item.updated_at = datetime.now()
                self._rebalance_long_term(memory)

            self._logger.debug(f"Updated weight of {memory_id} to {weight} in conversation {conversation_id}")
            return item

        raise MemoryNotFoundError(memory_id)

    # ===== Retrieval =====

    def search_memory(
        self,
        conversation_id: int,
        query: str,
        limit: Optional[int] = None,
    ) -> List[str]:
        """Case-sensitive substring search over both tiers, heaviest first."""
        validate_entity_id(conversation_id, "conversation_id")
        self._check_content(query)
        limit = self._resolve_limit(limit, DEFAULT_SEARCH_RESULTS)

        memory = self._get(conversation_id)
        if memory is None:
            return []

        with memory.lock:
            matches = [
                item for item in itertools.chain(memory.short_term, memory.long_term)
                if query in item.content
            ]
            return [item.content for item in sort_by_weight(matches)[:limit]]

    def get_items(self, conversation_id: int, kind: Optional[MemoryKind] = None) -> List[MemoryItem]:
        """Snapshot of stored items: short-term newest first, then long-term by weight."""
        validate_entity_id(conversation_id, "conversation_id")

        memory = self._get(conversation_id)
        if memory is None:
            return []

        with memory.lock:
            items = [replace(item) for item in itertools.chain(memory.short_term, memory.long_term)]
        if kind is not None:
            items = [item for item in items if item.kind == kind]
        return items

    def __len__(self) -> int:
        with self._registry_lock:
            conversations = list(self._conversations.values())
        return sum(len(m.short_term) + len(m.long_term) for m in conversations)
