# Memory module - Bounded conversational memory and prompt assembly
# Fixed size, explicit eviction, no background expiry

from .store import (
    MemoryStore, MemoryItem, MemoryKind,
    sort_by_weight, serialize_memory, deserialize_memory,
    SHORT_TERM_LIMIT, LONG_TERM_LIMIT
)
from .prompt import PromptBuilder

__all__ = [
    "MemoryStore",
    "MemoryItem",
    "MemoryKind",
    "sort_by_weight",
    "serialize_memory",
    "deserialize_memory",
    "SHORT_TERM_LIMIT",
    "LONG_TERM_LIMIT",
    "PromptBuilder",
]
