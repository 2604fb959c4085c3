"""
Error Handling Module
---------------------
Typed errors for the memory store and the streaming pipeline.

Propagation:
- NOT_FOUND and INVALID_INPUT are raised synchronously to the caller
- UNAVAILABLE from generation is absorbed into the fallback reply
- UNAVAILABLE from persistence is surfaced on the session error sequence
- CANCELLED is signalled by sequence closure, never as a data value
"""

from enum import Enum, auto
from typing import Any, Dict, List, Optional
import logging


class ErrorCategory(Enum):
    """Categories of errors for handling decisions."""
    NOT_FOUND = auto()       # Unknown memory id / conversation / persona
    UNAVAILABLE = auto()     # Generation or persistence backend unreachable
    CANCELLED = auto()       # Caller cancelled the session
    INVALID_INPUT = auto()   # Malformed id, content or weight


class StarChatError(Exception):
    """Base class for all StarChat errors."""

    category: ErrorCategory = ErrorCategory.UNAVAILABLE

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.category.name}: {self.message})"


class NotFoundError(StarChatError):
    """Raised when a referenced entity does not exist."""
    category = ErrorCategory.NOT_FOUND


class MemoryNotFoundError(NotFoundError):
    """Raised when no memory item carries the requested id."""

    def __init__(self, memory_id: str):
        self.memory_id = memory_id
        super().__init__(f"memory not found: {memory_id}", {"memory_id": memory_id})


class InvalidInputError(StarChatError):
    """Raised for malformed conversation/persona ids and payloads."""
    category = ErrorCategory.INVALID_INPUT

    def __init__(self, message: str, field: str = ""):
        self.field = field
        super().__init__(message, {"field": field})


class UnavailableError(StarChatError):
    """Raised when a generation or persistence backend cannot be reached."""
    category = ErrorCategory.UNAVAILABLE

    def __init__(self, message: str, backend: str = ""):
        self.backend = backend
        super().__init__(message, {"backend": backend})


class SessionCancelledError(StarChatError):
    """Raised inside a generation callback once the session is cancelled."""
    category = ErrorCategory.CANCELLED


def validate_entity_id(value: Any, field: str) -> int:
    """Check that an id is a non-negative integer and return it."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidInputError(f"{field} must be an integer, got {value!r}", field)
    if value < 0:
        raise InvalidInputError(f"{field} must not be negative, got {value}", field)
    return value


def classify_exception(exc: BaseException) -> ErrorCategory:
    """Map an arbitrary exception onto the error taxonomy."""
    if isinstance(exc, StarChatError):
        return exc.category
    if isinstance(exc, (KeyError, LookupError)):
        return ErrorCategory.NOT_FOUND
    if isinstance(exc, (ValueError, TypeError)):
        return ErrorCategory.INVALID_INPUT
    return ErrorCategory.UNAVAILABLE


class ErrorHandler:
    """
    Central error handler with logging and user-facing messages.
    """

    LOG_LEVELS: Dict[ErrorCategory, int] = {
        ErrorCategory.INVALID_INPUT: logging.INFO,
        ErrorCategory.NOT_FOUND: logging.INFO,
        ErrorCategory.CANCELLED: logging.INFO,  # Expected termination path
        ErrorCategory.UNAVAILABLE: logging.ERROR,
    }

    USER_MESSAGES: Dict[ErrorCategory, str] = {
        ErrorCategory.NOT_FOUND: "The requested item does not exist.",
        ErrorCategory.INVALID_INPUT: "The request was malformed.",
        ErrorCategory.UNAVAILABLE: "The service is temporarily unavailable. Please try again.",
        ErrorCategory.CANCELLED: "The request was cancelled.",
    }

    def __init__(self, max_history: int = 100):
        self._logger = logging.getLogger("starchat.errors")
        self._history: List[StarChatError] = []
        self._max_history = max_history

    def handle(self, error: BaseException) -> str:
        """Log an error and return a message safe to show the user."""
        category = classify_exception(error)
        self._logger.log(
            self.LOG_LEVELS.get(category, logging.ERROR),
            f"{category.name}: {error}",
            extra={"category": category.name},
        )

        if isinstance(error, StarChatError):
            self._history.append(error)
            if len(self._history) > self._max_history:
                self._history.pop(0)

        if category in (ErrorCategory.NOT_FOUND, ErrorCategory.INVALID_INPUT):
            return str(error)
        return self.USER_MESSAGES[category]

    def get_error_stats(self) -> Dict[str, int]:
        """Count recorded errors by category."""
        stats: Dict[str, int] = {}
        for error in self._history:
            key = error.category.name
            stats[key] = stats.get(key, 0) + 1
        return stats

    def clear_history(self) -> None:
        """Clear error history."""
        self._history.clear()
