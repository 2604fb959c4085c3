# Core module - Error taxonomy and session lifecycle
# Streaming and the chat handler are imported from core.streaming / core.chat_service

from .state_machine import SessionStateMachine, SessionState, StateTransition, TERMINAL_STATES
from .errors import (
    ErrorHandler, ErrorCategory, StarChatError, NotFoundError, MemoryNotFoundError,
    InvalidInputError, UnavailableError, SessionCancelledError, classify_exception
)

__all__ = [
    "SessionStateMachine", "SessionState", "StateTransition", "TERMINAL_STATES",
    "ErrorHandler", "ErrorCategory", "StarChatError", "NotFoundError",
    "MemoryNotFoundError", "InvalidInputError", "UnavailableError",
    "SessionCancelledError", "classify_exception",
]
