# Infrastructure module - Logging, configuration and SQLite persistence
# The HTTP surface lives in infra.service_bus and is imported explicitly

from .logging import (
    get_logger, configure_logging, SessionContext,
    log_session_end, get_session_id, generate_session_id
)
from .config import AppConfig, ConfigManager
from .database import (
    ChatDatabase, Persona, Conversation, Message, SenderKind, MessageStatus,
    DatabaseError, SchemaMismatchError, MigrationFailedError,
    SCHEMA_VERSION
)

__all__ = [
    # Logging
    "get_logger",
    "configure_logging",
    "SessionContext",
    "log_session_end",
    "get_session_id",
    "generate_session_id",
    # Config
    "AppConfig",
    "ConfigManager",
    # Database
    "ChatDatabase",
    "Persona",
    "Conversation",
    "Message",
    "SenderKind",
    "MessageStatus",
    "DatabaseError",
    "SchemaMismatchError",
    "MigrationFailedError",
    "SCHEMA_VERSION",
]
