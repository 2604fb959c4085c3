"""
StarChat Centralized Logging
----------------------------
Structured logging with session_id propagation for streaming traceability.

Design:
- Every streaming call gets a unique session_id
- session_id propagates through: Coordinator -> Repository -> Memory
- Console output through Rich, optional JSON file output
- Severity discipline: INFO=lifecycle, WARNING=absorbed failure, ERROR=abort

Usage:
    from infra.logging import get_logger, SessionContext, log_session_end

    logger = get_logger("core.streaming")

    with SessionContext() as session_id:
        logger.info("Generation started")
        # ... streaming ...
        log_session_end(session_id, state="COMPLETED", chunks=3, chars=9)
"""

import contextvars
import json
import logging
import logging.handlers
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "starchat"

_session_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "session_id", default=None
)


def generate_session_id() -> str:
    """Generate a unique session ID."""
    return f"sess_{uuid.uuid4().hex[:12]}"


def get_session_id() -> Optional[str]:
    """Get the current session ID from context."""
    return _session_id_var.get()


def set_session_id(session_id: str) -> contextvars.Token:
    """Set the current session ID in context."""
    return _session_id_var.set(session_id)


def reset_session_id(token: contextvars.Token) -> None:
    """Reset the session ID to its previous value."""
    _session_id_var.reset(token)


class SessionContext:
    """
    Context manager for session scoping.

    Usage:
        with SessionContext() as session_id:
            logger.info("Streaming...")
    """

    def __init__(self, session_id: Optional[str] = None):
        self._session_id = session_id or generate_session_id()
        self._token: Optional[contextvars.Token] = None

    def __enter__(self) -> str:
        self._token = set_session_id(self._session_id)
        return self._session_id

    def __exit__(self, *args) -> None:
        if self._token is not None:
            reset_session_id(self._token)
            self._token = None


class SessionIdFilter(logging.Filter):
    """Logging filter that adds session_id to every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "session_id", None) is None:
            record.session_id = get_session_id() or "-"
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured file logging."""

    EXTRA_FIELDS = (
        "conversation_id", "persona_id", "state", "chunks", "chars", "category",
    )

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "session_id": getattr(record, "session_id", "-"),
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key in self.EXTRA_FIELDS:
            if hasattr(record, key):
                log_entry[key] = getattr(record, key)

        return json.dumps(log_entry)


class SessionConsoleFormatter(logging.Formatter):
    """Prefixes console messages with the session id when one is bound."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        session_id = getattr(record, "session_id", "-")
        if session_id and session_id != "-":
            return f"[{session_id}] {record.name}: {message}"
        return f"{record.name}: {message}"


_logging_initialized = False
_log_file_path: Optional[Path] = None


def configure_logging(
    level: int = logging.INFO,
    log_dir: Optional[str] = None,
    console: bool = True,
    file: bool = False,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 3,
) -> None:
    """
    Configure the StarChat logging system.

    Args:
        level: Logging level (default INFO)
        log_dir: Directory for log files (default: ./logs)
        console: Enable Rich console output
        file: Enable JSON file output
        max_bytes: Rotate the log file past this size
        backup_count: Number of rotated files kept
    """
    global _logging_initialized, _log_file_path

    if _logging_initialized:
        return

    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    session_filter = SessionIdFilter()

    if console:
        console_handler = RichHandler(
            console=Console(stderr=True),
            rich_tracebacks=True,
            show_path=False,
        )
        console_handler.setLevel(level)
        console_handler.setFormatter(SessionConsoleFormatter("%(message)s"))
        console_handler.addFilter(session_filter)
        root_logger.addHandler(console_handler)

    if file:
        log_path = Path(log_dir) if log_dir else Path("logs")
        log_path.mkdir(parents=True, exist_ok=True)

        _log_file_path = log_path / "starchat.log"

        file_handler = logging.handlers.RotatingFileHandler(
            str(_log_file_path),
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)  # File gets everything
        file_handler.setFormatter(JSONFormatter())
        file_handler.addFilter(session_filter)
        root_logger.addHandler(file_handler)

    _logging_initialized = True


def reset_logging() -> None:
    """Drop configured handlers so configure_logging() can run again."""
    global _logging_initialized, _log_file_path

    root_logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()
    _logging_initialized = False
    _log_file_path = None


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the StarChat namespace.

    Args:
        name: Logger name (prefixed with 'starchat.' if not already)
    """
    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"

    logger = logging.getLogger(name)
    if not any(isinstance(f, SessionIdFilter) for f in logger.filters):
        logger.addFilter(SessionIdFilter())
    return logger


def log_session_end(
    session_id: str,
    state: str,
    chunks: int = 0,
    chars: int = 0,
    error: Optional[str] = None,
) -> None:
    """
    Log the end of a streaming session with summary information.

    This is the SESSION_END boundary event for post-mortems.
    """
    logger = get_logger("core.session")

    extra = {
        "session_id": session_id,
        "state": state,
        "chunks": chunks,
        "chars": chars,
    }

    if error is None:
        logger.info(
            f"SESSION_END: state={state}, chunks={chunks}, chars={chars}",
            extra=extra,
        )
    else:
        logger.error(
            f"SESSION_END: state={state}, error={error}",
            extra=extra,
        )
