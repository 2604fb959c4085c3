"""
StarChat Database
-----------------
SQLite persistence for personas, conversations and messages.

Design:
- Schema version table for migrations
- Hard fail on downgrade (db.version > code.version)
- Auto-migrate forward (db.version < code.version)
- One connection shared across threads behind a lock, because the
  stream coordinator calls in from worker threads

Usage:
    from infra.database import ChatDatabase, SenderKind

    db = ChatDatabase("starchat.db")
    db.initialize()

    message_id = db.save_message(chat_id, SenderKind.STAR, "Hi there!")
    db.update_conversation_summary(chat_id, "Hi there!")
    history = db.get_recent_messages(chat_id, 10)
"""

import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Generator, List, Optional

from infra.logging import get_logger

# Current schema version - increment on any schema change
SCHEMA_VERSION = 1

IN_MEMORY = ":memory:"


class SenderKind(Enum):
    """Who wrote a message."""
    USER = "user"
    STAR = "star"


class MessageStatus(Enum):
    SENT = "sent"
    FAILED = "failed"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Persona:
    """The star whose voice the model imitates."""
    id: int = 0
    name: str = ""
    english_name: str = ""
    gender: str = ""
    birth_date: str = ""
    nationality: str = ""
    occupation: str = ""
    introduction: str = ""
    style_features: str = ""
    is_active: bool = True
    created_at: datetime = field(default_factory=_now)


@dataclass
class Conversation:
    """A chat thread between a user and a persona."""
    id: int = 0
    user_id: int = 0
    persona_id: int = 0
    title: str = ""
    last_message: str = ""
    message_count: int = 0
    last_active: datetime = field(default_factory=_now)
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)


@dataclass
class Message:
    """A single message in a conversation."""
    id: int = 0
    conversation_id: int = 0
    sender_kind: SenderKind = SenderKind.USER
    sender_id: int = 0
    content: str = ""
    status: MessageStatus = MessageStatus.SENT
    created_at: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "sender_kind": self.sender_kind.value,
            "sender_id": self.sender_id,
            "content": self.content,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }


class DatabaseError(Exception):
    """Database-specific errors."""
    pass


class SchemaMismatchError(DatabaseError):
    """Schema version mismatch (downgrade attempted)."""
    pass


class MigrationFailedError(DatabaseError):
    """Migration failed mid-way."""
    pass


class ChatDatabase:
    """
    SQLite store for the chat domain with schema versioning.

    Every public method takes the internal lock, so the instance can be
    shared between the event loop and worker threads.
    """

    def __init__(self, db_path: str = "starchat.db"):
        self._db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._logger = get_logger("infra.database")
        self._initialized = False
        self._in_transaction = False

    @property
    def db_path(self) -> str:
        """Return the database file path."""
        return self._db_path

    def initialize(self) -> None:
        """
        Initialize the database.

        - Creates database if not exists
        - Checks schema version
        - Runs migrations if needed (forward only)
        - Hard fails on downgrade
        """
        self._logger.info(f"Initializing database at {self._db_path}")

        if self._db_path != IN_MEMORY:
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")

        db_version = self._get_schema_version()

        if db_version is None:
            self._logger.info("Creating new database schema")
            self._create_schema()
            self._set_schema_version(SCHEMA_VERSION)
        elif db_version < SCHEMA_VERSION:
            self._logger.info(f"Migrating database from v{db_version} to v{SCHEMA_VERSION}")
            self._migrate(db_version, SCHEMA_VERSION)
        elif db_version > SCHEMA_VERSION:
            self._conn.close()
            self._conn = None
            raise SchemaMismatchError(
                f"Database schema version ({db_version}) is newer than code version ({SCHEMA_VERSION}). "
                f"Downgrade is not supported. Please update the code or use a different database."
            )
        else:
            self._logger.info(f"Database schema is up to date (v{db_version})")

        self._initialized = True

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
                self._initialized = False

    def _get_schema_version(self) -> Optional[int]:
        try:
            cursor = self._conn.execute(
                "SELECT version FROM schema_version ORDER BY id DESC LIMIT 1"
            )
            row = cursor.fetchone()
            return row["version"] if row else None
        except sqlite3.OperationalError:
            # Table doesn't exist
            return None

    def _set_schema_version(self, version: int) -> None:
        self._conn.execute(
            "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
            (version, _now().isoformat())
        )
        self._conn.commit()

    def _create_schema(self) -> None:
        """Create the initial database schema (v1)."""
        schema_sql = """
        CREATE TABLE IF NOT EXISTS schema_version (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            version INTEGER NOT NULL,
            applied_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS personas (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            english_name TEXT DEFAULT '',
            gender TEXT DEFAULT '',
            birth_date TEXT DEFAULT '',
            nationality TEXT DEFAULT '',
            occupation TEXT DEFAULT '',
            introduction TEXT DEFAULT '',
            style_features TEXT DEFAULT '',
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS conversations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            persona_id INTEGER NOT NULL,
            title TEXT DEFAULT '',
            last_message TEXT DEFAULT '',
            message_count INTEGER NOT NULL DEFAULT 0,
            last_active TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY (persona_id) REFERENCES personas(id)
        );
        CREATE INDEX IF NOT EXISTS idx_conversations_user ON conversations(user_id);

        CREATE TABLE IF NOT EXISTS messages (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            conversation_id INTEGER NOT NULL,
            sender_kind TEXT NOT NULL CHECK(sender_kind IN ('user', 'star')),
            sender_id INTEGER NOT NULL DEFAULT 0,
            content TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'sent',
            created_at TEXT NOT NULL,
            FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
        );
        CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id);
        """

        self._conn.executescript(schema_sql)
        self._conn.commit()

    def _migrate(self, from_version: int, to_version: int) -> None:
        """
        Run migrations from one version to another.

        Each migration is atomic. If any migration fails, the database is
        left at the last successful version.
        """
        migrations = {
            # 2: "ALTER TABLE messages ADD COLUMN model TEXT DEFAULT '';"
        }

        for version in range(from_version + 1, to_version + 1):
            if version in migrations:
                self._logger.info(f"Applying migration to v{version}")
                try:
                    self._conn.executescript(migrations[version])
                    self._set_schema_version(version)
                except sqlite3.Error as e:
                    raise MigrationFailedError(
                        f"Migration to v{version} failed: {e}. "
                        f"Database is at v{version - 1}. Manual intervention required."
                    ) from e
            else:
                self._set_schema_version(version)

    def _require_connection(self) -> sqlite3.Connection:
        if not self._initialized or self._conn is None:
            raise DatabaseError("Database not initialized. Call initialize() first.")
        return self._conn

    @contextmanager
    def transaction(self) -> Generator[None, None, None]:
        """
        Context manager for explicit transactions.

        Inner transactions are no-ops if already in a transaction.
        """
        with self._lock:
            conn = self._require_connection()

            if self._in_transaction:
                yield
                return

            self._in_transaction = True
            try:
                yield
                conn.commit()
            except Exception as e:
                conn.rollback()
                self._logger.error(f"Transaction rolled back: {e}")
                raise
            finally:
                self._in_transaction = False

    def _commit_unless_nested(self) -> None:
        if not self._in_transaction:
            self._conn.commit()

    # ===== Persona Operations =====

    def create_persona(self, persona: Persona) -> Persona:
        """Insert a persona and return it with its assigned id."""
        with self._lock:
            conn = self._require_connection()
            cursor = conn.execute("""
                INSERT INTO personas (name, english_name, gender, birth_date, nationality,
                                      occupation, introduction, style_features, is_active, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                persona.name,
                persona.english_name,
                persona.gender,
                persona.birth_date,
                persona.nationality,
                persona.occupation,
                persona.introduction,
                persona.style_features,
                int(persona.is_active),
                persona.created_at.isoformat(),
            ))
            self._commit_unless_nested()
            persona.id = cursor.lastrowid
            return persona

    def get_persona(self, persona_id: int) -> Optional[Persona]:
        """Get a persona by ID."""
        with self._lock:
            row = self._require_connection().execute(
                "SELECT * FROM personas WHERE id = ?", (persona_id,)
            ).fetchone()

        if not row:
            return None

        return Persona(
            id=row["id"],
            name=row["name"],
            english_name=row["english_name"] or "",
            gender=row["gender"] or "",
            birth_date=row["birth_date"] or "",
            nationality=row["nationality"] or "",
            occupation=row["occupation"] or "",
            introduction=row["introduction"] or "",
            style_features=row["style_features"] or "",
            is_active=bool(row["is_active"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # ===== Conversation Operations =====

    def create_conversation(self, user_id: int, persona_id: int, title: str = "") -> Conversation:
        """Open a conversation between a user and a persona."""
        conv = Conversation(user_id=user_id, persona_id=persona_id, title=title)

        with self._lock:
            conn = self._require_connection()
            cursor = conn.execute("""
                INSERT INTO conversations (user_id, persona_id, title, last_message, message_count,
                                           last_active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                conv.user_id,
                conv.persona_id,
                conv.title,
                conv.last_message,
                conv.message_count,
                conv.last_active.isoformat(),
                conv.created_at.isoformat(),
                conv.updated_at.isoformat(),
            ))
            self._commit_unless_nested()
            conv.id = cursor.lastrowid
            return conv

    def get_conversation(self, conversation_id: int) -> Optional[Conversation]:
        """Get a conversation by ID."""
        with self._lock:
            row = self._require_connection().execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()

        if not row:
            return None

        return Conversation(
            id=row["id"],
            user_id=row["user_id"],
            persona_id=row["persona_id"],
            title=row["title"] or "",
            last_message=row["last_message"] or "",
            message_count=row["message_count"],
            last_active=datetime.fromisoformat(row["last_active"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def update_conversation_summary(self, conversation_id: int, last_text: str) -> None:
        """Record the latest message text, bump activity time and message count."""
        now = _now().isoformat()
        with self._lock:
            cursor = self._require_connection().execute("""
                UPDATE conversations
                SET last_message = ?, last_active = ?, updated_at = ?,
                    message_count = message_count + 1
                WHERE id = ?
            """, (last_text, now, now, conversation_id))
            self._commit_unless_nested()

        if cursor.rowcount == 0:
            raise DatabaseError(f"Conversation {conversation_id} does not exist")

    # ===== Message Operations =====

    def save_message(
        self,
        conversation_id: int,
        sender_kind: SenderKind,
        content: str,
        sender_id: int = 0,
    ) -> int:
        """Store a message and return its id."""
        with self._lock:
            try:
                cursor = self._require_connection().execute("""
                    INSERT INTO messages (conversation_id, sender_kind, sender_id, content, status, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    conversation_id,
                    sender_kind.value,
                    sender_id,
                    content,
                    MessageStatus.SENT.value,
                    _now().isoformat(),
                ))
            except sqlite3.IntegrityError as e:
                raise DatabaseError(f"Cannot save message to conversation {conversation_id}: {e}") from e
            self._commit_unless_nested()
            return cursor.lastrowid

    def get_message(self, message_id: int) -> Optional[Message]:
        """Get a message by ID."""
        with self._lock:
            row = self._require_connection().execute(
                "SELECT * FROM messages WHERE id = ?", (message_id,)
            ).fetchone()
        return self._row_to_message(row) if row else None

    def get_recent_messages(self, conversation_id: int, count: int = 10) -> List[Message]:
        """Get the most recent messages, oldest first (for the prompt history)."""
        with self._lock:
            rows = self._require_connection().execute("""
                SELECT * FROM (
                    SELECT * FROM messages
                    WHERE conversation_id = ?
                    ORDER BY id DESC
                    LIMIT ?
                ) ORDER BY id ASC
            """, (conversation_id, count)).fetchall()

        return [self._row_to_message(row) for row in rows]

    def count_messages(self, conversation_id: int) -> int:
        with self._lock:
            row = self._require_connection().execute(
                "SELECT COUNT(*) AS count FROM messages WHERE conversation_id = ?",
                (conversation_id,)
            ).fetchone()
        return row["count"]

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            sender_kind=SenderKind(row["sender_kind"]),
            sender_id=row["sender_id"],
            content=row["content"],
            status=MessageStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )
