"""DuckDB-based chat message storage service.

This module provides persistent storage for chat messages using DuckDB,
a fast embedded analytical database. The service implements the singleton
pattern to ensure only one database connection exists at a time.

Database Schema:
    messages table:
        - id: Auto-incrementing primary key
        - from_user: Sender identity
        - to_user: Recipient identity ("all" for broadcasts)
        - body: Message text
        - created_at: When the router stamped the message (UTC)

Thread Safety:
    The chat router calls the store from worker threads via
    ``asyncio.to_thread``. Every operation runs on its own cursor
    (``connection.cursor()``) over the one shared connection.

Usage:
    store = MessageStoreService.get_instance()
    store.save(message)
    page = store.history("alice", "bob", limit=10, offset=0)
"""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Dict, List, Optional

import duckdb

from .schemas import StoredMessage

if TYPE_CHECKING:
    from forum.chat.schemas import ChatMessage

# Recipients that mark a broadcast rather than a conversation partner
BROADCAST_RECIPIENTS = ("all", "")


class MessageStore(ABC):
    """Persistence interface consumed by the chat router and recency sorter.

    Implementations must tolerate concurrent calls from multiple threads.
    """

    @abstractmethod
    def save(self, message: "ChatMessage") -> None:
        """Persist one routed chat message.

        Raises:
            Exception: On storage error. Callers log and continue.
        """

    @abstractmethod
    def last_conversation_timestamps(self, identity: str) -> Dict[str, datetime]:
        """Return the latest message time per conversation partner of *identity*."""

    @abstractmethod
    def history(
        self, identity_a: str, identity_b: str, limit: int, offset: int = 0
    ) -> List[StoredMessage]:
        """Return one page of the conversation between two identities.

        The page is selected most-recent-first and returned oldest first.
        """


def _to_db_timestamp(value: datetime) -> datetime:
    """Normalise to naive UTC for the TIMESTAMP column."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_timestamp(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc)


class MessageStoreService(MessageStore):
    """Singleton service for storing chat messages in DuckDB.

    Attributes:
        _instance: Singleton instance of the service.
        _db_path: Path to the DuckDB database file.
    """

    _instance: Optional["MessageStoreService"] = None
    _db_path: str = "chat_messages.duckdb"

    def __init__(self, db_path: Optional[str] = None) -> None:
        """Initialize the message store.

        Creates the database file and schema if they don't exist.

        Args:
            db_path: Path to DuckDB file. Defaults to "chat_messages.duckdb".
        """
        if db_path:
            self._db_path = db_path
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialize_db()

    @classmethod
    def get_instance(cls, db_path: Optional[str] = None) -> "MessageStoreService":
        """Get or create the singleton instance.

        Args:
            db_path: Optional database path (only used on first call).

        Returns:
            The singleton MessageStoreService instance.
        """
        if cls._instance is None:
            cls._instance = cls(db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance.

        Closes the database connection and clears the instance.
        Primarily used for testing to ensure a clean state.
        """
        if cls._instance is not None:
            cls._instance.close()
            cls._instance = None

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _cursor(self) -> duckdb.DuckDBPyConnection:
        return self._get_connection().cursor()

    def _initialize_db(self) -> None:
        """Create the messages table and sequence if they don't exist."""
        conn = self._get_connection()
        conn.execute("""
            CREATE SEQUENCE IF NOT EXISTS messages_seq START 1;
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER DEFAULT nextval('messages_seq') PRIMARY KEY,
                from_user VARCHAR NOT NULL,
                to_user VARCHAR NOT NULL,
                body VARCHAR NOT NULL,
                created_at TIMESTAMP NOT NULL
            )
        """)

    def save(self, message: "ChatMessage") -> None:
        """Insert one chat message.

        Args:
            message: A routed message; its timestamp must already be stamped.
        """
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO messages (from_user, to_user, body, created_at)
                VALUES (?, ?, ?, ?)
                """,
                [
                    message.from_,
                    message.to,
                    message.content,
                    _to_db_timestamp(message.timestamp),
                ]
            )

    def last_conversation_timestamps(self, identity: str) -> Dict[str, datetime]:
        """Latest message time per counterpart, in either direction.

        Broadcast rows are not conversations and are ignored.

        Args:
            identity: The identity whose conversations are aggregated.

        Returns:
            Mapping of counterpart identity to the newest timestamp (UTC).
        """
        with self._cursor() as cur:
            rows = cur.execute(
                """
                SELECT
                    CASE WHEN from_user = ? THEN to_user ELSE from_user END AS other,
                    MAX(created_at) AS last_at
                FROM messages
                WHERE (from_user = ? OR to_user = ?)
                  AND to_user NOT IN (?, ?)
                GROUP BY other
                """,
                [identity, identity, identity, *BROADCAST_RECIPIENTS]
            ).fetchall()

        return {
            other: _from_db_timestamp(last_at)
            for other, last_at in rows
            if other != identity
        }

    def history(
        self, identity_a: str, identity_b: str, limit: int, offset: int = 0
    ) -> List[StoredMessage]:
        """Get one page of the conversation between two identities.

        Args:
            identity_a: One participant.
            identity_b: The other participant.
            limit: Maximum number of messages.
            offset: Number of newer messages to skip.

        Returns:
            Messages in chronological order (oldest first).
        """
        with self._cursor() as cur:
            rows = cur.execute(
                """
                SELECT id, from_user, to_user, body, created_at
                FROM messages
                WHERE (from_user = ? AND to_user = ?)
                   OR (from_user = ? AND to_user = ?)
                ORDER BY created_at DESC, id DESC
                LIMIT ? OFFSET ?
                """,
                [identity_a, identity_b, identity_b, identity_a, limit, offset]
            ).fetchall()

        page = [
            StoredMessage(
                id=row[0],
                from_user=row[1],
                to_user=row[2],
                body=row[3],
                created_at=_from_db_timestamp(row[4]),
            )
            for row in rows
        ]
        page.reverse()
        return page

    def count(self) -> int:
        """Total number of stored messages."""
        with self._cursor() as cur:
            return cur.execute("SELECT COUNT(*) FROM messages").fetchone()[0]

    def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
