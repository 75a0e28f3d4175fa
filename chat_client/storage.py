"""Durable local storage for sessions, messages, the memory cache and preferences.

Each operation opens its own SQLite connection and runs in the threadpool so the
event loop never blocks on disk I/O. Multi-row writes run inside one
transaction: they either apply completely or not at all.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from fastapi.concurrency import run_in_threadpool

from .errors import StorageError, ValidationError
from .schemas import ROLES, ChatPreferences, ChatSession, Message, RetrievedMemoryEntry

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        timestamp REAL NOT NULL,
        use_memories INTEGER NOT NULL DEFAULT 0,
        model_id TEXT,
        title_requested INTEGER NOT NULL DEFAULT 0
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_timestamp ON sessions (timestamp)",
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        chat_id TEXT NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at REAL NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_chat_id ON messages (chat_id, created_at)",
    """
    CREATE TABLE IF NOT EXISTS memory_cache (
        user_id TEXT NOT NULL,
        memory_id TEXT NOT NULL,
        text TEXT NOT NULL,
        created_at TEXT,
        PRIMARY KEY (user_id, memory_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS preferences (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    )
    """,
)


class LocalStore:
    """Asynchronous CRUD over the persisted chat state."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._init_database()

    def _init_database(self) -> None:
        directory = os.path.dirname(self.db_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        try:
            with self._connect() as conn:
                with conn:
                    for statement in _SCHEMA:
                        conn.execute(statement)
        except sqlite3.Error as exc:
            logger.exception("Error initializing local store at %s", self.db_path)
            raise StorageError(f"Could not initialise local store: {exc}") from exc
        logger.info("Local store initialised at %s", self.db_path)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    async def _run(self, operation: str, func: Callable[..., Any], *args: Any) -> Any:
        try:
            return await run_in_threadpool(func, *args)
        except sqlite3.Error as exc:
            logger.exception("Local store operation '%s' failed", operation)
            raise StorageError(f"Local store operation '{operation}' failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    async def put_session(self, session: ChatSession) -> ChatSession:
        """Insert or overwrite a session; a missing timestamp is set to now."""
        if not session.id:
            raise ValidationError("session id is required")
        stored = ChatSession(
            id=session.id,
            title=session.title,
            timestamp=session.timestamp if session.timestamp is not None else time.time(),
            use_memories=bool(session.use_memories),
            model_id=session.model_id,
            title_requested=bool(session.title_requested),
        )
        await self._run("put_session", self._put_session, stored)
        return stored

    def _put_session(self, session: ChatSession) -> None:
        with self._connect() as conn:
            with conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO sessions
                        (id, title, timestamp, use_memories, model_id, title_requested)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session.id,
                        session.title,
                        session.timestamp,
                        int(session.use_memories),
                        session.model_id,
                        int(session.title_requested),
                    ),
                )

    async def get_session(self, chat_id: str) -> Optional[ChatSession]:
        return await self._run("get_session", self._get_session, chat_id)

    def _get_session(self, chat_id: str) -> Optional[ChatSession]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE id = ?", (chat_id,)).fetchone()
        return _session_from_row(row) if row else None

    async def list_sessions(self) -> List[ChatSession]:
        """Return every session, most recently modified first."""
        return await self._run("list_sessions", self._list_sessions)

    def _list_sessions(self) -> List[ChatSession]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM sessions ORDER BY timestamp DESC, rowid DESC").fetchall()
        return [_session_from_row(row) for row in rows]

    async def delete_session(self, chat_id: str) -> None:
        """Remove a session and all of its messages in one transaction."""
        await self._run("delete_session", self._delete_session, chat_id)

    def _delete_session(self, chat_id: str) -> None:
        with self._connect() as conn:
            with conn:
                conn.execute("DELETE FROM messages WHERE chat_id = ?", (chat_id,))
                conn.execute("DELETE FROM sessions WHERE id = ?", (chat_id,))
        logger.info("Deleted session %s and its messages", chat_id)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------
    async def put_message(self, message: Message) -> Message:
        """Insert or overwrite a message by id."""
        _validate_message(message)
        stored = Message(
            id=message.id,
            chat_id=message.chat_id,
            role=message.role,
            content=message.content,
            created_at=message.created_at if message.created_at is not None else time.time(),
        )
        await self._run("put_message", self._put_message, stored)
        return stored

    def _put_message(self, message: Message) -> None:
        with self._connect() as conn:
            with conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO messages (id, chat_id, role, content, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (message.id, message.chat_id, message.role, message.content, message.created_at),
                )

    async def list_messages(self, chat_id: str) -> List[Message]:
        """Return a session's messages ordered by ``created_at`` ascending."""
        return await self._run("list_messages", self._list_messages, chat_id)

    def _list_messages(self, chat_id: str) -> List[Message]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM messages WHERE chat_id = ? ORDER BY created_at ASC, id ASC",
                (chat_id,),
            ).fetchall()
        return [
            Message(
                id=row["id"],
                chat_id=row["chat_id"],
                role=row["role"],
                content=row["content"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Memory cache
    # ------------------------------------------------------------------
    async def replace_memory_cache(self, user_id: str, entries: Iterable[RetrievedMemoryEntry]) -> None:
        """Atomically swap the cached memories of ``user_id`` for ``entries``."""
        if not user_id:
            raise ValidationError("user_id is required")
        await self._run("replace_memory_cache", self._replace_memory_cache, user_id, list(entries))

    def _replace_memory_cache(self, user_id: str, entries: List[RetrievedMemoryEntry]) -> None:
        with self._connect() as conn:
            with conn:
                conn.execute("DELETE FROM memory_cache WHERE user_id = ?", (user_id,))
                conn.executemany(
                    """
                    INSERT OR REPLACE INTO memory_cache (user_id, memory_id, text, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    [(user_id, entry.id, entry.text, entry.created_at) for entry in entries],
                )
        logger.debug("Replaced memory cache for user %s with %d entries", user_id, len(entries))

    async def list_memory_cache(self, user_id: str) -> List[RetrievedMemoryEntry]:
        return await self._run("list_memory_cache", self._list_memory_cache, user_id)

    def _list_memory_cache(self, user_id: str) -> List[RetrievedMemoryEntry]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM memory_cache WHERE user_id = ? ORDER BY created_at ASC, memory_id ASC",
                (user_id,),
            ).fetchall()
        return [
            RetrievedMemoryEntry(
                id=row["memory_id"],
                text=row["text"],
                created_at=row["created_at"],
                user_id=row["user_id"],
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Preferences
    # ------------------------------------------------------------------
    async def load_preferences(self) -> Dict[str, Any]:
        return await self._run("load_preferences", self._load_preferences)

    def _load_preferences(self) -> Dict[str, Any]:
        with self._connect() as conn:
            rows = conn.execute("SELECT key, value FROM preferences").fetchall()
        return {row["key"]: json.loads(row["value"]) for row in rows}

    async def save_preferences(self, preferences: ChatPreferences) -> None:
        values = {
            "global_chat_model_id": preferences.global_chat_model_id,
            "global_title_model_id": preferences.global_title_model_id,
            "memories_enabled": preferences.memories_enabled,
            "user_id": preferences.user_id,
        }
        await self._run("save_preferences", self._save_preferences, values)

    def _save_preferences(self, values: Dict[str, Any]) -> None:
        with self._connect() as conn:
            with conn:
                conn.executemany(
                    "INSERT OR REPLACE INTO preferences (key, value) VALUES (?, ?)",
                    [(key, json.dumps(value)) for key, value in values.items()],
                )


def _validate_message(message: Message) -> None:
    missing = [name for name in ("id", "chat_id", "role") if not getattr(message, name, None)]
    if missing:
        raise ValidationError(f"message is missing required field(s): {', '.join(missing)}")
    if message.role not in ROLES:
        raise ValidationError(f"message role must be one of {ROLES}, got '{message.role}'")
    if not isinstance(message.content, str):
        raise ValidationError("message content must be a string")


def _session_from_row(row: sqlite3.Row) -> ChatSession:
    return ChatSession(
        id=row["id"],
        title=row["title"],
        timestamp=row["timestamp"],
        use_memories=bool(row["use_memories"]),
        model_id=row["model_id"],
        title_requested=bool(row["title_requested"]),
    )
