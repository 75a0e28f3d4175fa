"""In-memory mirror of the persisted session list."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any, Callable, Dict, List, Optional

from .errors import StorageError
from .schemas import ChatSession, new_id
from .storage import LocalStore
from .timeline import MessageTimeline

logger = logging.getLogger(__name__)

_MUTABLE_FIELDS = {"title", "timestamp", "use_memories", "model_id", "title_requested"}


class SessionRegistry:
    """Authoritative session cache for the lifetime of the process.

    Every mutation awaits the Local Store write and then updates the cached
    copy under one lock, so readers never see the cache and the store disagree
    about a completed mutation.
    """

    def __init__(
        self,
        store: LocalStore,
        timeline: MessageTimeline,
        *,
        default_title: str = "New Chat",
        read_retries: int = 2,
    ) -> None:
        self.store = store
        self.timeline = timeline
        self.default_title = default_title
        self.read_retries = max(1, read_retries)
        self.sessions: List[ChatSession] = []
        self.active_id: Optional[str] = None
        self._lock = asyncio.Lock()

    @property
    def active(self) -> Optional[ChatSession]:
        return self.get(self.active_id) if self.active_id else None

    def get(self, chat_id: str) -> Optional[ChatSession]:
        for session in self.sessions:
            if session.id == chat_id:
                return session
        return None

    def require(self, chat_id: str) -> ChatSession:
        session = self.get(chat_id)
        if not session:
            raise ValueError(f"No chat session found for id '{chat_id}'")
        return session

    def search(self, term: str) -> List[ChatSession]:
        """Sessions whose title contains ``term`` (case-insensitive), newest first."""
        needle = (term or "").lower()
        return [s for s in self.sessions if needle in s.title.lower()]

    async def load(self) -> List[ChatSession]:
        """Fill the cache from storage; a fresh store gets one active session."""
        self.sessions = await self._list_sessions_with_retry()
        self._sort()
        if not self.sessions:
            logger.info("No chat sessions found; creating the initial session")
            await self.create_session(make_active=True)
        elif not self.get(self.active_id or ""):
            self.set_active(self.sessions[0].id)
        return list(self.sessions)

    async def _list_sessions_with_retry(self) -> List[ChatSession]:
        for attempt in range(1, self.read_retries + 1):
            try:
                return await self.store.list_sessions()
            except StorageError:
                if attempt == self.read_retries:
                    raise
                logger.warning("Listing sessions failed (attempt %d/%d); retrying", attempt, self.read_retries)
        return []

    def set_active(self, chat_id: Optional[str]) -> None:
        """Mark a session active and clear the transient timeline for it."""
        if chat_id is not None:
            self.require(chat_id)
        self.active_id = chat_id
        self.timeline.reset(chat_id)
        logger.debug("Active session is now %s", chat_id)

    async def create_session(self, make_active: bool = True) -> ChatSession:
        async with self._lock:
            session = ChatSession(id=new_id(), title=self.default_title)
            stored = await self.store.put_session(session)
            self.sessions.append(stored)
            self._sort()
        logger.info("Created chat session %s", stored.id)
        if make_active:
            self.set_active(stored.id)
        return stored

    async def update_session_field(
        self,
        chat_id: str,
        patch: Dict[str, Any],
        *,
        when: Optional[Callable[[ChatSession], bool]] = None,
    ) -> ChatSession:
        """Merge ``patch`` into the current cached copy and persist the result.

        The timestamp is refreshed unless the patch carries one, so any update
        moves the session to the top of the recency order. With ``when``, the
        patch is applied only if it accepts the current copy; otherwise that
        copy is returned unchanged.
        """
        unknown = set(patch) - _MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update session field(s): {', '.join(sorted(unknown))}")

        async with self._lock:
            current = self.require(chat_id)
            if when is not None and not when(current):
                logger.debug("Skipped update of session %s; precondition no longer holds", chat_id)
                return current
            merged = dataclasses.replace(current, **{**patch, "timestamp": patch.get("timestamp")})
            stored = await self.store.put_session(merged)
            self.sessions = [stored if s.id == chat_id else s for s in self.sessions]
            self._sort()
        logger.debug("Updated session %s fields %s", chat_id, sorted(patch))
        return stored

    async def delete_session(self, chat_id: str) -> Optional[str]:
        """Delete a session; returns the id of the active session afterwards."""
        async with self._lock:
            self.require(chat_id)
            await self.store.delete_session(chat_id)
            self.sessions = [s for s in self.sessions if s.id != chat_id]
        if self.active_id == chat_id:
            self.set_active(self.sessions[0].id if self.sessions else None)
        return self.active_id

    def _sort(self) -> None:
        self.sessions.sort(key=lambda s: s.timestamp or 0.0, reverse=True)
