"""High level orchestration of sessions, timelines, requests and streams."""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional

from .composer import MemorySearch, RequestComposer
from .config import ChatConfig
from .errors import ChatClientError, StorageError
from .llm_client import ChatLLMClient
from .models import ModelCatalog
from .registry import SessionRegistry
from .schemas import ChatPreferences, ChatRequest, ChatSession, Message, MonotonicClock
from .storage import LocalStore
from .streaming import StreamingResponseConsumer, StreamState
from .timeline import MessageTimeline
from .titles import TitleGenerator, TitleTaskRunner

logger = logging.getLogger(__name__)


class ChatService:
    """Core chat engine used by both the API and direct Python consumers.

    Components are built from ``config`` unless supplied explicitly, so tests
    can inject fakes for the store, the model client and the memory search.
    """

    def __init__(
        self,
        config: Optional[ChatConfig] = None,
        *,
        store: Optional[LocalStore] = None,
        catalog: Optional[ModelCatalog] = None,
        llm_client: Optional[ChatLLMClient] = None,
        memory: Optional[MemorySearch] = None,
        title_generator: Optional[TitleGenerator] = None,
        clock: Optional[MonotonicClock] = None,
    ) -> None:
        self.config = config or ChatConfig()
        self.clock = clock or MonotonicClock()
        self.catalog = catalog or ModelCatalog()
        self.store = store or LocalStore(self.config.db_path)
        self.client = llm_client or ChatLLMClient(self.config.providers)
        self.memory = memory

        self.timeline = MessageTimeline(self.clock)
        self.registry = SessionRegistry(
            self.store,
            self.timeline,
            default_title=self.config.default_title,
            read_retries=self.config.read_retries,
        )
        self.composer = RequestComposer(
            self.catalog,
            memory,
            base_system_prompt=self.config.system_prompt,
            memory_top_k=self.config.memory_top_k,
        )
        self.consumer = StreamingResponseConsumer(
            self.client,
            self._commit_reply,
            is_live=self._is_live,
            clock=self.clock,
        )
        generator = title_generator or TitleGenerator(
            self.client,
            self.catalog,
            prompt=self.config.title_prompt,
            max_tokens=self.config.title_max_tokens,
            temperature=self.config.title_temperature,
        )
        self.titles = TitleTaskRunner(generator, self.registry)

        self.preferences: Optional[ChatPreferences] = None
        self.last_error: Optional[ChatClientError] = None
        self.last_reply: Optional[Message] = None
        self._pending_user_message: Optional[Message] = None
        # Held by reply commits and session deletes so a reply never outlives its session.
        self._commit_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Load preferences and sessions, then the active session's messages."""
        self.preferences = await self._load_preferences()
        await self.registry.load()
        if self.registry.active_id:
            await self._reload_timeline()
        logger.info("Chat service ready with %d session(s)", len(self.registry.sessions))

    async def close(self) -> None:
        await self.titles.drain()

    async def _load_preferences(self) -> ChatPreferences:
        chat_default = self._configured_model(self.config.default_chat_model_id, "chat")
        title_default = self._configured_model(self.config.default_title_model_id, "title")
        stored = await self.store.load_preferences()
        preferences = ChatPreferences(
            global_chat_model_id=stored.get("global_chat_model_id") or chat_default,
            global_title_model_id=stored.get("global_title_model_id") or title_default,
            memories_enabled=stored.get("memories_enabled", self.config.memories_enabled_by_default),
            user_id=stored.get("user_id") or str(uuid.uuid4()),
        )
        if stored != {
            "global_chat_model_id": preferences.global_chat_model_id,
            "global_title_model_id": preferences.global_title_model_id,
            "memories_enabled": preferences.memories_enabled,
            "user_id": preferences.user_id,
        }:
            await self.store.save_preferences(preferences)
        return preferences

    def _configured_model(self, model_id: Optional[str], usage: str) -> str:
        if model_id:
            return self.catalog.require_usage(model_id, usage).id
        return self.catalog.default_for(usage).id

    @property
    def prefs(self) -> ChatPreferences:
        if self.preferences is None:
            raise RuntimeError("ChatService.start() must be awaited before use")
        return self.preferences

    async def update_preferences(
        self,
        *,
        global_chat_model_id: Optional[str] = None,
        global_title_model_id: Optional[str] = None,
        memories_enabled: Optional[bool] = None,
    ) -> ChatPreferences:
        prefs = self.prefs
        if global_chat_model_id is not None:
            prefs.global_chat_model_id = self.catalog.require_usage(global_chat_model_id, "chat").id
        if global_title_model_id is not None:
            prefs.global_title_model_id = self.catalog.require_usage(global_title_model_id, "title").id
        if memories_enabled is not None:
            prefs.memories_enabled = memories_enabled
        await self.store.save_preferences(prefs)
        logger.info(
            "Preferences updated: chat=%s title=%s memories=%s",
            prefs.global_chat_model_id,
            prefs.global_title_model_id,
            prefs.memories_enabled,
        )
        return prefs

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def list_sessions(self, search: Optional[str] = None) -> List[ChatSession]:
        return self.registry.search(search) if search else list(self.registry.sessions)

    async def new_session(self, make_active: bool = True) -> ChatSession:
        if make_active:
            self.consumer.cancel()
        return await self.registry.create_session(make_active=make_active)

    async def select_session(self, chat_id: str) -> List[Message]:
        """Make ``chat_id`` active and return its reconciled timeline."""
        self.registry.require(chat_id)
        if chat_id != self.registry.active_id:
            if self.consumer.chat_id and self.consumer.chat_id != chat_id:
                self.consumer.cancel()
            self.registry.set_active(chat_id)
        return await self._reload_timeline()

    async def delete_session(self, chat_id: str) -> Optional[str]:
        self.registry.require(chat_id)
        self.consumer.cancel(chat_id)
        was_active = chat_id == self.registry.active_id
        async with self._commit_lock:
            active_id = await self.registry.delete_session(chat_id)
        if was_active and active_id:
            await self._reload_timeline()
        return active_id

    async def set_session_model(self, chat_id: str, model_id: Optional[str]) -> ChatSession:
        """Override the chat model of one session; ``None`` restores the global default."""
        if model_id is not None:
            self.catalog.require_usage(model_id, "chat")
        return await self.registry.update_session_field(chat_id, {"model_id": model_id})

    async def rename_session(self, chat_id: str, title: str) -> ChatSession:
        return await self.registry.update_session_field(chat_id, {"title": title.strip(), "title_requested": True})

    async def set_session_memories(self, chat_id: str, enabled: bool) -> ChatSession:
        return await self.registry.update_session_field(chat_id, {"use_memories": bool(enabled)})

    async def messages(self, chat_id: str) -> List[Message]:
        self.registry.require(chat_id)
        if chat_id == self.timeline.chat_id:
            return self.timeline.messages
        return await self.store.list_messages(chat_id)

    async def _reload_timeline(self) -> List[Message]:
        chat_id = self.registry.active_id
        if not chat_id:
            return []
        try:
            persisted = await self.store.list_messages(chat_id)
        except StorageError as exc:
            self.last_error = exc
            raise
        if self.timeline.chat_id != chat_id:
            logger.debug("Session changed while loading %s; skipping reconcile", chat_id)
            return self.timeline.messages
        return self.timeline.reconcile(persisted)

    # ------------------------------------------------------------------
    # Chat turns
    # ------------------------------------------------------------------
    async def stream_reply(self, text: str) -> AsyncIterator[str]:
        """Send ``text`` in the active session and yield the reply tokens.

        The user message is shown first and persisted second; the assistant
        reply is committed once when the stream ends.
        """
        session = self.registry.active
        if not text or not text.strip() or session is None:
            return
        if self.consumer.state == StreamState.ERRORED:
            self.consumer.acknowledge_error()
        if not self.consumer.begin(session.id):
            return
        self.last_error = None
        self._pending_user_message = None

        user_message = Message.create(session.id, "user", text, self.clock)
        try:
            request = await self.composer.compose(session, [*self.timeline.messages, user_message], self.prefs)
        except ChatClientError as exc:
            self._surface(exc)
            raise

        self.timeline.append(user_message)
        await self._persist_user_message(user_message, request)
        async with aclosing(self._consume(request)) as tokens:
            async for token in tokens:
                yield token

    async def submit(self, text: str) -> Optional[Message]:
        """Run a full turn and return the committed assistant message, if any."""
        self.last_reply = None
        async for _ in self.stream_reply(text):
            pass
        return self.last_reply

    async def retry_reply(self) -> AsyncIterator[str]:
        """Retry whatever failed last: saving the reply, saving the user message, or the send."""
        if self.consumer.state != StreamState.ERRORED:
            return
        if self.consumer.pending_commit is not None:
            try:
                await self.consumer.retry_commit()
            except ChatClientError as exc:
                self.last_error = exc
                raise
            self.last_error = None
            return

        request = self.consumer.last_request
        pending_user = self._pending_user_message
        if request is None or request.chat_id != self.registry.active_id:
            logger.info("Nothing to retry for the active session")
            return

        self.consumer.acknowledge_error()
        if not self.consumer.begin(request.chat_id):
            return
        self.last_error = None
        if pending_user is not None:
            await self._persist_user_message(pending_user, request)
        async with aclosing(self._consume(request)) as tokens:
            async for token in tokens:
                yield token

    async def retry(self) -> Optional[Message]:
        self.last_reply = None
        async for _ in self.retry_reply():
            pass
        return self.last_reply

    def stop(self) -> None:
        self.consumer.stop()

    def state(self) -> Dict[str, Any]:
        error = self.last_error or self.consumer.error
        return {
            "state": self.consumer.state.value,
            "chat_id": self.consumer.chat_id,
            "active_chat_id": self.registry.active_id,
            "partial_content": self.consumer.partial_content,
            "error": (
                {"kind": error.kind, "message": str(error), "retryable": error.retryable} if error else None
            ),
            "pending_save": self.consumer.pending_commit is not None or self._pending_user_message is not None,
        }

    async def _persist_user_message(self, message: Message, request: ChatRequest) -> None:
        try:
            await self.store.put_message(message)
        except StorageError as exc:
            self._pending_user_message = message
            self.consumer.last_request = request
            self._surface(exc)
            raise
        self._pending_user_message = None
        await self._maybe_request_title(message)

    async def _maybe_request_title(self, user_message: Message) -> None:
        session = self.registry.get(user_message.chat_id)
        if not session or session.title_requested or session.title != self.config.default_title:
            return
        try:
            await self.registry.update_session_field(session.id, {"title_requested": True})
        except StorageError as exc:
            logger.warning("Could not flag session %s for titling; will try on the next message: %s", session.id, exc)
            return
        self.titles.schedule(session.id, user_message.content, self.prefs.global_title_model_id)

    async def _consume(self, request: ChatRequest) -> AsyncIterator[str]:
        try:
            async with aclosing(self.consumer.stream(request)) as tokens:
                async for token in tokens:
                    yield token
        except ChatClientError as exc:
            self.last_error = exc
            raise

    async def _commit_reply(self, message: Message) -> None:
        async with self._commit_lock:
            if self.registry.get(message.chat_id) is None:
                logger.info("Session %s was deleted; dropping reply %s", message.chat_id, message.id)
                return
            if self.timeline.chat_id == message.chat_id:
                self.timeline.append(message)
            await self.store.put_message(message)
        self.last_reply = message

    def _is_live(self, chat_id: str) -> bool:
        return self.registry.active_id == chat_id

    def _surface(self, error: ChatClientError) -> None:
        self.last_error = error
        self.consumer.fail(error)
