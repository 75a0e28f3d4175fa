"""Builds the outbound request for one chat turn."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Protocol, Sequence

from .errors import MemorySubsystemError
from .models import ModelCatalog, ModelConfig
from .schemas import ChatPreferences, ChatRequest, ChatSession, Message, RetrievedMemoryEntry

logger = logging.getLogger(__name__)

MEMORIES_HEADER = "--- Relevant User Memories ---"
MEMORIES_FOOTER = "--- End of Memories ---"
MEMORIES_UNAVAILABLE_NOTICE = "[Notice: the user's saved memories are unavailable for this reply.]"
CONVERSATION_DELIMITER = "--- Current Conversation ---"


class MemorySearch(Protocol):
    async def search(self, user_id: str, query: str, limit: int = 3) -> List[RetrievedMemoryEntry]:
        ...


def compose_system_prompt(
    base: str,
    memories: Sequence[RetrievedMemoryEntry] = (),
    *,
    memories_unavailable: bool = False,
) -> str:
    """Base instruction, optional memories block, then the conversation delimiter."""
    parts = [base.rstrip()] if base and base.strip() else []
    if memories:
        lines = [MEMORIES_HEADER]
        lines.extend(f"- {entry.text}" for entry in memories)
        lines.append(MEMORIES_FOOTER)
        parts.append("\n".join(lines))
    elif memories_unavailable:
        parts.append(MEMORIES_UNAVAILABLE_NOTICE)
    parts.append(CONVERSATION_DELIMITER)
    return "\n\n".join(parts)


class RequestComposer:
    """Resolves model and memory settings and assembles the message list.

    The result depends only on the session, the history, the preferences and
    whatever the memory search returned, which keeps retries deterministic.
    """

    def __init__(
        self,
        catalog: ModelCatalog,
        memory_search: Optional[MemorySearch] = None,
        *,
        base_system_prompt: str,
        memory_top_k: int = 3,
    ) -> None:
        self.catalog = catalog
        self.memory_search = memory_search
        self.base_system_prompt = base_system_prompt
        self.memory_top_k = memory_top_k

    def resolve_model(self, session: ChatSession, preferences: ChatPreferences) -> ModelConfig:
        effective_model_id = session.model_id or preferences.global_chat_model_id
        return self.catalog.require_usage(effective_model_id, "chat")

    @staticmethod
    def memory_active(session: ChatSession, preferences: ChatPreferences) -> bool:
        return bool(preferences.memories_enabled and session.use_memories and preferences.user_id)

    async def compose(
        self,
        session: ChatSession,
        history: Sequence[Message],
        preferences: ChatPreferences,
    ) -> ChatRequest:
        model = self.resolve_model(session, preferences)

        memories: List[RetrievedMemoryEntry] = []
        unavailable = False
        query = _latest_user_content(history)
        if self.memory_active(session, preferences) and query:
            memories, unavailable = await self._fetch_memories(preferences.user_id, query)

        outbound: List[Dict[str, str]] = [message.as_prompt() for message in history]
        system_index = next((i for i, m in enumerate(outbound) if m["role"] == "system"), None)
        base = outbound[system_index]["content"] if system_index is not None else self.base_system_prompt
        system_message = {
            "role": "system",
            "content": compose_system_prompt(base, memories, memories_unavailable=unavailable),
        }
        if system_index is None:
            outbound.insert(0, system_message)
        else:
            outbound[system_index] = system_message

        logger.debug(
            "Composed request for session %s: model=%s messages=%d memories=%d",
            session.id,
            model.id,
            len(outbound),
            len(memories),
        )
        return ChatRequest(
            chat_id=session.id,
            model_id=model.id,
            provider=model.provider_name,
            model=model.provider_model_id,
            messages=tuple(outbound),
            memories=tuple(memories),
            memories_unavailable=unavailable,
        )

    async def _fetch_memories(self, user_id: str, query: str) -> tuple[List[RetrievedMemoryEntry], bool]:
        if self.memory_search is None:
            return [], True
        try:
            entries = await self.memory_search.search(user_id, query, self.memory_top_k)
        except MemorySubsystemError as exc:
            logger.warning("Memory search failed; continuing without memories: %s", exc)
            return [], True
        return list(entries)[: self.memory_top_k], False


def _latest_user_content(history: Sequence[Message]) -> Optional[str]:
    for message in reversed(history):
        if message.role == "user" and message.content.strip():
            return message.content
    return None
