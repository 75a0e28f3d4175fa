"""Memory operations with a wholesale-replaced local cache."""

from __future__ import annotations

import logging
from typing import List

from fastapi.concurrency import run_in_threadpool

from chat_client.errors import MemorySubsystemError
from chat_client.schemas import RetrievedMemoryEntry
from chat_client.storage import LocalStore

from .client import MemoryClient

logger = logging.getLogger(__name__)


class MemoryManager:
    """Runs memory operations and keeps the Local Store cache in step.

    After ``add``, ``delete`` and ``sync`` the cache for the user is replaced
    by the authoritative set the service returned; it is never patched.
    """

    def __init__(self, client: MemoryClient, store: LocalStore) -> None:
        self.client = client
        self.store = store

    async def search(self, user_id: str, query: str, limit: int = 3) -> List[RetrievedMemoryEntry]:
        return await self._call("search", self.client.search, user_id, query, limit)

    async def list(self, user_id: str, *, enabled: bool = True) -> List[RetrievedMemoryEntry]:
        """Current memories for display; empty while memories are switched off."""
        if not enabled:
            return []
        entries = await self._call("list", self.client.list_all, user_id)
        await self.store.replace_memory_cache(user_id, entries)
        return entries

    async def add(self, user_id: str, content: str) -> List[RetrievedMemoryEntry]:
        entries = await self._call("add", self.client.add, user_id, content)
        await self.store.replace_memory_cache(user_id, entries)
        logger.info("Added memory for user %s (%d total)", user_id, len(entries))
        return entries

    async def delete(self, user_id: str, memory_id: str) -> List[RetrievedMemoryEntry]:
        entries = await self._call("delete", self.client.delete, user_id, memory_id)
        await self.store.replace_memory_cache(user_id, entries)
        logger.info("Deleted memory %s for user %s (%d remaining)", memory_id, user_id, len(entries))
        return entries

    async def sync(self, user_id: str) -> List[RetrievedMemoryEntry]:
        entries = await self._call("sync", self.client.list_all, user_id)
        await self.store.replace_memory_cache(user_id, entries)
        logger.info("Synced %d memories for user %s", len(entries), user_id)
        return entries

    async def cached(self, user_id: str) -> List[RetrievedMemoryEntry]:
        return await self.store.list_memory_cache(user_id)

    async def _call(self, operation: str, func, *args) -> List[RetrievedMemoryEntry]:
        try:
            return await run_in_threadpool(func, *args)
        except MemorySubsystemError:
            raise
        except Exception as exc:
            logger.exception("Memory %s failed", operation)
            raise MemorySubsystemError(f"Memory {operation} failed: {exc}") from exc
