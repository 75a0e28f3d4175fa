"""Memory panel routes, mounted by :func:`chat_client.api.create_app`."""

from __future__ import annotations

import dataclasses
import logging
from typing import List, Optional

from fastapi import APIRouter, Query, Request
from pydantic import BaseModel, field_validator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/memories", tags=["memories"])


class MemoryCreate(BaseModel):
    content: str

    @field_validator("content")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


class MemoryOut(BaseModel):
    id: str
    text: str
    created_at: Optional[str] = None
    user_id: Optional[str] = None


def _context(request: Request):
    service = request.app.state.service
    return request.app.state.memory_manager, service.prefs


@router.get("", response_model=List[MemoryOut])
async def list_memories(request: Request):
    manager, prefs = _context(request)
    entries = await manager.list(prefs.user_id, enabled=prefs.memories_enabled)
    return [dataclasses.asdict(e) for e in entries]


@router.get("/search", response_model=List[MemoryOut])
async def search_memories(request: Request, query: str = Query(..., min_length=1), limit: int = Query(3, gt=0)):
    manager, prefs = _context(request)
    if not prefs.memories_enabled:
        return []
    entries = await manager.search(prefs.user_id, query, limit)
    return [dataclasses.asdict(e) for e in entries]


@router.get("/cached", response_model=List[MemoryOut])
async def cached_memories(request: Request):
    manager, prefs = _context(request)
    return [dataclasses.asdict(e) for e in await manager.cached(prefs.user_id)]


@router.post("", response_model=List[MemoryOut])
async def add_memory(request: Request, body: MemoryCreate):
    manager, prefs = _context(request)
    logger.info("Adding memory for user %s", prefs.user_id)
    entries = await manager.add(prefs.user_id, body.content)
    return [dataclasses.asdict(e) for e in entries]


@router.delete("/{memory_id}", response_model=List[MemoryOut])
async def delete_memory(request: Request, memory_id: str):
    manager, prefs = _context(request)
    entries = await manager.delete(prefs.user_id, memory_id)
    return [dataclasses.asdict(e) for e in entries]


@router.post("/sync", response_model=List[MemoryOut])
async def sync_memories(request: Request):
    manager, prefs = _context(request)
    entries = await manager.sync(prefs.user_id)
    return [dataclasses.asdict(e) for e in entries]
