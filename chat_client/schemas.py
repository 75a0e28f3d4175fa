"""Domain records for sessions, messages, memories and outbound requests."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

ROLES = ("system", "user", "assistant")


def new_id() -> str:
    return str(uuid.uuid4())


class MonotonicClock:
    """Wall-clock timestamps (seconds) that never repeat or go backwards.

    ``createdAt`` is the ordering key within a timeline, so two messages created
    in the same clock tick must still receive distinct, increasing values.
    """

    def __init__(self, resolution: float = 1e-6) -> None:
        self.resolution = resolution
        self._last = 0.0

    def now(self) -> float:
        current = time.time()
        if current <= self._last:
            current = self._last + self.resolution
        self._last = current
        return current


@dataclass
class ChatSession:
    id: str
    title: str
    timestamp: Optional[float] = None
    use_memories: bool = False
    model_id: Optional[str] = None
    title_requested: bool = False


@dataclass
class Message:
    id: Optional[str]
    chat_id: Optional[str]
    role: str
    content: str
    created_at: Optional[float] = None

    @classmethod
    def create(cls, chat_id: str, role: str, content: str, clock: MonotonicClock) -> "Message":
        return cls(id=new_id(), chat_id=chat_id, role=role, content=content, created_at=clock.now())

    def as_prompt(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass
class RetrievedMemoryEntry:
    id: str
    text: str
    created_at: Optional[str] = None
    user_id: Optional[str] = None


@dataclass
class ChatPreferences:
    """Process-wide user preferences, persisted alongside the sessions."""

    global_chat_model_id: str
    global_title_model_id: str
    memories_enabled: bool = True
    user_id: Optional[str] = None


@dataclass(frozen=True)
class ChatRequest:
    """Fully resolved payload for one streaming call.

    Built only from resolved values so a retry replays exactly the same call.
    """

    chat_id: str
    model_id: str
    provider: str
    model: str
    messages: Tuple[Dict[str, str], ...] = field(default_factory=tuple)
    memories: Tuple[RetrievedMemoryEntry, ...] = field(default_factory=tuple)
    memories_unavailable: bool = False

    def payload(self) -> Dict[str, object]:
        return {"model": self.model, "messages": [dict(m) for m in self.messages]}

    @property
    def message_list(self) -> List[Dict[str, str]]:
        return [dict(m) for m in self.messages]
