import threading
from typing import List, Optional

import pytest

from chat_client.config import ChatConfig
from chat_client.errors import MemorySubsystemError
from chat_client.llm_client import StreamDelta
from chat_client.models import ModelCatalog
from chat_client.schemas import ChatSession, Message, MonotonicClock, RetrievedMemoryEntry
from chat_client.service import ChatService
from chat_client.storage import LocalStore


class FakeLLMClient:
    """Scripted stand-in for ChatLLMClient.

    Each entry in ``replies`` is the token list for one streaming call. An
    exception instance among the tokens is raised at that point of the stream.
    """

    def __init__(self, replies=None, *, with_ids=True):
        self.replies = list(replies or [])
        self.with_ids = with_ids
        self.requests = []
        self.closed = 0

    def stream_completion(self, request):
        self.requests.append(request)
        tokens = self.replies.pop(0) if self.replies else ["ok"]
        response_id = f"resp-{len(self.requests)}" if self.with_ids else None

        def generate():
            try:
                for token in tokens:
                    if isinstance(token, Exception):
                        raise token
                    yield StreamDelta(content=token, response_id=response_id)
            finally:
                self.closed += 1

        return generate()

    def complete(self, provider_name, model, messages, *, max_tokens=None, temperature=None):
        return "Generated Title"


class FakeMemory:
    def __init__(self, entries: Optional[List[RetrievedMemoryEntry]] = None, error: Optional[Exception] = None):
        self.entries = list(entries or [])
        self.error = error
        self.queries = []

    async def search(self, user_id, query, limit=3):
        self.queries.append((user_id, query, limit))
        if self.error:
            raise self.error
        return self.entries[:limit]


class FakeMemoryClient:
    """Synchronous stand-in for MemoryClient keeping memories in a list."""

    def __init__(self, entries=()):
        self.entries = list(entries)
        self.fail = False

    def _check(self):
        if self.fail:
            raise MemorySubsystemError("service down")

    def list_all(self, user_id):
        self._check()
        return list(self.entries)

    def search(self, user_id, query, limit=3):
        self._check()
        return [e for e in self.entries if query.lower() in e.text.lower()][:limit]

    def add(self, user_id, content):
        self._check()
        self.entries.append(RetrievedMemoryEntry(f"m{len(self.entries) + 1}", content))
        return list(self.entries)

    def delete(self, user_id, memory_id):
        self._check()
        self.entries = [e for e in self.entries if e.id != memory_id]
        return list(self.entries)


class FakeTitleGenerator:
    def __init__(self, title: Optional[str] = "Trip Plans", error: Optional[Exception] = None):
        self.title = title
        self.error = error
        self.calls = []
        self.release = threading.Event()
        self.release.set()

    def generate(self, message_content, model_id):
        self.calls.append((message_content, model_id))
        self.release.wait(timeout=5)
        if self.error:
            raise self.error
        return self.title


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "chat.db")


@pytest.fixture
def store(db_path):
    return LocalStore(db_path)


@pytest.fixture
def clock():
    return MonotonicClock()


@pytest.fixture
def make_service(db_path):
    """Build a ChatService over a temporary store; call ``await service.start()`` in the test."""

    def factory(replies=None, *, memory=None, title_generator=None, store=None, config=None):
        config = config or ChatConfig(db_path=db_path)
        return ChatService(
            config,
            store=store or LocalStore(db_path),
            catalog=ModelCatalog(),
            llm_client=FakeLLMClient(replies),
            memory=memory,
            title_generator=title_generator or FakeTitleGenerator(),
        )

    return factory


def make_message(chat_id, role="user", content="hi", created_at=None, message_id=None):
    return Message(id=message_id, chat_id=chat_id, role=role, content=content, created_at=created_at)


def make_session(chat_id="s1", title="New Chat", timestamp=None, **kwargs):
    return ChatSession(id=chat_id, title=title, timestamp=timestamp, **kwargs)


def memory_error(message="memory service down"):
    return MemorySubsystemError(message)
