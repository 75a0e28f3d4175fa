import sqlite3

import pytest

from chat_client.errors import StorageError, ValidationError
from chat_client.schemas import ChatPreferences, Message, RetrievedMemoryEntry
from chat_client.storage import LocalStore

from conftest import make_session


class TestSessions:
    @pytest.mark.asyncio
    async def test_put_session_sets_missing_timestamp(self, store):
        stored = await store.put_session(make_session("s1"))

        assert stored.timestamp is not None
        fetched = await store.get_session("s1")
        assert fetched == stored

    @pytest.mark.asyncio
    async def test_put_session_overwrites_by_id(self, store):
        await store.put_session(make_session("s1", title="New Chat", timestamp=1.0))
        await store.put_session(make_session("s1", title="Renamed", timestamp=2.0, use_memories=True))

        sessions = await store.list_sessions()
        assert len(sessions) == 1
        assert sessions[0].title == "Renamed"
        assert sessions[0].use_memories is True

    @pytest.mark.asyncio
    async def test_list_sessions_newest_first(self, store):
        await store.put_session(make_session("old", timestamp=1.0))
        await store.put_session(make_session("new", timestamp=3.0))
        await store.put_session(make_session("mid", timestamp=2.0))

        assert [s.id for s in await store.list_sessions()] == ["new", "mid", "old"]

    @pytest.mark.asyncio
    async def test_get_missing_session_returns_none(self, store):
        assert await store.get_session("nope") is None

    @pytest.mark.asyncio
    async def test_delete_session_cascades_to_messages(self, store):
        await store.put_session(make_session("s1", timestamp=1.0))
        await store.put_session(make_session("s2", timestamp=2.0))
        await store.put_message(Message("m1", "s1", "user", "hello", 1.0))
        await store.put_message(Message("m2", "s1", "assistant", "hi", 2.0))
        await store.put_message(Message("m3", "s2", "user", "other", 3.0))

        await store.delete_session("s1")

        assert await store.get_session("s1") is None
        assert await store.list_messages("s1") == []
        assert [m.id for m in await store.list_messages("s2")] == ["m3"]

    @pytest.mark.asyncio
    async def test_session_without_id_is_rejected(self, store):
        with pytest.raises(ValidationError):
            await store.put_session(make_session(""))


class TestMessages:
    @pytest.mark.asyncio
    async def test_list_messages_ordered_by_created_at(self, store):
        await store.put_message(Message("b", "s1", "assistant", "second", 2.0))
        await store.put_message(Message("a", "s1", "user", "first", 1.0))
        await store.put_message(Message("c", "s1", "user", "third", 3.0))

        assert [m.content for m in await store.list_messages("s1")] == ["first", "second", "third"]

    @pytest.mark.asyncio
    async def test_put_message_backfills_created_at(self, store):
        stored = await store.put_message(Message("m1", "s1", "user", "hello", None))

        assert stored.created_at is not None
        assert (await store.list_messages("s1"))[0].created_at == stored.created_at

    @pytest.mark.asyncio
    async def test_put_message_is_idempotent_by_id(self, store):
        message = Message("m1", "s1", "assistant", "reply", 1.0)
        await store.put_message(message)
        await store.put_message(message)

        assert len(await store.list_messages("s1")) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "message",
        [
            Message(None, "s1", "user", "hi", 1.0),
            Message("m1", None, "user", "hi", 1.0),
            Message("m1", "s1", "tool", "hi", 1.0),
            Message("m1", "s1", "user", None, 1.0),
        ],
    )
    async def test_malformed_message_is_rejected(self, store, message):
        with pytest.raises(ValidationError):
            await store.put_message(message)

        assert await store.list_messages("s1") == []

    @pytest.mark.asyncio
    async def test_sqlite_failures_surface_as_storage_errors(self, store, monkeypatch):
        def broken(*args):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store, "_list_messages", broken)

        with pytest.raises(StorageError):
            await store.list_messages("s1")


class TestMemoryCacheAndPreferences:
    @pytest.mark.asyncio
    async def test_replace_memory_cache_swaps_entire_set(self, store):
        await store.replace_memory_cache("u1", [RetrievedMemoryEntry("a", "likes tea", "2024-01-01")])
        await store.replace_memory_cache("u1", [RetrievedMemoryEntry("b", "lives in Oslo", "2024-01-02")])

        cached = await store.list_memory_cache("u1")
        assert [(e.id, e.text) for e in cached] == [("b", "lives in Oslo")]

    @pytest.mark.asyncio
    async def test_memory_cache_is_per_user(self, store):
        await store.replace_memory_cache("u1", [RetrievedMemoryEntry("a", "one")])
        await store.replace_memory_cache("u2", [])

        assert len(await store.list_memory_cache("u1")) == 1
        assert await store.list_memory_cache("u2") == []

    @pytest.mark.asyncio
    async def test_preferences_round_trip(self, store):
        assert await store.load_preferences() == {}

        await store.save_preferences(ChatPreferences("google/gemini-1.5-pro", "openrouter/deepseek-prover-v2", False, "u1"))

        assert await store.load_preferences() == {
            "global_chat_model_id": "google/gemini-1.5-pro",
            "global_title_model_id": "openrouter/deepseek-prover-v2",
            "memories_enabled": False,
            "user_id": "u1",
        }

    def test_store_creates_parent_directory(self, tmp_path):
        LocalStore(str(tmp_path / "nested" / "dir" / "chat.db"))

        assert (tmp_path / "nested" / "dir" / "chat.db").exists()
