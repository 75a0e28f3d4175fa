import pytest

from chat_client.composer import (
    CONVERSATION_DELIMITER,
    MEMORIES_HEADER,
    MEMORIES_UNAVAILABLE_NOTICE,
    RequestComposer,
    compose_system_prompt,
)
from chat_client.errors import ConfigurationError
from chat_client.models import ModelCatalog
from chat_client.schemas import ChatPreferences, Message, RetrievedMemoryEntry

from conftest import FakeMemory, make_session, memory_error

BASE = "You are helpful."


def prefs(**overrides):
    values = dict(
        global_chat_model_id="google/gemini-1.5-flash",
        global_title_model_id="openrouter/deepseek-prover-v2",
        memories_enabled=True,
        user_id="u1",
    )
    values.update(overrides)
    return ChatPreferences(**values)


def history():
    return [
        Message("m1", "s1", "user", "Where should I travel?", 1.0),
        Message("m2", "s1", "assistant", "Somewhere warm.", 2.0),
        Message("m3", "s1", "user", "What about food?", 3.0),
    ]


class TestSystemPrompt:
    def test_without_memories_has_base_and_delimiter_only(self):
        prompt = compose_system_prompt(BASE)

        assert prompt == f"{BASE}\n\n{CONVERSATION_DELIMITER}"

    def test_memories_block_sits_between_base_and_delimiter(self):
        prompt = compose_system_prompt(BASE, [RetrievedMemoryEntry("a", "vegetarian")])

        assert prompt.index(BASE) < prompt.index(MEMORIES_HEADER) < prompt.index(CONVERSATION_DELIMITER)
        assert "- vegetarian" in prompt

    def test_unavailable_notice(self):
        prompt = compose_system_prompt(BASE, memories_unavailable=True)

        assert MEMORIES_UNAVAILABLE_NOTICE in prompt
        assert MEMORIES_HEADER not in prompt


class TestRequestComposer:
    @pytest.mark.asyncio
    async def test_single_system_message_first_with_history_in_order(self):
        composer = RequestComposer(ModelCatalog(), base_system_prompt=BASE)

        request = await composer.compose(make_session("s1"), history(), prefs())

        roles = [m["role"] for m in request.messages]
        assert roles == ["system", "user", "assistant", "user"]
        assert [m["content"] for m in request.messages[1:]] == [m.content for m in history()]
        assert request.model == "gemini-1.5-flash-latest"
        assert request.provider == "google"

    @pytest.mark.asyncio
    async def test_existing_system_message_is_augmented_in_place(self):
        composer = RequestComposer(ModelCatalog(), base_system_prompt=BASE)
        messages = [Message("sys", "s1", "system", "Custom instruction", 0.5)] + history()

        request = await composer.compose(make_session("s1"), messages, prefs())

        system = [m for m in request.messages if m["role"] == "system"]
        assert len(system) == 1
        assert request.messages[0]["content"].startswith("Custom instruction")

    @pytest.mark.asyncio
    async def test_session_model_overrides_global(self):
        composer = RequestComposer(ModelCatalog(), base_system_prompt=BASE)
        session = make_session("s1", model_id="openrouter/llama-4-maverick")

        request = await composer.compose(session, history(), prefs())

        assert request.model_id == "openrouter/llama-4-maverick"
        assert request.provider == "openrouter"

    @pytest.mark.asyncio
    async def test_unknown_model_is_a_configuration_error(self):
        composer = RequestComposer(ModelCatalog(), base_system_prompt=BASE)

        with pytest.raises(ConfigurationError):
            await composer.compose(make_session("s1"), history(), prefs(global_chat_model_id="nope/model"))

    @pytest.mark.asyncio
    async def test_memories_injected_when_enabled_globally_and_per_session(self):
        memory = FakeMemory([RetrievedMemoryEntry("a", "vegetarian"), RetrievedMemoryEntry("b", "allergic to nuts")])
        composer = RequestComposer(ModelCatalog(), memory, base_system_prompt=BASE, memory_top_k=3)

        request = await composer.compose(make_session("s1", use_memories=True), history(), prefs())

        assert memory.queries == [("u1", "What about food?", 3)]
        assert "- vegetarian" in request.messages[0]["content"]
        assert len(request.memories) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "session_flag, global_flag",
        [(False, True), (True, False), (False, False)],
    )
    async def test_memories_skipped_unless_both_toggles_on(self, session_flag, global_flag):
        memory = FakeMemory([RetrievedMemoryEntry("a", "vegetarian")])
        composer = RequestComposer(ModelCatalog(), memory, base_system_prompt=BASE)

        request = await composer.compose(
            make_session("s1", use_memories=session_flag),
            history(),
            prefs(memories_enabled=global_flag),
        )

        assert memory.queries == []
        assert MEMORIES_HEADER not in request.messages[0]["content"]

    @pytest.mark.asyncio
    async def test_memory_failure_degrades_with_notice(self):
        composer = RequestComposer(ModelCatalog(), FakeMemory(error=memory_error()), base_system_prompt=BASE)

        request = await composer.compose(make_session("s1", use_memories=True), history(), prefs())

        assert request.memories_unavailable is True
        assert MEMORIES_UNAVAILABLE_NOTICE in request.messages[0]["content"]

    @pytest.mark.asyncio
    async def test_compose_is_deterministic(self):
        memory = FakeMemory([RetrievedMemoryEntry("a", "vegetarian")])
        composer = RequestComposer(ModelCatalog(), memory, base_system_prompt=BASE)
        session = make_session("s1", use_memories=True)

        first = await composer.compose(session, history(), prefs())
        second = await composer.compose(session, history(), prefs())

        assert first == second
