"""Session title generation, run as a background task beside the chat turn."""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Dict, Optional

from fastapi.concurrency import run_in_threadpool

from .errors import ChatClientError
from .llm_client import ChatLLMClient
from .models import ModelCatalog
from .registry import SessionRegistry

logger = logging.getLogger(__name__)

_TITLE_CLEANUP = re.compile(r"^[\s\"'`]*(.*?)[\s\"'`]*$", re.DOTALL)


def clean_title(text: str) -> str:
    """Strip surrounding whitespace, quotes and backticks from a generated title."""
    match = _TITLE_CLEANUP.match(text or "")
    return (match.group(1) if match else text or "").strip()


class TitleGenerator:
    """Asks the configured title model for a short label for a conversation."""

    def __init__(
        self,
        client: ChatLLMClient,
        catalog: ModelCatalog,
        *,
        prompt: str,
        max_tokens: int = 15,
        temperature: float = 0.3,
    ) -> None:
        self.client = client
        self.catalog = catalog
        self.prompt = prompt
        self.max_tokens = max_tokens
        self.temperature = temperature

    def generate(self, message_content: str, model_id: str) -> Optional[str]:
        """Return a cleaned title, or None when the model produced nothing usable."""
        if not message_content or not message_content.strip():
            raise ValueError("messageContent is required")
        model = self.catalog.require_usage(model_id, "title")
        raw = self.client.complete(
            model.provider_name,
            model.provider_model_id,
            [{"role": "user", "content": self.prompt.format(message=message_content)}],
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )
        title = clean_title(raw)
        if not title:
            logger.warning("Title generation with %s returned empty text", model.id)
            return None
        return title


class TitleTaskRunner:
    """Runs title generation off the request path and applies the result.

    Outcomes are reported through ``titles`` and ``errors`` keyed by session
    id; nothing here can fail or block the chat turn that triggered it.
    """

    def __init__(self, generator: TitleGenerator, registry: SessionRegistry) -> None:
        self.generator = generator
        self.registry = registry
        self.tasks: Dict[str, asyncio.Task] = {}
        self.titles: Dict[str, str] = {}
        self.errors: Dict[str, Exception] = {}

    def schedule(self, chat_id: str, message_content: str, model_id: str) -> asyncio.Task:
        task = asyncio.create_task(self._run(chat_id, message_content, model_id))
        self.tasks[chat_id] = task
        task.add_done_callback(lambda _: self.tasks.pop(chat_id, None))
        return task

    async def _run(self, chat_id: str, message_content: str, model_id: str) -> Optional[str]:
        try:
            title = await run_in_threadpool(self.generator.generate, message_content, model_id)
        except (ChatClientError, ValueError) as exc:
            logger.warning("Title generation failed for session %s: %s", chat_id, exc)
            self.errors[chat_id] = exc
            return None

        if not title:
            return None

        default_title = self.registry.default_title
        try:
            session = await self.registry.update_session_field(
                chat_id, {"title": title}, when=lambda current: current.title == default_title
            )
        except ValueError:
            logger.info("Session %s was deleted before its title arrived", chat_id)
            return None
        except ChatClientError as exc:
            logger.warning("Could not save generated title for session %s: %s", chat_id, exc)
            self.errors[chat_id] = exc
            return None
        if session.title != title:
            logger.info("Session %s was renamed before its title arrived; keeping '%s'", chat_id, session.title)
            return None

        self.titles[chat_id] = title
        logger.info("Session %s titled '%s'", chat_id, title)
        return title

    async def drain(self) -> None:
        """Wait for every scheduled title task to finish."""
        pending = list(self.tasks.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
