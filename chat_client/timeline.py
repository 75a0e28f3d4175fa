"""Reconciliation of optimistic, streamed and persisted messages."""

from __future__ import annotations

import dataclasses
import logging
from typing import Iterable, List, Optional, Set

from .schemas import Message, MonotonicClock, new_id

logger = logging.getLogger(__name__)


def merge_messages(
    chat_id: str,
    *sources: Iterable[Message],
    clock: Optional[MonotonicClock] = None,
) -> List[Message]:
    """Union ``sources`` by id, keep the first occurrence, order by ``created_at``.

    Messages owned by another session are dropped. Messages without an id or
    ``created_at`` are repaired (and logged) rather than discarded. Sorting is
    stable, so equal timestamps keep their relative input order.
    """
    clock = clock or MonotonicClock()
    seen: Set[str] = set()
    merged: List[Message] = []

    for source in sources:
        for message in source:
            if message.chat_id is not None and message.chat_id != chat_id:
                logger.warning(
                    "Dropping message %s owned by session %s while merging session %s",
                    message.id,
                    message.chat_id,
                    chat_id,
                )
                continue

            repairs = {}
            if not message.id:
                repairs["id"] = new_id()
                logger.warning("Message in session %s had no id; assigned %s", chat_id, repairs["id"])
            if message.chat_id is None:
                repairs["chat_id"] = chat_id
            if message.created_at is None:
                repairs["created_at"] = clock.now()
                logger.warning(
                    "Message %s in session %s had no created_at; backfilled with current time",
                    message.id or repairs.get("id"),
                    chat_id,
                )
            if repairs:
                message = dataclasses.replace(message, **repairs)

            if message.id in seen:
                continue
            seen.add(message.id)
            merged.append(message)

    merged.sort(key=lambda m: m.created_at)
    return merged


class MessageTimeline:
    """Transient, displayed message sequence of the active session.

    Every change goes through :func:`merge_messages`, so repeating a
    reconciliation, or reloading a message that is already shown, never
    produces a duplicate.
    """

    def __init__(self, clock: Optional[MonotonicClock] = None) -> None:
        self.clock = clock or MonotonicClock()
        self.chat_id: Optional[str] = None
        self._messages: List[Message] = []

    @property
    def messages(self) -> List[Message]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def reset(self, chat_id: Optional[str]) -> None:
        self.chat_id = chat_id
        self._messages = []

    def append(self, message: Message) -> List[Message]:
        """Optimistically show ``message`` before its write has completed."""
        return self.reconcile([message])

    def reconcile(self, *sources: Iterable[Message]) -> List[Message]:
        if self.chat_id is None:
            logger.debug("Ignoring reconcile with no active session")
            return []
        self._messages = merge_messages(self.chat_id, self._messages, *sources, clock=self.clock)
        return self.messages
