"""Drives one streaming request/response cycle and commits its result once."""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Optional, Protocol

from fastapi.concurrency import iterate_in_threadpool, run_in_threadpool

from .errors import ChatClientError, StorageError, TransportError
from .llm_client import StreamDelta
from .schemas import ChatRequest, Message, MonotonicClock, new_id

logger = logging.getLogger(__name__)


class StreamState(str, enum.Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETING = "completing"
    ERRORED = "errored"


class StreamingClient(Protocol):
    def stream_completion(self, request: ChatRequest):
        ...


CommitFn = Callable[[Message], Awaitable[None]]
LivenessFn = Callable[[str], bool]


@dataclass
class StreamCycle:
    chat_id: str
    request: Optional[ChatRequest] = None
    content: str = ""
    response_id: Optional[str] = None
    cancelled: bool = False
    stopped: bool = False


class StreamingResponseConsumer:
    """State machine ``Idle -> Sending -> Streaming -> Completing -> Idle``.

    ``Errored`` is reachable from ``Sending``, ``Streaming`` and ``Completing``.
    Token deltas only update the transient ``partial_content``; the finished
    assistant message is handed to ``commit`` exactly once. A cycle whose
    session stops being live is abandoned: its remaining tokens are ignored and
    its result is discarded.
    """

    def __init__(
        self,
        client: StreamingClient,
        commit: CommitFn,
        *,
        is_live: Optional[LivenessFn] = None,
        clock: Optional[MonotonicClock] = None,
    ) -> None:
        self.client = client
        self.commit = commit
        self.is_live = is_live or (lambda chat_id: True)
        self.clock = clock or MonotonicClock()
        self.state = StreamState.IDLE
        self.cycle: Optional[StreamCycle] = None
        self.error: Optional[ChatClientError] = None
        self.pending_commit: Optional[Message] = None
        self.last_request: Optional[ChatRequest] = None

    @property
    def is_idle(self) -> bool:
        return self.state == StreamState.IDLE

    @property
    def is_busy(self) -> bool:
        return self.state in (StreamState.SENDING, StreamState.STREAMING, StreamState.COMPLETING)

    @property
    def chat_id(self) -> Optional[str]:
        return self.cycle.chat_id if self.cycle else None

    @property
    def partial_content(self) -> str:
        return self.cycle.content if self.cycle else ""

    def begin(self, chat_id: str) -> bool:
        """Enter ``Sending`` for ``chat_id``; returns False when not idle."""
        if not chat_id or self.state != StreamState.IDLE:
            logger.debug("Ignoring submit for %s while %s", chat_id, self.state.value)
            return False
        self.cycle = StreamCycle(chat_id=chat_id)
        self.error = None
        self.pending_commit = None
        self._transition(StreamState.SENDING)
        return True

    def fail(self, error: ChatClientError) -> None:
        """Abort the current cycle with ``error`` (e.g. the request could not be composed)."""
        self.error = error
        self._transition(StreamState.ERRORED)

    def acknowledge_error(self) -> None:
        """Leave ``Errored``; the partial output of the failed cycle is dropped."""
        if self.state != StreamState.ERRORED:
            return
        self.error = None
        self.pending_commit = None
        self.cycle = None
        self._transition(StreamState.IDLE)

    def stop(self) -> None:
        """User stop: no more tokens are taken; what arrived so far is kept."""
        if self.cycle and self.is_busy:
            self.cycle.stopped = True

    def cancel(self, chat_id: Optional[str] = None) -> None:
        """Abandon the cycle (optionally only if it belongs to ``chat_id``)."""
        cycle = self.cycle
        if not cycle or (chat_id is not None and cycle.chat_id != chat_id):
            return
        if self.is_busy:
            cycle.cancelled = True
            logger.info("Abandoning in-flight stream for session %s", cycle.chat_id)
        self.cycle = None
        self.error = None
        self.pending_commit = None
        self._transition(StreamState.IDLE)

    async def stream(self, request: ChatRequest) -> AsyncIterator[str]:
        """Yield token deltas for ``request`` and commit the final message."""
        cycle = self.cycle
        if cycle is None or self.state != StreamState.SENDING or cycle.chat_id != request.chat_id:
            raise RuntimeError("stream() requires a cycle in the sending state for the request's session")
        cycle.request = request
        self.last_request = request

        source = self.client.stream_completion(request)
        chunks = iterate_in_threadpool(source)
        try:
            async for chunk in chunks:
                if cycle.cancelled or not self.is_live(cycle.chat_id):
                    cycle.cancelled = True
                    break
                if cycle.stopped:
                    break
                delta = chunk if isinstance(chunk, StreamDelta) else StreamDelta(content=str(chunk))
                if self.state == StreamState.SENDING:
                    self._transition(StreamState.STREAMING)
                cycle.content += delta.content
                cycle.response_id = cycle.response_id or delta.response_id
                yield delta.content
        except (GeneratorExit, asyncio.CancelledError):
            if self.cycle is cycle:
                logger.info("Consumer of session %s went away; abandoning stream", cycle.chat_id)
                self.cancel()
            raise
        except ChatClientError as exc:
            if self._abandoned(cycle, exc):
                return
            self.fail(exc)
            raise
        except Exception as exc:
            logger.exception("Stream for session %s failed", cycle.chat_id)
            error = TransportError(f"Streaming response failed: {exc}")
            if self._abandoned(cycle, error):
                return
            self.fail(error)
            raise error from exc
        finally:
            await chunks.aclose()
            close = getattr(source, "close", None)
            if close is not None:
                await run_in_threadpool(close)

        if cycle.cancelled or not self.is_live(cycle.chat_id):
            logger.info("Discarding stream result for inactive session %s", cycle.chat_id)
            if self.cycle is cycle:
                self.cancel()
            return

        await self._complete(cycle)

    async def _complete(self, cycle: StreamCycle) -> None:
        self._transition(StreamState.COMPLETING)
        if not cycle.content:
            logger.warning("Stream for session %s finished without content; nothing to persist", cycle.chat_id)
            self.cycle = None
            self._transition(StreamState.IDLE)
            return

        if not cycle.response_id:
            logger.warning("Stream for session %s did not supply a message id; generating one", cycle.chat_id)
        message = Message(
            id=cycle.response_id or new_id(),
            chat_id=cycle.chat_id,
            role="assistant",
            content=cycle.content,
            created_at=self.clock.now(),
        )
        await self._commit(cycle, message)

    async def retry_commit(self) -> Optional[Message]:
        """Re-run persistence of a finished reply whose first commit failed."""
        message = self.pending_commit
        if self.state != StreamState.ERRORED or message is None or self.cycle is None:
            return None
        self._transition(StreamState.COMPLETING)
        await self._commit(self.cycle, message)
        return message

    async def _commit(self, cycle: StreamCycle, message: Message) -> None:
        try:
            await self.commit(message)
        except ChatClientError as exc:
            if self._abandoned(cycle, exc):
                return
            if isinstance(exc, StorageError):
                self.pending_commit = message
            self.error = exc
            self._transition(StreamState.ERRORED)
            raise
        if self.cycle is not cycle:
            logger.info("Saved reply %s after its cycle for session %s was abandoned", message.id, cycle.chat_id)
            return
        self.pending_commit = None
        self.error = None
        self.cycle = None
        self._transition(StreamState.IDLE)
        logger.info("Committed assistant message %s for session %s", message.id, message.chat_id)

    def _abandoned(self, cycle: StreamCycle, error: ChatClientError) -> bool:
        if self.cycle is cycle:
            return False
        logger.info("Ignoring failure of abandoned stream for session %s: %s", cycle.chat_id, error)
        return True

    def _transition(self, state: StreamState) -> None:
        if state != self.state:
            logger.debug("Stream state %s -> %s", self.state.value, state.value)
        self.state = state
