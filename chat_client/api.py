"""FastAPI surface for the chat client engine."""

from __future__ import annotations

import dataclasses
import logging
from contextlib import aclosing, asynccontextmanager
from typing import AsyncIterator, List, Literal, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, field_validator

from .errors import ChatClientError
from .service import ChatService

logger = logging.getLogger(__name__)

_STATUS_BY_KIND = {
    "validation": 422,
    "configuration": 400,
    "transport": 502,
    "memory": 502,
    "storage": 503,
}


# ---------- Request / Response Models ----------
class ChatBody(BaseModel):
    message: str = Field(..., description="User message to send in the active session.")
    session_id: Optional[str] = Field(
        None, description="Optional session to activate before sending."
    )

    @field_validator("message")
    @classmethod
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


class SessionPatch(BaseModel):
    title: Optional[str] = None
    model_id: Optional[str] = Field(None, description="Per-session chat model; null restores the global default.")
    use_memories: Optional[bool] = None

    @field_validator("title")
    @classmethod
    def _title_not_empty(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            raise ValueError("title must not be empty")
        return value


class PreferencesBody(BaseModel):
    global_chat_model_id: Optional[str] = None
    global_title_model_id: Optional[str] = None
    memories_enabled: Optional[bool] = None


class SessionOut(BaseModel):
    id: str
    title: str
    timestamp: float
    use_memories: bool
    model_id: Optional[str] = None
    title_requested: bool = False


class MessageOut(BaseModel):
    id: str
    chat_id: str
    role: str
    content: str
    created_at: float


class ModelOut(BaseModel):
    id: str
    display_name: str
    provider: str
    usages: List[str]
    default_for: List[str] = Field(default_factory=list)


class PreferencesOut(BaseModel):
    global_chat_model_id: str
    global_title_model_id: str
    memories_enabled: bool
    user_id: Optional[str] = None


class ActivateResponse(BaseModel):
    active_id: str
    messages: List[MessageOut] = Field(default_factory=list)


# ---------- FastAPI Factory ----------
def create_app(service: ChatService, *, memory_manager=None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await service.start()
        yield
        await service.close()

    app = FastAPI(title="Chat Client", version="0.1.0", lifespan=lifespan)
    app.state.service = service
    app.state.memory_manager = memory_manager

    @app.exception_handler(ChatClientError)
    async def chat_client_error(request: Request, exc: ChatClientError) -> JSONResponse:
        status = _STATUS_BY_KIND.get(exc.kind, 500)
        logger.warning("%s %s failed with %s error: %s", request.method, request.url.path, exc.kind, exc)
        return JSONResponse(
            status_code=status,
            content={"detail": str(exc), "kind": exc.kind, "retryable": exc.retryable},
        )

    if memory_manager is not None:
        from memory_store.api import router as memory_router

        app.include_router(memory_router)

    @app.get("/health")
    async def health() -> dict:
        return {"status": "ok"}

    @app.get("/models", response_model=List[ModelOut])
    async def models(usage: Optional[Literal["chat", "title"]] = None):
        catalog = app.state.service.catalog
        entries = catalog.for_usage(usage) if usage else list(catalog)
        return [
            ModelOut(
                id=m.id,
                display_name=m.display_name,
                provider=m.provider_name,
                usages=sorted(m.supported_usages),
                default_for=sorted(m.default_for),
            )
            for m in entries
        ]

    @app.get("/preferences", response_model=PreferencesOut)
    async def get_preferences():
        return dataclasses.asdict(app.state.service.prefs)

    @app.put("/preferences", response_model=PreferencesOut)
    async def put_preferences(body: PreferencesBody):
        prefs = await app.state.service.update_preferences(**body.model_dump(exclude_none=True))
        return dataclasses.asdict(prefs)

    # ---------- Sessions ----------
    @app.get("/sessions", response_model=List[SessionOut])
    async def list_sessions(search: Optional[str] = None):
        return [dataclasses.asdict(s) for s in app.state.service.list_sessions(search)]

    @app.post("/sessions", response_model=SessionOut, status_code=201)
    async def create_session():
        session = await app.state.service.new_session()
        return dataclasses.asdict(session)

    @app.patch("/sessions/{chat_id}", response_model=SessionOut)
    async def update_session(chat_id: str, body: SessionPatch):
        svc: ChatService = app.state.service
        changes = body.model_dump(exclude_unset=True)
        try:
            session = svc.registry.require(chat_id)
            if "model_id" in changes:
                session = await svc.set_session_model(chat_id, changes["model_id"])
            if "use_memories" in changes and changes["use_memories"] is not None:
                session = await svc.set_session_memories(chat_id, changes["use_memories"])
            if changes.get("title"):
                session = await svc.rename_session(chat_id, changes["title"])
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return dataclasses.asdict(session)

    @app.delete("/sessions/{chat_id}")
    async def delete_session(chat_id: str) -> dict:
        try:
            active_id = await app.state.service.delete_session(chat_id)
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"deleted": chat_id, "active_id": active_id}

    @app.post("/sessions/{chat_id}/activate", response_model=ActivateResponse)
    async def activate_session(chat_id: str):
        try:
            messages = await app.state.service.select_session(chat_id)
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return {"active_id": chat_id, "messages": [dataclasses.asdict(m) for m in messages]}

    @app.get("/sessions/{chat_id}/messages", response_model=List[MessageOut])
    async def session_messages(chat_id: str):
        try:
            messages = await app.state.service.messages(chat_id)
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return [dataclasses.asdict(m) for m in messages]

    # ---------- Chat ----------
    @app.post("/chat")
    async def chat(body: ChatBody):
        svc: ChatService = app.state.service
        if body.session_id and body.session_id != svc.registry.active_id:
            try:
                await svc.select_session(body.session_id)
            except ValueError as exc:
                raise HTTPException(status_code=404, detail=str(exc)) from exc
        if svc.consumer.is_busy:
            raise HTTPException(status_code=409, detail="A reply is already streaming")
        if svc.registry.active is None:
            raise HTTPException(status_code=404, detail="No active chat session")

        logger.info("Streaming chat for session %s", svc.registry.active_id)
        stream = svc.stream_reply(body.message)
        first = await _first_token(stream)
        return StreamingResponse(_relay(first, stream), media_type="text/plain")

    @app.post("/chat/stop")
    async def stop_chat() -> dict:
        app.state.service.stop()
        return app.state.service.state()

    @app.post("/chat/retry")
    async def retry_chat():
        svc: ChatService = app.state.service
        stream = svc.retry_reply()
        first = await _first_token(stream)
        return StreamingResponse(_relay(first, stream), media_type="text/plain")

    @app.get("/chat/state")
    async def chat_state() -> dict:
        return app.state.service.state()

    return app


# ---------- Utilities ----------
async def _first_token(stream: AsyncIterator[str]) -> Optional[str]:
    """Pull the first token so composition and send errors map to a status code."""
    try:
        return await stream.__anext__()
    except StopAsyncIteration:
        return None


async def _relay(first: Optional[str], stream: AsyncIterator[str]) -> AsyncIterator[str]:
    async with aclosing(stream):
        if first is None:
            return
        yield first
        try:
            async for token in stream:
                yield token
        except ChatClientError as exc:
            logger.warning("Stream ended with %s error: %s", exc.kind, exc)
