"""Chat client engine: sessions, message timelines and streaming replies.

Sessions and messages are persisted in a local SQLite store and mirrored in
memory for the life of the process. Each turn composes a request for a
chat-completions provider (optionally enriched with the user's saved
memories), streams the reply and commits it exactly once. The primary entry
points are ``chat_client.api.create_app`` for running the HTTP service and
``chat_client.service.ChatService`` for embedding the engine directly into
Python code.
"""

from .config import ChatConfig, MemoryServiceConfig, ProviderConfig
from .service import ChatService

__all__ = ["ChatConfig", "ChatService", "MemoryServiceConfig", "ProviderConfig"]
