"""Configuration objects for the chat client."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass
class ProviderConfig:
    """Connection details for one OpenAI-compatible chat-completions provider."""

    endpoint: str
    api_key_env: str
    request_timeout: int = 60

    @property
    def api_key(self) -> Optional[str]:
        return os.environ.get(self.api_key_env)


def _default_providers() -> Dict[str, ProviderConfig]:
    return {
        "google": ProviderConfig(
            endpoint="https://generativelanguage.googleapis.com/v1beta/openai/chat/completions",
            api_key_env="GOOGLE_GENERATIVE_AI_API_KEY",
        ),
        "openrouter": ProviderConfig(
            endpoint="https://openrouter.ai/api/v1/chat/completions",
            api_key_env="OPENROUTER_API_KEY",
        ),
    }


@dataclass
class MemoryServiceConfig:
    """Memory collaborator connection details."""

    base_url: str = "https://api.mem0.ai"
    api_key_env: str = "MEM0_API_KEY"
    project_id_env: str = "MEM0_PROJECT_ID"
    request_timeout: int = 30

    @property
    def api_key(self) -> Optional[str]:
        return os.environ.get(self.api_key_env)

    @property
    def project_id(self) -> Optional[str]:
        return os.environ.get(self.project_id_env)


@dataclass
class ChatConfig:
    """Runtime controls for chat behaviour."""

    providers: Dict[str, ProviderConfig] = field(default_factory=_default_providers)
    memory: MemoryServiceConfig = field(default_factory=MemoryServiceConfig)
    db_path: str = "./data/chat_client.db"
    system_prompt: str = (
        "You are a helpful, friendly assistant. Answer clearly and concisely. "
        "When user memories are provided, use them to personalise your answer "
        "but do not repeat them back verbatim unless asked."
    )
    default_title: str = "New Chat"
    memory_top_k: int = 3
    title_prompt: str = (
        "Generate a very short, concise title (max 3 words) for a chat conversation "
        'that starts with this message: "{message}". The title should be suitable for '
        "a chat list. Do not add quotes around the title. Return only the title, no "
        "other text or comments or punctuation."
    )
    title_max_tokens: int = 15
    title_temperature: float = 0.3
    read_retries: int = 2
    memories_enabled_by_default: bool = True
    # Global model defaults; None falls back to the catalog default for the usage.
    default_chat_model_id: Optional[str] = None
    default_title_model_id: Optional[str] = None
