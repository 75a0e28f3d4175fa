"""Unified FastAPI server exposing chat sessions, streaming replies and memories."""

from __future__ import annotations

import argparse
import logging
from typing import Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

from chat_client import ChatConfig, ChatService, MemoryServiceConfig
from chat_client.api import create_app as create_chat_app
from chat_client.errors import ConfigurationError
from chat_client.models import ModelCatalog
from chat_client.storage import LocalStore
from chat_client.utils import setup_logging
from memory_store import MemoryClient, MemoryManager

logger = logging.getLogger(__name__)


# ---------- FastAPI Factory ----------
def create_app(
    log_dir: Optional[str] = "./logs",
    chat_config: Optional[ChatConfig] = None,
    *,
    enable_memories: bool = True,
) -> FastAPI:
    setup_logging(log_dir, logging.INFO)

    config = chat_config or ChatConfig()
    store = LocalStore(config.db_path)
    memory_manager = None
    if enable_memories:
        memory_manager = MemoryManager(MemoryClient(config.memory), store)
        if not config.memory.api_key:
            logger.warning("%s is not set; memory requests will fail until it is", config.memory.api_key_env)

    service = ChatService(config, store=store, catalog=ModelCatalog(), memory=memory_manager)
    for name, provider in config.providers.items():
        if not provider.api_key:
            logger.warning("%s is not set; provider '%s' is unavailable", provider.api_key_env, name)

    return create_chat_app(service, memory_manager=memory_manager)


# ---------- CLI ----------
def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the chat client server with streaming replies.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=8010, help="Port to bind.")
    parser.add_argument("--log_dir", default="./logs", help="Directory for application logs.")
    parser.add_argument("--db_path", default="./data/chat_client.db", help="SQLite file for sessions and messages.")
    parser.add_argument("--request_timeout", type=int, default=60, help="Timeout for LLM calls (seconds).")
    parser.add_argument("--memory_url", default="https://api.mem0.ai", help="Base URL of the memory service.")
    parser.add_argument("--memory_top_k", type=int, default=3, help="Memories injected into each request.")
    parser.add_argument("--default_title", default="New Chat", help="Title given to new sessions.")
    parser.add_argument("--disable_memories", action="store_true", help="Disable the memory service entirely.")
    parser.add_argument("--chat_model", default=None, help="Global default chat model id (catalog default if omitted).")
    parser.add_argument("--title_model", default=None, help="Global default title model id (catalog default if omitted).")
    args = parser.parse_args(argv)

    catalog = ModelCatalog()
    for model_id, usage in ((args.chat_model, "chat"), (args.title_model, "title")):
        if model_id:
            try:
                catalog.require_usage(model_id, usage)
            except ConfigurationError as exc:
                parser.error(str(exc))
    return args


def main(argv: Optional[list[str]] = None) -> None:
    load_dotenv()
    args = parse_args(argv)
    chat_cfg = ChatConfig(
        memory=MemoryServiceConfig(base_url=args.memory_url),
        db_path=args.db_path,
        default_title=args.default_title,
        memory_top_k=args.memory_top_k,
        memories_enabled_by_default=not args.disable_memories,
        default_chat_model_id=args.chat_model,
        default_title_model_id=args.title_model,
    )
    for provider in chat_cfg.providers.values():
        provider.request_timeout = args.request_timeout

    app = create_app(args.log_dir, chat_cfg, enable_memories=not args.disable_memories)
    logger.info("Starting chat client server on %s:%d", args.host, args.port)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
