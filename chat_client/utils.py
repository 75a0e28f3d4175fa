"""Logging setup and small helpers shared by the collaborator adapters."""

from __future__ import annotations

import logging
import os
from typing import Optional

import requests

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(log_dir: Optional[str], level: int = logging.INFO, filename: str = "chat_client.log") -> None:
    """Configure console logging plus a file handler under ``log_dir``."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(os.path.join(log_dir, filename), encoding="utf-8"))

    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S", handlers=handlers, force=True)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def error_detail(response: requests.Response) -> str:
    """Best-effort human readable error message from an upstream response."""
    try:
        data = response.json()
    except ValueError:
        return response.text or response.reason or f"HTTP {response.status_code}"
    if isinstance(data, dict):
        error = data.get("error") or data.get("detail")
        if isinstance(error, dict):
            return str(error.get("message") or error)
        return str(error or data)
    return str(data)
