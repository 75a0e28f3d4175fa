"""HTTP adapter for the hosted memory service.

The service answers with either a bare list of memories or an object wrapping
them under ``results``. Everything is normalised here into
:class:`~chat_client.schemas.RetrievedMemoryEntry` lists, and every failure is
raised as :class:`~chat_client.errors.MemorySubsystemError`.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests

from chat_client.config import MemoryServiceConfig
from chat_client.errors import MemorySubsystemError
from chat_client.schemas import RetrievedMemoryEntry
from chat_client.utils import error_detail

logger = logging.getLogger(__name__)


def normalize_entries(payload: Any, user_id: Optional[str] = None) -> List[RetrievedMemoryEntry]:
    """Coerce any known response shape into a list of memory entries."""
    if isinstance(payload, dict) and isinstance(payload.get("results"), list):
        items = payload["results"]
    elif isinstance(payload, list):
        items = payload
    else:
        logger.warning("Unexpected memory service payload of type %s; treating as empty", type(payload).__name__)
        return []

    entries: List[RetrievedMemoryEntry] = []
    for item in items:
        if not isinstance(item, dict) or not item.get("id"):
            logger.warning("Skipping memory entry without an id: %r", item)
            continue
        entries.append(
            RetrievedMemoryEntry(
                id=str(item["id"]),
                text=str(item.get("memory") or item.get("text") or ""),
                created_at=item.get("created_at"),
                user_id=item.get("user_id") or user_id,
            )
        )
    return entries


class MemoryClient:
    """Thin wrapper around the memory service REST endpoints."""

    def __init__(self, config: MemoryServiceConfig, *, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.http = session or requests.Session()

    def search(self, user_id: str, query: str, limit: int = 3) -> List[RetrievedMemoryEntry]:
        self._require(user_id=user_id, query=query)
        payload = self._request(
            "POST",
            "/v1/memories/search/",
            json={"query": query, "user_id": user_id, "limit": limit},
        )
        return normalize_entries(payload, user_id)[:limit]

    def add(self, user_id: str, content: str) -> List[RetrievedMemoryEntry]:
        """Store a memory and return the user's full updated set.

        Not idempotent: calling twice stores the memory twice.
        """
        self._require(user_id=user_id, content=content)
        self._request(
            "POST",
            "/v1/memories/",
            json={"messages": [{"role": "user", "content": content}], "user_id": user_id},
        )
        return self.list_all(user_id)

    def delete(self, user_id: str, memory_id: str) -> List[RetrievedMemoryEntry]:
        """Delete a memory and return the user's remaining set."""
        self._require(user_id=user_id, memory_id=memory_id)
        self._request("DELETE", f"/v1/memories/{memory_id}/")
        return self.list_all(user_id)

    def list_all(self, user_id: str) -> List[RetrievedMemoryEntry]:
        self._require(user_id=user_id)
        payload = self._request("GET", "/v1/memories/", params={"user_id": user_id})
        return normalize_entries(payload, user_id)

    @staticmethod
    def _require(**fields: Optional[str]) -> None:
        missing = [name for name, value in fields.items() if not value or not str(value).strip()]
        if missing:
            raise MemorySubsystemError(f"{' and '.join(missing)} required")

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        api_key = self.config.api_key
        if not api_key:
            raise MemorySubsystemError(f"{self.config.api_key_env} is not set in environment variables")

        params = dict(params or {})
        if self.config.project_id:
            params["project_id"] = self.config.project_id

        url = f"{self.config.base_url.rstrip('/')}{path}"
        logger.debug("Memory service %s %s", method, path)
        try:
            response = self.http.request(
                method,
                url,
                json=json,
                params=params or None,
                headers={"Authorization": f"Token {api_key}"},
                timeout=self.config.request_timeout,
            )
        except requests.RequestException as exc:
            logger.exception("Memory service request %s %s failed", method, path)
            raise MemorySubsystemError(f"Memory service unreachable: {exc}") from exc

        if not response.ok:
            detail = error_detail(response)
            logger.error("Memory service %s %s returned %s: %s", method, path, response.status_code, detail)
            raise MemorySubsystemError(detail, status_code=response.status_code)

        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise MemorySubsystemError("Memory service returned invalid JSON") from exc

