"""Client wrapper for streaming chat-completions requests."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

import requests

from .config import ProviderConfig
from .errors import ConfigurationError, TransportError
from .schemas import ChatRequest
from .utils import error_detail

logger = logging.getLogger(__name__)


@dataclass
class StreamDelta:
    """One incremental piece of an assistant reply."""

    content: str
    response_id: Optional[str] = None


class ChatLLMClient:
    """Thin wrapper around OpenAI-compatible chat-completions endpoints with streaming support."""

    def __init__(
        self,
        providers: Dict[str, ProviderConfig],
        *,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.providers = providers
        self.http = session or requests.Session()

    def stream_completion(self, request: ChatRequest) -> Iterator[StreamDelta]:
        """Yield deltas from the model as they arrive; stops at the end-of-data signal."""
        provider = self._provider(request.provider)
        payload: Dict[str, object] = {**request.payload(), "stream": True}

        logger.info("Streaming chat completion to %s using model %s", provider.endpoint, request.model)
        response = self._post(provider, payload, stream=True)
        try:
            for raw_line in response.iter_lines():
                if not raw_line:
                    continue
                line = raw_line.decode("utf-8").strip() if isinstance(raw_line, bytes) else raw_line.strip()
                if line.startswith("data:"):
                    line = line[5:].strip()
                if line == "[DONE]":
                    break
                if not line:
                    continue

                try:
                    data = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Skipping non-JSON stream line: %s", line)
                    continue

                if not isinstance(data, dict):
                    continue
                if data.get("error"):
                    raise TransportError(f"Upstream stream error: {data['error']}")

                token = self._extract_delta(data)
                if token:
                    yield StreamDelta(content=token, response_id=data.get("id"))
        except requests.RequestException as exc:
            logger.exception("Stream from %s interrupted", provider.endpoint)
            raise TransportError(f"Stream interrupted: {exc}") from exc
        finally:
            response.close()

    def complete(
        self,
        provider_name: str,
        model: str,
        messages: List[Dict[str, str]],
        *,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """Return a full completion (no streaming)."""
        provider = self._provider(provider_name)
        payload: Dict[str, object] = {"model": model, "messages": messages, "stream": False}
        if max_tokens is not None:
            payload["max_tokens"] = max_tokens
        if temperature is not None:
            payload["temperature"] = temperature

        logger.debug("Requesting non-streaming completion for %d message(s)", len(messages))
        response = self._post(provider, payload)
        try:
            data = response.json()
        except ValueError as exc:
            raise TransportError("Completion endpoint returned invalid JSON") from exc
        if not isinstance(data, dict):
            raise TransportError(f"Completion endpoint returned an unexpected payload: {type(data).__name__}")
        choices = data.get("choices") or [{}]
        choice = choices[0] if isinstance(choices, list) and isinstance(choices[0], dict) else {}
        message = choice.get("message")
        if not isinstance(message, dict):
            return ""
        return message.get("content", "") or ""

    def _provider(self, name: str) -> ProviderConfig:
        provider = self.providers.get(name)
        if not provider:
            raise ConfigurationError(f"No provider configured for '{name}'")
        return provider

    def _post(self, provider: ProviderConfig, payload: Dict[str, object], *, stream: bool = False) -> requests.Response:
        headers = {"Content-Type": "application/json"}
        if provider.api_key:
            headers["Authorization"] = f"Bearer {provider.api_key}"
        try:
            response = self.http.post(
                provider.endpoint,
                json=payload,
                headers=headers,
                stream=stream,
                timeout=provider.request_timeout,
            )
        except requests.RequestException as exc:
            logger.exception("Request to %s failed", provider.endpoint)
            raise TransportError(f"Could not reach {provider.endpoint}: {exc}") from exc

        if not response.ok:
            detail = error_detail(response)
            logger.error("Completion endpoint returned %s: %s", response.status_code, detail)
            response.close()
            raise TransportError(detail, status_code=response.status_code)
        return response

    @staticmethod
    def _extract_delta(payload: Dict[str, object]) -> str:
        try:
            choices = payload.get("choices") or []
            if not choices:
                return ""
            delta = choices[0].get("delta") or {}
            content = delta.get("content") or ""
            return str(content)
        except Exception:
            logger.debug("Failed to parse stream payload: %s", payload, exc_info=True)
            return ""

