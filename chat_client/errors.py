"""Error taxonomy shared by the chat client engine.

Collaborator adapters and the Local Store convert whatever they receive into
one of these types, so callers only ever branch on ``ChatClientError``
subclasses.
"""

from __future__ import annotations

from typing import Optional


class ChatClientError(Exception):
    """Base class for every error surfaced by the engine."""

    kind = "error"
    retryable = False


class ValidationError(ChatClientError):
    """Malformed input to a Local Store write."""

    kind = "validation"


class ConfigurationError(ChatClientError):
    """A model id could not be resolved against the catalog."""

    kind = "configuration"


class TransportError(ChatClientError):
    """Network failure or non-2xx response from an upstream collaborator."""

    kind = "transport"
    retryable = True

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StorageError(ChatClientError):
    """Local Store operation failure."""

    kind = "storage"
    retryable = True


class MemorySubsystemError(ChatClientError):
    """Any failure in the memory retrieval path."""

    kind = "memory"

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
