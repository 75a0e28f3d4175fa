"""Hosted memory service adapter and its locally cached view."""

from .client import MemoryClient, normalize_entries
from .manager import MemoryManager

__all__ = ["MemoryClient", "MemoryManager", "normalize_entries"]
