from __future__ import annotations

from typing import Optional


class CacheError(Exception):
    """Base class for every error raised by chamber_cache."""


class TransientNetworkError(CacheError):
    """The event stream dropped or could not be opened. Retried with backoff."""


class PersistenceWriteError(CacheError):
    """A persistence adapter failed to write or delete a key."""

    def __init__(self, key: str, message: str = ""):
        self.key = key
        super().__init__(message or f"persistence write failed for {key}")


class PersistenceCorruptEntry(CacheError):
    """A persisted value could not be decoded. The key is dropped and treated as a miss."""

    def __init__(self, key: str, reason: str = ""):
        self.key = key
        self.reason = reason
        super().__init__(f"corrupt entry {key}: {reason}" if reason else f"corrupt entry {key}")


class ProtocolViolation(CacheError):
    """An event with an impossible shape, sequence number or revision."""


class BudgetExceeded(CacheError):
    """
    Internal signal raised while enforcing cache budgets.
    Never surfaced to callers; it selects the next eviction step.
    """

    def __init__(self, dimension: str, usage: int, limit: int, session_id: Optional[str] = None):
        self.dimension = dimension
        self.usage = usage
        self.limit = limit
        self.session_id = session_id
        where = f" ({session_id})" if session_id else ""
        super().__init__(f"{dimension}{where}: {usage} > {limit}")


class SessionNotFound(CacheError, KeyError):
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(session_id)

    def __str__(self) -> str:
        return f"session not found: {self.session_id}"
