"""
Data models for the session/message cache.
"""

from __future__ import annotations

import copy
import json
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any, Dict, List, Optional

from chamber_cache import config


class StreamState(str, Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETE = "complete"


@dataclass
class MessageEntry:
    """One message of a transcript, possibly still streaming"""
    message_id: str
    session_id: str
    sequence_number: int
    role: str = "assistant"
    content: Dict[str, Any] = field(default_factory=dict)
    stream_state: StreamState = StreamState.PENDING
    revision: int = 0
    size_bytes: int = 0

    def copy(self) -> "MessageEntry":
        return replace(self, content=copy.deepcopy(self.content))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "session_id": self.session_id,
            "sequence_number": self.sequence_number,
            "role": self.role,
            "content": self.content,
            "stream_state": self.stream_state.value,
            "revision": self.revision,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MessageEntry":
        content = data.get("content") or {}
        if not isinstance(content, dict):
            raise ValueError("message content must be an object")
        return cls(
            message_id=str(data["message_id"]),
            session_id=str(data["session_id"]),
            sequence_number=int(data["sequence_number"]),
            role=str(data.get("role") or "assistant"),
            content=content,
            stream_state=StreamState(data.get("stream_state", StreamState.PENDING.value)),
            revision=int(data.get("revision", 0)),
        )


@dataclass
class SessionEntry:
    """Index record for one chat session (a stub unless is_fully_cached)"""
    session_id: str
    created_at: float
    expires_at: float
    last_accessed_at: float
    message_ids: List[str] = field(default_factory=list)
    is_fully_cached: bool = False
    size_bytes: int = 0
    meta: Dict[str, Any] = field(default_factory=dict)
    synced_at: Optional[float] = None

    @property
    def message_count(self) -> int:
        return len(self.message_ids)

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def copy(self) -> "SessionEntry":
        return replace(self, message_ids=list(self.message_ids), meta=copy.deepcopy(self.meta))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "last_accessed_at": self.last_accessed_at,
            "message_ids": list(self.message_ids),
            "is_fully_cached": self.is_fully_cached,
            "meta": self.meta,
            "synced_at": self.synced_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionEntry":
        meta = data.get("meta") or {}
        if not isinstance(meta, dict):
            raise ValueError("session meta must be an object")
        synced_at = data.get("synced_at")
        return cls(
            session_id=str(data["session_id"]),
            created_at=float(data["created_at"]),
            expires_at=float(data["expires_at"]),
            last_accessed_at=float(data["last_accessed_at"]),
            message_ids=[str(x) for x in data.get("message_ids") or []],
            is_fully_cached=bool(data.get("is_fully_cached", False)),
            meta=meta,
            synced_at=float(synced_at) if synced_at is not None else None,
        )


def encode(record: Dict[str, Any]) -> bytes:
    return json.dumps(record, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def decode(data: bytes) -> Dict[str, Any]:
    obj = json.loads(data.decode("utf-8"))
    if not isinstance(obj, dict):
        raise ValueError("expected a JSON object")
    return obj


@dataclass(frozen=True)
class Budgets:
    max_sessions: int = 50
    max_full_sessions: int = 10
    max_messages_per_session: int = 500
    max_total_bytes: int = 100 * 1024 * 1024
    ttl_s: float = 7 * 24 * 60 * 60.0
    session_list_ttl_s: float = 5 * 60.0

    def __post_init__(self):
        for f in fields(self):
            v = getattr(self, f.name)
            if isinstance(v, bool) or not isinstance(v, (int, float)) or v <= 0:
                raise ValueError(f"budget {f.name} must be a positive number, got {v!r}")
        if self.max_full_sessions > self.max_sessions:
            raise ValueError("max_full_sessions cannot exceed max_sessions")

    def merged(self, **overrides: Any) -> "Budgets":
        unknown = set(overrides) - {f.name for f in fields(self)}
        if unknown:
            raise ValueError(f"unknown budget(s): {', '.join(sorted(unknown))}")
        return replace(self, **{k: v for k, v in overrides.items() if v is not None})

    @classmethod
    def from_config(cls) -> "Budgets":
        return cls(
            max_sessions=config.cache_max_sessions(),
            max_full_sessions=config.cache_max_full_sessions(),
            max_messages_per_session=config.cache_max_messages_per_session(),
            max_total_bytes=config.cache_max_total_bytes(),
            ttl_s=config.cache_ttl_s(),
            session_list_ttl_s=config.session_list_ttl_s(),
        )


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    evicted_sessions: int = 0
    demoted_sessions: int = 0
    trimmed_messages: int = 0
    expired_sessions: int = 0
    corrupt_entries: int = 0
    last_cleanup: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
