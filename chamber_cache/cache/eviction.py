"""
Eviction policy: pure selection functions used by CacheStore.

Nothing here touches the store or persistence; every function takes plain
entries and budgets and returns ids in the order they should be dropped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from chamber_cache.models import Budgets, MessageEntry, SessionEntry, StreamState

EVICT = "evict"
DEMOTE = "demote"


@dataclass
class EvictionReport:
    reason: str
    expired: List[str] = field(default_factory=list)
    evicted: List[str] = field(default_factory=list)
    demoted: List[str] = field(default_factory=list)
    trimmed: Dict[str, List[str]] = field(default_factory=dict)
    unresolved: Optional[str] = None

    @property
    def changed(self) -> bool:
        return bool(self.expired or self.evicted or self.demoted or self.trimmed)


def _lru_key(s: SessionEntry) -> Tuple[float, str]:
    return (s.last_accessed_at, s.session_id)


def select_expired(sessions: Iterable[SessionEntry], now: float) -> List[str]:
    return [s.session_id for s in sorted(sessions, key=_lru_key) if s.is_expired(now)]


def select_sessions_to_evict(
    sessions: Iterable[SessionEntry],
    budgets: Budgets,
    protect: Optional[str] = None,
) -> List[str]:
    """
    Sessions to drop so that at most max_sessions remain.
    Stubs go first (least recently accessed first); fully-cached sessions only
    once no stub is left. The protected session is never selected.
    """
    items = list(sessions)
    excess = len(items) - budgets.max_sessions
    if excess <= 0:
        return []
    items = [s for s in items if s.session_id != protect]
    stubs = sorted((s for s in items if not s.is_fully_cached), key=_lru_key)
    full = sorted((s for s in items if s.is_fully_cached), key=_lru_key)
    return [s.session_id for s in (stubs + full)[:excess]]


def select_sessions_to_demote(
    sessions: Iterable[SessionEntry],
    budgets: Budgets,
    protect: Optional[str] = None,
) -> List[str]:
    full = sorted((s for s in sessions if s.is_fully_cached), key=_lru_key)
    excess = len(full) - budgets.max_full_sessions
    if excess <= 0:
        return []
    full = [s for s in full if s.session_id != protect]
    return [s.session_id for s in full[:excess]]


def select_messages_to_trim(
    session: SessionEntry,
    messages: Sequence[MessageEntry],
    budgets: Budgets,
) -> List[str]:
    """
    Oldest-by-sequence messages to drop from a fully-cached session.

    Only completed messages are selected and never the newest one. Whatever
    excess in-flight messages leave over is trimmed once they complete.
    """
    if not session.is_fully_cached:
        return []
    excess = len(messages) - budgets.max_messages_per_session
    if excess <= 0:
        return []
    ordered = sorted(messages, key=lambda m: m.sequence_number)[:-1]
    settled = [m for m in ordered if m.stream_state is StreamState.COMPLETE]
    return [m.message_id for m in settled[:excess]]


def plan_byte_reclaim(
    sessions: Iterable[SessionEntry],
    budgets: Budgets,
    total_bytes: int,
    protect: Optional[str] = None,
) -> List[Tuple[str, str]]:
    """
    Steps to bring total_bytes under max_total_bytes, as (action, session_id).

    Stubs are evicted first, least recently accessed first; after that
    fully-cached sessions are demoted even if max_full_sessions is not
    exceeded. The protected session is never touched.
    """
    over = total_bytes - budgets.max_total_bytes
    if over <= 0:
        return []
    items = [s for s in sessions if s.session_id != protect]
    plan: List[Tuple[str, str]] = []
    for s in sorted((s for s in items if not s.is_fully_cached), key=_lru_key):
        if over <= 0:
            return plan
        plan.append((EVICT, s.session_id))
        over -= s.size_bytes
    for s in sorted((s for s in items if s.is_fully_cached), key=_lru_key):
        if over <= 0:
            return plan
        plan.append((DEMOTE, s.session_id))
        over -= s.size_bytes
    return plan
