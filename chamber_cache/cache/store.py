"""
In-memory session/message index with LRU, TTL and size budgets.

All mutations are synchronous and run to completion, so callers on one event
loop never observe a half-applied change. Persistence is scheduled on a
PersistenceWriter and never awaited here.
"""

from __future__ import annotations

import bisect
import logging
import time
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from chamber_cache.cache.eviction import (
    DEMOTE,
    EVICT,
    EvictionReport,
    plan_byte_reclaim,
    select_expired,
    select_messages_to_trim,
    select_sessions_to_demote,
    select_sessions_to_evict,
)
from chamber_cache.cache.persistence import (
    MESSAGE_PREFIX,
    SESSION_PREFIX,
    PersistenceAdapter,
    PersistenceWriter,
    message_key,
    message_prefix,
    session_key,
)
from chamber_cache.errors import BudgetExceeded, PersistenceCorruptEntry, SessionNotFound
from chamber_cache.models import (
    Budgets,
    CacheStats,
    MessageEntry,
    SessionEntry,
    StreamState,
    decode,
    encode,
)

logger = logging.getLogger("chamber_cache.store")

Listener = Callable[[str], None]

_CORRUPT = (ValueError, KeyError, TypeError, UnicodeDecodeError)


class CacheStore:
    """
    Bounded cache of chat sessions and their messages.

    Sessions are either stubs (metadata only) or fully cached (every message
    held locally). Budgets are enforced by evict() after every write.
    """

    def __init__(
        self,
        persistence: Optional[PersistenceAdapter] = None,
        budgets: Optional[Budgets] = None,
        *,
        clock: Callable[[], float] = time.time,
        writer: Optional[PersistenceWriter] = None,
    ):
        self.budgets = budgets or Budgets.from_config()
        self.clock = clock
        self.persistence = persistence
        if writer is None and persistence is not None:
            writer = PersistenceWriter(persistence)
        self.writer = writer
        self.stats = CacheStats()
        self._sessions: Dict[str, SessionEntry] = {}
        self._messages: Dict[str, Dict[str, MessageEntry]] = {}
        # Sequence numbers parallel to SessionEntry.message_ids, for bisect.
        self._seqs: Dict[str, List[int]] = {}
        self._meta_bytes: Dict[str, int] = {}
        self._total_bytes = 0
        self._listeners: List[Listener] = []
        self._list_fetched_at: Optional[float] = None

    # ------------------------------------------------------------------ listeners

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _emit(self, session_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(session_id)
            except Exception:
                logger.exception("store listener failed for %s", session_id)

    # ------------------------------------------------------------------ reads

    def __contains__(self, session_id: str) -> bool:
        return self._visible(session_id) is not None

    def __len__(self) -> int:
        return len(self._sessions)

    @property
    def total_bytes(self) -> int:
        return self._total_bytes

    @property
    def full_session_count(self) -> int:
        return sum(1 for s in self._sessions.values() if s.is_fully_cached)

    def _visible(self, session_id: str) -> Optional[SessionEntry]:
        s = self._sessions.get(session_id)
        if s is None or s.is_expired(self.clock()):
            return None
        return s

    def peek_session(self, session_id: str) -> Optional[SessionEntry]:
        """Like get_session() but without touching LRU order or stats."""
        return self._visible(session_id)

    def get_session(self, session_id: str) -> Optional[SessionEntry]:
        s = self._visible(session_id)
        if s is None:
            self.stats.misses += 1
            return None
        self.stats.hits += 1
        self._touch(s)
        return s

    def touch(self, session_id: str) -> bool:
        s = self._visible(session_id)
        if s is None:
            return False
        self._touch(s)
        return True

    def _touch(self, s: SessionEntry) -> None:
        s.last_accessed_at = self.clock()
        self._persist_session(s.session_id)

    def get_messages(
        self,
        session_id: str,
        start_seq: Optional[int] = None,
        end_seq: Optional[int] = None,
    ) -> List[MessageEntry]:
        """
        Locally held messages in transcript order, optionally limited to an
        inclusive sequence range. A stub yields []; an unknown or expired
        session raises SessionNotFound.
        """
        s = self._visible(session_id)
        if s is None:
            raise SessionNotFound(session_id)
        if not s.is_fully_cached:
            return []
        seqs = self._seqs[session_id]
        lo = 0 if start_seq is None else bisect.bisect_left(seqs, start_seq)
        hi = len(seqs) if end_seq is None else bisect.bisect_right(seqs, end_seq)
        msgs = self._messages[session_id]
        return [msgs[mid] for mid in s.message_ids[lo:hi]]

    def get_message(self, session_id: str, message_id: str) -> Optional[MessageEntry]:
        if self._visible(session_id) is None:
            return None
        return self._messages.get(session_id, {}).get(message_id)

    def is_fully_cached(self, session_id: str) -> bool:
        s = self._visible(session_id)
        return bool(s and s.is_fully_cached)

    def high_water_mark(self, session_id: str) -> int:
        seqs = self._seqs.get(session_id) or []
        return seqs[-1] if seqs else 0

    def streaming_message_ids(self, session_id: str) -> List[str]:
        s = self._visible(session_id)
        if s is None:
            return []
        msgs = self._messages[session_id]
        return [mid for mid in s.message_ids if msgs[mid].stream_state is StreamState.STREAMING]

    def list_sessions(self) -> List[SessionEntry]:
        now = self.clock()
        items = [s for s in self._sessions.values() if not s.is_expired(now)]
        items.sort(key=lambda s: s.last_accessed_at, reverse=True)
        return items

    def is_session_list_stale(self) -> bool:
        if self._list_fetched_at is None:
            return True
        return self.clock() - self._list_fetched_at > self.budgets.session_list_ttl_s

    # ------------------------------------------------------------------ writes

    def _new_entry(self, session_id: str, meta: Optional[dict] = None) -> SessionEntry:
        now = self.clock()
        return SessionEntry(
            session_id=session_id,
            created_at=now,
            expires_at=now + self.budgets.ttl_s,
            last_accessed_at=now,
            meta=dict(meta or {}),
        )

    def _install(self, entry: SessionEntry) -> SessionEntry:
        sid = entry.session_id
        if sid in self._sessions:
            # Present but expired.
            self._drop_session(sid)
            self.stats.expired_sessions += 1
        entry.message_ids = []
        entry.is_fully_cached = False
        entry.size_bytes = 0
        self._sessions[sid] = entry
        self._messages[sid] = {}
        self._seqs[sid] = []
        self._meta_bytes[sid] = 0
        self._persist_session(sid)
        return entry

    def ensure_session(self, session_id: str, meta: Optional[dict] = None) -> SessionEntry:
        """Return the resident entry, creating a stub on a miss."""
        s = self._visible(session_id)
        if s is None:
            s = self._install(self._new_entry(session_id, meta))
            logger.debug("created stub for %s", session_id)
            self._emit(session_id)
            self.evict("ensure_session", protect=session_id)
        elif meta:
            s.meta.update(meta)
            self._persist_session(session_id)
            self._emit(session_id)
        return s

    def put_session(self, entry: SessionEntry) -> SessionEntry:
        """
        Upsert session metadata. Messages and the fully-cached flag only change
        through put_message/commit_backfill and eviction.
        """
        sid = entry.session_id
        s = self._visible(sid)
        if s is None:
            s = self._install(entry.copy())
        else:
            s.meta.update(entry.meta)
            s.last_accessed_at = max(s.last_accessed_at, entry.last_accessed_at)
            s.expires_at = max(s.expires_at, entry.expires_at)
            if entry.synced_at is not None:
                s.synced_at = max(s.synced_at or 0.0, entry.synced_at)
            self._persist_session(sid)
        self._emit(sid)
        self.evict("put_session", protect=sid)
        return s

    def put_message(self, entry: MessageEntry) -> bool:
        """
        Upsert one message of a fully-cached session.
        Returns False when nothing changed: stale revision, stub or unknown
        session, or a sequence number that disagrees with the stored one.
        """
        sid = entry.session_id
        s = self._visible(sid)
        if s is None or not s.is_fully_cached:
            logger.debug("put_message for %s ignored: session not fully cached", sid)
            return False
        cur = self._messages[sid].get(entry.message_id)
        if cur is not None:
            if entry.revision <= cur.revision:
                return False
            if entry.sequence_number != cur.sequence_number:
                logger.warning(
                    "protocol violation: %s/%s changed sequence %d -> %d",
                    sid, entry.message_id, cur.sequence_number, entry.sequence_number,
                )
                return False
        self._insert_message(s, entry.copy())
        self._persist_session(sid)
        self._emit(sid)
        self.evict("put_message", protect=sid)
        return True

    def commit_backfill(
        self,
        session_id: str,
        messages: Iterable[MessageEntry],
        meta: Optional[dict] = None,
    ) -> SessionEntry:
        """
        Replace a session's transcript with a complete backfill and promote it
        to fully cached. Per message the higher revision wins, so deltas applied
        while the backfill was in flight are kept.
        """
        s = self._visible(session_id)
        if s is None:
            s = self._install(self._new_entry(session_id, meta))
        elif meta:
            s.meta.update(meta)

        incoming: Dict[str, MessageEntry] = {}
        for m in messages:
            if m.session_id != session_id:
                logger.warning("backfill for %s carried message of %s; skipped", session_id, m.session_id)
                continue
            prev = incoming.get(m.message_id)
            if prev is None or m.revision > prev.revision:
                incoming[m.message_id] = m

        held = self._messages[session_id]
        stale = [mid for mid in s.message_ids if mid not in incoming]
        self._remove_messages(session_id, stale)
        for m in sorted(incoming.values(), key=lambda x: x.sequence_number):
            cur = held.get(m.message_id)
            if cur is not None and (cur.revision >= m.revision or cur.sequence_number != m.sequence_number):
                continue
            self._insert_message(s, m.copy())

        now = self.clock()
        s.is_fully_cached = True
        s.synced_at = now
        s.last_accessed_at = now
        s.expires_at = now + self.budgets.ttl_s
        self._persist_session(session_id)
        logger.info("backfill committed for %s: %d message(s)", session_id, len(s.message_ids))
        self._emit(session_id)
        self.evict("backfill", protect=session_id)
        return s

    def put_session_list(self, metas: Iterable[dict]) -> List[SessionEntry]:
        """
        Upsert stubs for a server session list (most recent first).
        Existing entries keep their cache state and access time.
        """
        now = self.clock()
        out: List[SessionEntry] = []
        for i, meta in enumerate(list(metas)[: self.budgets.max_sessions]):
            sid = str(meta.get("id") or "").strip()
            if not sid:
                continue
            s = self._visible(sid)
            if s is None:
                s = self._new_entry(sid, meta)
                s.last_accessed_at = now - i * 1e-3
                s = self._install(s)
            else:
                s.meta.update(meta)
                self._persist_session(sid)
            out.append(s)
            self._emit(sid)
        self._list_fetched_at = now
        self.evict("session_list")
        return out

    def forget(self, session_id: str) -> bool:
        """Explicit removal (user disconnect/clear)."""
        if session_id not in self._sessions:
            return False
        self._drop_session(session_id)
        self._emit(session_id)
        return True

    def clear(self) -> List[str]:
        ids = list(self._sessions)
        for sid in ids:
            self._drop_session(sid)
        self._list_fetched_at = None
        for sid in ids:
            self._emit(sid)
        logger.info("cache cleared (%d session(s))", len(ids))
        return ids

    def set_budgets(self, **overrides) -> EvictionReport:
        self.budgets = self.budgets.merged(**overrides)
        return self.evict("budgets")

    # ------------------------------------------------------------------ eviction

    def sweep(self) -> EvictionReport:
        return self.evict("sweep")

    def evict(self, reason: str = "write", protect: Optional[str] = None) -> EvictionReport:
        """
        Bring the cache back within budgets: TTL first, then session count,
        fully-cached count, per-session message count and finally total bytes.
        """
        report = EvictionReport(reason=reason)
        now = self.clock()
        touched: List[str] = []

        for sid in select_expired(self._sessions.values(), now):
            self._drop_session(sid)
            self.stats.expired_sessions += 1
            report.expired.append(sid)
            touched.append(sid)

        while True:
            try:
                self._check_budgets()
                break
            except BudgetExceeded as e:
                if not self._reclaim(e, report, protect, touched):
                    report.unresolved = str(e)
                    logger.warning("budget still exceeded after eviction: %s", e)
                    break

        if report.changed:
            self.stats.last_cleanup = now
            logger.info(
                "eviction (%s): expired=%d evicted=%d demoted=%d trimmed=%d",
                reason,
                len(report.expired),
                len(report.evicted),
                len(report.demoted),
                sum(len(v) for v in report.trimmed.values()),
            )
            for sid in dict.fromkeys(touched):
                self._emit(sid)
        return report

    def _trimmable(self, s: SessionEntry) -> bool:
        msgs = self._messages[s.session_id]
        return bool(select_messages_to_trim(s, [msgs[mid] for mid in s.message_ids], self.budgets))

    def _check_budgets(self) -> None:
        b = self.budgets
        if len(self._sessions) > b.max_sessions:
            raise BudgetExceeded("sessions", len(self._sessions), b.max_sessions)
        full = self.full_session_count
        if full > b.max_full_sessions:
            raise BudgetExceeded("full_sessions", full, b.max_full_sessions)
        for s in self._sessions.values():
            if s.is_fully_cached and len(s.message_ids) > b.max_messages_per_session and self._trimmable(s):
                raise BudgetExceeded("messages", len(s.message_ids), b.max_messages_per_session, s.session_id)
        if self._total_bytes > b.max_total_bytes:
            raise BudgetExceeded("bytes", self._total_bytes, b.max_total_bytes)

    def _reclaim(
        self,
        e: BudgetExceeded,
        report: EvictionReport,
        protect: Optional[str],
        touched: List[str],
    ) -> bool:
        if e.dimension == "sessions":
            ids = select_sessions_to_evict(self._sessions.values(), self.budgets, protect)
            for sid in ids:
                self._drop_session(sid)
                self.stats.evicted_sessions += 1
            report.evicted.extend(ids)
            touched.extend(ids)
            return bool(ids)

        if e.dimension == "full_sessions":
            ids = select_sessions_to_demote(self._sessions.values(), self.budgets, protect)
            for sid in ids:
                self._demote(sid)
            report.demoted.extend(ids)
            touched.extend(ids)
            return bool(ids)

        if e.dimension == "messages":
            sid = e.session_id or ""
            s = self._sessions[sid]
            msgs = self._messages[sid]
            ids = select_messages_to_trim(s, [msgs[mid] for mid in s.message_ids], self.budgets)
            self._remove_messages(sid, ids)
            self._persist_session(sid)
            self.stats.trimmed_messages += len(ids)
            report.trimmed.setdefault(sid, []).extend(ids)
            touched.append(sid)
            return bool(ids)

        plan = plan_byte_reclaim(self._sessions.values(), self.budgets, self._total_bytes, protect)
        for action, sid in plan:
            if action == EVICT:
                self._drop_session(sid)
                self.stats.evicted_sessions += 1
                report.evicted.append(sid)
            elif action == DEMOTE:
                self._demote(sid)
                report.demoted.append(sid)
            touched.append(sid)
        return bool(plan)

    def _demote(self, session_id: str) -> None:
        s = self._sessions[session_id]
        self._remove_messages(session_id, list(s.message_ids))
        s.is_fully_cached = False
        self.stats.demoted_sessions += 1
        self._persist_session(session_id)
        logger.debug("demoted %s to stub", session_id)

    # ------------------------------------------------------------------ internals

    def _insert_message(self, s: SessionEntry, m: MessageEntry) -> None:
        sid = s.session_id
        data = encode(m.to_dict())
        m.size_bytes = len(data)
        msgs = self._messages[sid]
        prev = msgs.get(m.message_id)
        if prev is not None:
            self._add_bytes(s, m.size_bytes - prev.size_bytes)
        else:
            seqs = self._seqs[sid]
            i = bisect.bisect_right(seqs, m.sequence_number)
            seqs.insert(i, m.sequence_number)
            s.message_ids.insert(i, m.message_id)
            self._add_bytes(s, m.size_bytes)
        msgs[m.message_id] = m
        self._write(message_key(sid, m.message_id), data)

    def _remove_messages(self, session_id: str, message_ids: Iterable[str]) -> None:
        drop = set(message_ids)
        if not drop:
            return
        s = self._sessions[session_id]
        msgs = self._messages[session_id]
        keep_ids: List[str] = []
        keep_seqs: List[int] = []
        for mid, seq in zip(s.message_ids, self._seqs[session_id]):
            if mid in drop:
                m = msgs.pop(mid)
                self._add_bytes(s, -m.size_bytes)
                self._delete(message_key(session_id, mid))
            else:
                keep_ids.append(mid)
                keep_seqs.append(seq)
        s.message_ids = keep_ids
        self._seqs[session_id] = keep_seqs

    def _drop_session(self, session_id: str) -> None:
        s = self._sessions.get(session_id)
        if s is None:
            return
        self._remove_messages(session_id, list(s.message_ids))
        self._total_bytes -= self._meta_bytes.pop(session_id, 0)
        del self._sessions[session_id]
        self._messages.pop(session_id, None)
        self._seqs.pop(session_id, None)
        self._delete(session_key(session_id))

    def _add_bytes(self, s: SessionEntry, delta: int) -> None:
        s.size_bytes += delta
        self._total_bytes += delta

    def _persist_session(self, session_id: str) -> None:
        s = self._sessions[session_id]
        data = encode(s.to_dict())
        prev = self._meta_bytes.get(session_id, 0)
        self._meta_bytes[session_id] = len(data)
        self._add_bytes(s, len(data) - prev)
        self._write(session_key(session_id), data)

    def _write(self, key: str, data: bytes) -> None:
        if self.writer is not None:
            self.writer.set(key, data)

    def _delete(self, key: str) -> None:
        if self.writer is not None:
            self.writer.delete(key)

    # ------------------------------------------------------------------ loading

    async def load(self) -> int:
        """
        Rebuild the index from persistence. Corrupt or expired keys are dropped
        one by one; a fully-cached session with any missing or corrupt message
        is demoted to a stub. Returns the number of sessions loaded.
        """
        if self.persistence is None:
            return 0
        now = self.clock()
        loaded = 0
        for key in await self._read_keys(SESSION_PREFIX):
            ok, raw = await self._read(key)
            if not ok or raw is None:
                continue
            try:
                s = SessionEntry.from_dict(decode(raw))
                if session_key(s.session_id) != key:
                    raise ValueError("key does not match session id")
            except _CORRUPT as e:
                self._drop_corrupt(key, e)
                continue
            if s.is_expired(now):
                self._delete(key)
                self.stats.expired_sessions += 1
                continue
            if s.session_id in self._sessions:
                continue

            expected = list(s.message_ids)
            fully = s.is_fully_cached
            self._install(s)
            if fully:
                fully = await self._load_messages(s, expected)
                s.is_fully_cached = fully
                if not fully:
                    self._remove_messages(s.session_id, list(s.message_ids))
                    logger.warning("session %s had incomplete messages on disk; loaded as stub", s.session_id)
            self._persist_session(s.session_id)
            loaded += 1

        await self._drop_orphan_messages()
        self.evict("load")
        logger.info("cache loaded: %d session(s), %d bytes", loaded, self._total_bytes)
        return loaded

    async def _load_messages(self, s: SessionEntry, expected: List[str]) -> bool:
        sid = s.session_id
        ok = True
        for key in await self._read_keys(message_prefix(sid)):
            read, raw = await self._read(key)
            if not read:
                ok = False
                continue
            if raw is None:
                continue
            try:
                m = MessageEntry.from_dict(decode(raw))
                if message_key(sid, m.message_id) != key or m.session_id != sid:
                    raise ValueError("key does not match message")
            except _CORRUPT as e:
                self._drop_corrupt(key, e)
                ok = False
                continue
            m.size_bytes = len(raw)
            seqs = self._seqs[sid]
            i = bisect.bisect_right(seqs, m.sequence_number)
            seqs.insert(i, m.sequence_number)
            s.message_ids.insert(i, m.message_id)
            self._messages[sid][m.message_id] = m
            self._add_bytes(s, m.size_bytes)
        if set(expected) - set(s.message_ids):
            ok = False
        return ok

    async def _drop_orphan_messages(self) -> None:
        for key in await self._read_keys(MESSAGE_PREFIX):
            owner = next((sid for sid in self._sessions if key.startswith(message_prefix(sid))), None)
            if owner is None or not self._sessions[owner].is_fully_cached:
                self._delete(key)

    async def _read_keys(self, prefix: str) -> List[str]:
        if self.persistence is None:
            return []
        try:
            return await self.persistence.keys(prefix)
        except Exception as e:
            logger.warning("could not list %s* keys: %s", prefix, e)
            return []

    async def _read(self, key: str) -> Tuple[bool, Optional[bytes]]:
        if self.persistence is None:
            return False, None
        try:
            return True, await self.persistence.get(key)
        except Exception as e:
            logger.warning("could not read %s: %s", key, e)
            return False, None

    def _drop_corrupt(self, key: str, err: Exception) -> None:
        self.stats.corrupt_entries += 1
        logger.warning("%s", PersistenceCorruptEntry(key, str(err)))
        self._delete(key)
