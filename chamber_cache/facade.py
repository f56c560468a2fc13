"""
SessionCache: the surface UI stores talk to.

One CacheStore instance plus one StreamReconciler per followed session.
Change notifications are coalesced to at most one per session per event-loop
turn, and snapshot reads never raise.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from chamber_cache import config
from chamber_cache.cache.eviction import EvictionReport
from chamber_cache.cache.persistence import FilePersistence, MemoryPersistence, PersistenceAdapter
from chamber_cache.cache.sqlite import SqlitePersistence
from chamber_cache.cache.store import CacheStore
from chamber_cache.models import MessageEntry, SessionEntry
from chamber_cache.stream.backoff import Backoff
from chamber_cache.stream.reconciler import ReconcilerSettings, ReconcilerState, StreamReconciler
from chamber_cache.stream.source import EventSourceFactory

logger = logging.getLogger("chamber_cache.facade")


@dataclass(frozen=True)
class Snapshot:
    session_id: str
    session: Optional[SessionEntry] = None
    messages: List[MessageEntry] = field(default_factory=list)
    is_stale: bool = False
    status: str = ReconcilerState.IDLE.value

    @property
    def exists(self) -> bool:
        return self.session is not None

    @property
    def is_fully_cached(self) -> bool:
        return bool(self.session and self.session.is_fully_cached)


OnChange = Callable[[Snapshot], None]


def build_persistence(backend: Optional[str] = None) -> PersistenceAdapter:
    backend = backend or config.persistence_backend()
    if backend == "sqlite":
        return SqlitePersistence()
    if backend == "memory":
        return MemoryPersistence()
    return FilePersistence()


class SessionCache:
    def __init__(
        self,
        store: CacheStore,
        source_factory: EventSourceFactory,
        *,
        settings: Optional[ReconcilerSettings] = None,
        backoff: Optional[Backoff] = None,
        sweep_interval_s: Optional[float] = None,
    ):
        self.store = store
        self.source_factory = source_factory
        self.settings = settings or ReconcilerSettings.from_config()
        self.backoff = backoff
        self.sweep_interval_s = sweep_interval_s if sweep_interval_s is not None else config.sweep_interval_s()
        self._subscribers: Dict[str, List[OnChange]] = {}
        self._reconcilers: Dict[str, StreamReconciler] = {}
        self._status: Dict[str, ReconcilerState] = {}
        self._pending_notify: Set[str] = set()
        self._background: Set[asyncio.Task] = set()
        self._sweep_task: Optional[asyncio.Task] = None
        self._remove_listener: Optional[Callable[[], None]] = store.add_listener(self._on_store_change)

    @classmethod
    def from_config(cls, source_factory: EventSourceFactory, **kwargs: Any) -> "SessionCache":
        return cls(CacheStore(build_persistence()), source_factory, **kwargs)

    # ------------------------------------------------------------------ lifecycle

    async def start(self) -> int:
        """Load persisted entries, start the write queue and the periodic TTL sweep."""
        loaded = await self.store.load()
        if self.store.writer is not None:
            self.store.writer.start()
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
        return loaded

    async def close(self) -> None:
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            await asyncio.wait([task])
        recs = list(self._reconcilers.values())
        self._reconcilers.clear()
        await asyncio.gather(*(r.close() for r in recs))
        if self._background:
            await asyncio.wait(list(self._background))
        if self.store.writer is not None:
            await self.store.writer.stop(flush=True)
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        self._subscribers.clear()

    async def __aenter__(self) -> "SessionCache":
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_s)
            try:
                self.store.sweep()
            except Exception:
                logger.exception("cache sweep failed")

    # ------------------------------------------------------------------ subscriptions

    def subscribe(self, session_id: str, on_change: OnChange) -> Callable[[], None]:
        """
        Follow a session. The first subscriber starts a live reconciler; the
        returned function unsubscribes, and the last unsubscribe stops it.
        Must be called from within the running event loop.
        """
        self._subscribers.setdefault(session_id, []).append(on_change)
        self.store.touch(session_id)
        rec = self._reconcilers.get(session_id)
        if rec is not None and not rec.follow:
            # Replace a prefetch still in flight; its waiter sees it close.
            self._spawn(rec.close())
            rec = None
        if rec is None or rec.state in (ReconcilerState.CLOSED, ReconcilerState.FAILED):
            self._start_reconciler(session_id, follow=True)

        def _unsubscribe() -> None:
            cbs = self._subscribers.get(session_id)
            if not cbs or on_change not in cbs:
                return
            cbs.remove(on_change)
            if cbs:
                return
            del self._subscribers[session_id]
            rec = self._reconcilers.pop(session_id, None)
            if rec is not None:
                self._spawn(rec.close())

        return _unsubscribe

    def _start_reconciler(self, session_id: str, follow: bool) -> StreamReconciler:
        rec = StreamReconciler(
            session_id,
            self.store,
            self.source_factory(session_id),
            settings=self.settings,
            follow=follow,
            on_state_change=self._on_state_change,
            backoff=self.backoff,
        )
        self._reconcilers[session_id] = rec
        rec.start()
        return rec

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _on_state_change(self, session_id: str, state: ReconcilerState) -> None:
        self._status[session_id] = state
        if state in (ReconcilerState.CLOSED, ReconcilerState.FAILED) and session_id not in self._subscribers:
            rec = self._reconcilers.get(session_id)
            if rec is not None and rec.state is state:
                del self._reconcilers[session_id]
        self._on_store_change(session_id)

    def _on_store_change(self, session_id: str) -> None:
        if session_id not in self._subscribers or session_id in self._pending_notify:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._pending_notify.add(session_id)
        loop.call_soon(self._notify, session_id)

    def _notify(self, session_id: str) -> None:
        self._pending_notify.discard(session_id)
        cbs = list(self._subscribers.get(session_id, ()))
        if not cbs:
            return
        snap = self._snapshot(session_id, touch=False)
        for cb in cbs:
            try:
                cb(snap)
            except Exception:
                logger.exception("on_change callback failed for %s", session_id)

    # ------------------------------------------------------------------ reads

    def get_snapshot(self, session_id: str) -> Snapshot:
        """Current view of a session. Absence is an empty snapshot, never an exception."""
        return self._snapshot(session_id, touch=True)

    def _snapshot(self, session_id: str, touch: bool) -> Snapshot:
        status = self.status(session_id)
        stale = status is ReconcilerState.FAILED
        try:
            s = self.store.get_session(session_id) if touch else self.store.peek_session(session_id)
            if s is None:
                return Snapshot(session_id, None, [], stale, status.value)
            messages = [m.copy() for m in self.store.get_messages(session_id)]
            return Snapshot(session_id, s.copy(), messages, stale, status.value)
        except Exception:
            logger.exception("snapshot of %s failed", session_id)
            return Snapshot(session_id, None, [], True, status.value)

    def status(self, session_id: str) -> ReconcilerState:
        rec = self._reconcilers.get(session_id)
        if rec is not None:
            return rec.state
        return self._status.get(session_id, ReconcilerState.IDLE)

    def list_sessions(self) -> List[SessionEntry]:
        return [s.copy() for s in self.store.list_sessions()]

    def is_session_list_stale(self) -> bool:
        return self.store.is_session_list_stale()

    def cache_session_list(self, metas: List[Dict[str, Any]]) -> List[SessionEntry]:
        return [s.copy() for s in self.store.put_session_list(metas)]

    def stats(self) -> Dict[str, Any]:
        writer = self.store.writer
        return {
            **self.store.stats.to_dict(),
            "sessions": len(self.store),
            "full_sessions": self.store.full_session_count,
            "total_bytes": self.store.total_bytes,
            "budgets": asdict(self.store.budgets),
            "pending_writes": len(writer.pending) if writer is not None else 0,
            "write_failures": writer.failures if writer is not None else 0,
            "reconcilers": {sid: rec.state.value for sid, rec in self._reconcilers.items()},
        }

    # ------------------------------------------------------------------ configuration and control

    async def prefetch(self, session_id: str) -> bool:
        """
        Fetch a session's full transcript without following it.
        Returns whether the session is fully cached afterwards. A session
        that is already being followed is not waited for.
        """
        if self.store.is_fully_cached(session_id):
            return True
        rec = self._reconcilers.get(session_id)
        if rec is not None and rec.follow:
            return self.store.is_fully_cached(session_id)
        if rec is None or rec.state in (ReconcilerState.CLOSED, ReconcilerState.FAILED):
            rec = self._start_reconciler(session_id, follow=False)
        await rec.wait()
        return self.store.is_fully_cached(session_id)

    async def forget(self, session_id: str) -> bool:
        """Drop a session from the cache. Subscribed sessions are fetched again."""
        rec = self._reconcilers.pop(session_id, None)
        if rec is not None:
            await rec.close()
        self._status.pop(session_id, None)
        removed = self.store.forget(session_id)
        if session_id in self._subscribers:
            self._start_reconciler(session_id, follow=True)
        return removed

    async def evict_all(self) -> int:
        """Clear every cached entry. Subscribed sessions are fetched again."""
        recs = list(self._reconcilers.values())
        self._reconcilers.clear()
        await asyncio.gather(*(r.close() for r in recs))
        self._status.clear()
        ids = self.store.clear()
        for session_id in list(self._subscribers):
            self._start_reconciler(session_id, follow=True)
        return len(ids)

    def set_budgets(self, **overrides: Any) -> EvictionReport:
        return self.store.set_budgets(**overrides)
