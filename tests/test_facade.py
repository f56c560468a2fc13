import asyncio
from unittest import mock

import pytest

from chamber_cache.cache.persistence import MemoryPersistence, session_key
from chamber_cache.cache.store import CacheStore
from chamber_cache.errors import TransientNetworkError
from chamber_cache.facade import SessionCache, Snapshot
from chamber_cache.models import Budgets
from chamber_cache.stream.reconciler import ReconcilerSettings, ReconcilerState

from conftest import HANG, FakeEventSource, history, make_message, message_event, synced, wait_until


class SourceFactory:
    def __init__(self, *scripts):
        self.scripts = scripts
        self.sources = []

    def __call__(self, session_id):
        source = FakeEventSource(*self.scripts)
        self.sources.append(source)
        return source


def live_factory(count=2):
    return SourceFactory(history(count) + [synced(), HANG])


@pytest.fixture
def make_cache(store, settings, no_backoff):
    def _make(factory, **kwargs):
        kwargs.setdefault("settings", settings)
        return SessionCache(store, factory, backoff=no_backoff, sweep_interval_s=3600, **kwargs)

    return _make


@pytest.mark.asyncio
async def test_subscribe_follows_session(make_cache, store):
    factory = live_factory(3)
    cache = make_cache(factory)
    snapshots = []

    cache.subscribe("s1", snapshots.append)
    await wait_until(lambda: snapshots and snapshots[-1].status == "live")

    snap = snapshots[-1]
    assert isinstance(snap, Snapshot)
    assert snap.is_fully_cached
    assert [m.message_id for m in snap.messages] == ["m1", "m2", "m3"]
    assert not snap.is_stale
    assert len(factory.sources) == 1
    await cache.close()


@pytest.mark.asyncio
async def test_notifications_are_coalesced_per_loop_turn(make_cache, store):
    cache = make_cache(SourceFactory(HANG), settings=ReconcilerSettings(attempt_timeout_s=30.0))
    snapshots = []
    cache.subscribe("s1", snapshots.append)
    await asyncio.sleep(0.01)
    snapshots.clear()

    store.commit_backfill("s1", [make_message("s1", 1)])
    for seq in range(2, 6):
        store.put_message(make_message("s1", seq))
    store.ensure_session("other")
    await asyncio.sleep(0.01)

    assert len(snapshots) == 1
    assert [m.sequence_number for m in snapshots[0].messages] == [1, 2, 3, 4, 5]
    await cache.close()


@pytest.mark.asyncio
async def test_callback_errors_are_isolated(make_cache):
    cache = make_cache(live_factory())
    received = []

    def broken(snapshot):
        raise RuntimeError("ui bug")

    cache.subscribe("s1", broken)
    cache.subscribe("s1", received.append)
    await wait_until(lambda: received and received[-1].status == "live")

    assert received[-1].is_fully_cached
    await cache.close()


@pytest.mark.asyncio
async def test_get_snapshot_never_raises(make_cache, store):
    cache = make_cache(live_factory())

    missing = cache.get_snapshot("nope")
    assert not missing.exists
    assert missing.messages == []
    assert missing.status == "idle"

    store.commit_backfill("s1", [make_message("s1", 1)])
    with mock.patch.object(store, "get_messages", side_effect=RuntimeError("corrupted index")):
        broken = cache.get_snapshot("s1")
    assert broken.session is None
    assert broken.is_stale

    ok = cache.get_snapshot("s1")
    assert ok.exists and len(ok.messages) == 1


@pytest.mark.asyncio
async def test_snapshot_is_a_copy(make_cache, store):
    cache = make_cache(live_factory())
    store.commit_backfill("s1", [make_message("s1", 1)])

    snap = cache.get_snapshot("s1")
    snap.messages[0].content["parts"].clear()
    snap.session.message_ids.clear()

    assert store.get_message("s1", "m1").content["parts"]
    assert store.peek_session("s1").message_ids == ["m1"]


@pytest.mark.asyncio
async def test_prefetch_fetches_without_following(make_cache, store):
    factory = live_factory(4)
    cache = make_cache(factory)

    assert await cache.prefetch("s1")

    assert store.is_fully_cached("s1")
    assert cache.status("s1") is ReconcilerState.CLOSED
    assert cache.stats()["reconcilers"] == {}
    # already cached: nothing is opened
    assert await cache.prefetch("s1")
    assert len(factory.sources) == 1


@pytest.mark.asyncio
async def test_failed_backfill_is_reported_as_stale(make_cache, store):
    cache = make_cache(SourceFactory(TransientNetworkError("down")))
    snapshots = []

    cache.subscribe("s1", snapshots.append)
    await wait_until(lambda: snapshots and snapshots[-1].is_stale)

    snap = cache.get_snapshot("s1")
    assert snap.is_stale
    assert snap.status == "failed"
    assert snap.exists and not snap.is_fully_cached
    await cache.close()


@pytest.mark.asyncio
async def test_last_unsubscribe_closes_reconciler(make_cache):
    factory = live_factory()
    cache = make_cache(factory)
    seen = []
    unsub_a = cache.subscribe("s1", seen.append)
    unsub_b = cache.subscribe("s1", lambda snap: None)
    await wait_until(lambda: cache.status("s1") is ReconcilerState.LIVE)

    unsub_a()
    assert cache.status("s1") is ReconcilerState.LIVE
    unsub_b()
    await wait_until(lambda: factory.sources[0].closed > 0)

    assert cache.stats()["reconcilers"] == {}
    assert len(factory.sources) == 1


@pytest.mark.asyncio
async def test_evict_all_refetches_subscribed_sessions(make_cache, store):
    factory = live_factory(2)
    cache = make_cache(factory)
    cache.subscribe("s1", lambda snap: None)
    store.ensure_session("other")
    await wait_until(lambda: store.is_fully_cached("s1"))

    assert await cache.evict_all() == 2

    assert "other" not in store
    await wait_until(lambda: store.is_fully_cached("s1"))
    assert len(factory.sources) == 2
    await cache.close()


@pytest.mark.asyncio
async def test_forget_unsubscribed_session(make_cache, store):
    cache = make_cache(live_factory())
    store.ensure_session("s1")

    assert await cache.forget("s1")
    assert "s1" not in store
    assert not await cache.forget("s1")


@pytest.mark.asyncio
async def test_set_budgets_and_session_list(make_cache, store, clock):
    cache = make_cache(live_factory())
    for i in range(3):
        clock.advance(1)
        store.commit_backfill(f"s{i}", [make_message(f"s{i}", 1)])

    report = cache.set_budgets(max_full_sessions=1)

    assert report.demoted == ["s0", "s1"]
    assert cache.is_session_list_stale()
    listed = cache.cache_session_list([{"id": "remote", "title": "From server"}])
    assert [s.session_id for s in listed] == ["remote"]
    assert not cache.is_session_list_stale()
    assert {s.session_id for s in cache.list_sessions()} == {"s0", "s1", "s2", "remote"}


@pytest.mark.asyncio
async def test_stats_report_usage(make_cache, store):
    cache = make_cache(live_factory())
    store.commit_backfill("s1", [make_message("s1", 1)])
    store.get_session("s1")
    store.get_session("missing")

    stats = cache.stats()

    assert stats["sessions"] == 1
    assert stats["full_sessions"] == 1
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["total_bytes"] == store.total_bytes
    assert stats["budgets"]["max_sessions"] == 50
    assert stats["pending_writes"] > 0


@pytest.mark.asyncio
async def test_start_and_close_persist_and_reload(settings, no_backoff, clock):
    persistence = MemoryPersistence()
    cache = SessionCache(CacheStore(persistence, Budgets(), clock=clock), live_factory(), settings=settings,
                         backoff=no_backoff, sweep_interval_s=3600)
    assert await cache.start() == 0
    assert await cache.prefetch("s1")
    await cache.close()

    assert session_key("s1") in persistence.data

    async with SessionCache(CacheStore(persistence, Budgets(), clock=clock), live_factory(), settings=settings,
                            backoff=no_backoff, sweep_interval_s=3600) as reopened:
        snap = reopened.get_snapshot("s1")
        assert snap.is_fully_cached
        assert [m.message_id for m in snap.messages] == ["m1", "m2"]


@pytest.mark.asyncio
async def test_periodic_sweep_drops_expired(settings, no_backoff, clock):
    store = CacheStore(None, Budgets(ttl_s=60), clock=clock)
    cache = SessionCache(store, live_factory(), settings=settings, backoff=no_backoff, sweep_interval_s=0.01)
    store.ensure_session("old")
    await cache.start()

    clock.advance(61)
    await wait_until(lambda: len(store) == 0)

    assert store.stats.expired_sessions == 1
    await cache.close()


@pytest.mark.asyncio
async def test_live_event_reaches_subscriber(make_cache):
    factory = SourceFactory(history(1) + [synced(), 0.05, message_event("m2", 2, text="new"), HANG])
    cache = make_cache(factory)
    snapshots = []

    cache.subscribe("s1", snapshots.append)
    await wait_until(lambda: snapshots and len(snapshots[-1].messages) == 2)

    assert snapshots[-1].messages[-1].content["parts"][0]["text"] == "new"
    await cache.close()
