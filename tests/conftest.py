"""
Shared fakes for the cache tests.
"""
import asyncio
from typing import Any, List, Optional

import pytest

from chamber_cache.cache.persistence import MemoryPersistence
from chamber_cache.cache.store import CacheStore
from chamber_cache.errors import PersistenceWriteError, TransientNetworkError
from chamber_cache.models import Budgets, MessageEntry, SessionEntry, StreamState
from chamber_cache.protocol import EventKind, StreamEvent
from chamber_cache.stream.backoff import Backoff
from chamber_cache.stream.reconciler import ReconcilerSettings, ReconcilerState

# Script item: keep the stream open without sending anything.
HANG = object()


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEventSource:
    """
    Scripted EventSource. Each open() consumes the next script: an exception
    instance is raised from open(), HANG blocks in open(), and a list is
    streamed item by item (numbers sleep, exceptions are raised, HANG blocks,
    events are yielded).
    A list that runs out ends the stream cleanly.
    """

    def __init__(self, *scripts: Any):
        self.scripts = list(scripts)
        self.opens: List[Optional[str]] = []
        self.resyncs: List[List[str]] = []
        self.closed = 0

    async def open(self, session_id: str, resume_token: Optional[str] = None):
        self.opens.append(resume_token)
        if not self.scripts:
            raise TransientNetworkError("no more scripted connections")
        script = self.scripts.pop(0)
        if isinstance(script, BaseException):
            raise script
        if script is HANG:
            await asyncio.Event().wait()
        return self._stream(script)

    async def _stream(self, items):
        for item in items:
            await asyncio.sleep(0)
            if isinstance(item, (int, float)):
                await asyncio.sleep(item)
                continue
            if isinstance(item, BaseException):
                raise item
            if item is HANG:
                await asyncio.Event().wait()
            yield item

    async def request_resync(self, session_id: str, message_ids: List[str]) -> None:
        self.resyncs.append(list(message_ids))

    async def close(self) -> None:
        self.closed += 1


class FailingPersistence(MemoryPersistence):
    """Memory adapter whose writes fail while .failing is set."""

    def __init__(self):
        super().__init__()
        self.failing = True
        self.attempts = 0

    async def set(self, key: str, data: bytes) -> None:
        self.attempts += 1
        if self.failing:
            raise PersistenceWriteError(key, "disk full")
        await super().set(key, data)

    async def delete(self, key: str) -> None:
        self.attempts += 1
        if self.failing:
            raise PersistenceWriteError(key, "disk full")
        await super().delete(key)


def message_event(mid: str, seq: int, rev: int = 1, text: Optional[str] = None, token: Optional[str] = None,
                  completed: bool = True) -> StreamEvent:
    data = {"role": "assistant", "parts": [{"id": "p1", "type": "text", "text": text or f"message {seq}"}]}
    if completed:
        data["completed"] = True
    return StreamEvent(EventKind.MESSAGE, mid, seq, rev, data, resume_token=token)


def delta_event(mid: str, seq: int, rev: int, text: str, token: Optional[str] = None) -> StreamEvent:
    return StreamEvent(EventKind.DELTA, mid, seq, rev, {"part": {"id": "p1", "type": "text", "text": text}},
                       resume_token=token)


def synced(token: Optional[str] = None) -> StreamEvent:
    return StreamEvent(EventKind.SYNCED, resume_token=token)


def history(count: int, start: int = 1) -> List[StreamEvent]:
    return [message_event(f"m{seq}", seq) for seq in range(start, start + count)]


def make_message(session_id: str, seq: int, rev: int = 1, state: StreamState = StreamState.COMPLETE,
                 text: str = "") -> MessageEntry:
    return MessageEntry(
        message_id=f"m{seq}",
        session_id=session_id,
        sequence_number=seq,
        content={"info": {}, "parts": [{"id": "p1", "type": "text", "text": text or f"message {seq}"}]},
        stream_state=state,
        revision=rev,
    )


def make_session(session_id: str, accessed: float, fully: bool = False, size: int = 0,
                 expires: float = 10_000_000.0) -> SessionEntry:
    return SessionEntry(
        session_id=session_id,
        created_at=0.0,
        expires_at=expires,
        last_accessed_at=accessed,
        is_fully_cached=fully,
        size_bytes=size,
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


async def wait_for_state(reconciler, state: ReconcilerState, timeout: float = 2.0) -> None:
    await wait_until(lambda: reconciler.state is state, timeout)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def persistence():
    return MemoryPersistence()


@pytest.fixture
def store(persistence, clock):
    return CacheStore(persistence, Budgets(), clock=clock)


@pytest.fixture
def settings():
    return ReconcilerSettings(reorder_window_s=0.05, attempt_timeout_s=0.2, backfill_max_attempts=3,
                              resume_max_attempts=3)


@pytest.fixture
def no_backoff():
    return Backoff(base_s=0.001, cap_s=0.001, rng=lambda: 0.0)
