"""
Per-session stream reconciler.

Consumes one session's event stream and turns it into CacheStore mutations:

    idle -> backfilling -> live -> reconnecting -> live | closed | failed

Backfill stages the full replay until the server's "synced" marker and then
commits it in one step, so the session stays a stub until the transcript is
complete. While live, events for known messages go straight through the
revision guard; events for new messages are put in sequence order by a
bounded reorder buffer. Stream errors never discard cached data.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

from chamber_cache import config
from chamber_cache.cache.store import CacheStore
from chamber_cache.errors import ProtocolViolation, TransientNetworkError
from chamber_cache.models import MessageEntry
from chamber_cache.protocol import EventKind, StreamEvent, apply_event, new_message, validate_event
from chamber_cache.stream.backoff import Backoff
from chamber_cache.stream.reorder import ReorderBuffer
from chamber_cache.stream.source import EventSource

logger = logging.getLogger("chamber_cache.reconciler")


class ReconcilerState(str, Enum):
    IDLE = "idle"
    BACKFILLING = "backfilling"
    LIVE = "live"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass(frozen=True)
class ReconcilerSettings:
    reorder_window_s: float = 2.0
    attempt_timeout_s: float = 15.0
    backfill_max_attempts: int = 5
    resume_max_attempts: int = 8

    @classmethod
    def from_config(cls) -> "ReconcilerSettings":
        return cls(
            reorder_window_s=config.reorder_window_s(),
            attempt_timeout_s=config.attempt_timeout_s(),
            backfill_max_attempts=config.backfill_max_attempts(),
            resume_max_attempts=config.resume_max_attempts(),
        )


StateListener = Callable[[str, ReconcilerState], None]


class _SessionDemoted(Exception):
    """The session lost its messages while live; the transcript must be fetched again."""


class StreamReconciler:
    def __init__(
        self,
        session_id: str,
        store: CacheStore,
        source: EventSource,
        *,
        settings: Optional[ReconcilerSettings] = None,
        follow: bool = True,
        on_state_change: Optional[StateListener] = None,
        backoff: Optional[Backoff] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_id = session_id
        self.store = store
        self.source = source
        self.settings = settings or ReconcilerSettings.from_config()
        self.follow = follow
        self.backoff = backoff or Backoff.from_config()
        self._on_state_change = on_state_change
        self._sleep = sleep
        self._buffer = ReorderBuffer(self.settings.reorder_window_s, clock)
        self._state = ReconcilerState.IDLE
        self._task: Optional[asyncio.Task] = None
        self._events: Optional[AsyncIterator[StreamEvent]] = None
        self._resume_token: Optional[str] = None
        self._watermark = 0
        self._flush_handle: Optional[asyncio.TimerHandle] = None
        self._closed = False

    # ------------------------------------------------------------------ lifecycle

    @property
    def state(self) -> ReconcilerState:
        return self._state

    @property
    def resume_token(self) -> Optional[str]:
        return self._resume_token

    @property
    def is_stale(self) -> bool:
        return self._state is ReconcilerState.FAILED

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"reconciler:{self.session_id}")
        return self._task

    async def wait(self) -> None:
        """Wait for the reconciler task to finish (prefetch, failure or close)."""
        if self._task is not None:
            await asyncio.wait([self._task])

    async def close(self) -> None:
        """Stop following the session. Applied changes stay in the store."""
        if self._closed:
            return
        self._closed = True
        self._cancel_flush()
        self._buffer.clear()
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait([task])
        await self._close_source()
        self._set_state(ReconcilerState.CLOSED)

    def _set_state(self, state: ReconcilerState) -> None:
        if state is self._state:
            return
        if self._closed and state is not ReconcilerState.CLOSED:
            return
        logger.debug("%s: %s -> %s", self.session_id, self._state.value, state.value)
        self._state = state
        if self._on_state_change is not None:
            try:
                self._on_state_change(self.session_id, state)
            except Exception:
                logger.exception("state listener failed for %s", self.session_id)

    async def _close_source(self) -> None:
        self._events = None
        try:
            await self.source.close()
        except Exception as e:
            logger.debug("error closing event source for %s: %s", self.session_id, e)

    async def _run(self) -> None:
        try:
            while not self._closed:
                if not await self._backfill():
                    logger.error(
                        "backfill of %s failed after %d attempt(s); session left as stub",
                        self.session_id, self.settings.backfill_max_attempts,
                    )
                    self._set_state(ReconcilerState.FAILED)
                    return
                if not self.follow:
                    self._closed = True
                    self._set_state(ReconcilerState.CLOSED)
                    return
                try:
                    await self._follow_live()
                    return
                except _SessionDemoted:
                    logger.info("%s lost its cached messages while live; fetching again", self.session_id)
                    self._buffer.clear()
                    self._cancel_flush()
                    await self._close_source()
        except Exception:
            logger.exception("reconciler for %s crashed", self.session_id)
            self._set_state(ReconcilerState.FAILED)
        finally:
            self._cancel_flush()
            await self._close_source()

    # ------------------------------------------------------------------ backfill

    async def _backfill(self) -> bool:
        self.store.ensure_session(self.session_id)
        self._set_state(ReconcilerState.BACKFILLING)
        attempts = self.settings.backfill_max_attempts
        for attempt in range(attempts):
            if attempt:
                await self._sleep(self.backoff.delay(attempt - 1))
            try:
                staged = await asyncio.wait_for(self._fetch_history(), self.settings.attempt_timeout_s)
            except (TransientNetworkError, asyncio.TimeoutError) as e:
                logger.warning(
                    "backfill of %s failed (attempt %d/%d): %s",
                    self.session_id, attempt + 1, attempts, str(e) or type(e).__name__,
                )
                await self._close_source()
                continue
            if self._closed:
                return True
            self._buffer.clear()
            self._cancel_flush()
            self.store.commit_backfill(self.session_id, staged.values())
            self._watermark = self.store.high_water_mark(self.session_id)
            return True
        return False

    async def _fetch_history(self) -> Dict[str, MessageEntry]:
        stream = await self.source.open(self.session_id, None)
        self._events = stream.__aiter__()
        staged: Dict[str, MessageEntry] = {}
        while True:
            try:
                event = await self._events.__anext__()
            except StopAsyncIteration:
                raise TransientNetworkError("stream ended before the history was complete") from None
            self._note_token(event)
            if event.kind is EventKind.SYNCED:
                return staged
            try:
                validate_event(event)
                cur = staged.get(event.message_id)
                if cur is None:
                    cur = new_message(self.session_id, event)
                elif event.revision <= cur.revision:
                    continue
                elif event.sequence_number != cur.sequence_number:
                    raise ProtocolViolation(
                        f"{event.message_id} changed sequence {cur.sequence_number} -> {event.sequence_number}"
                    )
                staged[event.message_id] = apply_event(cur, event)
            except ProtocolViolation as e:
                logger.warning("dropping backfill event for %s: %s", self.session_id, e)

    # ------------------------------------------------------------------ live

    async def _follow_live(self) -> None:
        self._set_state(ReconcilerState.LIVE)
        while not self._closed:
            if self._events is None:
                if not await self._reconnect():
                    return
                continue
            try:
                event = await self._events.__anext__()
            except StopAsyncIteration:
                logger.info("event stream for %s ended", self.session_id)
            except TransientNetworkError as e:
                logger.warning("event stream for %s dropped: %s", self.session_id, e)
            else:
                self._handle(event)
                continue
            if not await self._reconnect():
                return

    async def _reconnect(self) -> bool:
        self._set_state(ReconcilerState.RECONNECTING)
        await self._close_source()
        attempts = self.settings.resume_max_attempts
        for attempt in range(attempts):
            await self._sleep(self.backoff.delay(attempt))
            if self._closed:
                return False
            try:
                stream = await asyncio.wait_for(
                    self.source.open(self.session_id, self._resume_token),
                    self.settings.attempt_timeout_s,
                )
            except (TransientNetworkError, asyncio.TimeoutError) as e:
                logger.warning(
                    "reconnect of %s failed (attempt %d/%d): %s",
                    self.session_id, attempt + 1, attempts, str(e) or type(e).__name__,
                )
                continue
            self._events = stream.__aiter__()
            logger.info("reconnected %s after %d attempt(s)", self.session_id, attempt + 1)
            self._set_state(ReconcilerState.LIVE)
            await self._resync()
            return True
        logger.error("giving up on %s after %d reconnect attempt(s)", self.session_id, attempts)
        self._set_state(ReconcilerState.FAILED)
        return False

    async def _resync(self) -> None:
        ids = self.store.streaming_message_ids(self.session_id)
        if not ids:
            return
        logger.info("requesting resync of %d interrupted message(s) in %s", len(ids), self.session_id)
        try:
            await asyncio.wait_for(
                self.source.request_resync(self.session_id, ids),
                self.settings.attempt_timeout_s,
            )
        except (TransientNetworkError, asyncio.TimeoutError) as e:
            # The next read fails too and goes through _reconnect again.
            logger.warning("resync request for %s failed: %s", self.session_id, str(e) or type(e).__name__)

    def _handle(self, event: StreamEvent) -> None:
        if self._closed:
            return
        if not self.store.is_fully_cached(self.session_id):
            raise _SessionDemoted()
        self._note_token(event)
        if event.kind is EventKind.SYNCED:
            return
        try:
            validate_event(event)
        except ProtocolViolation as e:
            logger.warning("dropping event for %s: %s", self.session_id, e)
            return

        if self.store.get_message(self.session_id, event.message_id) is not None:
            self._apply(event)
        elif self._buffer.holds(event.message_id):
            self._buffer.hold(event)
        elif event.sequence_number <= self._watermark:
            logger.warning(
                "discarding %s/%s: sequence %d is at or below %d",
                self.session_id, event.message_id, event.sequence_number, self._watermark,
            )
        elif event.sequence_number == self._watermark + 1:
            self._apply(event)
            self._watermark = event.sequence_number
            self._drain()
        elif self._buffer.hold(event):
            self._schedule_flush()
        else:
            logger.warning(
                "protocol violation: %s/%s claims sequence %d held by another message",
                self.session_id, event.message_id, event.sequence_number,
            )

        if not self.store.is_fully_cached(self.session_id):
            raise _SessionDemoted()

    def _apply(self, event: StreamEvent) -> bool:
        cur = self.store.get_message(self.session_id, event.message_id)
        if cur is None:
            base = new_message(self.session_id, event)
        elif event.revision <= cur.revision:
            return False
        elif event.sequence_number != cur.sequence_number:
            logger.warning(
                "protocol violation: %s/%s changed sequence %d -> %d",
                self.session_id, event.message_id, cur.sequence_number, event.sequence_number,
            )
            return False
        else:
            base = cur
        try:
            updated = apply_event(base, event)
        except ProtocolViolation as e:
            logger.warning("dropping event for %s: %s", self.session_id, e)
            return False
        return self.store.put_message(updated)

    def _note_token(self, event: StreamEvent) -> None:
        if event.resume_token:
            self._resume_token = event.resume_token

    # ------------------------------------------------------------------ reorder window

    def _drain(self) -> None:
        events, self._watermark, skipped = self._buffer.release(self._watermark)
        if skipped:
            logger.warning("%s: gave up waiting for sequence(s) %s", self.session_id, skipped)
        for event in events:
            self._apply(event)
        if len(self._buffer):
            self._schedule_flush()
        else:
            self._cancel_flush()

    def _schedule_flush(self) -> None:
        self._cancel_flush()
        delay = self._buffer.next_deadline()
        if delay is None:
            return
        self._flush_handle = asyncio.get_running_loop().call_later(delay, self._on_flush_timer)

    def _on_flush_timer(self) -> None:
        self._flush_handle = None
        if self._closed:
            return
        # A demoted session is picked up by the next event, which triggers a backfill.
        self._drain()

    def _cancel_flush(self) -> None:
        if self._flush_handle is not None:
            self._flush_handle.cancel()
            self._flush_handle = None
