"""
Key-value persistence for the cache.

Adapters are byte oriented and treated as unreliable: every write goes
through PersistenceWriter, which coalesces pending operations per key and
retries failures on a timer without ever blocking the caller.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Dict, List, Optional, Protocol, runtime_checkable
from urllib.parse import quote, unquote

import aiofiles

from chamber_cache import config
from chamber_cache.errors import PersistenceWriteError

logger = logging.getLogger("chamber_cache.persistence")

SESSION_PREFIX = "session:"
MESSAGE_PREFIX = "message:"


def session_key(session_id: str) -> str:
    return f"{SESSION_PREFIX}{session_id}"


def message_key(session_id: str, message_id: str) -> str:
    return f"{MESSAGE_PREFIX}{session_id}:{message_id}"


def message_prefix(session_id: str) -> str:
    return f"{MESSAGE_PREFIX}{session_id}:"


@runtime_checkable
class PersistenceAdapter(Protocol):
    async def get(self, key: str) -> Optional[bytes]: ...

    async def set(self, key: str, data: bytes) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def keys(self, prefix: str = "") -> List[str]: ...

    async def estimate_usage(self) -> int: ...


class MemoryPersistence:
    """Process-local adapter. Useful for tests and for ephemeral caches."""

    def __init__(self):
        self.data: Dict[str, bytes] = {}

    async def get(self, key: str) -> Optional[bytes]:
        return self.data.get(key)

    async def set(self, key: str, data: bytes) -> None:
        self.data[key] = bytes(data)

    async def delete(self, key: str) -> None:
        self.data.pop(key, None)

    async def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in self.data if k.startswith(prefix))

    async def estimate_usage(self) -> int:
        return sum(len(v) for v in self.data.values())


class FilePersistence:
    """
    One file per key under a cache directory.
    File names are the percent-encoded key, so listing recovers the key.
    """

    SUFFIX = ".bin"

    def __init__(self, data_dir: Optional[str] = None):
        self.data_dir = Path(data_dir) if data_dir else config.data_dir()
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.data_dir / f"{quote(key, safe='')}{self.SUFFIX}"

    async def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None
        async with aiofiles.open(path, "rb") as f:
            return await f.read()

    async def set(self, key: str, data: bytes) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".tmp")
        try:
            async with aiofiles.open(tmp, "wb") as f:
                await f.write(data)
            tmp.replace(path)
        except OSError as e:
            raise PersistenceWriteError(key, str(e)) from e

    async def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceWriteError(key, str(e)) from e

    async def keys(self, prefix: str = "") -> List[str]:
        out = []
        for p in self.data_dir.glob(f"*{self.SUFFIX}"):
            key = unquote(p.name[: -len(self.SUFFIX)])
            if key.startswith(prefix):
                out.append(key)
        return sorted(out)

    async def estimate_usage(self) -> int:
        total = 0
        for p in self.data_dir.glob(f"*{self.SUFFIX}"):
            try:
                total += p.stat().st_size
            except OSError:
                continue
        return total


class PersistenceWriter:
    """
    Fire-and-forget write queue in front of a PersistenceAdapter.

    set()/delete() only record the latest pending operation for a key and wake
    the background task. Failed operations stay pending and are retried with a
    growing interval; a newer operation for the same key supersedes them.
    """

    def __init__(
        self,
        adapter: PersistenceAdapter,
        *,
        retry_interval_s: Optional[float] = None,
        max_retry_interval_s: Optional[float] = None,
    ):
        self.adapter = adapter
        self.retry_interval_s = retry_interval_s if retry_interval_s is not None else config.persistence_retry_interval_s()
        self.max_retry_interval_s = (
            max_retry_interval_s if max_retry_interval_s is not None else config.persistence_max_retry_interval_s()
        )
        # key -> bytes to write, or None to delete
        self._pending: Dict[str, Optional[bytes]] = {}
        self._wake: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._drain_lock: Optional[asyncio.Lock] = None
        self.failures = 0

    @property
    def pending(self) -> Dict[str, Optional[bytes]]:
        return dict(self._pending)

    def set(self, key: str, data: bytes) -> None:
        self._pending.pop(key, None)
        self._pending[key] = data
        self._notify()

    def delete(self, key: str) -> None:
        self._pending.pop(key, None)
        self._pending[key] = None
        self._notify()

    def _notify(self) -> None:
        if self._wake is not None:
            self._wake.set()

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._wake = asyncio.Event()
        if self._pending:
            self._wake.set()
        self._task = asyncio.create_task(self._run())

    async def stop(self, *, flush: bool = True) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._wake = None
        if flush:
            await self.flush()

    async def flush(self) -> bool:
        """Write everything pending once. Returns True when nothing is left pending."""
        return await self._drain() == 0

    async def _run(self) -> None:
        wake = self._wake
        if wake is None:
            return
        delay = self.retry_interval_s
        while True:
            await wake.wait()
            wake.clear()
            failed = await self._drain()
            if failed:
                logger.warning("persistence: %d operation(s) failed, retrying in %.1fs", failed, delay)
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_retry_interval_s)
                wake.set()
            else:
                delay = self.retry_interval_s

    async def _drain(self) -> int:
        if self._drain_lock is None:
            self._drain_lock = asyncio.Lock()
        async with self._drain_lock:
            failed = 0
            for key, data in list(self._pending.items()):
                try:
                    if data is None:
                        await self.adapter.delete(key)
                    else:
                        await self.adapter.set(key, data)
                except Exception as e:
                    failed += 1
                    self.failures += 1
                    logger.warning("persistence write failed for %s: %s", key, e)
                    continue
                # Only clear the op if nothing newer was queued while we awaited.
                if key in self._pending and self._pending[key] is data:
                    del self._pending[key]
            return failed
