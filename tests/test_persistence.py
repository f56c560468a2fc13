import asyncio

import pytest

from chamber_cache.cache.persistence import (
    FilePersistence,
    MemoryPersistence,
    PersistenceAdapter,
    PersistenceWriter,
    message_key,
    message_prefix,
    session_key,
)
from chamber_cache.cache.sqlite import SqlitePersistence

from conftest import FailingPersistence, wait_until


@pytest.fixture(params=["memory", "file", "sqlite"])
def adapter(request, tmp_path):
    if request.param == "file":
        return FilePersistence(str(tmp_path / "cache"))
    if request.param == "sqlite":
        return SqlitePersistence(str(tmp_path / "cache.sqlite"))
    return MemoryPersistence()


def test_key_namespaces():
    assert session_key("abc") == "session:abc"
    assert message_key("abc", "m1") == "message:abc:m1"
    assert message_key("abc", "m1").startswith(message_prefix("abc"))
    assert not message_key("abcd", "m1").startswith(message_prefix("abc"))


@pytest.mark.asyncio
async def test_adapter_get_set_delete(adapter):
    assert isinstance(adapter, PersistenceAdapter)
    assert await adapter.get("session:s1") is None

    await adapter.set("session:s1", b'{"a":1}')
    await adapter.set("session:s1", b'{"a":2}')

    assert await adapter.get("session:s1") == b'{"a":2}'
    await adapter.delete("session:s1")
    await adapter.delete("session:s1")
    assert await adapter.get("session:s1") is None


@pytest.mark.asyncio
async def test_adapter_keys_by_prefix(adapter):
    for key in ("session:a", "session:b_1", "message:a:m1", "message:a:m2", "message:ab:m1", "message:a%b:m1"):
        await adapter.set(key, b"{}")

    assert await adapter.keys("session:") == ["session:a", "session:b_1"]
    assert await adapter.keys(message_prefix("a")) == ["message:a:m1", "message:a:m2"]
    assert await adapter.keys(message_prefix("a%b")) == ["message:a%b:m1"]
    assert len(await adapter.keys()) == 6
    assert await adapter.estimate_usage() >= 12


@pytest.mark.asyncio
async def test_writer_coalesces_pending_operations():
    adapter = MemoryPersistence()
    writer = PersistenceWriter(adapter, retry_interval_s=0.01, max_retry_interval_s=0.05)

    writer.set("k1", b"v1")
    writer.set("k1", b"v2")
    writer.set("k2", b"x")
    writer.delete("k2")

    assert writer.pending == {"k1": b"v2", "k2": None}
    assert await writer.flush()
    assert adapter.data == {"k1": b"v2"}
    assert writer.pending == {}


@pytest.mark.asyncio
async def test_writer_keeps_failed_operations_pending():
    adapter = FailingPersistence()
    writer = PersistenceWriter(adapter, retry_interval_s=0.01, max_retry_interval_s=0.05)
    writer.set("k1", b"v1")

    assert not await writer.flush()
    assert writer.pending == {"k1": b"v1"}
    assert writer.failures == 1


@pytest.mark.asyncio
async def test_writer_retries_on_a_timer():
    adapter = FailingPersistence()
    writer = PersistenceWriter(adapter, retry_interval_s=0.01, max_retry_interval_s=0.02)
    writer.start()
    writer.set("k1", b"v1")

    await wait_until(lambda: adapter.attempts >= 3)
    adapter.failing = False
    await wait_until(lambda: adapter.data.get("k1") == b"v1")

    assert writer.pending == {}
    assert writer.failures >= 3
    await writer.stop()


@pytest.mark.asyncio
async def test_writer_stop_flushes(tmp_path):
    adapter = FilePersistence(str(tmp_path))
    writer = PersistenceWriter(adapter, retry_interval_s=0.01, max_retry_interval_s=0.05)
    writer.start()
    writer.set(session_key("s1"), b"{}")

    await writer.stop(flush=True)

    assert await adapter.get(session_key("s1")) == b"{}"


@pytest.mark.asyncio
async def test_writer_loop_exits_when_not_started():
    writer = PersistenceWriter(MemoryPersistence(), retry_interval_s=0.01, max_retry_interval_s=0.05)
    writer.set("k1", b"v1")

    await asyncio.wait_for(writer._run(), timeout=1.0)

    assert writer.pending == {"k1": b"v1"}
