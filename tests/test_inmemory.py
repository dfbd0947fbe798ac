"""Tests for the in-memory collaborators."""

import asyncio

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from logstream.backends.inmemory import (
    InMemoryAlertBus,
    InMemoryCheckpointer,
    InMemoryShardReader,
    InMemoryStore,
)
from logstream.core.alerts import build_alert
from logstream.core.event import LogEvent
from logstream.core.storage import StorageItem


def item(ts: int, pk: str = "api#2024011512#b3") -> StorageItem:
    return StorageItem(partition_key=pk, sort_key=f"{ts}#{ts:04x}", timestamp_ms=ts)


async def test_store_applies_and_queries_in_time_order():
    store = InMemoryStore()
    unprocessed = await store.batch_write("logs", [item(30), item(10), item(20)])

    assert unprocessed == []
    assert [i.timestamp_ms for i in store.query("logs", "api#2024011512#b3")] == [10, 20, 30]
    assert store.query("other", "api#2024011512#b3") == []


async def test_store_scripted_failures_leave_tail_unprocessed():
    store = InMemoryStore(fail_next=[2, 0])
    batch = [item(n) for n in range(5)]

    first = await store.batch_write("logs", batch)
    second = await store.batch_write("logs", first)

    assert first == batch[-2:]
    assert second == []
    assert len(store) == 5
    assert [len(b) for _, b in store.calls] == [5, 2]


async def test_store_failure_count_capped_at_batch_size():
    store = InMemoryStore(fail_next=[10])
    assert len(await store.batch_write("logs", [item(1)])) == 1
    assert len(store) == 0


async def test_store_overwrites_same_key():
    store = InMemoryStore()
    await store.batch_write("logs", [item(1)])
    await store.batch_write("logs", [item(1)])
    assert len(store) == 1


async def test_alert_bus_collects_entries():
    bus = InMemoryAlertBus()
    entry = build_alert(LogEvent(level="error"), "default")
    await bus.put_events([entry])
    assert bus.entries == [entry]


async def test_checkpointer_position():
    checkpointer = InMemoryCheckpointer()
    assert checkpointer.position is None

    await checkpointer.advance("0005")
    assert checkpointer.position == "0005"

    checkpointer.latest = "0009"
    await checkpointer.advance(None)
    assert checkpointer.position == "0009"
    assert checkpointer.checkpoints == ["0005", None]


async def test_reader_assigns_increasing_sequence_ids():
    reader = InMemoryShardReader("shard-0")
    first = reader.put(b"a")
    second = reader.put(b"b")

    assert first.sequence_id < second.sequence_id
    assert len(first.sequence_id) == 20


async def test_reader_returns_at_most_count():
    reader = InMemoryShardReader("shard-0")
    for n in range(5):
        reader.put(str(n).encode())

    batch = await reader.read(count=3, timeout=0.1)
    rest = await reader.read(count=10, timeout=0.1)

    assert [r.data for r in batch] == [b"0", b"1", b"2"]
    assert [r.data for r in rest] == [b"3", b"4"]
    assert reader.checkpointer().latest == rest[-1].sequence_id


@pytest.mark.timeout(5)
async def test_reader_times_out_empty():
    reader = InMemoryShardReader("shard-0")
    assert await reader.read(count=10, timeout=0.01) == []


@given(count=st.integers(min_value=1, max_value=50), read_size=st.integers(min_value=1, max_value=20))
@settings(max_examples=50)
def test_reader_preserves_order(count: int, read_size: int):
    """For any number of records and read size, reads return every record in put order."""

    async def run() -> list[bytes]:
        reader = InMemoryShardReader("shard-0")
        for n in range(count):
            reader.put(str(n).encode())
        seen: list[bytes] = []
        while len(seen) < count:
            seen.extend(r.data for r in await reader.read(read_size, 0.1))
        return seen

    assert asyncio.run(run()) == [str(n).encode() for n in range(count)]
