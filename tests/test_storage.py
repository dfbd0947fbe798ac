"""Tests for storage keys and the batched store writer."""

import asyncio
import re
from datetime import UTC, datetime
from uuid import UUID

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from conftest import RecordingSleeper
from logstream.backends.inmemory import InMemoryStore
from logstream.core.event import LogEvent
from logstream.core.storage import (
    MAX_BATCH_ITEMS,
    PARTITION_BUCKETS,
    StorageItem,
    StoreWriter,
    UnprocessedItemsError,
    bucket_index,
    build_item,
    hour_bucket,
    partition_key,
    partition_keys,
)

NOON = datetime(2024, 1, 15, 12, 34, 56, 789000, tzinfo=UTC)
NOON_MS = 1705322096789

services = st.text(alphabet="abcdefghijklmnopqrstuvwxyz-_0123456789", min_size=1, max_size=30)
hours = st.datetimes(
    min_value=datetime(2000, 1, 1), max_value=datetime(2099, 12, 31)
).map(lambda d: d.strftime("%Y%m%d%H"))


def events(n: int, service: str = "api") -> list[LogEvent]:
    return [LogEvent(timestamp=NOON, level="info", service=service, message=f"m{i}") for i in range(n)]


def sizes(store: InMemoryStore) -> list[int]:
    return [len(batch) for _, batch in store.calls]


# =============================================================================
# Keys
# =============================================================================


def test_hour_bucket_is_utc_hour():
    assert hour_bucket(0) == "1970010100"
    assert hour_bucket(NOON_MS) == "2024011512"


@given(service=services, hour=hours)
@settings(max_examples=100)
def test_bucket_in_range_and_stable(service: str, hour: str):
    """For any service-hour, the bucket is in [0, 16) and the same every time."""
    index = bucket_index(service, hour)
    assert 0 <= index < PARTITION_BUCKETS
    assert bucket_index(service, hour) == index


@given(service=services, hour=hours)
def test_partition_key_is_one_of_the_service_hour_keys(service: str, hour: str):
    key = partition_key(service, hour)
    assert re.fullmatch(rf"{re.escape(service)}#{hour}#b\d{{1,2}}", key)
    assert key in partition_keys(service, hour)


def test_partition_keys_cover_all_buckets():
    keys = partition_keys("api", "2024011512")
    assert len(set(keys)) == PARTITION_BUCKETS
    assert keys[0] == "api#2024011512#b0"
    assert keys[-1] == "api#2024011512#b15"


def test_busy_service_spreads_over_hours():
    buckets = {bucket_index("api", f"20240115{h:02d}") for h in range(24)}
    assert len(buckets) > 1


def test_build_item_keys():
    event = LogEvent(timestamp=NOON, level="ERROR", service="api", message="boom")
    item = build_item(event, token_factory=lambda: "token")

    assert item.timestamp_ms == NOON_MS
    assert item.partition_key == partition_key("api", "2024011512")
    assert item.sort_key == f"{NOON_MS}#token"
    assert (item.level, item.message, item.service) == ("ERROR", "boom", "api")


def test_sort_key_suffix_is_uuid():
    item = build_item(LogEvent(timestamp=NOON))
    ts, suffix = item.sort_key.split("#", 1)
    assert ts == str(NOON_MS)
    assert UUID(suffix).version == 4


def test_same_event_gets_distinct_sort_keys():
    event = LogEvent(timestamp=NOON, service="api")
    first, second = build_item(event), build_item(event)
    assert first.partition_key == second.partition_key
    assert first.sort_key != second.sort_key


def test_missing_timestamp_uses_current_time():
    item = build_item(LogEvent(service="api"), now_ms=lambda: NOON_MS)
    assert item.timestamp_ms == NOON_MS
    assert item.partition_key.startswith("api#2024011512#b")


@pytest.mark.parametrize("service", [None, "", "   "])
def test_blank_service_keyed_as_unknown(service):
    item = build_item(LogEvent(timestamp=NOON, service=service))
    assert item.partition_key.startswith("unknown#2024011512#b")
    assert item.service is None
    assert "service" not in item.to_attributes()


def test_attributes_omit_blank_optionals():
    item = build_item(LogEvent(timestamp=NOON, level="", message=None, service="api"))
    attrs = item.to_attributes()

    assert set(attrs) == {"pk", "sk", "service", "ts"}
    assert attrs["ts"] == NOON_MS
    assert isinstance(attrs["ts"], int)


def test_attributes_full():
    item = StorageItem("pk1", "1#a", 1, level="info", message="hi", service="api")
    assert item.to_attributes() == {
        "pk": "pk1",
        "sk": "1#a",
        "level": "info",
        "message": "hi",
        "service": "api",
        "ts": 1,
    }


# =============================================================================
# StoreWriter
# =============================================================================


async def test_empty_input_makes_no_calls(sleeper):
    store = InMemoryStore()
    writer = StoreWriter(store, "logs", sleeper=sleeper)

    assert await writer.put_batch([]) is True
    assert store.calls == []


@pytest.mark.parametrize("table", [None, "", "  "])
async def test_unconfigured_table_makes_no_calls(table, sleeper):
    store = InMemoryStore()
    writer = StoreWriter(store, table, sleeper=sleeper)

    assert writer.configured is False
    assert await writer.put_batch(events(3)) is True
    assert store.calls == []


async def test_input_sliced_into_batches_of_25(sleeper):
    store = InMemoryStore()
    writer = StoreWriter(store, "logs", sleeper=sleeper)

    assert await writer.put_batch(events(60)) is True

    assert sizes(store) == [25, 25, 10]
    assert all(table == "logs" for table, _ in store.calls)
    assert len(store) == 60


@given(count=st.integers(min_value=1, max_value=120))
@settings(max_examples=30)
def test_no_call_exceeds_batch_limit(count: int):
    async def run() -> list[int]:
        store = InMemoryStore()
        await StoreWriter(store, "logs", sleeper=RecordingSleeper()).put_batch(events(count))
        return sizes(store)

    batch_sizes = asyncio.run(run())
    assert all(size <= MAX_BATCH_ITEMS for size in batch_sizes)
    assert sum(batch_sizes) == count


async def test_only_unprocessed_items_are_retried(sleeper):
    store = InMemoryStore(fail_next=[4])
    writer = StoreWriter(store, "logs", sleeper=sleeper)

    assert await writer.put_batch(events(25)) is True

    assert sizes(store) == [25, 4]
    first, retry = store.calls[0][1], store.calls[1][1]
    assert retry == first[-4:]
    assert len(store) == 25
    assert len(sleeper.delays) == 1


async def test_retry_delays_grow_and_stay_capped(sleeper):
    store = InMemoryStore(fail_next=[1] * 8)
    writer = StoreWriter(store, "logs", sleeper=sleeper)

    assert await writer.put_batch(events(2)) is True

    assert len(store.calls) == 9
    assert len(sleeper.delays) == 8
    assert all(0.2 <= d < 2.5 + 0.2 for d in sleeper.delays)
    assert sleeper.delays[-1] >= 2.5


async def test_exhausted_retries_raise_with_unprocessed_count(sleeper):
    store = InMemoryStore(fail_next=[3] * 20)
    writer = StoreWriter(store, "logs", sleeper=sleeper)

    with pytest.raises(UnprocessedItemsError) as exc_info:
        await writer.put_batch(events(10))

    assert exc_info.value.count == 3
    assert "3 items still unprocessed" in str(exc_info.value)
    assert sizes(store) == [10] + [3] * 8


async def test_later_slices_not_attempted_after_exhaustion(sleeper):
    store = InMemoryStore(fail_next=[25] * 9)
    writer = StoreWriter(store, "logs", sleeper=sleeper)

    with pytest.raises(UnprocessedItemsError):
        await writer.put_batch(events(30))

    assert len(store.calls) == 9
    assert len(store) == 0


async def test_cancelled_backoff_returns_false():
    store = InMemoryStore(fail_next=[2])
    writer = StoreWriter(store, "logs", sleeper=RecordingSleeper(interrupt_on=1))

    assert await writer.put_batch(events(5)) is False
    assert len(store.calls) == 1


async def test_backend_exceptions_propagate(sleeper):
    class BrokenStore:
        calls = 0

        async def batch_write(self, table, items):
            BrokenStore.calls += 1
            raise PermissionError("access denied")

    with pytest.raises(PermissionError):
        await StoreWriter(BrokenStore(), "logs", sleeper=sleeper).put_batch(events(1))
    assert BrokenStore.calls == 1


async def test_writer_logs_each_attempt(sleeper, caplog):
    store = InMemoryStore(fail_next=[2])
    with caplog.at_level("INFO", logger="logstream.storage"):
        await StoreWriter(store, "logs", sleeper=sleeper).put_batch(events(5))

    lines = [r.getMessage() for r in caplog.records if r.name == "logstream.storage"]
    assert lines == [
        "Batch write: requested=5 unprocessed=2 attempt=0",
        "Batch write: requested=2 unprocessed=0 attempt=1",
    ]
