"""In-memory collaborators for development and testing.

Nothing here is durable; everything is lost when the process exits.
"""

import asyncio
from collections.abc import Iterable, Sequence

from logstream.core.alerts import AlertEntry
from logstream.core.event import StreamRecord
from logstream.core.storage import StorageItem


class InMemoryStore:
    """Store backend keeping items in a dict keyed by (table, pk, sk).

    Partial failures can be scripted with ``fail_next``: each call pops the
    next number and leaves that many items of the batch unprocessed.
    """

    def __init__(self, fail_next: Iterable[int] = ()) -> None:
        self.items: dict[tuple[str, str, str], StorageItem] = {}
        self.calls: list[tuple[str, list[StorageItem]]] = []
        self._failures = list(fail_next)

    async def batch_write(self, table: str, items: Sequence[StorageItem]) -> list[StorageItem]:
        batch = list(items)
        self.calls.append((table, batch))
        fail = min(self._failures.pop(0), len(batch)) if self._failures else 0
        applied = batch[: len(batch) - fail]
        for item in applied:
            self.items[(table, item.partition_key, item.sort_key)] = item
        return batch[len(batch) - fail :]

    def query(self, table: str, partition_key: str) -> list[StorageItem]:
        """Items of one partition in sort-key order."""
        rows = [
            item
            for (t, pk, _), item in self.items.items()
            if t == table and pk == partition_key
        ]
        return sorted(rows, key=lambda item: (item.timestamp_ms, item.sort_key))

    def __len__(self) -> int:
        return len(self.items)


class InMemoryAlertBus:
    """Alert bus collecting entries in a list."""

    def __init__(self) -> None:
        self.entries: list[AlertEntry] = []

    async def put_events(self, entries: Sequence[AlertEntry]) -> None:
        self.entries.extend(entries)


class InMemoryCheckpointer:
    """Checkpointer remembering every advance call."""

    def __init__(self, latest: str | None = None) -> None:
        self.latest = latest
        self.checkpoints: list[str | None] = []

    async def advance(self, sequence_id: str | None = None) -> None:
        self.checkpoints.append(sequence_id)

    @property
    def position(self) -> str | None:
        """Durable position: the last explicit id, or the latest delivered one."""
        if not self.checkpoints:
            return None
        last = self.checkpoints[-1]
        return last if last is not None else self.latest


class InMemoryShardReader:
    """Shard reader fed by ``put`` calls, backed by an asyncio.Queue."""

    def __init__(self, shard_id: str) -> None:
        self.shard_id = shard_id
        self._queue: asyncio.Queue[StreamRecord] = asyncio.Queue()
        self._sequence = 0
        self._checkpointer = InMemoryCheckpointer()

    def put(self, data: bytes) -> StreamRecord:
        """Append a record to the shard with the next sequence id."""
        self._sequence += 1
        record = StreamRecord(data=data, sequence_id=f"{self._sequence:020d}")
        self._queue.put_nowait(record)
        return record

    async def read(self, count: int, timeout: float) -> list[StreamRecord]:
        try:
            first = await asyncio.wait_for(self._queue.get(), timeout)
        except TimeoutError:
            return []
        records = [first]
        while len(records) < count and not self._queue.empty():
            records.append(self._queue.get_nowait())
        self._checkpointer.latest = records[-1].sequence_id
        return records

    def checkpointer(self) -> InMemoryCheckpointer:
        return self._checkpointer
