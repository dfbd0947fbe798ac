"""Per-shard batch buffer and flush policy.

A flush takes the whole buffer in one step (snapshot and clear) before any
I/O, writes the snapshot in slices, and only checkpoints once every slice is
stored. A failed write leaves the records unacknowledged; they come back
after the shard is reassigned or the process restarts.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from logstream.core.backoff import CHECKPOINT_BUDGET, RetryBudget, Sleeper, run_with_backoff
from logstream.core.event import PendingRecord
from logstream.core.storage import MAX_BATCH_ITEMS, StoreWriter

if TYPE_CHECKING:
    from logstream.backends.base import Checkpointer

logger = logging.getLogger("logstream.batcher")

DEFAULT_MAX_ITEMS = MAX_BATCH_ITEMS
DEFAULT_MAX_BYTES = 4_000_000
DEFAULT_MAX_AGE = 0.150


class FlushTrigger(Enum):
    """Why a flush happened."""

    COUNT = "count"
    BYTES = "bytes"
    AGE = "age"
    FORCE = "force"


class BatchBuffer:
    """Ordered pending records of one shard.

    Not thread-safe; owned by a single shard worker.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._records: list[PendingRecord] = []
        self._size_bytes = 0
        self._first_enqueued_at: float | None = None

    def __len__(self) -> int:
        return len(self._records)

    @property
    def is_empty(self) -> bool:
        return not self._records

    @property
    def size_bytes(self) -> int:
        return self._size_bytes

    @property
    def first_enqueued_at(self) -> float | None:
        return self._first_enqueued_at

    def now(self) -> float:
        return self._clock()

    def age(self, now: float | None = None) -> float:
        """Seconds since the oldest pending record was added (0 when empty)."""
        if self._first_enqueued_at is None:
            return 0.0
        current = self._clock() if now is None else now
        return current - self._first_enqueued_at

    def add(self, record: PendingRecord) -> None:
        if not self._records:
            self._first_enqueued_at = self._clock()
        self._records.append(record)
        self._size_bytes += record.size

    def snapshot_and_clear(self) -> tuple[PendingRecord, ...]:
        """Hand over every pending record and reset the buffer."""
        snapshot = tuple(self._records)
        self._reset()
        return snapshot

    def discard(self) -> int:
        """Drop every pending record without writing it; returns how many."""
        dropped = len(self._records)
        self._reset()
        return dropped

    def _reset(self) -> None:
        self._records = []
        self._size_bytes = 0
        self._first_enqueued_at = None


@dataclass(frozen=True)
class FlushPolicy:
    """Thresholds that make a buffer flush; any one is enough."""

    max_items: int = DEFAULT_MAX_ITEMS
    max_bytes: int = DEFAULT_MAX_BYTES
    max_age: float = DEFAULT_MAX_AGE

    def triggers(self, buffer: BatchBuffer, force: bool = False) -> frozenset[FlushTrigger]:
        fired: set[FlushTrigger] = set()
        if force:
            fired.add(FlushTrigger.FORCE)
        if len(buffer) >= self.max_items:
            fired.add(FlushTrigger.COUNT)
        if buffer.size_bytes >= self.max_bytes:
            fired.add(FlushTrigger.BYTES)
        if not buffer.is_empty and buffer.age() >= self.max_age:
            fired.add(FlushTrigger.AGE)
        return frozenset(fired)


@dataclass(frozen=True)
class FlushResult:
    """Outcome of one flush evaluation."""

    triggers: frozenset[FlushTrigger] = field(default_factory=frozenset)
    items: int = 0
    checkpoint: str | None = None
    cancelled: bool = False

    @property
    def flushed(self) -> bool:
        return self.checkpoint is not None


NOT_FLUSHED = FlushResult()


class BatchFlusher:
    """Decides when the buffer flushes and drives write-then-checkpoint."""

    def __init__(
        self,
        buffer: BatchBuffer,
        writer: StoreWriter,
        policy: FlushPolicy | None = None,
        checkpoint_budget: RetryBudget = CHECKPOINT_BUDGET,
        sleeper: Sleeper | None = None,
        shard_id: str | None = None,
    ) -> None:
        self.buffer = buffer
        self.writer = writer
        self.policy = policy or FlushPolicy()
        self.checkpoint_budget = checkpoint_budget
        self.sleeper = sleeper
        self.shard_id = shard_id

    async def maybe_flush(self, checkpointer: "Checkpointer", force: bool = False) -> FlushResult:
        """Flush if a trigger fires (or ``force``) and the buffer is non-empty.

        Raises:
            UnprocessedItemsError: A slice could not be stored; no checkpoint
                was issued for this flush.
        """
        triggers = self.policy.triggers(self.buffer, force=force)
        if not triggers or self.buffer.is_empty:
            return NOT_FLUSHED

        snapshot = self.buffer.snapshot_and_clear()
        last_sequence = snapshot[-1].sequence_id
        trigger_names = sorted(t.value for t in triggers)

        logger.debug(
            f"Flushing {len(snapshot)} records",
            extra={"shard_id": self.shard_id, "trigger": trigger_names},
        )

        slice_size = min(self.policy.max_items, MAX_BATCH_ITEMS)
        for start in range(0, len(snapshot), slice_size):
            events = [record.event for record in snapshot[start : start + slice_size]]
            if not await self.writer.put_batch(events):
                logger.warning(
                    "Flush cancelled during write backoff; not checkpointing",
                    extra={"shard_id": self.shard_id, "sequence_id": last_sequence},
                )
                return FlushResult(triggers=triggers, items=len(snapshot), cancelled=True)

        async def advance() -> bool:
            await checkpointer.advance(last_sequence)
            return True

        done = await run_with_backoff(
            advance,
            self.checkpoint_budget,
            sleeper=self.sleeper,
            description="checkpoint",
        )
        if done is None:
            return FlushResult(triggers=triggers, items=len(snapshot), cancelled=True)

        logger.info(
            f"Flushed {len(snapshot)} records",
            extra={
                "shard_id": self.shard_id,
                "sequence_id": last_sequence,
                "trigger": trigger_names,
            },
        )
        return FlushResult(triggers=triggers, items=len(snapshot), checkpoint=last_sequence)
