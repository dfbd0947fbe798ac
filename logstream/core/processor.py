"""Shard processor: the per-shard ingestion pipeline.

One ShardProcessor owns one shard for the lifetime of a lease:

    INITIALIZING -> ACTIVE -> DRAINING -> TERMINATED
                          |-> LEASE_LOST
                          \\-> FAILED

Records are parsed, error events are alerted on before they are buffered,
and the buffer is flushed (write, then checkpoint) whenever the policy says
so. Nothing here is shared between shards.

IMPORTANT: a checkpoint is only ever issued after the writes it covers have
been acknowledged by the store.
"""

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING

from logstream.core.alerts import AlertPublisher
from logstream.core.backoff import CHECKPOINT_BUDGET, RetryBudget, Sleeper, run_with_backoff
from logstream.core.batcher import BatchBuffer, BatchFlusher, FlushPolicy, FlushResult
from logstream.core.event import LogEvent, ParseError, PendingRecord, StreamRecord, parse_record
from logstream.core.storage import StoreWriter

if TYPE_CHECKING:
    from logstream.backends.base import Checkpointer

logger = logging.getLogger("logstream.processor")


class ShardState(Enum):
    """Lifecycle of a shard's ownership by this worker."""

    INITIALIZING = "initializing"
    ACTIVE = "active"
    DRAINING = "draining"
    LEASE_LOST = "lease_lost"
    FAILED = "failed"
    TERMINATED = "terminated"


class ShardStateError(Exception):
    """Raised when a lifecycle call is not allowed in the current state."""

    def __init__(self, operation: str, state: ShardState):
        self.operation = operation
        self.state = state
        super().__init__(f"cannot {operation} while shard is {state.value}")


@dataclass
class ProcessorStats:
    """Counters for one shard processor."""

    records_received: int = 0
    parse_failures: int = 0
    alerts_published: int = 0
    alerts_failed: int = 0
    flushes: int = 0
    items_written: int = 0
    checkpoints: int = 0
    records_discarded: int = 0


class ShardProcessor:
    """Parses, alerts on, buffers and flushes the records of one shard."""

    def __init__(
        self,
        writer: StoreWriter,
        publisher: AlertPublisher,
        policy: FlushPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleeper: Sleeper | None = None,
        alerts_block_checkpoint: bool = True,
        checkpoint_budget: RetryBudget = CHECKPOINT_BUDGET,
    ) -> None:
        self.publisher = publisher
        self.alerts_block_checkpoint = alerts_block_checkpoint
        self.checkpoint_budget = checkpoint_budget
        self.sleeper = sleeper
        self.buffer = BatchBuffer(clock=clock)
        self.flusher = BatchFlusher(
            self.buffer,
            writer,
            policy=policy,
            checkpoint_budget=checkpoint_budget,
            sleeper=sleeper,
        )
        self.shard_id: str | None = None
        self.state = ShardState.INITIALIZING
        self.last_checkpoint: str | None = None
        # Set when a backoff wait was cancelled mid-delivery; later records
        # are left unacknowledged
        self.interrupted = False
        self._stats = ProcessorStats()

    @property
    def stats(self) -> ProcessorStats:
        """A copy of the counters, safe to keep."""
        return replace(self._stats)

    def _log_extra(self, **fields: object) -> dict[str, object]:
        return {"shard_id": self.shard_id, **fields}

    def _require(self, operation: str, *allowed: ShardState) -> None:
        if self.state not in allowed:
            raise ShardStateError(operation, self.state)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, shard_id: str, starting_sequence: str | None = None) -> None:
        self._require("initialize", ShardState.INITIALIZING)
        self.shard_id = shard_id
        self.flusher.shard_id = shard_id
        self.state = ShardState.ACTIVE
        logger.info(
            f"Initialized shard {shard_id}",
            extra=self._log_extra(sequence_id=starting_sequence),
        )

    def lease_lost(self) -> None:
        """Drop everything buffered; another worker will redeliver it.

        Synchronous: once this returns, no buffered record can be written by
        this worker.
        """
        if self.state is ShardState.TERMINATED:
            return
        dropped = self.buffer.discard()
        self._stats.records_discarded += dropped
        self.state = ShardState.LEASE_LOST
        logger.warning(
            f"Lease lost, discarded {dropped} buffered records",
            extra=self._log_extra(),
        )

    async def shard_ended(self, checkpointer: "Checkpointer") -> None:
        """The shard has no more records: drain and checkpoint its end."""
        await self._drain(checkpointer, reason="shard ended")

    async def shutdown_requested(self, checkpointer: "Checkpointer") -> None:
        """The worker is stopping: drain and checkpoint before handing off."""
        await self._drain(checkpointer, reason="shutdown requested")

    async def _drain(self, checkpointer: "Checkpointer", reason: str) -> None:
        if self.state is ShardState.TERMINATED:
            return
        if self.state in (ShardState.LEASE_LOST, ShardState.FAILED):
            # Nothing may be checkpointed past a failed or revoked delivery
            self.state = ShardState.TERMINATED
            return
        self._require("drain", ShardState.INITIALIZING, ShardState.ACTIVE)

        self.state = ShardState.DRAINING
        logger.info(f"Draining shard: {reason}", extra=self._log_extra())

        result = await self._flush(checkpointer, force=True)
        if result.cancelled:
            logger.warning(
                "Drain interrupted before the final write completed; skipping checkpoint",
                extra=self._log_extra(),
            )
            self.state = ShardState.TERMINATED
            return

        if self.interrupted:
            logger.info(
                "Delivery was interrupted; leaving the rest of the shard unacknowledged",
                extra=self._log_extra(sequence_id=self.last_checkpoint),
            )
            self.state = ShardState.TERMINATED
            return

        async def advance() -> bool:
            await checkpointer.advance(None)
            return True

        done = await run_with_backoff(
            advance,
            self.checkpoint_budget,
            sleeper=self.sleeper,
            description="final checkpoint",
        )
        if done:
            self._stats.checkpoints += 1
        self.state = ShardState.TERMINATED
        logger.info(f"Shard terminated: {reason}", extra=self._log_extra())

    # ------------------------------------------------------------------
    # Record processing
    # ------------------------------------------------------------------

    async def process_records(
        self,
        records: Iterable[StreamRecord],
        checkpointer: "Checkpointer",
    ) -> None:
        """Handle one delivery of records for this shard.

        Once a delivery has been interrupted (a cancelled alert backoff), later
        records are ignored and stay unacknowledged.

        Raises:
            ShardStateError: The shard is not ACTIVE.
            UnprocessedItemsError: A flush could not store its records.
            Exception: The alert bus's last error, when alerting is exhausted
                and ``alerts_block_checkpoint`` is set.

        Any exception moves the shard to FAILED and discards the buffer.
        """
        self._require("process records", ShardState.ACTIVE)
        if self.interrupted:
            return

        try:
            await self._process(records, checkpointer)
        except Exception:
            dropped = self.buffer.discard()
            self._stats.records_discarded += dropped
            self.state = ShardState.FAILED
            logger.error(
                f"Delivery failed, discarded {dropped} buffered records",
                extra=self._log_extra(),
            )
            raise

    async def _process(self, records: Iterable[StreamRecord], checkpointer: "Checkpointer") -> None:
        for record in records:
            self._stats.records_received += 1
            try:
                event = parse_record(record.data, record.sequence_id)
            except ParseError as e:
                self._stats.parse_failures += 1
                logger.debug(
                    f"Dropping unparseable record: {e}",
                    extra=self._log_extra(sequence_id=record.sequence_id),
                )
            else:
                if event.is_error and not await self._alert(event, record.sequence_id):
                    self.interrupted = True
                    return
                self._enqueue(event, record.sequence_id)

            await self._flush(checkpointer)

        # Catches the age trigger when a delivery is small or empty
        await self._flush(checkpointer)

    async def _alert(self, event: LogEvent, sequence_id: str) -> bool:
        """Publish an alert; False means processing must stop (cancelled)."""
        try:
            published = await self.publisher.publish(event)
        except Exception as e:
            self._stats.alerts_failed += 1
            if self.alerts_block_checkpoint:
                logger.error(
                    f"Alert publish exhausted retries, aborting delivery: {e}",
                    extra=self._log_extra(sequence_id=sequence_id, error=str(e)),
                )
                raise
            logger.error(
                f"Alert publish exhausted retries, continuing: {e}",
                extra=self._log_extra(sequence_id=sequence_id, error=str(e)),
            )
            return True

        if not published:
            logger.info(
                "Alert publish cancelled, stopping delivery",
                extra=self._log_extra(sequence_id=sequence_id),
            )
            return False
        self._stats.alerts_published += 1
        return True

    def _enqueue(self, event: LogEvent, sequence_id: str) -> None:
        self.buffer.add(PendingRecord(event, sequence_id, event.to_json_bytes()))

    async def _flush(self, checkpointer: "Checkpointer", force: bool = False) -> FlushResult:
        result = await self.flusher.maybe_flush(checkpointer, force=force)
        if result.flushed:
            self._stats.flushes += 1
            self._stats.items_written += result.items
            self._stats.checkpoints += 1
            self.last_checkpoint = result.checkpoint
        return result
