"""Core components of the logstream shard pipeline.

Types:
    LogEvent: Immutable parsed log event.
    StreamRecord: Raw record delivered for a shard.
    PendingRecord: Parsed record waiting in a shard buffer.
    StorageItem: One row written to the store.
    AlertEntry: One message on the alert bus.

Pipeline:
    ShardProcessor: Per-shard ingestion adapter and lifecycle state machine.
    BatchBuffer / FlushPolicy / BatchFlusher: Buffering and write-then-checkpoint.
    StoreWriter: Batched, partially-retried writes with sharded keys.
    AlertPublisher: Error-event alerts with retry.
    run_with_backoff / backoff_delay / RetryBudget: Bounded retry primitive.

Errors:
    ParseError: Record could not be decoded (dropped, non-fatal).
    TransientWriteError: Batch write left items unprocessed (retried).
    RetryBudgetExhausted / UnprocessedItemsError: Fatal after the retry budget.
    ShardStateError: Lifecycle call not allowed in the current state.
"""

from logstream.core.alerts import ALERT_DETAIL_TYPE, ALERT_SOURCE, AlertEntry, AlertPublisher
from logstream.core.backoff import (
    ALERT_BUDGET,
    CHECKPOINT_BUDGET,
    WRITE_BUDGET,
    EventSleeper,
    RetryBudget,
    RetryBudgetExhausted,
    Sleeper,
    backoff_delay,
    run_with_backoff,
)
from logstream.core.batcher import BatchBuffer, BatchFlusher, FlushPolicy, FlushResult, FlushTrigger
from logstream.core.event import LogEvent, ParseError, PendingRecord, StreamRecord, parse_record
from logstream.core.processor import ProcessorStats, ShardProcessor, ShardState, ShardStateError
from logstream.core.storage import (
    MAX_BATCH_ITEMS,
    PARTITION_BUCKETS,
    StorageItem,
    StoreWriter,
    TransientWriteError,
    UnprocessedItemsError,
    bucket_index,
    build_item,
    hour_bucket,
    partition_keys,
)

__all__ = [
    "LogEvent",
    "StreamRecord",
    "PendingRecord",
    "parse_record",
    "StorageItem",
    "AlertEntry",
    "ALERT_SOURCE",
    "ALERT_DETAIL_TYPE",
    "ShardProcessor",
    "ShardState",
    "ProcessorStats",
    "BatchBuffer",
    "BatchFlusher",
    "FlushPolicy",
    "FlushResult",
    "FlushTrigger",
    "StoreWriter",
    "AlertPublisher",
    "MAX_BATCH_ITEMS",
    "PARTITION_BUCKETS",
    "bucket_index",
    "build_item",
    "hour_bucket",
    "partition_keys",
    "RetryBudget",
    "WRITE_BUDGET",
    "ALERT_BUDGET",
    "CHECKPOINT_BUDGET",
    "Sleeper",
    "EventSleeper",
    "backoff_delay",
    "run_with_backoff",
    "ParseError",
    "TransientWriteError",
    "RetryBudgetExhausted",
    "UnprocessedItemsError",
    "ShardStateError",
]
