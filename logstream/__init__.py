"""logstream - sharded log stream consumer with batched durable writes and error alerts."""

from logstream.backends import (
    AlertBus,
    Checkpointer,
    InMemoryAlertBus,
    InMemoryCheckpointer,
    InMemoryShardReader,
    InMemoryStore,
    ShardReader,
    StoreBackend,
)
from logstream.core import (
    AlertPublisher,
    FlushPolicy,
    LogEvent,
    ParseError,
    RetryBudget,
    RetryBudgetExhausted,
    ShardProcessor,
    ShardState,
    ShardStateError,
    StorageItem,
    StoreWriter,
    StreamRecord,
    UnprocessedItemsError,
)

__version__ = "0.1.0"

__all__ = [
    # Core
    "LogEvent",
    "StreamRecord",
    "StorageItem",
    "ShardProcessor",
    "ShardState",
    "FlushPolicy",
    "StoreWriter",
    "AlertPublisher",
    "RetryBudget",
    # Errors
    "ParseError",
    "RetryBudgetExhausted",
    "UnprocessedItemsError",
    "ShardStateError",
    # Backends
    "StoreBackend",
    "AlertBus",
    "Checkpointer",
    "ShardReader",
    "InMemoryStore",
    "InMemoryAlertBus",
    "InMemoryCheckpointer",
    "InMemoryShardReader",
    # Meta
    "__version__",
]
