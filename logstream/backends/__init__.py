"""Collaborator ports and their implementations."""

from logstream.backends.base import AlertBus, Checkpointer, ShardReader, StoreBackend
from logstream.backends.inmemory import (
    InMemoryAlertBus,
    InMemoryCheckpointer,
    InMemoryShardReader,
    InMemoryStore,
)

__all__ = [
    "StoreBackend",
    "AlertBus",
    "Checkpointer",
    "ShardReader",
    "InMemoryStore",
    "InMemoryAlertBus",
    "InMemoryCheckpointer",
    "InMemoryShardReader",
]
