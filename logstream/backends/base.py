"""Ports to the collaborators the shard pipeline depends on.

The pipeline never talks to a network service directly; it goes through
these protocols. Coordination (shard assignment, leases) is external: a
ShardReader hands over one shard's records and its Checkpointer records
progress.
"""

from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol

from logstream.core.event import StreamRecord

if TYPE_CHECKING:
    from logstream.core.alerts import AlertEntry
    from logstream.core.storage import StorageItem


class StoreBackend(Protocol):
    """Durable storage accepting batch writes."""

    async def batch_write(
        self, table: str, items: Sequence["StorageItem"]
    ) -> list["StorageItem"]:
        """Write up to 25 items.

        Args:
            table: Destination table.
            items: Items to put.

        Returns:
            The subset of items that was NOT applied (empty on full success).
        """
        ...


class AlertBus(Protocol):
    """Event bus carrying alerts."""

    async def put_events(self, entries: Sequence["AlertEntry"]) -> None:
        """Publish entries; raises on failure."""
        ...


class Checkpointer(Protocol):
    """Records how far a shard has been durably processed."""

    async def advance(self, sequence_id: str | None = None) -> None:
        """Mark everything up to ``sequence_id`` as processed.

        Args:
            sequence_id: Last processed record, or None for the latest
                record delivered to this worker.
        """
        ...


class ShardReader(Protocol):
    """Delivers one shard's records in sequence order."""

    shard_id: str

    async def read(self, count: int, timeout: float) -> list[StreamRecord]:
        """Return up to ``count`` records, waiting at most ``timeout`` seconds.

        An empty list means nothing arrived in time.
        """
        ...

    def checkpointer(self) -> Checkpointer:
        ...
