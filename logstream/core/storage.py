"""Durable store writer.

Turns log events into storage items and writes them in batches of at most
25, retrying only the items the store reports as unprocessed.

Key scheme:

- partition key ``{service}#{YYYYMMDDHH}#b{n}``: a busy service-hour is
  spread over 16 partitions so no single partition runs hot;
- sort key ``{timestamp_ms}#{uuid4}``: chronological within a partition and
  unique even when several events share a millisecond. The suffix is random,
  so a record redelivered after a lost checkpoint is stored a second time.
"""

import logging
import zlib
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any
from uuid import uuid4

from logstream.core.backoff import (
    WRITE_BUDGET,
    RetryBudget,
    RetryBudgetExhausted,
    Sleeper,
    run_with_backoff,
)
from logstream.core.event import LogEvent

if TYPE_CHECKING:
    from logstream.backends.base import StoreBackend

logger = logging.getLogger("logstream.storage")

MAX_BATCH_ITEMS = 25
PARTITION_BUCKETS = 16
UNKNOWN_SERVICE = "unknown"
_HOUR_FORMAT = "%Y%m%d%H"
_EPOCH = datetime(1970, 1, 1, tzinfo=UTC)


class TransientWriteError(Exception):
    """A batch write left some items unprocessed.

    Attributes:
        unprocessed: The items the store did not apply.
    """

    def __init__(self, unprocessed: Sequence["StorageItem"]):
        self.unprocessed = list(unprocessed)
        super().__init__(f"{len(self.unprocessed)} items unprocessed")


class UnprocessedItemsError(RetryBudgetExhausted):
    """Raised when items are still unprocessed after the write budget.

    Attributes:
        count: Number of items that were never applied.
    """

    def __init__(self, count: int):
        self.count = count
        super().__init__(f"batch write exhausted retries; {count} items still unprocessed")


@dataclass(frozen=True, slots=True)
class StorageItem:
    """One row as written to the store."""

    partition_key: str
    sort_key: str
    timestamp_ms: int
    level: str | None = None
    message: str | None = None
    service: str | None = None

    def to_attributes(self) -> dict[str, Any]:
        """Wire representation; optional attributes are left out when unset."""
        attrs: dict[str, Any] = {"pk": self.partition_key, "sk": self.sort_key}
        if self.level:
            attrs["level"] = self.level
        if self.message:
            attrs["message"] = self.message
        if self.service:
            attrs["service"] = self.service
        attrs["ts"] = self.timestamp_ms
        return attrs


def hour_bucket(timestamp_ms: int) -> str:
    """UTC hour of an epoch-millisecond timestamp as ``YYYYMMDDHH``."""
    return (_EPOCH + timedelta(milliseconds=timestamp_ms)).strftime(_HOUR_FORMAT)


def bucket_index(service: str, hour: str) -> int:
    """Stable partition bucket in ``[0, PARTITION_BUCKETS)`` for a service-hour.

    CRC-32 based, so every process computes the same bucket; ``hash()`` is
    salted per process.
    """
    return zlib.crc32(f"{service}#{hour}".encode("utf-8")) % PARTITION_BUCKETS


def partition_key(service: str, hour: str) -> str:
    return f"{service}#{hour}#b{bucket_index(service, hour)}"


def partition_keys(service: str, hour: str) -> list[str]:
    """Every partition key a service-hour can be spread over.

    A reader scanning one service-hour queries all of these and merges by
    sort key.
    """
    return [f"{service}#{hour}#b{n}" for n in range(PARTITION_BUCKETS)]


def _blank(value: str | None) -> bool:
    return value is None or not value.strip()


def _now_ms() -> int:
    return int(datetime.now(UTC).timestamp() * 1000)


def build_item(
    event: LogEvent,
    now_ms: Callable[[], int] = _now_ms,
    token_factory: Callable[[], str] = lambda: str(uuid4()),
) -> StorageItem:
    """Build the storage item for one event.

    Events without a timestamp are stamped with the current time. A blank
    service is keyed under ``unknown`` but not stored as an attribute.
    """
    if event.timestamp is not None:
        ts = (event.timestamp - _EPOCH) // timedelta(milliseconds=1)
    else:
        ts = now_ms()

    service = None if _blank(event.service) else event.service
    hour = hour_bucket(ts)

    return StorageItem(
        partition_key=partition_key(service or UNKNOWN_SERVICE, hour),
        sort_key=f"{ts}#{token_factory()}",
        timestamp_ms=ts,
        level=None if _blank(event.level) else event.level,
        message=None if _blank(event.message) else event.message,
        service=service,
    )


class StoreWriter:
    """Writes log events to a table through a StoreBackend."""

    def __init__(
        self,
        backend: "StoreBackend",
        table_name: str | None,
        budget: RetryBudget = WRITE_BUDGET,
        sleeper: Sleeper | None = None,
        now_ms: Callable[[], int] = _now_ms,
    ) -> None:
        self.backend = backend
        self.table_name = table_name
        self.budget = budget
        self.sleeper = sleeper
        self._now_ms = now_ms

    @property
    def configured(self) -> bool:
        return not _blank(self.table_name)

    async def put_batch(self, events: Sequence[LogEvent]) -> bool:
        """Write every event, in slices of at most ``MAX_BATCH_ITEMS``.

        Returns:
            True when all items were applied (or there was nothing to do),
            False when a backoff wait was cancelled before that.

        Raises:
            UnprocessedItemsError: Items were still unprocessed after the
                retry budget. Nothing about the call is acknowledged.
        """
        if not events or not self.configured:
            return True

        items = [build_item(event, now_ms=self._now_ms) for event in events]
        for start in range(0, len(items), MAX_BATCH_ITEMS):
            chunk = items[start : start + MAX_BATCH_ITEMS]
            if not await self._write_slice(chunk):
                return False
        return True

    async def _write_slice(self, chunk: list[StorageItem]) -> bool:
        pending = list(chunk)
        attempt = 0

        async def attempt_write() -> bool:
            nonlocal pending, attempt
            unprocessed = await self.backend.batch_write(self.table_name, pending)
            logger.info(
                f"Batch write: requested={len(pending)} unprocessed={len(unprocessed)} "
                f"attempt={attempt}",
                extra={
                    "table": self.table_name,
                    "requested": len(pending),
                    "unprocessed": len(unprocessed),
                    "attempt": attempt,
                },
            )
            attempt += 1
            if unprocessed:
                pending = list(unprocessed)
                raise TransientWriteError(pending)
            return True

        try:
            result = await run_with_backoff(
                attempt_write,
                self.budget,
                sleeper=self.sleeper,
                retry_on=(TransientWriteError,),
                description="batch write",
            )
        except TransientWriteError as e:
            raise UnprocessedItemsError(len(e.unprocessed)) from e
        return result is not None
