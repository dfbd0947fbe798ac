"""Redis implementations of the pipeline's collaborators.

- RedisStore: items as hashes plus a per-partition sorted-set index scored by
  timestamp, so a partition can be range-scanned by time.
- RedisAlertBus: alerts appended to a bus stream with XADD.
- RedisShardReader / RedisCheckpointer: one shard stream read through a
  consumer group (XREADGROUP); checkpoints XACK delivered entries.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlparse, urlunparse
from uuid import uuid4

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import RedisError, ResponseError

from logstream.core.alerts import AlertEntry
from logstream.core.event import StreamRecord
from logstream.core.storage import StorageItem

logger = logging.getLogger("logstream.redis")

RECORD_FIELD = "data"


def _sanitize_url(url: str) -> str:
    """Mask password in Redis URL for logging."""
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = f"{parsed.username}:****@{parsed.hostname}"
            if parsed.port:
                netloc += f":{parsed.port}"
            return urlunparse(
                (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
            )
        return f"{parsed.hostname}:{parsed.port or 6379}"
    except Exception:
        return "<url>"


def _text(value: bytes | str) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


@dataclass
class BackendHealth:
    """Health check result."""

    healthy: bool
    latency_ms: float
    details: dict[str, Any]


class RedisConnection:
    """Lazily created, pooled Redis client shared by the Redis backends."""

    def __init__(self, redis_url: str, pool_size: int = 10) -> None:
        self._url = redis_url
        self._url_safe = _sanitize_url(redis_url)
        self._pool_size = pool_size
        self._redis: Redis | None = None
        self._connected = False
        self._conn_lock = asyncio.Lock()
        self.reconnections = 0

    @property
    def redis_url(self) -> str:
        return self._url

    async def client(self) -> Redis:
        """Return a live client, reconnecting if the current one stopped answering."""
        if self._redis is not None:
            try:
                await self._redis.ping()
                return self._redis
            except RedisError as e:
                logger.warning(f"Redis connection lost: {e}, reconnecting...")

        async with self._conn_lock:
            # Another coroutine may have reconnected while we waited
            if self._redis is not None:
                try:
                    await self._redis.ping()
                    return self._redis
                except RedisError:
                    pass

            old_redis = self._redis
            if old_redis is not None:
                try:
                    await old_redis.aclose()
                except RedisError as close_err:
                    logger.debug(f"Error closing old connection: {close_err}")

            is_reconnection = self._connected
            pool = ConnectionPool.from_url(self._url, max_connections=self._pool_size)
            new_redis = Redis(connection_pool=pool)
            try:
                await new_redis.ping()
            except RedisError:
                await new_redis.aclose()
                raise

            self._redis = new_redis
            self._connected = True
            if is_reconnection:
                self.reconnections += 1
                logger.info(f"Reconnected to Redis at {self._url_safe}")
            else:
                logger.info(f"Connected to Redis at {self._url_safe}")
            return self._redis

    async def health(self) -> BackendHealth:
        start = time.monotonic()
        try:
            redis = await self.client()
            await redis.ping()
            return BackendHealth(
                healthy=True,
                latency_ms=(time.monotonic() - start) * 1000,
                details={"url": self._url_safe, "reconnections": self.reconnections},
            )
        except RedisError as e:
            return BackendHealth(
                healthy=False,
                latency_ms=(time.monotonic() - start) * 1000,
                details={"error": str(e)},
            )

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("Closed Redis connection")


class RedisStore:
    """Store backend writing items as Redis hashes.

    Layout per item:
        ``{table}:item:{pk}:{sk}``  hash with the item attributes
        ``{table}:pk:{pk}``         sorted set, member sk, score ts
    """

    def __init__(self, connection: RedisConnection) -> None:
        self._connection = connection

    @staticmethod
    def item_key(table: str, item: StorageItem) -> str:
        return f"{table}:item:{item.partition_key}:{item.sort_key}"

    @staticmethod
    def index_key(table: str, partition_key: str) -> str:
        return f"{table}:pk:{partition_key}"

    async def batch_write(self, table: str, items: Sequence[StorageItem]) -> list[StorageItem]:
        batch = list(items)
        if not batch:
            return []
        try:
            redis = await self._connection.client()
            pipe = redis.pipeline(transaction=False)
            for item in batch:
                pipe.hset(self.item_key(table, item), mapping=item.to_attributes())
                pipe.zadd(self.index_key(table, item.partition_key), {item.sort_key: item.timestamp_ms})
            results = await pipe.execute(raise_on_error=False)
        except RedisError as e:
            logger.warning(f"Batch write to {table} failed: {e}", extra={"error": str(e)})
            return batch

        # Two commands per item; the item is unprocessed if either failed
        unprocessed = [
            item
            for i, item in enumerate(batch)
            if isinstance(results[2 * i], Exception) or isinstance(results[2 * i + 1], Exception)
        ]
        return unprocessed

    async def query(
        self,
        table: str,
        partition_key: str,
        start_ms: int | None = None,
        end_ms: int | None = None,
    ) -> list[dict[str, str]]:
        """Items of one partition within ``[start_ms, end_ms]``, oldest first."""
        redis = await self._connection.client()
        sort_keys = await redis.zrangebyscore(
            self.index_key(table, partition_key),
            min="-inf" if start_ms is None else start_ms,
            max="+inf" if end_ms is None else end_ms,
        )
        rows = []
        for sk in sort_keys:
            raw = await redis.hgetall(f"{table}:item:{partition_key}:{_text(sk)}")
            rows.append({_text(k): _text(v) for k, v in raw.items()})
        return rows


class RedisAlertBus:
    """Alert bus appending entries to the stream ``{prefix}:{bus}``."""

    def __init__(self, connection: RedisConnection, prefix: str = "logstream:bus") -> None:
        self._connection = connection
        self._prefix = prefix

    def stream_key(self, bus: str) -> str:
        return f"{self._prefix}:{bus}"

    async def put_events(self, entries: Sequence[AlertEntry]) -> None:
        redis = await self._connection.client()
        for entry in entries:
            await redis.xadd(
                self.stream_key(entry.bus),
                {
                    "source": entry.source,
                    "detail-type": entry.detail_type,
                    "detail": entry.detail,
                },
            )


class RedisShardReader:
    """Reads one shard stream through a consumer group.

    On the first read, entries left pending by other consumers of the group
    for at least ``claim_min_idle_ms`` are claimed. Then every entry pending
    for this consumer (received before a restart but never acknowledged, or
    just claimed) is delivered again, then new entries.
    """

    def __init__(
        self,
        connection: RedisConnection,
        stream_key: str,
        consumer_group: str,
        consumer_name: str | None = None,
        claim_min_idle_ms: int = 60_000,
    ) -> None:
        self._connection = connection
        self.shard_id = stream_key
        self.stream_key = stream_key
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name or f"consumer-{uuid4().hex[:8]}"
        self.claim_min_idle_ms = claim_min_idle_ms
        self.claimed = 0
        self._claim_done = False
        self._group_created = False
        # Position in this consumer's pending list; None once it is replayed
        self._recovery_cursor: str | None = "0"
        self._delivered: deque[str] = deque()

    @property
    def checkpoint_key(self) -> str:
        return f"{self.consumer_group}:checkpoint:{self.stream_key}"

    async def _ensure_consumer_group(self) -> None:
        if self._group_created:
            return
        redis = await self._connection.client()
        try:
            await redis.xgroup_create(self.stream_key, self.consumer_group, id="0", mkstream=True)
            logger.info(f"Created consumer group '{self.consumer_group}' on '{self.stream_key}'")
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
            logger.debug(f"Consumer group '{self.consumer_group}' already exists")
        self._group_created = True

    async def _claim_idle_pending(self, page_size: int = 100) -> int:
        """Take over entries other consumers left pending for too long."""
        redis = await self._connection.client()
        claimed = 0
        start = "-"
        while True:
            pending = await redis.xpending_range(
                self.stream_key,
                self.consumer_group,
                min=start,
                max="+",
                count=page_size,
            )
            if not pending:
                break

            message_ids = [
                entry["message_id"]
                for entry in pending
                if _text(entry["consumer"]) != self.consumer_name
                and entry["time_since_delivered"] >= self.claim_min_idle_ms
            ]
            if message_ids:
                result = await redis.xclaim(
                    self.stream_key,
                    self.consumer_group,
                    self.consumer_name,
                    min_idle_time=self.claim_min_idle_ms,
                    message_ids=message_ids,
                    justid=True,
                )
                claimed += len(result)

            if len(pending) < page_size:
                break
            start = f"({_text(pending[-1]['message_id'])}"

        if claimed:
            logger.info(
                f"Claimed {claimed} idle pending entries on '{self.stream_key}'",
                extra={"shard_id": self.shard_id},
            )
        return claimed

    async def read(self, count: int, timeout: float) -> list[StreamRecord]:
        await self._ensure_consumer_group()
        if not self._claim_done:
            self.claimed = await self._claim_idle_pending()
            self._claim_done = True
        redis = await self._connection.client()

        recovering = self._recovery_cursor is not None
        response = await redis.xreadgroup(
            groupname=self.consumer_group,
            consumername=self.consumer_name,
            streams={self.stream_key: self._recovery_cursor if recovering else ">"},
            count=count,
            block=None if recovering else int(timeout * 1000),
        )

        messages = response[0][1] if response else []
        if recovering:
            if not messages:
                self._recovery_cursor = None
                return []
            self._recovery_cursor = _text(messages[-1][0])

        records = []
        for message_id, fields in messages:
            sequence_id = _text(message_id)
            fields = fields or {}
            data = fields.get(RECORD_FIELD.encode()) or fields.get(RECORD_FIELD) or b""
            if isinstance(data, str):
                data = data.encode("utf-8")
            records.append(StreamRecord(data=data, sequence_id=sequence_id))
            self._delivered.append(sequence_id)
        return records

    def checkpointer(self) -> "RedisCheckpointer":
        return RedisCheckpointer(self)

    async def acknowledge_through(self, sequence_id: str | None) -> list[str]:
        """XACK every delivered entry up to and including ``sequence_id``.

        None acknowledges everything delivered so far. The last acknowledged
        id is stored under ``checkpoint_key``.
        """
        if sequence_id is None:
            acked = list(self._delivered)
            self._delivered.clear()
        else:
            if sequence_id not in self._delivered:
                return []
            acked = []
            while self._delivered:
                current = self._delivered.popleft()
                acked.append(current)
                if current == sequence_id:
                    break

        if acked:
            redis = await self._connection.client()
            await redis.xack(self.stream_key, self.consumer_group, *acked)
            await redis.set(self.checkpoint_key, acked[-1])
        return acked


class RedisCheckpointer:
    """Checkpointer for a RedisShardReader."""

    def __init__(self, reader: RedisShardReader) -> None:
        self._reader = reader

    async def advance(self, sequence_id: str | None = None) -> None:
        acked = await self._reader.acknowledge_through(sequence_id)
        if acked:
            logger.debug(
                f"Checkpointed {len(acked)} entries",
                extra={"shard_id": self._reader.shard_id, "sequence_id": acked[-1]},
            )
