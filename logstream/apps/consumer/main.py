"""Log stream consumer entrypoint.

Runs one ShardWorker per shard stream against Redis:

    shard stream → ShardProcessor → (alerts) → batch buffer → store → checkpoint

A worker that fails is replaced; its unacknowledged entries are delivered
again to the new worker. SIGINT/SIGTERM drain every shard (final flush and
checkpoint) before exit.

Usage:
    python -m logstream.apps.consumer.main
"""

import asyncio
import logging
import signal
from collections.abc import Callable

from logstream.backends.base import ShardReader
from logstream.backends.redis_backend import (
    RedisAlertBus,
    RedisConnection,
    RedisShardReader,
    RedisStore,
)
from logstream.core.alerts import AlertPublisher
from logstream.core.backoff import EventSleeper, Sleeper, backoff_delay
from logstream.core.config import Settings, get_settings
from logstream.core.logging import configure_logging
from logstream.core.processor import ProcessorStats, ShardProcessor
from logstream.core.storage import StoreWriter

logger = logging.getLogger("logstream.consumer")

RESTART_BASE_DELAY = 0.5
RESTART_CAP_DELAY = 30.0


class ShardWorker:
    """Drives one ShardProcessor from a ShardReader until told to stop."""

    def __init__(
        self,
        reader: ShardReader,
        processor: ShardProcessor,
        stop_event: asyncio.Event,
        read_batch_size: int = 1000,
        read_timeout: float = 0.1,
    ) -> None:
        self.reader = reader
        self.processor = processor
        self.stop_event = stop_event
        self.read_batch_size = read_batch_size
        self.read_timeout = read_timeout

    async def run(self) -> ProcessorStats:
        checkpointer = self.reader.checkpointer()
        self.processor.initialize(self.reader.shard_id)

        try:
            while not self.stop_event.is_set():
                records = await self.reader.read(self.read_batch_size, self.read_timeout)
                await self.processor.process_records(records, checkpointer)
        except Exception as e:
            # Unacknowledged records stay pending and are delivered again
            logger.error(
                f"Shard worker failed, abandoning shard: {e}",
                extra={"shard_id": self.reader.shard_id, "error": str(e)},
            )
            self.processor.lease_lost()
            raise

        await self.processor.shutdown_requested(checkpointer)
        return self.processor.stats


async def supervise_shard(
    make_worker: Callable[[], ShardWorker],
    stop_event: asyncio.Event,
    sleeper: Sleeper | None = None,
) -> ProcessorStats:
    """Run a shard's worker, replacing it after each failure, until stopped.

    Restarts back off exponentially; the wait ends early when
    ``stop_event`` is set.

    Returns:
        The stats of the last worker.
    """
    sleep = sleeper or EventSleeper(stop_event)
    restarts = 0
    while True:
        worker = make_worker()
        try:
            return await worker.run()
        except Exception as e:
            delay = backoff_delay(restarts, RESTART_BASE_DELAY, RESTART_CAP_DELAY)
            restarts += 1
            logger.warning(
                f"Restarting shard worker in {delay:.2f}s",
                extra={"shard_id": worker.reader.shard_id, "attempt": restarts, "error": str(e)},
            )
            if not await sleep(delay):
                return worker.processor.stats


def build_processor(
    settings: Settings,
    store: RedisStore,
    bus: RedisAlertBus,
    stop_event: asyncio.Event,
) -> ShardProcessor:
    sleeper = EventSleeper(stop_event)
    writer = StoreWriter(store, settings.table_name, sleeper=sleeper)
    publisher = AlertPublisher(bus, settings.event_bus, sleeper=sleeper)
    return ShardProcessor(
        writer,
        publisher,
        sleeper=sleeper,
        alerts_block_checkpoint=settings.alerts_block_checkpoint,
    )


async def run_consumer(
    settings: Settings,
    stop_event: asyncio.Event,
) -> list[ProcessorStats | BaseException]:
    """Consume every shard of ``settings.stream_name`` until ``stop_event`` is set.

    Each shard reads as consumer ``{application_name}-{n}``, so a restarted
    process picks up the entries its predecessor left unacknowledged.

    Returns:
        One entry per shard: its final stats, or the exception that ended it.

    Raises:
        ConnectionError: Redis did not answer the startup health check.
    """
    connection = RedisConnection(settings.redis_url)
    try:
        health = await connection.health()
        if not health.healthy:
            raise ConnectionError(f"Redis unavailable: {health.details.get('error')}")
        logger.info(f"Redis healthy ({health.latency_ms:.1f} ms)", extra=health.details)

        store = RedisStore(connection)
        bus = RedisAlertBus(connection)

        def worker_factory(stream_key: str, consumer_name: str) -> Callable[[], ShardWorker]:
            def make_worker() -> ShardWorker:
                reader = RedisShardReader(
                    connection,
                    stream_key,
                    settings.application_name,
                    consumer_name,
                    claim_min_idle_ms=settings.claim_min_idle_ms,
                )
                return ShardWorker(
                    reader,
                    build_processor(settings, store, bus, stop_event),
                    stop_event,
                    read_batch_size=settings.read_batch_size,
                    read_timeout=settings.read_timeout,
                )

            return make_worker

        factories = [
            worker_factory(stream_key, f"{settings.application_name}-{n}")
            for n, stream_key in enumerate(settings.shard_streams())
        ]

        logger.info(
            f"Consuming {len(factories)} shard(s) of {settings.stream_name}",
            extra={
                "application": settings.application_name,
                "region": settings.region,
                "table": settings.table_name,
                "event_bus": settings.event_bus,
            },
        )

        return await asyncio.gather(
            *(supervise_shard(make_worker, stop_event) for make_worker in factories),
            return_exceptions=True,
        )
    finally:
        await connection.close()


async def _run(settings: Settings) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()

    def handle_signal(signum: int) -> None:
        logger.info(f"Received signal {signum}, draining shards...")
        stop_event.set()

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, handle_signal, signum)

    results = await run_consumer(settings, stop_event)
    for result in results:
        if isinstance(result, BaseException):
            logger.error(f"Shard ended with error: {result}")
        else:
            logger.info(f"Shard stats: {result}")


def main() -> None:
    """Main entry point for the log stream consumer."""
    settings = get_settings()
    configure_logging(settings.log_level)
    asyncio.run(_run(settings))


if __name__ == "__main__":
    main()
