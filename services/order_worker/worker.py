"""
Order Worker entrypoint
=======================
Wires the pieces together and runs until SIGINT/SIGTERM:

  settings → connection → channel (QoS prefetch) → topology (fatal on error)
  → transport → store / processor / router → dispatcher.run(cancel)

Run: order-worker            (console script)
     RABBITMQ_URL=amqp://... PROCESSING_DELAY_SECONDS=0.2 order-worker
"""
from __future__ import annotations

import asyncio
import signal
import sys

import aio_pika

from shared.config import WorkerSettings
from shared.idempotency import ProcessedMessageStore
from shared.logger import configure_logging, get_logger

from .dispatcher import DeliveryDispatcher
from .processor import OrderProcessor
from .router import FailureRouter
from .topology import QueueBinder, TopologyError
from .transport import RabbitMQTransport

logger = get_logger(__name__)


async def run_worker(
    settings: WorkerSettings,
    cancel: asyncio.Event,
    store: ProcessedMessageStore | None = None,
) -> DeliveryDispatcher:
    store = store if store is not None else ProcessedMessageStore()
    connection = await aio_pika.connect_robust(settings.rabbitmq_url)
    async with connection:
        channel = await connection.channel()
        await channel.set_qos(prefetch_count=settings.prefetch_count)

        queue = await QueueBinder(channel, settings.orders_queue, settings.orders_dlq).ensure_topology()

        transport = RabbitMQTransport(channel, queue)
        router = FailureRouter(transport, store, settings.orders_queue, settings.max_retry)
        dispatcher = DeliveryDispatcher(
            transport,
            store,
            OrderProcessor(settings.processing_delay_seconds),
            router,
            prefetch_count=settings.prefetch_count,
        )
        await dispatcher.run(cancel)
        return dispatcher


async def _main(settings: WorkerSettings) -> None:
    cancel = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, cancel.set)
    await run_worker(settings, cancel)


def main() -> None:
    settings = WorkerSettings.from_env()
    configure_logging(settings.log_level)
    try:
        asyncio.run(_main(settings))
    except TopologyError:
        logger.critical("Refusing to consume against an unverified topology, exiting")
        sys.exit(1)


if __name__ == "__main__":
    main()
