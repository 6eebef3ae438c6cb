import asyncio
import logging

from order_lifecycle.config import settings
from order_lifecycle.database import AsyncSessionLocal
from order_lifecycle.infrastructure.unit_of_work import UnitOfWork
from order_lifecycle.infrastructure.kafka_producer import KafkaProducerClient
from order_lifecycle.application.process_outbox import ProcessOutboxEventsUseCase

logger = logging.getLogger(__name__)

POLL_INTERVAL = 2
ERROR_BACKOFF = 10


async def outbox_worker(publisher: KafkaProducerClient):
    """Publishes pending order events until cancelled"""
    logger.info("Outbox worker started")
    use_case = ProcessOutboxEventsUseCase(
        unit_of_work=UnitOfWork(AsyncSessionLocal),
        publisher=publisher
    )

    while True:
        try:
            published = await use_case(limit=20)
            if published:
                logger.info(f"Published {published} outbox events")

            await asyncio.sleep(POLL_INTERVAL)

        except Exception as e:
            logger.error(f"Outbox worker error: {e}", exc_info=True)
            await asyncio.sleep(ERROR_BACKOFF)


async def main():
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    publisher = KafkaProducerClient(settings.KAFKA_BOOTSTRAP_SERVERS, settings.ORDER_EVENTS_TOPIC)
    await publisher.start()
    try:
        await outbox_worker(publisher)
    finally:
        await publisher.stop()


if __name__ == "__main__":
    asyncio.run(main())
