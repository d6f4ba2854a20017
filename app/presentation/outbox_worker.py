import asyncio
import logging

from app.database import AsyncSessionLocal
from app.infrastructure.unit_of_work import UnitOfWork
from app.infrastructure.http_clients import HTTPProductClient
from app.infrastructure.kafka_producer import KafkaProducerClient
from app.application.stock_sync import StockSynchronizer
from app.application.process_outbox import ProcessOutboxEventsUseCase
from app.logging_config import configure_logging
from app.config import settings

logger = logging.getLogger(__name__)


def build_use_case(kafka_producer=None) -> ProcessOutboxEventsUseCase:
    uow = UnitOfWork(AsyncSessionLocal)
    catalog = HTTPProductClient(
        settings.PRODUCT_SERVICE_URL,
        timeout=settings.PRODUCT_SERVICE_TIMEOUT,
        max_retries=settings.PRODUCT_SERVICE_MAX_RETRIES,
        retry_backoff=settings.PRODUCT_SERVICE_RETRY_BACKOFF
    )
    stock_sync = StockSynchronizer(
        uow,
        catalog,
        max_attempts=settings.OUTBOX_MAX_ATTEMPTS,
        claim_timeout=settings.OUTBOX_CLAIM_TIMEOUT
    )
    return ProcessOutboxEventsUseCase(
        unit_of_work=uow,
        stock_sync=stock_sync,
        event_publisher=kafka_producer,
        grace_period=settings.OUTBOX_GRACE_PERIOD
    )


async def outbox_worker():
    """Worker для повторной доставки outbox событий"""
    logger.info("Outbox worker запущен")

    kafka_producer = None
    if settings.KAFKA_BOOTSTRAP_SERVERS:
        kafka_producer = KafkaProducerClient(settings.KAFKA_BOOTSTRAP_SERVERS, settings.KAFKA_ORDER_TOPIC)
        await kafka_producer.start()
    else:
        logger.info("KAFKA_BOOTSTRAP_SERVERS не задан, обрабатываются только остатки")

    use_case = build_use_case(kafka_producer)
    try:
        while True:
            try:
                processed = await use_case(limit=settings.OUTBOX_BATCH_SIZE)
                if processed:
                    logger.info(f"Доставлено {processed} outbox events")

                await asyncio.sleep(settings.OUTBOX_POLL_INTERVAL)

            except Exception as e:
                logger.error(f"Ошибка в outbox worker: {e}", exc_info=True)
                await asyncio.sleep(10)
    finally:
        if kafka_producer:
            await kafka_producer.stop()


async def main():
    configure_logging(settings.LOG_LEVEL)
    await outbox_worker()


if __name__ == "__main__":
    asyncio.run(main())
