import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from app.application.interfaces import EventPublisher
from app.application.stock_sync import (
    StockSynchronizer, STOCK_EVENT_PREFIX, is_stock_event, event_payload, claim_event
)

logger = logging.getLogger(__name__)


class ProcessOutboxEventsUseCase:
    def __init__(
        self,
        unit_of_work,
        stock_sync: StockSynchronizer,
        event_publisher: Optional[EventPublisher] = None,
        grace_period: float = 30.0
    ):
        self._uow = unit_of_work
        self._stock = stock_sync
        self._publisher = event_publisher
        # Свежие события еще может отправлять сам запрос
        self._grace_period = timedelta(seconds=grace_period)

    async def __call__(self, limit: int = 10) -> int:
        """Обрабатывает pending события из outbox. Возвращает количество доставленных."""
        now = datetime.now(timezone.utc)
        # Без Kafka обрабатываются только намерения по остаткам
        event_prefix = None if self._publisher else STOCK_EVENT_PREFIX

        async with self._uow() as uow:
            pending = await uow.outbox.get_pending(
                limit=limit,
                created_before=now - self._grace_period,
                event_prefix=event_prefix,
                stale_before=now - timedelta(seconds=self._stock.claim_timeout)
            )

        if not pending:
            return 0
        logger.info(f"Обработка {len(pending)} outbox events")

        delivered = 0
        for event in pending:
            try:
                event["event_data"] = event_payload(event)

                # Событие могли захватить запрос или другой worker
                if is_stock_event(event["event_type"]):
                    success = await self._stock.process(event)
                elif await claim_event(self._uow, event["id"], self._stock.claim_timeout):
                    async with self._uow() as uow:
                        success = await self._publish(uow, event)
                        await uow.commit()
                else:
                    success = False

                if success:
                    delivered += 1
            except Exception as e:
                logger.error(f"Ошибка обработки outbox event {event['id']}: {e}", exc_info=True)

        return delivered

    async def _publish(self, uow, event: dict) -> bool:
        success = await self._publisher.publish_order_event(
            event_type=event["event_type"],
            order_id=event["order_id"],
            payload=event["event_data"]
        )
        if success:
            await uow.outbox.mark_as_published(event["id"])
            logger.info(f"Опубликовано {event['event_type']} event {event['id']}")
        else:
            attempts = await uow.outbox.record_attempt(event["id"], "publish failed")
            logger.warning(f"Неуспешная публикация {event['id']} (попытка {attempts})")
        return success
