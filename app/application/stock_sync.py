import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from app.domain.models import Order, OrderItem, StockOperation
from app.domain.exceptions import ConflictError, NotFoundError, ValidationError
from app.application.interfaces import ProductCatalog

logger = logging.getLogger(__name__)

STOCK_EVENT_PREFIX = "stock."

# Ответы 4xx от каталога: повтор не поможет
PERMANENT_ERRORS = (ConflictError, NotFoundError, ValidationError)


def stock_event_type(operation: StockOperation) -> str:
    return f"{STOCK_EVENT_PREFIX}{operation.value}"


def is_stock_event(event_type: str) -> bool:
    return event_type.startswith(STOCK_EVENT_PREFIX)


def event_payload(event: dict) -> dict:
    data = event["event_data"]
    return json.loads(data) if isinstance(data, str) else data


async def claim_event(unit_of_work, event_id: str, claim_timeout: float) -> bool:
    """Захват события отдельной транзакцией до любого внешнего вызова.

    Отправляет только тот, кто захватил. Захват старше claim_timeout
    считается брошенным (обработчик упал) и может быть перехвачен.
    """
    stale_before = datetime.now(timezone.utc) - timedelta(seconds=claim_timeout)
    async with unit_of_work() as uow:
        claimed = await uow.outbox.claim(event_id, stale_before)
        await uow.commit()
    if not claimed:
        logger.debug(f"Outbox event {event_id} уже обрабатывается")
    return claimed


class StockSynchronizer:
    """Изменение остатков в каталоге через outbox.

    Намерение (stock.decrement / stock.increment) пишется в outbox в той же
    транзакции, что и заказ. После commit выполняется немедленная попытка
    отправки; то, что не ушло, дотолкает outbox worker. Возврат остатков
    при отмене ссылается на свое списание и уходит только после того,
    как списание подтверждено каталогом.
    """

    def __init__(
        self,
        unit_of_work,
        catalog: ProductCatalog,
        max_attempts: int = 10,
        claim_timeout: float = 300.0
    ):
        self._uow = unit_of_work
        self._catalog = catalog
        self._max_attempts = max_attempts
        self.claim_timeout = claim_timeout

    async def enqueue(
        self,
        uow,
        order: Order,
        operation: StockOperation,
        items: Optional[List[OrderItem]] = None,
        compensates: Optional[Dict[int, str]] = None
    ) -> List[dict]:
        """Пишет по одному намерению на позицию заказа. Commit делает вызывающий."""
        events = []
        event_type = stock_event_type(operation)
        for item in order.items if items is None else items:
            event_data = {
                "product_id": item.product_id,
                "quantity": item.quantity,
                "operation": operation.value
            }
            if compensates:
                event_data["compensates"] = compensates[item.product_id]
            event_id = await uow.outbox.create(
                event_type=event_type,
                event_data=event_data,
                order_id=order.id
            )
            events.append({
                "id": event_id,
                "event_type": event_type,
                "event_data": event_data,
                "order_id": order.id,
                "attempts": 0
            })
        return events

    async def compensate(self, uow, order: Order) -> List[dict]:
        """Намерения вернуть остатки отмененного заказа.

        Неотправленное списание снимается, отклоненное каталогом не
        возвращается. Остальные позиции получают stock.increment со ссылкой
        на свое списание.
        """
        decrement_type = stock_event_type(StockOperation.DECREMENT)
        taken = {}
        for event in await uow.outbox.get_for_order(order.id):
            if event["event_type"] != decrement_type:
                continue
            product_id = event_payload(event)["product_id"]
            if event["status"] in ("failed", "cancelled"):
                logger.info(f"Заказ {order.id}: товар {product_id} не списывался, возврат не нужен")
                continue
            if event["status"] == "pending" and await uow.outbox.cancel_pending(event["id"]):
                logger.info(f"Заказ {order.id}: списание товара {product_id} снято до отправки")
                continue
            taken[product_id] = event["id"]

        items = [item for item in order.items if item.product_id in taken]
        return await self.enqueue(uow, order, StockOperation.INCREMENT, items=items, compensates=taken)

    async def deliver(self, uow, event: dict) -> bool:
        """Один вызов каталога по захваченному событию; commit делает вызывающий"""
        data = event_payload(event)
        operation = StockOperation(data["operation"])

        source = data.get("compensates")
        if source:
            source_status = await uow.outbox.get_status(source)
            if source_status in ("pending", "processing"):
                # Списание еще в пути: возврат подождет следующего прохода
                await uow.outbox.release(event["id"])
                logger.info(f"Заказ {event['order_id']}: возврат товара {data['product_id']} ждет списания")
                return False
            if source_status != "published":
                await uow.outbox.mark_as_cancelled(event["id"], f"Списание {source} не выполнено")
                logger.info(
                    f"Заказ {event['order_id']}: возврат товара {data['product_id']} отменен, списания не было"
                )
                return False

        try:
            await self._catalog.adjust_stock(data["product_id"], data["quantity"], operation)
        except PERMANENT_ERRORS as e:
            logger.error(
                f"Заказ {event['order_id']}: {operation.value} товара {data['product_id']} "
                f"x{data['quantity']} отклонен каталогом: {e}"
            )
            await uow.outbox.mark_as_failed(event["id"], str(e))
            return False
        except Exception as e:
            attempts = await uow.outbox.record_attempt(event["id"], str(e))
            if attempts >= self._max_attempts:
                logger.error(
                    f"Заказ {event['order_id']}: {operation.value} товара {data['product_id']} "
                    f"не выполнен после {attempts} попыток: {e}"
                )
                await uow.outbox.mark_as_failed(event["id"], str(e))
            else:
                logger.warning(
                    f"Заказ {event['order_id']}: {operation.value} товара {data['product_id']} "
                    f"не выполнен (попытка {attempts}), повтор через outbox: {e}"
                )
            return False

        await uow.outbox.mark_as_published(event["id"])
        logger.info(
            f"Заказ {event['order_id']}: {operation.value} товара {data['product_id']} x{data['quantity']}"
        )
        return True

    async def process(self, event: dict) -> bool:
        """Захват и доставка одного события"""
        if not await claim_event(self._uow, event["id"], self.claim_timeout):
            return False
        async with self._uow() as uow:
            delivered = await self.deliver(uow, event)
            await uow.commit()
        return delivered

    async def dispatch(self, events: List[dict]) -> int:
        """Немедленная best-effort отправка после commit. Никогда не падает."""
        delivered = 0
        for event in events:
            try:
                if await self.process(event):
                    delivered += 1
            except Exception as e:
                logger.error(f"Ошибка обработки stock event {event['id']}: {e}", exc_info=True)
        return delivered
