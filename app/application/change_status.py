import logging
from datetime import datetime, timezone
from typing import Callable

from app.domain.models import Order, OrderStatus, Requester
from app.domain.exceptions import (
    OrderNotFoundError, ForbiddenError, InvalidStateError, InvalidTransitionError
)
from app.domain.state_machine import next_status, allowed_transitions
from app.application.stock_sync import StockSynchronizer

logger = logging.getLogger(__name__)

ORDER_STATUS_CHANGED = "order.status_changed"


async def _apply_transition(
    uow,
    order_id: int,
    decide: Callable[[Order], OrderStatus],
    lost_race: Callable[[OrderStatus], Exception]
) -> tuple:
    """Read-modify-write статуса с compare-and-swap.

    decide() получает состояние заказа и возвращает новый статус (или бросает
    доменную ошибку). Если между чтением и записью статус поменял другой
    запрос, решение не повторяется: вызывающий получает ошибку lost_race()
    с уже обновленным статусом.
    """
    order = await uow.orders.get_by_id(order_id)
    if not order:
        raise OrderNotFoundError(order_id)
    new_status = decide(order)
    if await uow.orders.update_status(order_id, expected=order.status, status=new_status):
        return order, new_status

    fresh = await uow.orders.get_by_id(order_id)
    current = fresh.status if fresh else order.status
    logger.info(f"Заказ {order_id}: статус параллельно изменен на {current.value}")
    raise lost_race(current)


class _TransitionBase:
    def __init__(self, unit_of_work, stock_sync: StockSynchronizer):
        self._uow = unit_of_work
        self._stock = stock_sync

    async def _run(
        self,
        order_id: int,
        decide: Callable[[Order], OrderStatus],
        lost_race: Callable[[OrderStatus], Exception]
    ) -> Order:
        stock_events = []
        async with self._uow() as uow:
            order, new_status = await _apply_transition(uow, order_id, decide, lost_race)
            previous = order.status
            order.status = new_status
            order.updated_at = datetime.now(timezone.utc)

            # Компенсация: вернуть только реально списанные остатки
            if new_status == OrderStatus.CANCELLED and previous != OrderStatus.CANCELLED:
                stock_events = await self._stock.compensate(uow, order)

            await uow.outbox.create(
                event_type=ORDER_STATUS_CHANGED,
                event_data={
                    "order_id": order.id,
                    "user_id": order.user_id,
                    "from_status": previous.value,
                    "to_status": new_status.value
                },
                order_id=order.id
            )
            await uow.commit()
        logger.info(f"Заказ {order_id}: {previous.value} -> {new_status.value}")

        if stock_events:
            restored = await self._stock.dispatch(stock_events)
            if restored < len(stock_events):
                logger.warning(
                    f"Заказ {order_id}: возвращено {restored} из {len(stock_events)} позиций, остальное в outbox"
                )
        return order


class ChangeOrderStatusUseCase(_TransitionBase):
    async def __call__(self, order_id: int, status: OrderStatus, requester: Requester) -> Order:
        logger.info(f"Смена статуса заказа {order_id} на {status.value}, инициатор {requester.user_id}")

        def decide(order: Order) -> OrderStatus:
            if not order.can_be_viewed_by(requester):
                raise ForbiddenError(f"Нет доступа к заказу {order_id}")
            return next_status(order.status, status)

        def lost_race(current: OrderStatus) -> Exception:
            return InvalidTransitionError(current, status, allowed_transitions(current), concurrent=True)

        return await self._run(order_id, decide, lost_race)


class CancelOrderUseCase(_TransitionBase):
    async def __call__(self, order_id: int, requester: Requester) -> Order:
        logger.info(f"Отмена заказа {order_id} пользователем {requester.user_id}")

        def decide(order: Order) -> OrderStatus:
            if not order.is_owned_by(requester):
                raise ForbiddenError(f"Отменить заказ {order_id} может только владелец")
            if not order.can_be_cancelled():
                raise InvalidStateError(order.status)
            return next_status(order.status, OrderStatus.CANCELLED)

        return await self._run(order_id, decide, InvalidStateError)
