import math
from typing import Optional, List
from pydantic import BaseModel

from app.domain.models import Order, OrderStatus, Requester
from app.domain.exceptions import OrderNotFoundError, ForbiddenError, ValidationError


class GetOrderUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, order_id: int, requester: Requester) -> Order:
        async with self._uow() as uow:
            order = await uow.orders.get_by_id(order_id)
            if not order:
                raise OrderNotFoundError(order_id)
            if not order.can_be_viewed_by(requester):
                raise ForbiddenError(f"Нет доступа к заказу {order_id}")
            return order


class OrderPage(BaseModel):
    orders: List[Order]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0


class ListOrdersUseCase:
    """Список заказов пользователя; администратор видит все"""

    def __init__(self, unit_of_work, max_limit: int = 100):
        self._uow = unit_of_work
        self._max_limit = max_limit

    async def __call__(
        self,
        requester: Requester,
        page: int = 1,
        limit: int = 10,
        status: Optional[OrderStatus] = None
    ) -> OrderPage:
        if page < 1:
            raise ValidationError("page должен быть >= 1")
        if limit < 1 or limit > self._max_limit:
            raise ValidationError(f"limit должен быть от 1 до {self._max_limit}")

        user_id = None if requester.is_admin else requester.user_id
        async with self._uow() as uow:
            orders = await uow.orders.list(user_id, status, limit=limit, offset=(page - 1) * limit)
            total = await uow.orders.count(user_id, status)
        return OrderPage(orders=orders, page=page, limit=limit, total=total)
