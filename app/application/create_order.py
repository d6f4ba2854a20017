import logging
from decimal import Decimal
from pydantic import BaseModel
from datetime import datetime, timezone
from typing import List, Optional

from app.domain.models import Order, OrderItem, OrderStatus, StockOperation, to_money
from app.domain.exceptions import (
    ValidationError, ProductNotFoundError, ProductUnavailableError, InsufficientStockError
)
from app.application.interfaces import ProductCatalog
from app.application.stock_sync import StockSynchronizer


logger = logging.getLogger(__name__)

ORDER_CREATED = "order.created"


class OrderLineDTO(BaseModel):
    product_id: int
    quantity: int


class CreateOrderDTO(BaseModel):
    user_id: str
    items: List[OrderLineDTO]
    delivery_address: Optional[str] = None
    notes: Optional[str] = None


class CreateOrderUseCase:
    def __init__(
        self,
        unit_of_work,
        catalog_service: ProductCatalog,
        stock_sync: StockSynchronizer,
        max_item_quantity: int = 100,
        min_order_amount: Decimal = Decimal("0.00")
    ):
        self._uow = unit_of_work
        self._catalog = catalog_service
        self._stock = stock_sync
        self._max_item_quantity = max_item_quantity
        self._min_order_amount = to_money(min_order_amount)

    async def __call__(self, order_data: CreateOrderDTO) -> Order:
        logger.info(f"Создание заказа для пользователя {order_data.user_id}, позиций: {len(order_data.items)}")

        # 1-2. Проверка запроса (до любых сетевых вызовов)
        self._validate_lines(order_data.items)

        # 3. Один bulk-запрос в каталог
        product_ids = [line.product_id for line in order_data.items]
        products = await self._catalog.resolve_many(product_ids)
        by_id = {product.id: product for product in products}
        missing = [pid for pid in product_ids if pid not in by_id]
        if missing or len(products) != len(product_ids):
            raise ProductNotFoundError(missing or product_ids)

        # 4-5. Доступность, остатки, расчет суммы
        items = []
        for line in order_data.items:
            product = by_id[line.product_id]
            if not product.is_active:
                raise ProductUnavailableError(product.id, product.name)
            if product.stock < line.quantity:
                raise InsufficientStockError(product.id, product.name, product.stock, line.quantity)
            items.append(OrderItem.from_product(product, line.quantity))

        total_price = to_money(sum(item.line_total for item in items))

        # 6. Минимальная сумма заказа
        if total_price < self._min_order_amount:
            raise ValidationError(
                f"Сумма заказа {total_price} меньше минимальной {self._min_order_amount}"
            )

        # 7. Заказ, позиции и намерения по остаткам одной транзакцией
        now = datetime.now(timezone.utc)
        order = Order(
            user_id=order_data.user_id,
            items=items,
            total_price=total_price,
            status=OrderStatus.PENDING,
            delivery_address=order_data.delivery_address,
            notes=order_data.notes,
            created_at=now,
            updated_at=now
        )
        async with self._uow() as uow:
            order.id = await uow.orders.create(order)
            stock_events = await self._stock.enqueue(uow, order, StockOperation.DECREMENT)
            await uow.outbox.create(
                event_type=ORDER_CREATED,
                event_data={
                    "order_id": order.id,
                    "user_id": order.user_id,
                    "total_price": str(order.total_price),
                    "status": order.status.value
                },
                order_id=order.id
            )
            await uow.commit()
        logger.info(f"Заказ создан: {order.id}, сумма {order.total_price}")

        # 8. Списание остатков после commit; ошибки не отменяют заказ
        delivered = await self._stock.dispatch(stock_events)
        if delivered < len(stock_events):
            logger.warning(
                f"Заказ {order.id}: списано {delivered} из {len(stock_events)} позиций, остальное в outbox"
            )

        return order

    def _validate_lines(self, lines: List[OrderLineDTO]) -> None:
        if not lines:
            raise ValidationError("Заказ должен содержать хотя бы одну позицию")

        for line in lines:
            if line.quantity < 1:
                raise ValidationError(
                    f"Количество товара {line.product_id} должно быть положительным, получено {line.quantity}"
                )
            if line.quantity > self._max_item_quantity:
                raise ValidationError(
                    f"Количество товара {line.product_id} превышает лимит {self._max_item_quantity}"
                )

        seen = set()
        for line in lines:
            if line.product_id in seen:
                raise ValidationError(
                    f"Товар {line.product_id} указан несколько раз, объедините количество в одну позицию"
                )
            seen.add(line.product_id)
