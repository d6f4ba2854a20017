from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel

CENTS = Decimal("0.01")


def to_money(value) -> Decimal:
    """Округление до 2 знаков (ROUND_HALF_UP)"""
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    DELIVERING = "delivering"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class StockOperation(str, Enum):
    INCREMENT = "increment"
    DECREMENT = "decrement"


class Role(str, Enum):
    CUSTOMER = "customer"
    ADMIN = "admin"


class Requester(BaseModel):
    """Кто вызывает операцию (заголовки от gateway)"""
    user_id: str
    role: str = Role.CUSTOMER.value

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value


class OrderItem(BaseModel):
    """Value Object: позиция заказа (снимок цены на момент создания)"""
    product_id: int
    name: str
    unit_price: Decimal
    quantity: int
    line_total: Decimal

    @classmethod
    def from_product(cls, product: "Product", quantity: int) -> "OrderItem":
        unit_price = to_money(product.price)
        return cls(
            product_id=product.id,
            name=product.name,
            unit_price=unit_price,
            quantity=quantity,
            line_total=to_money(unit_price * quantity),
        )


class Order(BaseModel):
    """Domain Entity: заказ"""
    id: Optional[int] = None
    user_id: str
    items: List[OrderItem]
    total_price: Decimal
    status: OrderStatus
    delivery_address: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    def is_owned_by(self, requester: Requester) -> bool:
        return self.user_id == requester.user_id

    def can_be_viewed_by(self, requester: Requester) -> bool:
        return requester.is_admin or self.is_owned_by(requester)

    def can_be_cancelled(self) -> bool:
        """Бизнес-правило: отмена пользователем только из pending или confirmed"""
        return self.status in (OrderStatus.PENDING, OrderStatus.CONFIRMED)


class Product(BaseModel):
    """Value Object: товар из каталога"""
    id: int
    name: str
    price: Decimal
    stock: int
    is_active: bool = True
