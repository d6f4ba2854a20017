from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime
from typing import Optional, List, Union

from app.domain.models import Order, OrderStatus


class OrderLineRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    product_id: int = Field(alias="productId")
    quantity: int


class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: List[OrderLineRequest]
    delivery_address: Optional[str] = Field(default=None, alias="deliveryAddress")
    notes: Optional[str] = None


class UpdateStatusRequest(BaseModel):
    status: OrderStatus


class OrderItemResponse(BaseModel):
    product_id: int
    name: str
    unit_price: str
    quantity: int
    line_total: str


class OrderResponse(BaseModel):
    id: int
    user_id: str
    items: List[OrderItemResponse]
    total_price: str
    status: OrderStatus
    delivery_address: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, order: Order):
        return cls(
            id=order.id,
            user_id=order.user_id,
            items=[
                OrderItemResponse(
                    product_id=item.product_id,
                    name=item.name,
                    unit_price=f"{item.unit_price:.2f}",
                    quantity=item.quantity,
                    line_total=f"{item.line_total:.2f}"
                )
                for item in order.items
            ],
            total_price=f"{order.total_price:.2f}",
            status=order.status,
            delivery_address=order.delivery_address,
            notes=order.notes,
            created_at=order.created_at,
            updated_at=order.updated_at
        )


class PaginationResponse(BaseModel):
    page: int
    limit: int
    total: int
    total_pages: int


class OrderListResponse(BaseModel):
    orders: List[OrderResponse]
    pagination: PaginationResponse


class ErrorResponse(BaseModel):
    detail: Union[str, dict, list]
