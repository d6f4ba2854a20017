from sqlalchemy import (
    Table, Column, String, Integer, Numeric, Text, Enum, DateTime, JSON, MetaData,
    ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.sql import func

from app.domain.models import OrderStatus

metadata = MetaData()


orders_tbl = Table(
    "orders",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String, nullable=False),
    Column("total_price", Numeric(10, 2), nullable=False),
    Column(
        "status",
        Enum(OrderStatus, name="order_status", values_callable=lambda e: [s.value for s in e]),
        nullable=False,
        default=OrderStatus.PENDING
    ),
    Column("delivery_address", Text, nullable=True),
    Column("notes", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now()),
    Index("ix_orders_user_id", "user_id"),
    Index("ix_orders_status", "status"),
    Index("ix_orders_created_at", "created_at")
)


order_items_tbl = Table(
    "order_items",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
    Column("position", Integer, nullable=False),
    Column("product_id", Integer, nullable=False),
    Column("name", String, nullable=False),
    Column("unit_price", Numeric(10, 2), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("line_total", Numeric(10, 2), nullable=False),
    UniqueConstraint("order_id", "product_id", name="uq_order_items_order_product"),
    Index("ix_order_items_order_id", "order_id")
)


outbox_events_tbl = Table(
    "outbox_events",
    metadata,
    Column("id", String, primary_key=True),
    Column("event_type", String, nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("order_id", Integer, nullable=False),
    Column("status", String, default="pending"),  # pending, processing, published, failed, cancelled
    Column("attempts", Integer, nullable=False, default=0),
    Column("last_error", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now()),
    Index("ix_outbox_events_status_created_at", "status", "created_at")
)
