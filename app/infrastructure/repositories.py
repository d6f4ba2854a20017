import uuid
from typing import Optional, List
from datetime import datetime, timezone
from sqlalchemy import select, insert, update, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.models import Order, OrderItem, OrderStatus
from app.infrastructure.db_schema import orders_tbl, order_items_tbl, outbox_events_tbl
from app.application.interfaces import OrderRepository, OutboxRepository


class SQLAlchemyOrderRepository(OrderRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, order_id: int) -> Optional[Order]:
        result = await self._session.execute(
            select(orders_tbl).where(orders_tbl.c.id == order_id)
        )
        row = result.fetchone()
        if not row:
            return None
        items = await self._load_items([row.id])
        return self._to_domain(row, items.get(row.id, []))

    async def create(self, order: Order) -> int:
        """Заказ и позиции; commit делает Unit of Work"""
        result = await self._session.execute(
            insert(orders_tbl).values(
                user_id=order.user_id,
                total_price=order.total_price,
                status=order.status,
                delivery_address=order.delivery_address,
                notes=order.notes,
                created_at=order.created_at,
                updated_at=order.updated_at
            )
        )
        order_id = result.inserted_primary_key[0]

        await self._session.execute(
            insert(order_items_tbl),
            [
                {
                    "order_id": order_id,
                    "position": position,
                    "product_id": item.product_id,
                    "name": item.name,
                    "unit_price": item.unit_price,
                    "quantity": item.quantity,
                    "line_total": item.line_total
                }
                for position, item in enumerate(order.items)
            ]
        )
        return order_id

    async def list(
        self,
        user_id: Optional[str],
        status: Optional[OrderStatus],
        limit: int,
        offset: int
    ) -> List[Order]:
        stmt = self._filtered(select(orders_tbl), user_id, status)
        result = await self._session.execute(
            stmt.order_by(orders_tbl.c.created_at.desc(), orders_tbl.c.id.desc())
            .limit(limit)
            .offset(offset)
        )
        rows = result.fetchall()
        items = await self._load_items([row.id for row in rows])
        return [self._to_domain(row, items.get(row.id, [])) for row in rows]

    async def count(self, user_id: Optional[str], status: Optional[OrderStatus]) -> int:
        stmt = self._filtered(select(func.count()).select_from(orders_tbl), user_id, status)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def update_status(self, order_id: int, expected: OrderStatus, status: OrderStatus) -> bool:
        stmt = (
            update(orders_tbl)
            .where(orders_tbl.c.id == order_id, orders_tbl.c.status == expected)
            .values(
                status=status,
                updated_at=datetime.now(timezone.utc)
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    def _filtered(self, stmt, user_id: Optional[str], status: Optional[OrderStatus]):
        if user_id is not None:
            stmt = stmt.where(orders_tbl.c.user_id == user_id)
        if status is not None:
            stmt = stmt.where(orders_tbl.c.status == status)
        return stmt

    async def _load_items(self, order_ids: List[int]) -> dict:
        if not order_ids:
            return {}
        result = await self._session.execute(
            select(order_items_tbl)
            .where(order_items_tbl.c.order_id.in_(order_ids))
            .order_by(order_items_tbl.c.order_id, order_items_tbl.c.position)
        )
        items = {}
        for row in result.fetchall():
            items.setdefault(row.order_id, []).append(
                OrderItem(
                    product_id=row.product_id,
                    name=row.name,
                    unit_price=row.unit_price,
                    quantity=row.quantity,
                    line_total=row.line_total
                )
            )
        return items

    def _to_domain(self, row, items: List[OrderItem]) -> Order:
        """Трансформация DB → Domain"""
        return Order(
            id=row.id,
            user_id=row.user_id,
            items=items,
            total_price=row.total_price,
            status=OrderStatus(row.status),
            delivery_address=row.delivery_address,
            notes=row.notes,
            created_at=row.created_at,
            updated_at=row.updated_at
        )


class SQLAlchemyOutboxRepository(OutboxRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, event_type: str, event_data: dict, order_id: int) -> str:
        event_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        stmt = insert(outbox_events_tbl).values(
            id=event_id,
            event_type=event_type,
            event_data=event_data,  # SQLAlchemy JSON column сериализует автоматически
            order_id=order_id,
            status="pending",
            attempts=0,
            created_at=now,
            updated_at=now
        )
        await self._session.execute(stmt)
        return event_id

    async def get_pending(
        self,
        limit: int = 10,
        created_before: Optional[datetime] = None,
        event_prefix: Optional[str] = None,
        stale_before: Optional[datetime] = None
    ) -> List[dict]:
        """pending события, а также processing, брошенные упавшим обработчиком"""
        status_filter = outbox_events_tbl.c.status == "pending"
        if stale_before is not None:
            status_filter = or_(status_filter, self._stale(stale_before))
        stmt = select(outbox_events_tbl).where(status_filter)
        if created_before is not None:
            stmt = stmt.where(outbox_events_tbl.c.created_at <= created_before)
        if event_prefix is not None:
            stmt = stmt.where(outbox_events_tbl.c.event_type.startswith(event_prefix))
        result = await self._session.execute(
            stmt.order_by(outbox_events_tbl.c.created_at.asc()).limit(limit)
        )
        return [self._to_dict(row) for row in result.fetchall()]

    async def get_for_order(self, order_id: int) -> List[dict]:
        result = await self._session.execute(
            select(outbox_events_tbl)
            .where(outbox_events_tbl.c.order_id == order_id)
            .order_by(outbox_events_tbl.c.created_at.asc())
        )
        return [self._to_dict(row) for row in result.fetchall()]

    async def get_status(self, event_id: str) -> Optional[str]:
        result = await self._session.execute(
            select(outbox_events_tbl.c.status).where(outbox_events_tbl.c.id == event_id)
        )
        return result.scalar_one_or_none()

    async def claim(self, event_id: str, stale_before: datetime) -> bool:
        """pending -> processing. True только у одного из конкурентов"""
        stmt = (
            update(outbox_events_tbl)
            .where(
                outbox_events_tbl.c.id == event_id,
                or_(outbox_events_tbl.c.status == "pending", self._stale(stale_before))
            )
            .values(status="processing", updated_at=datetime.now(timezone.utc))
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def release(self, event_id: str) -> None:
        await self._set_status(event_id, "pending")

    async def cancel_pending(self, event_id: str) -> bool:
        """Снимает еще не захваченное событие; False, если его уже обрабатывают"""
        stmt = (
            update(outbox_events_tbl)
            .where(outbox_events_tbl.c.id == event_id, outbox_events_tbl.c.status == "pending")
            .values(status="cancelled", updated_at=datetime.now(timezone.utc))
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def mark_as_cancelled(self, event_id: str, reason: str) -> None:
        await self._set_status(event_id, "cancelled", last_error=reason)

    async def mark_as_published(self, event_id: str) -> None:
        await self._set_status(event_id, "published")

    async def mark_as_failed(self, event_id: str, error: str) -> None:
        await self._set_status(event_id, "failed", last_error=error)

    async def record_attempt(self, event_id: str, error: str) -> int:
        """Неудачная попытка: счетчик +1, событие снова pending"""
        await self._session.execute(
            update(outbox_events_tbl)
            .where(outbox_events_tbl.c.id == event_id)
            .values(
                status="pending",
                attempts=outbox_events_tbl.c.attempts + 1,
                last_error=error,
                updated_at=datetime.now(timezone.utc)
            )
        )
        result = await self._session.execute(
            select(outbox_events_tbl.c.attempts).where(outbox_events_tbl.c.id == event_id)
        )
        return result.scalar_one()

    async def _set_status(self, event_id: str, status: str, **values) -> None:
        stmt = (
            update(outbox_events_tbl)
            .where(outbox_events_tbl.c.id == event_id)
            .values(status=status, updated_at=datetime.now(timezone.utc), **values)
        )
        await self._session.execute(stmt)

    def _stale(self, stale_before: datetime):
        return and_(
            outbox_events_tbl.c.status == "processing",
            outbox_events_tbl.c.updated_at <= stale_before
        )

    def _to_dict(self, row) -> dict:
        return {
            "id": row.id,
            "event_type": row.event_type,
            "event_data": row.event_data,
            "order_id": row.order_id,
            "status": row.status,
            "attempts": row.attempts,
            "last_error": row.last_error
        }
