import asyncio
import copy
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.application.create_order import CreateOrderUseCase, CreateOrderDTO, OrderLineDTO
from app.application.change_status import ChangeOrderStatusUseCase, CancelOrderUseCase
from app.application.interfaces import ProductCatalog, EventPublisher
from app.application.stock_sync import StockSynchronizer
from app.domain.exceptions import ConflictError, ProductNotFoundError, UpstreamError
from app.domain.models import Product, StockOperation, Requester
from app.infrastructure.db_schema import metadata
from app.infrastructure.unit_of_work import UnitOfWork


class FakeProductCatalog(ProductCatalog):
    """Product Service в памяти"""

    def __init__(self, products):
        self.products = {p.id: p for p in products}
        self.calls = []
        self.unreachable = set()   # product_id -> UpstreamError
        self.lookup_down = False
        self.rejecting = set()     # product_id -> ConflictError на списание
        self.delay = 0             # секунд на вызов adjust_stock

    def stock(self, product_id: int) -> int:
        return self.products[product_id].stock

    async def resolve_many(self, product_ids):
        self.calls.append(("resolve_many", list(product_ids)))
        if self.lookup_down:
            raise UpstreamError("Product service недоступен")
        return [
            self.products[pid].model_copy()
            for pid in product_ids
            if pid in self.products
        ]

    async def adjust_stock(self, product_id, quantity, operation):
        self.calls.append(("adjust_stock", product_id, quantity, operation))
        if self.delay:
            await asyncio.sleep(self.delay)
        if product_id in self.unreachable:
            raise UpstreamError(f"Product service недоступен для {product_id}")
        if product_id in self.rejecting and operation == StockOperation.DECREMENT:
            raise ConflictError("Insufficient stock")
        product = self.products.get(product_id)
        if not product:
            raise ProductNotFoundError([product_id])
        if operation == StockOperation.DECREMENT:
            if product.stock < quantity:
                raise ConflictError("Insufficient stock")
            product.stock -= quantity
        else:
            product.stock += quantity
        return product.model_copy()


class FakeEventPublisher(EventPublisher):
    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.published = []

    async def publish_order_event(self, event_type, order_id, payload):
        if self.succeed:
            self.published.append((event_type, order_id, payload))
        return self.succeed


class InMemoryOrderRepository:
    """Заказы в памяти; get_by_id отдает управление циклу, чтобы запросы чередовались"""

    def __init__(self):
        self.orders = {}
        self._next_id = 1

    async def get_by_id(self, order_id):
        await asyncio.sleep(0)
        order = self.orders.get(order_id)
        return copy.deepcopy(order) if order else None

    async def create(self, order):
        order_id = self._next_id
        self._next_id += 1
        stored = order.model_copy(deep=True)
        stored.id = order_id
        self.orders[order_id] = stored
        return order_id

    async def update_status(self, order_id, expected, status):
        await asyncio.sleep(0)
        order = self.orders.get(order_id)
        if not order or order.status != expected:
            return False
        order.status = status
        return True


class InMemoryOutboxRepository:
    def __init__(self):
        self.events = {}

    async def create(self, event_type, event_data, order_id):
        event_id = str(uuid.uuid4())
        self.events[event_id] = {
            "id": event_id,
            "event_type": event_type,
            "event_data": event_data,
            "order_id": order_id,
            "status": "pending",
            "attempts": 0,
            "created_at": datetime.now(timezone.utc)
        }
        return event_id

    async def get_pending(self, limit=10, created_before=None, event_prefix=None, stale_before=None):
        await asyncio.sleep(0)
        return [
            dict(e) for e in self.events.values()
            if e["status"] == "pending"
            and (created_before is None or e["created_at"] <= created_before)
            and (event_prefix is None or e["event_type"].startswith(event_prefix))
        ][:limit]

    async def get_for_order(self, order_id):
        await asyncio.sleep(0)
        return [dict(e) for e in self.events.values() if e["order_id"] == order_id]

    async def get_status(self, event_id):
        event = self.events.get(event_id)
        return event["status"] if event else None

    async def claim(self, event_id, stale_before):
        await asyncio.sleep(0)
        if self.events[event_id]["status"] != "pending":
            return False
        self.events[event_id]["status"] = "processing"
        return True

    async def release(self, event_id):
        self.events[event_id]["status"] = "pending"

    async def cancel_pending(self, event_id):
        if self.events[event_id]["status"] != "pending":
            return False
        self.events[event_id]["status"] = "cancelled"
        return True

    async def mark_as_cancelled(self, event_id, reason):
        self.events[event_id]["status"] = "cancelled"

    async def mark_as_published(self, event_id):
        self.events[event_id]["status"] = "published"

    async def mark_as_failed(self, event_id, error):
        self.events[event_id]["status"] = "failed"

    async def record_attempt(self, event_id, error):
        self.events[event_id]["status"] = "pending"
        self.events[event_id]["attempts"] += 1
        return self.events[event_id]["attempts"]


class InMemoryUnitOfWork:
    def __init__(self):
        self.orders = InMemoryOrderRepository()
        self.outbox = InMemoryOutboxRepository()

    @asynccontextmanager
    async def __call__(self):
        yield self

    async def commit(self):
        pass

    async def rollback(self):
        pass


def make_products():
    return [
        Product(id=1, name="Pho bo", price=Decimal("5.00"), stock=10),
        Product(id=2, name="Banh mi", price=Decimal("2.50"), stock=3),
        Product(id=3, name="Seasonal soup", price=Decimal("7.00"), stock=20, is_active=False),
        Product(id=7, name="Spring rolls", price=Decimal("4.20"), stock=5),
    ]


@pytest.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def uow(session_factory):
    return UnitOfWork(session_factory)


@pytest.fixture
def catalog():
    return FakeProductCatalog(make_products())


@pytest.fixture
def stock_sync(uow, catalog):
    return StockSynchronizer(uow, catalog, max_attempts=3)


@pytest.fixture
def create_order(uow, catalog, stock_sync):
    return CreateOrderUseCase(uow, catalog, stock_sync, max_item_quantity=100)


@pytest.fixture
def change_status(uow, stock_sync):
    return ChangeOrderStatusUseCase(uow, stock_sync)


@pytest.fixture
def cancel_order(uow, stock_sync):
    return CancelOrderUseCase(uow, stock_sync)


@pytest.fixture
def owner():
    return Requester(user_id="42")


@pytest.fixture
def stranger():
    return Requester(user_id="13")


@pytest.fixture
def admin():
    return Requester(user_id="1", role="admin")


def order_request(user_id="42", **quantities):
    """order_request(p1=3, p7=2) -> CreateOrderDTO"""
    return CreateOrderDTO(
        user_id=user_id,
        items=[
            OrderLineDTO(product_id=int(key[1:]), quantity=qty)
            for key, qty in quantities.items()
        ]
    )
