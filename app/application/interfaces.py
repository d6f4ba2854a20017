from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List
from app.domain.models import Order, OrderStatus, Product, StockOperation


class OrderRepository(ABC):
    @abstractmethod
    async def get_by_id(self, order_id: int) -> Optional[Order]:
        pass

    @abstractmethod
    async def create(self, order: Order) -> int:
        pass

    @abstractmethod
    async def list(
        self,
        user_id: Optional[str],
        status: Optional[OrderStatus],
        limit: int,
        offset: int
    ) -> List[Order]:
        pass

    @abstractmethod
    async def count(self, user_id: Optional[str], status: Optional[OrderStatus]) -> int:
        pass

    @abstractmethod
    async def update_status(self, order_id: int, expected: OrderStatus, status: OrderStatus) -> bool:
        """Compare-and-swap: True, если статус был expected и обновлен"""
        pass


class OutboxRepository(ABC):
    @abstractmethod
    async def create(self, event_type: str, event_data: dict, order_id: int) -> str:
        pass

    @abstractmethod
    async def get_pending(
        self,
        limit: int = 10,
        created_before: Optional[datetime] = None,
        event_prefix: Optional[str] = None,
        stale_before: Optional[datetime] = None
    ) -> List[dict]:
        pass

    @abstractmethod
    async def get_for_order(self, order_id: int) -> List[dict]:
        pass

    @abstractmethod
    async def get_status(self, event_id: str) -> Optional[str]:
        pass

    @abstractmethod
    async def claim(self, event_id: str, stale_before: datetime) -> bool:
        """Атомарный захват события обработчиком (pending -> processing)"""
        pass

    @abstractmethod
    async def release(self, event_id: str) -> None:
        pass

    @abstractmethod
    async def cancel_pending(self, event_id: str) -> bool:
        pass

    @abstractmethod
    async def mark_as_cancelled(self, event_id: str, reason: str) -> None:
        pass

    @abstractmethod
    async def mark_as_published(self, event_id: str) -> None:
        pass

    @abstractmethod
    async def mark_as_failed(self, event_id: str, error: str) -> None:
        pass

    @abstractmethod
    async def record_attempt(self, event_id: str, error: str) -> int:
        pass


class UnitOfWork(ABC):
    @property
    @abstractmethod
    def orders(self) -> OrderRepository:
        pass

    @property
    @abstractmethod
    def outbox(self) -> OutboxRepository:
        pass

    @abstractmethod
    async def __call__(self):
        pass

    @abstractmethod
    async def commit(self):
        pass

    @abstractmethod
    async def rollback(self):
        pass


class ProductCatalog(ABC):
    @abstractmethod
    async def resolve_many(self, product_ids: List[int]) -> List[Product]:
        pass

    @abstractmethod
    async def adjust_stock(self, product_id: int, quantity: int, operation: StockOperation) -> Product:
        pass


class EventPublisher(ABC):
    @abstractmethod
    async def publish_order_event(self, event_type: str, order_id: int, payload: dict) -> bool:
        pass
