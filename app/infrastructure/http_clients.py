import httpx
import logging
from decimal import Decimal
from typing import List, Optional
import asyncio

from app.domain.models import Product, StockOperation
from app.domain.exceptions import (
    ConflictError, ProductNotFoundError, UpstreamError, ValidationError
)
from app.application.interfaces import ProductCatalog

logger = logging.getLogger(__name__)


class HTTPProductClient(ProductCatalog):
    """Клиент Product Service: bulk-чтение и изменение остатков.

    Сетевые ошибки и 5xx повторяются с экспоненциальной паузой,
    4xx сразу превращаются в доменную ошибку.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 5.0,
        max_retries: int = 3,
        retry_backoff: float = 0.5,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_retries = max_retries
        self._retry_backoff = retry_backoff
        self._transport = transport

    async def resolve_many(self, product_ids: List[int]) -> List[Product]:
        response = await self._request("POST", "/products/bulk", {"ids": product_ids})

        if response.status_code == 200:
            return [self._to_product(data) for data in response.json()]
        elif response.status_code == 404:
            return []
        elif response.status_code == 400:
            raise ValidationError(f"Product service отклонил запрос: {self._detail(response)}")
        else:
            raise UpstreamError(f"Product service ошибка: {response.status_code}")

    async def adjust_stock(self, product_id: int, quantity: int, operation: StockOperation) -> Product:
        response = await self._request(
            "PATCH",
            f"/products/{product_id}/stock",
            {"quantity": quantity, "operation": operation.value}
        )

        if response.status_code == 200:
            return self._to_product(response.json())
        elif response.status_code == 404:
            raise ProductNotFoundError([product_id])
        elif response.status_code in (400, 409):
            raise ConflictError(
                f"Товар {product_id}: {operation.value} x{quantity} отклонен: {self._detail(response)}"
            )
        elif response.status_code < 500:
            raise ValidationError(f"Product service ошибка: {response.status_code}")
        else:
            raise UpstreamError(f"Product service ошибка: {response.status_code}")

    async def _request(self, method: str, path: str, payload: dict) -> httpx.Response:
        last_error = None
        for attempt in range(1, self._max_retries + 1):
            try:
                async with httpx.AsyncClient(
                    base_url=self._base_url,
                    timeout=self._timeout,
                    transport=self._transport
                ) as client:
                    response = await client.request(method, path, json=payload)

                if response.status_code < 500:
                    return response
                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    f"Product service {method} {path} вернул {response.status_code} "
                    f"(попытка {attempt}/{self._max_retries})"
                )

            except httpx.RequestError as e:
                last_error = str(e) or e.__class__.__name__
                logger.warning(
                    f"Product service ошибка подключения {method} {path} "
                    f"(попытка {attempt}/{self._max_retries}): {last_error}"
                )

            # Ждем перед следующей попыткой (кроме последней)
            if attempt < self._max_retries:
                await asyncio.sleep(self._retry_backoff * 2 ** (attempt - 1))

        logger.error(f"Product service недоступен после {self._max_retries} попыток: {last_error}")
        raise UpstreamError(f"Product service недоступен: {last_error}")

    @staticmethod
    def _to_product(data: dict) -> Product:
        return Product(
            id=data["id"],
            name=data["name"],
            price=Decimal(str(data["price"])),
            stock=data["stock"],
            is_active=data.get("isActive", data.get("is_active", True))
        )

    @staticmethod
    def _detail(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text
        if isinstance(body, dict):
            return str(body.get("error") or body.get("detail") or body)
        return str(body)
