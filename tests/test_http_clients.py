import json
from decimal import Decimal

import httpx
import pytest

from app.domain.exceptions import ConflictError, ProductNotFoundError, UpstreamError, ValidationError
from app.domain.models import StockOperation
from app.infrastructure.http_clients import HTTPProductClient

PRODUCT_1 = {"id": 1, "name": "Pho bo", "price": "5.00", "stock": 10, "isActive": True}
PRODUCT_2 = {"id": 2, "name": "Banh mi", "price": 2.5, "stock": 0, "isActive": False}


class Recorder:
    """MockTransport-хендлер: отдает ответы по очереди и запоминает запросы"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return httpx.Response(response.status_code, content=response.content, headers=response.headers)


def make_client(handler, max_retries=3):
    return HTTPProductClient(
        "http://product:3002/",
        timeout=1.0,
        max_retries=max_retries,
        retry_backoff=0,
        transport=httpx.MockTransport(handler)
    )


class TestResolveMany:
    async def test_bulk_lookup(self):
        handler = Recorder(httpx.Response(200, json=[PRODUCT_1, PRODUCT_2]))
        client = make_client(handler)

        products = await client.resolve_many([1, 2])

        assert len(handler.requests) == 1
        request = handler.requests[0]
        assert request.method == "POST"
        assert request.url == "http://product:3002/products/bulk"
        assert json.loads(request.content) == {"ids": [1, 2]}

        assert products[0].price == Decimal("5.00")
        assert products[0].is_active is True
        assert products[1].price == Decimal("2.5")
        assert products[1].is_active is False

    async def test_retries_on_5xx_then_succeeds(self):
        handler = Recorder(
            httpx.Response(503),
            httpx.Response(502),
            httpx.Response(200, json=[PRODUCT_1])
        )
        client = make_client(handler)

        products = await client.resolve_many([1])

        assert len(handler.requests) == 3
        assert products[0].id == 1

    async def test_network_errors_exhaust_retries(self):
        handler = Recorder(httpx.ConnectError("connection refused"))
        client = make_client(handler, max_retries=3)

        with pytest.raises(UpstreamError):
            await client.resolve_many([1])
        assert len(handler.requests) == 3

    async def test_timeout_is_retried(self):
        handler = Recorder(httpx.ReadTimeout("timed out"), httpx.Response(200, json=[PRODUCT_1]))
        client = make_client(handler)

        assert len(await client.resolve_many([1])) == 1
        assert len(handler.requests) == 2

    async def test_bad_request_not_retried(self):
        handler = Recorder(httpx.Response(400, json={"error": "ids must be integers"}))
        client = make_client(handler)

        with pytest.raises(ValidationError, match="ids must be integers"):
            await client.resolve_many([1])
        assert len(handler.requests) == 1


class TestAdjustStock:
    async def test_decrement(self):
        handler = Recorder(httpx.Response(200, json={**PRODUCT_1, "stock": 7}))
        client = make_client(handler)

        product = await client.adjust_stock(1, 3, StockOperation.DECREMENT)

        request = handler.requests[0]
        assert request.method == "PATCH"
        assert request.url.path == "/products/1/stock"
        assert json.loads(request.content) == {"quantity": 3, "operation": "decrement"}
        assert product.stock == 7

    async def test_insufficient_stock_is_conflict_without_retry(self):
        handler = Recorder(httpx.Response(400, json={"error": "Insufficient stock"}))
        client = make_client(handler)

        with pytest.raises(ConflictError, match="Insufficient stock"):
            await client.adjust_stock(1, 30, StockOperation.DECREMENT)
        assert len(handler.requests) == 1

    async def test_unknown_product(self):
        handler = Recorder(httpx.Response(404, json={"error": "Product not found"}))
        client = make_client(handler)

        with pytest.raises(ProductNotFoundError):
            await client.adjust_stock(99, 1, StockOperation.INCREMENT)
        assert len(handler.requests) == 1

    async def test_server_errors_exhaust_retries(self):
        handler = Recorder(httpx.Response(500))
        client = make_client(handler, max_retries=2)

        with pytest.raises(UpstreamError):
            await client.adjust_stock(1, 1, StockOperation.INCREMENT)
        assert len(handler.requests) == 2
