import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine

import app.main as main_module
from app.main import app
from app.presentation.api import get_unit_of_work, get_product_client

OWNER = {"X-User-Id": "42"}
STRANGER = {"X-User-Id": "13", "X-User-Role": "customer"}
ADMIN = {"X-User-Id": "1", "X-User-Role": "admin"}


@pytest.fixture
async def client(uow, catalog):
    app.dependency_overrides[get_unit_of_work] = lambda: uow
    app.dependency_overrides[get_product_client] = lambda: catalog
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


async def place_order(client, items, headers=OWNER, **extra):
    return await client.post("/orders", json={"items": items, **extra}, headers=headers)


class TestCreateOrderEndpoint:
    async def test_created(self, client, catalog):
        response = await place_order(
            client, [{"productId": 1, "quantity": 3}], deliveryAddress="12 Hang Bac", notes="call me"
        )

        assert response.status_code == 201
        body = response.json()
        assert body["total_price"] == "15.00"
        assert body["status"] == "pending"
        assert body["user_id"] == "42"
        assert body["delivery_address"] == "12 Hang Bac"
        assert body["items"] == [{
            "product_id": 1, "name": "Pho bo", "unit_price": "5.00", "quantity": 3, "line_total": "15.00"
        }]
        assert catalog.stock(1) == 7

    async def test_snake_case_body_accepted(self, client):
        response = await place_order(client, [{"product_id": 2, "quantity": 1}], delivery_address="x")
        assert response.status_code == 201
        assert response.json()["delivery_address"] == "x"

    async def test_missing_identity(self, client):
        response = await client.post("/orders", json={"items": [{"productId": 1, "quantity": 1}]})
        assert response.status_code == 401
        assert response.json()["detail"] == "Не передан X-User-Id"

    @pytest.mark.parametrize("quantity", [0, -2, 101])
    async def test_bad_quantity(self, client, catalog, quantity):
        response = await place_order(client, [{"productId": 1, "quantity": quantity}])
        assert response.status_code == 400
        assert catalog.calls == []

    async def test_duplicate_products(self, client):
        response = await place_order(client, [{"productId": 1, "quantity": 1}, {"productId": 1, "quantity": 1}])
        assert response.status_code == 400

    async def test_malformed_body(self, client):
        response = await client.post("/orders", json={"notes": "no items"}, headers=OWNER)
        assert response.status_code == 400

    async def test_unknown_product(self, client):
        response = await place_order(client, [{"productId": 99, "quantity": 1}])
        assert response.status_code == 404

    async def test_insufficient_stock(self, client):
        response = await place_order(client, [{"productId": 2, "quantity": 5}])
        assert response.status_code == 409
        assert "Доступно: 3" in response.json()["detail"]

    async def test_product_service_down(self, client, catalog):
        catalog.lookup_down = True
        response = await place_order(client, [{"productId": 1, "quantity": 1}])
        assert response.status_code == 503


class TestReadEndpoints:
    async def test_get_own_order(self, client):
        order_id = (await place_order(client, [{"productId": 1, "quantity": 1}])).json()["id"]

        response = await client.get(f"/orders/{order_id}", headers=OWNER)
        assert response.status_code == 200
        assert response.json()["id"] == order_id

    async def test_get_foreign_order(self, client):
        order_id = (await place_order(client, [{"productId": 1, "quantity": 1}])).json()["id"]

        assert (await client.get(f"/orders/{order_id}", headers=STRANGER)).status_code == 403
        assert (await client.get(f"/orders/{order_id}", headers=ADMIN)).status_code == 200

    async def test_get_missing(self, client):
        assert (await client.get("/orders/999", headers=OWNER)).status_code == 404

    async def test_list_is_scoped_and_paginated(self, client):
        for _ in range(3):
            await place_order(client, [{"productId": 1, "quantity": 1}])
        await place_order(client, [{"productId": 7, "quantity": 1}], headers=STRANGER)

        response = await client.get("/orders", params={"page": 1, "limit": 2}, headers=OWNER)

        assert response.status_code == 200
        body = response.json()
        assert len(body["orders"]) == 2
        assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "total_pages": 2}
        assert all(order["user_id"] == "42" for order in body["orders"])

        everything = (await client.get("/orders", headers=ADMIN)).json()
        assert everything["pagination"]["total"] == 4

    async def test_list_filtered_by_status(self, client):
        first = (await place_order(client, [{"productId": 1, "quantity": 1}])).json()["id"]
        await place_order(client, [{"productId": 1, "quantity": 1}])
        await client.delete(f"/orders/{first}", headers=OWNER)

        body = (await client.get("/orders", params={"status": "cancelled"}, headers=OWNER)).json()
        assert [order["id"] for order in body["orders"]] == [first]

    async def test_list_rejects_unknown_status(self, client):
        response = await client.get("/orders", params={"status": "lost"}, headers=OWNER)
        assert response.status_code == 400


class TestStatusEndpoints:
    async def test_patch_status(self, client):
        order_id = (await place_order(client, [{"productId": 1, "quantity": 1}])).json()["id"]

        response = await client.patch(f"/orders/{order_id}/status", json={"status": "confirmed"}, headers=ADMIN)

        assert response.status_code == 200
        assert response.json()["status"] == "confirmed"

    async def test_invalid_transition_reports_allowed(self, client):
        order_id = (await place_order(client, [{"productId": 1, "quantity": 1}])).json()["id"]

        response = await client.patch(f"/orders/{order_id}/status", json={"status": "delivered"}, headers=OWNER)

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["current_status"] == "pending"
        assert detail["allowed"] == ["cancelled", "confirmed"]

    async def test_patch_forbidden_for_stranger(self, client):
        order_id = (await place_order(client, [{"productId": 1, "quantity": 1}])).json()["id"]

        response = await client.patch(f"/orders/{order_id}/status", json={"status": "cancelled"}, headers=STRANGER)
        assert response.status_code == 403

    async def test_patch_unknown_status_value(self, client):
        order_id = (await place_order(client, [{"productId": 1, "quantity": 1}])).json()["id"]

        response = await client.patch(f"/orders/{order_id}/status", json={"status": "paid"}, headers=OWNER)
        assert response.status_code == 400

    async def test_delete_cancels_and_restores_stock(self, client, catalog):
        order_id = (await place_order(client, [{"productId": 7, "quantity": 2}])).json()["id"]
        assert catalog.stock(7) == 3

        response = await client.delete(f"/orders/{order_id}", headers=OWNER)

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert catalog.stock(7) == 5

    async def test_delete_from_preparing_rejected(self, client):
        order_id = (await place_order(client, [{"productId": 1, "quantity": 1}])).json()["id"]
        for status in ("confirmed", "preparing"):
            await client.patch(f"/orders/{order_id}/status", json={"status": status}, headers=ADMIN)

        response = await client.delete(f"/orders/{order_id}", headers=OWNER)
        assert response.status_code == 400


class TestHealth:
    async def test_healthy_when_database_answers(self, client, monkeypatch):
        engine = create_async_engine("sqlite+aiosqlite://")
        monkeypatch.setattr(main_module, "engine", engine)

        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}
        await engine.dispose()

    async def test_down_when_database_unreachable(self, client, monkeypatch, tmp_path):
        engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'orders.db'}")
        monkeypatch.setattr(main_module, "engine", engine)

        response = await client.get("/health")

        assert response.status_code == 500
        assert response.json()["status"] == "down"
        await engine.dispose()
