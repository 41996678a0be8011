"""HTTP-level tests: auth dependencies, routing and error rendering."""

from datetime import datetime, timedelta
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from database import get_db
from main import app
from utils.jwt import create_access_token
from utils.settlement_service import run_settlement_sweep


@pytest.fixture
async def client(db: Any):
    """Client bound to the in-memory database; startup hooks do not run."""
    app.dependency_overrides[get_db] = lambda: db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()


def _auth(user: dict) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user['_id'], user['role'])}"}


def _line(product: dict, quantity: int = 1) -> dict:
    return {"product_id": str(product["_id"]), "quantity": quantity}


@pytest.fixture
def order_body(marketplace: dict) -> dict:
    return {
        "items": [_line(marketplace["shirt"], 2)],
        "shipping_address": {
            "name": "Asha Rao",
            "phone": "9000000001",
            "address_line1": "12 MG Road",
            "city": "Bengaluru",
            "state": "Karnataka",
            "pincode": "560001",
        },
        "payment_method": "cod",
    }


class TestHealth:
    """Tests for the liveness endpoint."""

    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}


class TestAuth:
    """Tests for token handling."""

    async def test_missing_token(self, client: AsyncClient) -> None:
        response = await client.get("/api/orders")

        assert response.status_code in (401, 403)

    async def test_garbage_token(self, client: AsyncClient) -> None:
        response = await client.get("/api/orders", headers={"Authorization": "Bearer not-a-jwt"})

        assert response.status_code == 401

    async def test_blocked_user(self, client: AsyncClient, db: Any, marketplace: dict) -> None:
        buyer = marketplace["buyer"]
        await db.users.update_one({"_id": buyer["_id"]}, {"$set": {"is_blocked": True}})

        response = await client.get("/api/orders", headers=_auth(buyer))

        assert response.status_code == 403


class TestOrderRoutes:
    """Tests for the order endpoints."""

    async def test_place_order(self, client: AsyncClient, marketplace: dict, order_body: dict) -> None:
        response = await client.post("/api/orders", json=order_body, headers=_auth(marketplace["buyer"]))

        assert response.status_code == 201
        order = response.json()["order"]
        assert order["order_number"].startswith("ORD")
        assert order["total"] == 210
        assert "version" not in order
        assert "stock_restored" not in order["items"][0]

    async def test_seller_cannot_place_orders(
        self, client: AsyncClient, marketplace: dict, order_body: dict
    ) -> None:
        seller_user = {"_id": marketplace["seller_a"]["user_id"], "role": "seller"}

        response = await client.post("/api/orders", json=order_body, headers=_auth(seller_user))

        assert response.status_code == 403

    async def test_out_of_stock_is_rendered(
        self, client: AsyncClient, marketplace: dict, order_body: dict
    ) -> None:
        order_body["items"] = [_line(marketplace["shirt"], 11)]

        response = await client.post("/api/orders", json=order_body, headers=_auth(marketplace["buyer"]))

        assert response.status_code == 409
        assert response.json()["kind"] == "OutOfStock"

    async def test_invalid_status(self, client: AsyncClient, marketplace: dict, place_order) -> None:
        order = await place_order([(marketplace["shirt"], 1)])

        response = await client.patch(
            f"/api/orders/{order['_id']}/status",
            json={"status": "lost"},
            headers=_auth(marketplace["admin"]),
        )

        assert response.status_code == 400
        assert response.json()["kind"] == "InvalidStatus"

    async def test_other_seller_is_forbidden(self, client: AsyncClient, marketplace: dict, place_order) -> None:
        order = await place_order([(marketplace["shirt"], 1)])
        seller_user = {"_id": marketplace["seller_b"]["user_id"], "role": "seller"}

        response = await client.patch(
            f"/api/orders/{order['_id']}/status",
            json={"status": "processing"},
            headers=_auth(seller_user),
        )

        assert response.status_code == 403
        assert response.json()["kind"] == "PermissionDenied"

    async def test_seller_ships_own_items(self, client: AsyncClient, marketplace: dict, place_order) -> None:
        order = await place_order([(marketplace["shirt"], 1)])
        seller_user = {"_id": marketplace["seller_a"]["user_id"], "role": "seller"}

        response = await client.patch(
            f"/api/orders/{order['_id']}/status",
            json={"status": "shipped", "tracking_number": "AWB1"},
            headers=_auth(seller_user),
        )

        assert response.status_code == 200
        body = response.json()["order"]
        assert body["status"] == "shipped"
        assert body["items"][0]["tracking_number"] == "AWB1"

    async def test_stats_not_for_users(self, client: AsyncClient, marketplace: dict) -> None:
        response = await client.get("/api/orders/stats", headers=_auth(marketplace["buyer"]))

        assert response.status_code == 403

    async def test_unknown_order(self, client: AsyncClient, marketplace: dict) -> None:
        response = await client.get("/api/orders/65f000000000000000000000", headers=_auth(marketplace["buyer"]))

        assert response.status_code == 404

    async def test_malformed_order_id(self, client: AsyncClient, marketplace: dict) -> None:
        response = await client.get("/api/orders/not-an-id", headers=_auth(marketplace["buyer"]))

        assert response.status_code == 400


class TestOfferRoutes:
    """Tests for coupon preview and admin management."""

    async def test_preview_does_not_use_the_coupon(
        self, client: AsyncClient, db: Any, marketplace: dict, make_offer
    ) -> None:
        today = datetime.utcnow()
        offer = await make_offer(start_date=today - timedelta(days=1), end_date=today + timedelta(days=30))

        response = await client.post(
            "/api/offers/validate",
            json={"code": "save10", "items": [_line(marketplace["shirt"], 2)]},
            headers=_auth(marketplace["buyer"]),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["valid"] is True
        assert body["discount"] == 15
        stored = await db.offers.find_one({"_id": offer["_id"]})
        assert stored["usage_count"] == 0

    async def test_preview_rejection_kind(self, client: AsyncClient, marketplace: dict) -> None:
        response = await client.post(
            "/api/offers/validate",
            json={"code": "NOPE", "items": [_line(marketplace["shirt"], 1)]},
            headers=_auth(marketplace["buyer"]),
        )

        assert response.status_code == 409
        assert response.json()["kind"] == "InvalidOrExpiredCoupon"

    async def test_admin_only_management(self, client: AsyncClient, marketplace: dict) -> None:
        response = await client.get("/api/offers", headers=_auth(marketplace["buyer"]))

        assert response.status_code == 403


class TestSettlementRoutes:
    """Tests for the settlement endpoints."""

    @pytest.fixture
    async def settlement(self, db: Any, marketplace: dict, place_order, deliver, now) -> dict:
        await deliver(await place_order([(marketplace["shirt"], 2)]))
        return (await run_settlement_sweep(db, now + timedelta(days=8)))[0]

    async def test_seller_lists_own(self, client: AsyncClient, marketplace: dict, settlement: dict) -> None:
        seller_user = {"_id": marketplace["seller_a"]["user_id"], "role": "seller"}

        response = await client.get("/api/settlements/seller", headers=_auth(seller_user))

        assert response.status_code == 200
        listed = response.json()["settlements"]
        assert [s["id"] for s in listed] == [str(settlement["_id"])]
        assert "claim_started_at" not in listed[0]

    async def test_other_seller_gets_not_found(
        self, client: AsyncClient, marketplace: dict, settlement: dict
    ) -> None:
        seller_user = {"_id": marketplace["seller_b"]["user_id"], "role": "seller"}

        response = await client.get(f"/api/settlements/seller/{settlement['_id']}", headers=_auth(seller_user))

        assert response.status_code == 404

    async def test_admin_invalid_transition(
        self, client: AsyncClient, marketplace: dict, settlement: dict
    ) -> None:
        response = await client.patch(
            f"/api/settlements/admin/{settlement['_id']}",
            json={"status": "paid"},
            headers=_auth(marketplace["admin"]),
        )

        assert response.status_code == 400
        assert response.json()["kind"] == "InvalidTransition"


class TestNotificationRoutes:
    """Tests for the in-app inbox."""

    async def test_buyer_reads_order_notification(
        self, client: AsyncClient, marketplace: dict, place_order
    ) -> None:
        await place_order([(marketplace["shirt"], 1)])
        headers = _auth(marketplace["buyer"])

        inbox = (await client.get("/api/notifications", headers=headers)).json()["notifications"]
        assert len(inbox) == 1
        assert inbox[0]["read"] is False

        response = await client.post(f"/api/notifications/{inbox[0]['id']}/read", headers=headers)
        assert response.status_code == 200

        unread = await client.get("/api/notifications", params={"unread_only": "true"}, headers=headers)
        assert unread.json()["notifications"] == []

    async def test_seller_inbox_is_addressed_to_the_profile(
        self, client: AsyncClient, marketplace: dict, place_order
    ) -> None:
        await place_order([(marketplace["shirt"], 1)])
        seller_user = {"_id": marketplace["seller_a"]["user_id"], "role": "seller"}

        inbox = (await client.get("/api/notifications", headers=_auth(seller_user))).json()["notifications"]

        assert [n["type"] for n in inbox] == ["order"]
