"""Pytest configuration and fixtures."""

import os
from datetime import datetime, timedelta
from typing import Any

import pytest
from bson import ObjectId
from mongomock_motor import AsyncMongoMockClient

# Set test environment variables before importing application modules
os.environ.setdefault("ENV", "test")
os.environ.setdefault("MONGODB_URI", "mongodb://localhost:27017/marketplace_test")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ["RESEND_API_KEY"] = ""

from models.order import AddressIn, LineItemIn, OrderCreate  # noqa: E402
from utils.order_service import create_order, update_order_status  # noqa: E402

NOW = datetime(2026, 3, 2, 12, 0, 0)

ADDRESS = {
    "name": "Asha Rao",
    "phone": "9000000001",
    "address_line1": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pincode": "560001",
}


@pytest.fixture
def now() -> datetime:
    """Fixed clock for deterministic timestamps."""
    return NOW


@pytest.fixture
def db() -> Any:
    """Fresh in-memory database per test."""
    return AsyncMongoMockClient()["marketplace_test"]


def _user(name: str, role: str) -> dict:
    slug = name.lower().replace(" ", ".")
    return {
        "_id": ObjectId(),
        "name": name,
        "email": f"{slug}@example.com",
        "phone": "9000000000",
        "role": role,
        "is_active": True,
        "is_blocked": False,
    }


def _seller(user: dict, business_name: str, commission: float | None) -> dict:
    seller = {
        "_id": ObjectId(),
        "user_id": user["_id"],
        "business_name": business_name,
        "status": "active",
        "is_verified": True,
        "email": user["email"],
        "phone": user["phone"],
    }
    if commission is not None:
        seller["commission_settings"] = {"percentage": commission}
    return seller


@pytest.fixture
async def marketplace(db: Any) -> dict:
    """Buyers, an admin, two active sellers and their products."""
    buyer = _user("Asha Buyer", "user")
    other_buyer = _user("Ravi Buyer", "user")
    admin = _user("Ops Admin", "admin")
    seller_user_a = _user("Acme Owner", "seller")
    seller_user_b = _user("Bolt Owner", "seller")

    seller_a = _seller(seller_user_a, "Acme Traders", 5)
    seller_b = _seller(seller_user_b, "Bolt Retail", 10)

    shirt = {
        "_id": ObjectId(),
        "name": "Cotton Shirt",
        "sku": "SHIRT-1",
        "images": ["shirt.jpg"],
        "price": 100.0,
        "variants": [],
        "stock_quantity": 10,
        "sales_count": 0,
        "tax_rate": 5,
        "status": "active",
        "seller_id": seller_a["_id"],
        "category_id": ObjectId(),
    }
    xl_variant = {"_id": ObjectId(), "price": 300.0, "sku": "JACKET-XL", "image": "jacket-xl.jpg"}
    jacket = {
        "_id": ObjectId(),
        "name": "Rain Jacket",
        "sku": "JACKET-1",
        "images": ["jacket.jpg"],
        "price": 250.0,
        "variants": [xl_variant],
        "stock_quantity": 5,
        "sales_count": 0,
        "tax_rate": 12,
        "status": "active",
        "seller_id": seller_b["_id"],
        "category_id": ObjectId(),
    }

    await db.users.insert_many([buyer, other_buyer, admin, seller_user_a, seller_user_b])
    await db.sellers.insert_many([seller_a, seller_b])
    await db.products.insert_many([shirt, jacket])

    return {
        "buyer": buyer,
        "other_buyer": other_buyer,
        "admin": admin,
        "seller_a": seller_a,
        "seller_b": seller_b,
        "shirt": shirt,
        "jacket": jacket,
        "xl_variant": xl_variant,
        "buyer_actor": {"role": "user", "user_id": buyer["_id"], "seller_id": None},
        "other_buyer_actor": {"role": "user", "user_id": other_buyer["_id"], "seller_id": None},
        "admin_actor": {"role": "admin", "user_id": admin["_id"], "seller_id": None},
        "seller_a_actor": {
            "role": "seller",
            "user_id": seller_user_a["_id"],
            "seller_id": seller_a["_id"],
            "seller": seller_a,
        },
        "seller_b_actor": {
            "role": "seller",
            "user_id": seller_user_b["_id"],
            "seller_id": seller_b["_id"],
            "seller": seller_b,
        },
    }


def order_payload(lines: list, *, coupon_code: str | None = None, payment_method: str = "cod") -> OrderCreate:
    """Build an order request from (product, quantity[, variant_id]) tuples."""
    items = []
    for line in lines:
        product, quantity = line[0], line[1]
        variant_id = str(line[2]) if len(line) > 2 else None
        items.append(LineItemIn(product_id=str(product["_id"]), quantity=quantity, variant_id=variant_id))
    return OrderCreate(
        items=items,
        shipping_address=AddressIn(**ADDRESS),
        payment_method=payment_method,
        coupon_code=coupon_code,
    )


@pytest.fixture
def place_order(db: Any, marketplace: dict):
    """Factory that places an order for the default buyer."""

    async def _place(lines: list, *, user: dict | None = None, coupon_code: str | None = None,
                     when: datetime = NOW) -> dict:
        buyer = user or marketplace["buyer"]
        return await create_order(
            db,
            user_id=buyer["_id"],
            data=order_payload(lines, coupon_code=coupon_code),
            now=when,
        )

    return _place


@pytest.fixture
def deliver(db: Any, marketplace: dict):
    """Factory that moves an order to delivered as the admin."""

    async def _deliver(order: dict, when: datetime = NOW) -> dict:
        return await update_order_status(db, order["_id"], marketplace["admin_actor"], "delivered", now=when)

    return _deliver


@pytest.fixture
def make_offer(db: Any):
    """Factory that inserts a coupon; defaults describe SAVE10."""

    async def _make(**overrides: Any) -> dict:
        offer = {
            "_id": ObjectId(),
            "code": "SAVE10",
            "type": "percentage",
            "value": 10,
            "min_order_value": 0,
            "max_discount_value": 15,
            "description": "10% off up to 15",
            "start_date": NOW - timedelta(days=1),
            "end_date": NOW + timedelta(days=30),
            "is_active": True,
            "applicable_for": "all",
            "specific_users": [],
            "applicable_products": "all",
            "specific_products": [],
            "specific_categories": [],
            "applicable_sellers": "all",
            "specific_sellers": [],
            "usage_limit": -1,
            "per_user_limit": 1,
            "usage_count": 0,
            "user_usage": {},
            "created_at": NOW,
            "updated_at": NOW,
        }
        offer.update(overrides)
        await db.offers.insert_one(offer)
        return offer

    return _make


@pytest.fixture
def order_request():
    """The order request builder, for tests that call the services directly."""
    return order_payload
