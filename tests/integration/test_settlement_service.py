"""Integration tests for the settlement sweep and settlement management."""

from datetime import timedelta
from typing import Any

import pytest
from bson import ObjectId

from models.settlement import SettlementUpdate
from utils import settlement_service
from utils.errors import NotFoundError, ValidationError
from utils.settlement_service import (
    get_seller_settlement,
    list_all_settlements,
    list_seller_settlements,
    run_settlement_sweep,
    update_settlement_status,
)


class TestSettlementSweep:
    """Tests for the weekly settlement run."""

    async def test_aged_delivered_orders_are_settled_once(
        self, db: Any, marketplace: dict, place_order, deliver, now
    ) -> None:
        first = await deliver(await place_order([(marketplace["shirt"], 2)]))
        second = await deliver(await place_order([(marketplace["shirt"], 1)]), when=now + timedelta(minutes=1))

        created = await run_settlement_sweep(db, now + timedelta(days=8))

        assert len(created) == 1
        settlement = created[0]
        assert settlement["seller_id"] == marketplace["seller_a"]["_id"]
        assert settlement["status"] == "pending"
        assert settlement["order_count"] == 2
        assert settlement["orders"] == [first["_id"], second["_id"]]
        assert settlement["amount"] == 285
        assert "claim_started_at" not in settlement

        for order_id in (first["_id"], second["_id"]):
            order = await db.orders.find_one({"_id": order_id})
            assert order["is_settled"] is True
            assert order["settlement_id"] == settlement["_id"]
            assert all(i["is_settled"] for i in order["items"])

        assert await run_settlement_sweep(db, now + timedelta(days=9)) == []
        assert await db.settlements.count_documents({}) == 1

        notes = await db.notifications.count_documents(
            {"recipient_id": marketplace["seller_a"]["_id"], "type": "settlement"}
        )
        assert notes == 1

    async def test_recent_deliveries_wait_for_the_aging_window(
        self, db: Any, marketplace: dict, place_order, deliver, now
    ) -> None:
        await deliver(await place_order([(marketplace["shirt"], 1)]))

        assert await run_settlement_sweep(db, now + timedelta(days=6)) == []
        assert await db.settlements.count_documents({}) == 0

    async def test_undelivered_orders_are_skipped(self, db: Any, marketplace: dict, place_order, now) -> None:
        await place_order([(marketplace["shirt"], 1)])

        assert await run_settlement_sweep(db, now + timedelta(days=30)) == []

    async def test_multi_seller_order_settles_per_seller(
        self, db: Any, marketplace: dict, place_order, deliver, now
    ) -> None:
        order = await deliver(await place_order([(marketplace["shirt"], 1), (marketplace["jacket"], 1)]))

        created = await run_settlement_sweep(db, now + timedelta(days=8))

        by_seller = {s["seller_id"]: s for s in created}
        assert by_seller[marketplace["seller_a"]["_id"]]["amount"] == 95
        assert by_seller[marketplace["seller_b"]["_id"]]["amount"] == 225
        assert all(s["orders"] == [order["_id"]] for s in created)

        stored = await db.orders.find_one({"_id": order["_id"]})
        assert stored["is_settled"] is True
        assert {i["settlement_id"] for i in stored["items"]} == {s["_id"] for s in created}

    async def test_stale_draft_is_finalized(
        self, db: Any, marketplace: dict, place_order, deliver, now
    ) -> None:
        order = await deliver(await place_order([(marketplace["shirt"], 2)]))
        draft_id = ObjectId()
        started = now + timedelta(days=8)
        await db.settlements.insert_one({
            "_id": draft_id,
            "seller_id": marketplace["seller_a"]["_id"],
            "orders": [],
            "order_count": 0,
            "amount": 0.0,
            "status": "draft",
            "status_history": [],
            "claim_started_at": started,
            "created_at": started,
            "updated_at": started,
        })
        stored = await db.orders.find_one({"_id": order["_id"]})
        stored["items"][0]["is_settled"] = True
        stored["items"][0]["settlement_id"] = draft_id
        stored["is_settled"] = True
        stored["settlement_id"] = draft_id
        await db.orders.replace_one({"_id": order["_id"]}, stored)

        created = await run_settlement_sweep(db, started + timedelta(hours=1))

        assert created == []
        recovered = await db.settlements.find_one({"_id": draft_id})
        assert recovered["status"] == "pending"
        assert recovered["orders"] == [order["_id"]]
        assert recovered["amount"] == 190

    async def test_empty_stale_draft_is_discarded(self, db: Any, marketplace: dict, now) -> None:
        await db.settlements.insert_one({
            "_id": ObjectId(),
            "seller_id": marketplace["seller_a"]["_id"],
            "status": "draft",
            "claim_started_at": now - timedelta(hours=2),
            "created_at": now - timedelta(hours=2),
        })

        await run_settlement_sweep(db, now)

        assert await db.settlements.count_documents({}) == 0


class TestSweepFailures:
    """Tests for rollback and isolation when a seller group fails."""

    async def test_failed_group_is_rolled_back_and_others_settle(
        self, db: Any, marketplace: dict, place_order, deliver, now, monkeypatch
    ) -> None:
        first = await deliver(await place_order([(marketplace["shirt"], 1)]))
        second = await deliver(await place_order([(marketplace["shirt"], 1)]), when=now + timedelta(minutes=1))
        jacket = await deliver(await place_order([(marketplace["jacket"], 1)]))
        seller_a = marketplace["seller_a"]["_id"]
        real_claim = settlement_service._claim_order

        async def claim_or_fail(db_, order_id, seller_id, settlement_id, now_):
            if seller_id == seller_a and order_id == second["_id"]:
                raise RuntimeError("connection reset")
            return await real_claim(db_, order_id, seller_id, settlement_id, now_)

        monkeypatch.setattr(settlement_service, "_claim_order", claim_or_fail)

        created = await run_settlement_sweep(db, now + timedelta(days=8))

        assert [s["seller_id"] for s in created] == [marketplace["seller_b"]["_id"]]
        assert created[0]["orders"] == [jacket["_id"]]
        assert await db.settlements.count_documents({"seller_id": seller_a}) == 0
        for order_id in (first["_id"], second["_id"]):
            stored = await db.orders.find_one({"_id": order_id})
            assert stored["is_settled"] is False
            assert stored["settlement_id"] is None
            assert all(not i["is_settled"] and i["settlement_id"] is None for i in stored["items"])

        monkeypatch.setattr(settlement_service, "_claim_order", real_claim)
        retried = await run_settlement_sweep(db, now + timedelta(days=9))

        assert len(retried) == 1
        assert retried[0]["seller_id"] == seller_a
        assert retried[0]["orders"] == [first["_id"], second["_id"]]
        assert retried[0]["amount"] == 190


class TestSettlementManagement:
    """Tests for seller and admin settlement operations."""

    @pytest.fixture
    async def settlement(self, db: Any, marketplace: dict, place_order, deliver, now) -> dict:
        await deliver(await place_order([(marketplace["shirt"], 2)]))
        created = await run_settlement_sweep(db, now + timedelta(days=8))
        return created[0]

    async def test_payout_lifecycle(self, db: Any, marketplace: dict, settlement: dict, now) -> None:
        admin = marketplace["admin_actor"]

        updated = await update_settlement_status(
            db, settlement["_id"], admin, SettlementUpdate(status="processing"), now=now
        )
        assert updated["status"] == "processing"

        updated = await update_settlement_status(
            db,
            settlement["_id"],
            admin,
            SettlementUpdate(status="paid", transaction_reference="UTR123"),
            now=now,
        )
        assert updated["status"] == "paid"
        assert updated["paid_at"] == now
        assert updated["transaction_reference"] == "UTR123"
        assert [h["status"] for h in updated["status_history"]] == ["pending", "processing", "paid"]

        with pytest.raises(ValidationError) as exc:
            await update_settlement_status(db, settlement["_id"], admin, SettlementUpdate(status="pending"))
        assert exc.value.kind == "InvalidTransition"

    async def test_failed_settlement_can_be_retried(self, db: Any, marketplace: dict, settlement: dict) -> None:
        admin = marketplace["admin_actor"]

        await update_settlement_status(db, settlement["_id"], admin, SettlementUpdate(status="failed"))
        retried = await update_settlement_status(db, settlement["_id"], admin, SettlementUpdate(status="pending"))

        assert retried["status"] == "pending"

    async def test_seller_sees_only_own(self, db: Any, marketplace: dict, settlement: dict) -> None:
        own = await list_seller_settlements(db, marketplace["seller_a"]["_id"])
        assert own["pagination"]["total"] == 1

        other = await list_seller_settlements(db, marketplace["seller_b"]["_id"])
        assert other["pagination"]["total"] == 0

        with pytest.raises(NotFoundError):
            await get_seller_settlement(db, marketplace["seller_b"]["_id"], str(settlement["_id"]))

    async def test_drafts_are_never_listed(self, db: Any, marketplace: dict, settlement: dict, now) -> None:
        await db.settlements.insert_one({
            "_id": ObjectId(),
            "seller_id": marketplace["seller_a"]["_id"],
            "status": "draft",
            "claim_started_at": now,
            "created_at": now,
        })

        listed = await list_all_settlements(db)

        assert listed["pagination"]["total"] == 1
        assert listed["settlements"][0]["_id"] == settlement["_id"]

    async def test_admin_filters_by_seller(self, db: Any, marketplace: dict, settlement: dict) -> None:
        listed = await list_all_settlements(db, seller_id=str(marketplace["seller_b"]["_id"]))

        assert listed["pagination"]["total"] == 0
