import copy
import logging
from datetime import datetime, timedelta

from bson import ObjectId

from config.constants import (
    ORDER_CAS_RETRIES,
    SETTLEMENT_DRAFT_STALE_MINUTES,
    SETTLEMENT_TRANSITIONS,
)
from config.env import SETTLEMENT_AGING_DAYS
from utils.audit import log_audit
from utils.errors import ConflictError, NotFoundError, ValidationError
from utils.guards import parse_object_id, same_id
from utils.notification import send_notification
from utils.order_state import history_entry

logger = logging.getLogger(__name__)

# ============================================================
# SETTLEMENT SWEEP
# ============================================================
# Per seller group:
#   1. insert a draft settlement
#   2. claim the seller's unsettled items order by order (CAS on version)
#   3. finalize the draft to pending, or delete it if nothing was claimed
# A failure in 2 or 3 releases the group's claims and deletes the draft.
# A process crash between 1 and 3 leaves a draft behind; drafts older
# than SETTLEMENT_DRAFT_STALE_MINUTES are finished off by the next sweep.


def _claimable(item: dict, seller_id) -> bool:
    return (
        same_id(item.get("seller_id"), seller_id)
        and not item.get("is_settled")
        and item.get("status") == "delivered"
    )


def _fully_settled(order: dict) -> bool:
    return all(i.get("is_settled") or i.get("status") != "delivered" for i in order.get("items", []))


def _claimed_amount(order: dict, settlement_id) -> float:
    return round(
        sum(i.get("seller_amount", 0) for i in order.get("items", []) if same_id(i.get("settlement_id"), settlement_id)),
        2,
    )


async def _claim_order(db, order_id, seller_id, settlement_id, now: datetime) -> float | None:
    """
    Mark the seller's unsettled delivered items in one order as belonging
    to the settlement. Returns the claimed seller amount, or None if there
    was nothing left to claim.
    """
    for _ in range(ORDER_CAS_RETRIES):
        order = await db.orders.find_one({"_id": order_id, "status": "delivered", "is_settled": False})
        if not order:
            return None

        new_order = copy.deepcopy(order)
        claimed = [i for i in new_order["items"] if _claimable(i, seller_id)]
        if not claimed:
            return None

        for item in claimed:
            item["is_settled"] = True
            item["settlement_id"] = settlement_id

        if _fully_settled(new_order):
            new_order["is_settled"] = True
            new_order["settlement_id"] = settlement_id

        new_order["version"] = order["version"] + 1
        new_order["updated_at"] = now

        result = await db.orders.replace_one({"_id": order_id, "version": order["version"]}, new_order)
        if result.modified_count == 1:
            return round(sum(i.get("seller_amount", 0) for i in claimed), 2)

        logger.info("SETTLEMENT_CLAIM_RETRY order=%s seller=%s", order_id, seller_id)

    raise ConflictError("Order was modified concurrently", kind="ConcurrentUpdate")


async def _release_order(db, order_id, settlement_id, now: datetime) -> None:
    for _ in range(ORDER_CAS_RETRIES):
        order = await db.orders.find_one({"_id": order_id})
        if not order:
            return

        new_order = copy.deepcopy(order)
        for item in new_order["items"]:
            if same_id(item.get("settlement_id"), settlement_id):
                item["is_settled"] = False
                item["settlement_id"] = None

        new_order["is_settled"] = False
        if same_id(new_order.get("settlement_id"), settlement_id):
            new_order["settlement_id"] = None
        new_order["version"] = order["version"] + 1
        new_order["updated_at"] = now

        result = await db.orders.replace_one({"_id": order_id, "version": order["version"]}, new_order)
        if result.modified_count == 1:
            return

    raise ConflictError("Order was modified concurrently", kind="ConcurrentUpdate")


async def _release_claims(db, settlement_id, now: datetime) -> None:
    orders = await db.orders.find({"items.settlement_id": settlement_id}, {"_id": 1}).to_list(None)
    for order in orders:
        await _release_order(db, order["_id"], settlement_id, now)


async def _finalize(db, settlement_id, order_ids: list, amount: float, now: datetime) -> bool:
    result = await db.settlements.update_one(
        {"_id": settlement_id, "status": "draft"},
        {
            "$set": {
                "orders": order_ids,
                "order_count": len(order_ids),
                "amount": round(amount, 2),
                "status": "pending",
                "status_history": [history_entry("pending", "system", now, "Settlement created")],
                "updated_at": now,
            },
            "$unset": {"claim_started_at": ""},
        },
    )
    return result.modified_count == 1


async def _notify_settlement(db, seller_id, settlement_id, amount: float, order_count: int) -> None:
    await send_notification(
        db,
        recipient_id=seller_id,
        recipient_role="seller",
        type="settlement",
        title="New Settlement Created",
        message=f"A settlement of {amount:.2f} has been created for {order_count} order(s)",
        data={"settlement_id": str(settlement_id)},
    )


async def settle_seller(db, seller_id, order_ids: list, now: datetime) -> dict | None:
    settlement = {
        "_id": ObjectId(),
        "seller_id": seller_id,
        "orders": [],
        "order_count": 0,
        "amount": 0.0,
        "status": "draft",
        "status_history": [],
        "transaction_reference": None,
        "paid_at": None,
        "notes": None,
        "claim_started_at": now,
        "created_at": now,
        "updated_at": now,
    }
    sid = settlement["_id"]
    await db.settlements.insert_one(settlement)

    try:
        claimed_ids = []
        amount = 0.0
        for order_id in order_ids:
            claimed = await _claim_order(db, order_id, seller_id, sid, now)
            if claimed is None:
                continue
            claimed_ids.append(order_id)
            amount += claimed

        if not claimed_ids:
            await db.settlements.delete_one({"_id": sid, "status": "draft"})
            return None

        if not await _finalize(db, sid, claimed_ids, amount, now):
            raise ConflictError("Draft settlement disappeared before finalization", kind="ConcurrentUpdate")

    except Exception:
        logger.exception("SETTLEMENT_GROUP_FAILED seller=%s settlement=%s", seller_id, sid)
        await _release_claims(db, sid, now)
        await db.settlements.delete_one({"_id": sid, "status": "draft"})
        raise

    amount = round(amount, 2)
    logger.info(
        "SETTLEMENT_CREATED seller=%s settlement=%s orders=%s amount=%s",
        seller_id,
        sid,
        len(claimed_ids),
        amount,
    )
    await _notify_settlement(db, seller_id, sid, amount, len(claimed_ids))
    return await db.settlements.find_one({"_id": sid})


async def recover_stale_drafts(db, now: datetime) -> int:
    """
    Finish drafts left behind by an interrupted sweep: keep whatever was
    claimed, or drop the draft if nothing was.
    """
    cutoff = now - timedelta(minutes=SETTLEMENT_DRAFT_STALE_MINUTES)
    drafts = await db.settlements.find({"status": "draft", "claim_started_at": {"$lt": cutoff}}).to_list(None)
    recovered = 0

    for draft in drafts:
        sid = draft["_id"]
        try:
            orders = await db.orders.find({"items.settlement_id": sid}).sort("_id", 1).to_list(None)
            if not orders:
                await db.settlements.delete_one({"_id": sid, "status": "draft"})
                logger.info("SETTLEMENT_DRAFT_DISCARDED settlement=%s", sid)
                continue

            order_ids = [o["_id"] for o in orders]
            amount = round(sum(_claimed_amount(o, sid) for o in orders), 2)
            if await _finalize(db, sid, order_ids, amount, now):
                recovered += 1
                logger.info("SETTLEMENT_DRAFT_RECOVERED settlement=%s orders=%s", sid, len(order_ids))
                await _notify_settlement(db, draft["seller_id"], sid, amount, len(order_ids))
        except Exception:
            logger.exception("SETTLEMENT_DRAFT_RECOVERY_ERROR settlement=%s", sid)

    return recovered


async def run_settlement_sweep(db, now: datetime | None = None) -> list[dict]:
    """
    Create one pending settlement per seller for delivered orders older
    than the aging window that have not been settled yet.
    Returns the settlements created by this run.
    """
    now = now or datetime.utcnow()
    await recover_stale_drafts(db, now)

    cutoff = now - timedelta(days=SETTLEMENT_AGING_DAYS)
    orders = await db.orders.find({
        "status": "delivered",
        "delivered_at": {"$lt": cutoff},
        "is_settled": False,
    }).sort("delivered_at", 1).to_list(None)

    groups = {}
    for order in orders:
        for item in order.get("items", []):
            if item.get("is_settled") or item.get("status") != "delivered":
                continue
            seller_key = str(item["seller_id"])
            group = groups.setdefault(seller_key, {"seller_id": item["seller_id"], "orders": []})
            if order["_id"] not in group["orders"]:
                group["orders"].append(order["_id"])

    created = []
    for group in groups.values():
        try:
            settlement = await settle_seller(db, group["seller_id"], group["orders"], now)
        except Exception:
            # already released and logged; the next run picks the group up again
            continue
        if settlement:
            created.append(settlement)

    logger.info("SETTLEMENT_SWEEP sellers=%s created=%s", len(groups), len(created))
    return created


# ============================================================
# MANAGEMENT
# ============================================================

def _status_filter(status: str | None) -> dict:
    if not status:
        return {"$ne": "draft"}
    if status not in SETTLEMENT_TRANSITIONS:
        raise ValidationError(
            f"Invalid settlement status. Allowed: {', '.join(SETTLEMENT_TRANSITIONS)}",
            kind="InvalidStatus",
        )
    return status


async def _paginate(db, query: dict, page: int, limit: int) -> dict:
    page = max(page, 1)
    total = await db.settlements.count_documents(query)
    settlements = await (
        db.settlements.find(query)
        .sort("created_at", -1)
        .skip((page - 1) * limit)
        .limit(limit)
        .to_list(None)
    )
    return {
        "settlements": settlements,
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    }


async def list_seller_settlements(db, seller_id, *, status: str | None = None, page: int = 1, limit: int = 20) -> dict:
    return await _paginate(db, {"seller_id": seller_id, "status": _status_filter(status)}, page, limit)


async def get_seller_settlement(db, seller_id, settlement_id) -> dict:
    settlement = await db.settlements.find_one({
        "_id": parse_object_id(settlement_id, "settlement_id"),
        "seller_id": seller_id,
        "status": {"$ne": "draft"},
    })
    if not settlement:
        raise NotFoundError("Settlement not found", kind="SettlementNotFound")
    return settlement


async def list_all_settlements(
    db,
    *,
    seller_id: str | None = None,
    status: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    query = {"status": _status_filter(status)}
    if seller_id:
        query["seller_id"] = parse_object_id(seller_id, "seller_id")
    return await _paginate(db, query, page, limit)


async def update_settlement_status(db, settlement_id, actor: dict, data, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    sid = parse_object_id(settlement_id, "settlement_id")

    settlement = await db.settlements.find_one({"_id": sid, "status": {"$ne": "draft"}})
    if not settlement:
        raise NotFoundError("Settlement not found", kind="SettlementNotFound")

    current = settlement["status"]
    if data.status not in SETTLEMENT_TRANSITIONS.get(current, set()):
        raise ValidationError(f"Cannot move settlement from {current} to {data.status}", kind="InvalidTransition")

    fields = {"status": data.status, "updated_at": now}
    if data.transaction_reference:
        fields["transaction_reference"] = data.transaction_reference
    if data.notes is not None:
        fields["notes"] = data.notes
    if data.status == "paid":
        fields["paid_at"] = now

    result = await db.settlements.update_one(
        {"_id": sid, "status": current},
        {
            "$set": fields,
            "$push": {"status_history": history_entry(data.status, actor["role"], now, data.notes)},
        },
    )
    if result.modified_count == 0:
        raise ConflictError("Settlement was updated concurrently, please retry", kind="ConcurrentUpdate")

    await log_audit(
        db,
        actor_id=str(actor.get("user_id")),
        actor_role=actor["role"],
        action="SETTLEMENT_STATUS_UPDATED",
        metadata={"settlement_id": str(sid), "from": current, "to": data.status},
    )
    logger.info("SETTLEMENT_STATUS_UPDATED settlement=%s from=%s to=%s", sid, current, data.status)

    await send_notification(
        db,
        recipient_id=settlement["seller_id"],
        recipient_role="seller",
        type="settlement",
        title="Settlement Status Updated",
        message=f"Your settlement of {settlement['amount']:.2f} is now {data.status}",
        data={"settlement_id": str(sid), "status": data.status},
    )

    return await db.settlements.find_one({"_id": sid})
