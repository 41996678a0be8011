import logging
import random
import time
from datetime import datetime, timedelta

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from config.constants import (
    INVOICE_NUMBER_PREFIX,
    ORDER_CAS_RETRIES,
    ORDER_NUMBER_PREFIX,
    ORDER_NUMBER_RETRIES,
)
from config.env import ESTIMATED_DELIVERY_DAYS
from utils.audit import log_access_denied
from utils.coupons import (
    build_order_context,
    commit_coupon_usage,
    revert_coupon_usage,
    validate_coupon,
)
from utils.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from utils.guards import parse_object_id, same_id
from utils.notification import send_notification
from utils.order_state import history_entry, transition_item, transition_order, validate_status
from utils.pricing import price_line, price_order, summarize_lines
from utils.products import get_product, release_lines, release_stock, reserve_lines
from utils.sellers import get_seller

logger = logging.getLogger(__name__)

LIST_DURATIONS = {"1m": 30, "3m": 90, "1y": 365}
STATS_DURATIONS = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}


def generate_number(prefix: str) -> str:
    return f"{prefix}{int(time.time() * 1000)}{random.randint(0, 999):03d}"


def _new_item(line: dict, now: datetime) -> dict:
    item = dict(line)
    item.update({
        "_id": ObjectId(),
        "status": "pending",
        "status_history": [history_entry("pending", "system", now, "Order placed")],
        "tracking_number": None,
        "tracking_url": None,
        "shipping_provider": None,
        "shipped_at": None,
        "delivered_at": None,
        "cancelled_at": None,
        "cancellation_reason": None,
        "stock_restored": False,
        "return_requested": False,
        "return_id": None,
        "is_settled": False,
        "settlement_id": None,
    })
    return item


# ======================================================
# CREATE
# ======================================================

async def price_lines(db, items) -> list[dict]:
    lines = []
    for line in items:
        product = await get_product(db, parse_object_id(line.product_id, "product_id"))
        seller = await get_seller(db, product.get("seller_id"))
        lines.append(price_line(product, seller, line.quantity, line.variant_id))
    return lines


async def preview_coupon(db, *, user_id, code: str, items, now: datetime | None = None) -> dict:
    """
    Run the coupon checks against a prospective cart without using the
    coupon up.
    """
    lines = await price_lines(db, items)
    ctx = build_order_context(subtotal=summarize_lines(lines)["subtotal"], user_id=user_id, lines=lines)
    coupon, outcome = await validate_coupon(db, code, ctx, now=now)
    return {
        "code": coupon["code"],
        "type": coupon.get("type"),
        "description": coupon.get("description"),
        "discount": outcome["discount"],
        "free_shipping": outcome["free_shipping"],
        "totals": price_order(lines, outcome),
    }


async def create_order(db, *, user_id, data, now: datetime | None = None) -> dict:
    """
    Price the lines, validate the coupon, then reserve stock, commit the
    coupon and insert the order as one unit. Any failure after a side
    effect undoes what was already applied.
    """
    now = now or datetime.utcnow()

    if not data.items:
        raise ValidationError("Order must contain at least one item", kind="EmptyOrder")

    lines = await price_lines(db, data.items)

    coupon, outcome = None, None
    ctx = build_order_context(
        subtotal=summarize_lines(lines)["subtotal"],
        user_id=user_id,
        lines=lines,
    )
    if data.coupon_code:
        coupon, outcome = await validate_coupon(db, data.coupon_code, ctx, now=now)

    totals = price_order(lines, outcome)

    reserved = await reserve_lines(db, lines)
    if reserved is None:
        raise ConflictError("Insufficient stock for one or more items", kind="OutOfStock")

    coupon_committed = False
    try:
        if coupon:
            await commit_coupon_usage(db, coupon, ctx, now=now)
            coupon_committed = True

        shipping = data.shipping_address.model_dump()
        billing = data.billing_address.model_dump() if data.billing_address else dict(shipping)

        order = {
            "_id": ObjectId(),
            "user_id": user_id,
            "items": [_new_item(line, now) for line in lines],
            "shipping_address": shipping,
            "billing_address": billing,
            "payment": {
                "method": data.payment_method,
                "amount": totals["total"],
                "currency": "INR",
                "status": "pending",
                "gateway": "cod" if data.payment_method == "cod" else "online",
                "created_at": now,
                "paid_at": None,
            },
            **totals,
            "coupon_id": coupon["_id"] if coupon else None,
            "coupon_code": coupon["code"] if coupon else None,
            "status": "pending",
            "status_history": [history_entry("pending", "system", now, "Order placed")],
            "notes": data.notes,
            "is_gift": data.is_gift,
            "gift_message": data.gift_message,
            "estimated_delivery_date": now + timedelta(days=ESTIMATED_DELIVERY_DAYS),
            "shipped_at": None,
            "delivered_at": None,
            "cancelled_at": None,
            "cancellation_reason": None,
            "is_settled": False,
            "settlement_id": None,
            "is_deleted": False,
            "deleted_at": None,
            "invoice": None,
            "version": 0,
            "created_at": now,
            "updated_at": now,
        }

        for _ in range(ORDER_NUMBER_RETRIES):
            order["order_number"] = generate_number(ORDER_NUMBER_PREFIX)
            try:
                await db.orders.insert_one(order)
                break
            except DuplicateKeyError:
                logger.warning("ORDER_NUMBER_COLLISION number=%s", order["order_number"])
        else:
            raise ConflictError("Could not allocate an order number, please retry", kind="ConcurrentUpdate")

    except Exception:
        if coupon_committed:
            await revert_coupon_usage(db, coupon["_id"], user_id)
        await release_lines(db, reserved)
        raise

    logger.info(
        "ORDER_CREATED order=%s user=%s total=%s items=%s",
        order["order_number"],
        user_id,
        order["total"],
        len(order["items"]),
    )

    await _notify_order_created(db, order)
    return order


async def _notify_order_created(db, order: dict) -> None:
    await send_notification(
        db,
        recipient_id=order["user_id"],
        recipient_role="user",
        type="order",
        title="Order Placed",
        message=f"Your order {order['order_number']} has been placed successfully",
        data={"order_id": str(order["_id"])},
    )

    per_seller = {}
    for item in order["items"]:
        per_seller.setdefault(str(item["seller_id"]), [item["seller_id"], 0])[1] += 1

    for seller_id, count in per_seller.values():
        await send_notification(
            db,
            recipient_id=seller_id,
            recipient_role="seller",
            type="order",
            title="New Order Received",
            message=f"You have received a new order {order['order_number']} with {count} item(s)",
            data={"order_id": str(order["_id"])},
        )


# ======================================================
# READ
# ======================================================

async def _find_order(db, order_id, *, include_deleted: bool = False) -> dict:
    query = {"_id": parse_object_id(order_id, "order_id")}
    if not include_deleted:
        query["is_deleted"] = {"$ne": True}
    order = await db.orders.find_one(query)
    if not order:
        raise NotFoundError("Order not found", kind="OrderNotFound")
    return order


async def _deny(db, actor: dict, action: str, detail: str, metadata: dict | None = None):
    await log_access_denied(db, actor, action, detail, metadata)
    raise ForbiddenError(detail)


async def get_order(db, order_id, actor: dict, *, seller_items_only: bool = False) -> dict:
    order = await _find_order(db, order_id, include_deleted=actor["role"] == "admin")

    if actor["role"] == "user" and not same_id(order["user_id"], actor["user_id"]):
        await _deny(db, actor, "VIEW_ORDER", "You do not have permission to view this order",
                    {"order_id": str(order["_id"])})

    if actor["role"] == "seller":
        own = [i for i in order["items"] if same_id(i.get("seller_id"), actor["seller_id"])]
        if not own:
            await _deny(db, actor, "VIEW_ORDER", "You do not have permission to view this order",
                        {"order_id": str(order["_id"])})
        if seller_items_only:
            order["items"] = own

    return order


def _date_filter(start_date, end_date, duration, durations: dict, now: datetime):
    if start_date and end_date:
        return {"$gte": start_date, "$lte": end_date}
    if duration:
        days = durations.get(duration)
        if days is None:
            raise ValidationError(
                f"Invalid duration. Allowed: {', '.join(durations)}",
                kind="InvalidDuration",
            )
        return {"$gte": now - timedelta(days=days)}
    return None


def _scope_query(actor: dict) -> dict:
    if actor["role"] == "user":
        return {"user_id": actor["user_id"]}
    if actor["role"] == "seller":
        return {"items.seller_id": actor["seller_id"]}
    return {}


async def list_orders(
    db,
    actor: dict,
    *,
    status: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    duration: str | None = None,
    page: int = 1,
    limit: int = 20,
    include_deleted: bool = False,
    now: datetime | None = None,
) -> dict:
    now = now or datetime.utcnow()
    query = _scope_query(actor)

    if not (include_deleted and actor["role"] == "admin"):
        query["is_deleted"] = {"$ne": True}

    if status:
        query["status"] = validate_status(status)

    created = _date_filter(start_date, end_date, duration, LIST_DURATIONS, now)
    if created:
        query["created_at"] = created

    page = max(page, 1)
    total = await db.orders.count_documents(query)
    orders = await (
        db.orders.find(query)
        .sort("created_at", -1)
        .skip((page - 1) * limit)
        .limit(limit)
        .to_list(None)
    )

    return {
        "orders": orders,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


# ======================================================
# STATUS UPDATES (CAS ON version)
# ======================================================

async def _update_with_cas(db, order_id, actor: dict, action: str, compute, now: datetime):
    """
    Read, compute the next document with the pure state rules, write it
    back only if nobody else wrote in between. Stock for newly cancelled
    items is restored after the winning write.
    """
    oid = parse_object_id(order_id, "order_id")

    for _ in range(ORDER_CAS_RETRIES):
        order = await _find_order(db, oid)

        try:
            new_order, restore_items, promoted = compute(order)
        except ForbiddenError as e:
            await log_access_denied(db, actor, action, e.detail, {"order_id": str(oid)})
            raise

        version = order["version"]
        new_order["version"] = version + 1
        new_order["updated_at"] = now

        result = await db.orders.replace_one({"_id": oid, "version": version}, new_order)
        if result.modified_count == 1:
            for item in restore_items:
                await release_stock(db, item["product_id"], item["quantity"])
                logger.info(
                    "STOCK_RESTORED order=%s item=%s product=%s qty=%s",
                    order["order_number"],
                    item["_id"],
                    item["product_id"],
                    item["quantity"],
                )
            return order, new_order, promoted

        logger.info("ORDER_CAS_RETRY order=%s version=%s", oid, version)

    raise ConflictError("Order was modified concurrently, please retry", kind="ConcurrentUpdate")


async def update_order_status(
    db,
    order_id,
    actor: dict,
    status: str,
    *,
    comment: str | None = None,
    tracking: dict | None = None,
    cancellation_reason: str | None = None,
    now: datetime | None = None,
) -> dict:
    now = now or datetime.utcnow()
    status = validate_status(status)

    def compute(order):
        return transition_order(
            order,
            status,
            actor,
            now=now,
            comment=comment,
            tracking=tracking,
            cancellation_reason=cancellation_reason,
        )

    before, order, promoted = await _update_with_cas(db, order_id, actor, "UPDATE_ORDER_STATUS", compute, now)

    logger.info(
        "ORDER_STATUS_UPDATED order=%s status=%s actor=%s role=%s promoted=%s",
        order["order_number"],
        status,
        actor.get("user_id"),
        actor["role"],
        promoted,
    )

    affected = [
        i for i, old in zip(order["items"], before["items"])
        if i.get("status_history") != old.get("status_history")
    ]
    await _notify_status_change(db, order, affected, actor, status)
    return order


async def update_item_status(
    db,
    order_id,
    item_id,
    actor: dict,
    status: str,
    *,
    comment: str | None = None,
    tracking: dict | None = None,
    cancellation_reason: str | None = None,
    now: datetime | None = None,
) -> dict:
    now = now or datetime.utcnow()
    status = validate_status(status)
    item_oid = parse_object_id(item_id, "item_id")

    def compute(order):
        try:
            return transition_item(
                order,
                item_oid,
                status,
                actor,
                now=now,
                comment=comment,
                tracking=tracking,
                cancellation_reason=cancellation_reason,
            )
        except LookupError:
            raise NotFoundError("Order item not found", kind="OrderItemNotFound")

    _, order, promoted = await _update_with_cas(db, order_id, actor, "UPDATE_ITEM_STATUS", compute, now)

    logger.info(
        "ORDER_ITEM_STATUS_UPDATED order=%s item=%s status=%s role=%s promoted=%s",
        order["order_number"],
        item_oid,
        status,
        actor["role"],
        promoted,
    )

    item = next(i for i in order["items"] if same_id(i["_id"], item_oid))
    await _notify_status_change(db, order, [item], actor, status)
    return order


async def _notify_status_change(db, order: dict, items: list[dict], actor: dict, status: str) -> None:
    number = order["order_number"]

    if actor["role"] == "seller":
        business = (actor.get("seller") or {}).get("business_name") or "The seller"
        message = f"{business} updated items in your order {number} to {status}"
    elif len(items) == 1 and len(order["items"]) > 1:
        message = f"Item {items[0].get('name')} in your order {number} is now {status}"
    else:
        message = f"Your order {number} is now {status}"

    await send_notification(
        db,
        recipient_id=order["user_id"],
        recipient_role="user",
        type="order",
        title="Order Status Updated",
        message=message,
        data={"order_id": str(order["_id"]), "status": status},
    )

    if actor["role"] != "user":
        return

    seller_ids = {}
    for item in items:
        seller_ids.setdefault(str(item["seller_id"]), item["seller_id"])

    for seller_id in seller_ids.values():
        await send_notification(
            db,
            recipient_id=seller_id,
            recipient_role="seller",
            type="order",
            title="Order Status Updated",
            message=f"The customer updated order {number} to {status}",
            data={"order_id": str(order["_id"]), "status": status},
        )


# ======================================================
# INVOICE
# ======================================================

async def generate_invoice(db, order_id, actor: dict, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    order = await _find_order(db, order_id)

    if actor["role"] == "user" and not same_id(order["user_id"], actor["user_id"]):
        await _deny(db, actor, "GENERATE_INVOICE",
                    "You do not have permission to generate invoice for this order",
                    {"order_id": str(order["_id"])})
    if actor["role"] == "seller":
        await _deny(db, actor, "GENERATE_INVOICE",
                    "You do not have permission to generate invoice for this order",
                    {"order_id": str(order["_id"])})

    if order.get("invoice"):
        return order["invoice"]

    number = generate_number(INVOICE_NUMBER_PREFIX)
    invoice = {
        "number": number,
        "url": f"/invoices/{number}.pdf",
        "generated_at": now,
    }

    result = await db.orders.update_one(
        {"_id": order["_id"], "invoice": None},
        {"$set": {"invoice": invoice, "updated_at": now}, "$inc": {"version": 1}},
    )
    if result.modified_count == 0:
        # another request issued the invoice first
        current = await db.orders.find_one({"_id": order["_id"]}, {"invoice": 1})
        return current["invoice"]

    logger.info("INVOICE_GENERATED order=%s invoice=%s", order["order_number"], number)
    return invoice


# ======================================================
# STATS
# ======================================================

async def get_order_stats(
    db,
    actor: dict,
    *,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    duration: str | None = None,
    now: datetime | None = None,
) -> dict:
    now = now or datetime.utcnow()

    if actor["role"] == "user":
        await _deny(db, actor, "VIEW_ORDER_STATS", "You do not have permission to access order statistics")

    match = _scope_query(actor)
    created = _date_filter(start_date, end_date, duration, STATS_DURATIONS, now)
    if created:
        match["created_at"] = created

    by_status = await db.orders.aggregate([
        {"$match": match},
        {"$group": {"_id": "$status", "count": {"$sum": 1}, "total": {"$sum": "$total"}}},
    ]).to_list(None)

    revenue = await db.orders.aggregate([
        {"$match": {**match, "status": {"$nin": ["cancelled"]}}},
        {"$group": {
            "_id": None,
            "total_revenue": {"$sum": "$total"},
            "total_orders": {"$sum": 1},
            "average_order_value": {"$avg": "$total"},
        }},
    ]).to_list(1)

    daily = await db.orders.aggregate([
        {"$match": match},
        {"$group": {
            "_id": {"$dateToString": {"format": "%Y-%m-%d", "date": "$created_at"}},
            "count": {"$sum": 1},
            "revenue": {"$sum": "$total"},
        }},
        {"$sort": {"_id": 1}},
    ]).to_list(None)

    summary = revenue[0] if revenue else {"total_revenue": 0, "total_orders": 0, "average_order_value": 0}
    summary.pop("_id", None)

    return {
        "orders_by_status": [
            {"status": row["_id"], "count": row["count"], "total": row["total"]} for row in by_status
        ],
        "revenue": summary,
        "daily_orders": [
            {"date": row["_id"], "count": row["count"], "revenue": row["revenue"]} for row in daily
        ],
    }
