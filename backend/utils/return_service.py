import copy
import logging
from datetime import datetime, timedelta

from bson import ObjectId

from config.constants import ORDER_CAS_RETRIES, RETURN_TRANSITIONS
from config.env import RETURN_WINDOW_DAYS
from utils.audit import log_access_denied
from utils.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from utils.guards import parse_object_id, same_id
from utils.notification import send_notification
from utils.order_service import update_item_status
from utils.order_state import history_entry

logger = logging.getLogger(__name__)


def _find_item(order: dict, item_id) -> tuple[int, dict]:
    for index, item in enumerate(order.get("items", [])):
        if same_id(item.get("_id"), item_id):
            return index, item
    raise NotFoundError("Order item not found", kind="OrderItemNotFound")


def _video(url: str, now: datetime) -> dict:
    return {
        "url": url,
        "uploaded_at": now,
        "reviewed_by_seller": False,
        "reviewed_at": None,
        "seller_comments": None,
    }


async def _deny(db, actor: dict, action: str, detail: str, return_id=None):
    await log_access_denied(db, actor, action, detail, {"return_id": str(return_id)} if return_id else None)
    raise ForbiddenError(detail)


# ======================================================
# ORDER ITEM LINK
# ======================================================

async def _link_item_return(db, order_id, item_id, return_id, now: datetime) -> None:
    """
    Flag the order item as having an open return, with the
    same version check the order state machine writes with.
    """
    for _ in range(ORDER_CAS_RETRIES):
        order = await db.orders.find_one({"_id": order_id})
        if not order:
            raise NotFoundError("Order not found", kind="OrderNotFound")

        index, item = _find_item(order, item_id)
        if item.get("return_requested"):
            raise ConflictError("A return has already been requested for this item", kind="ReturnAlreadyRequested")

        new_order = copy.deepcopy(order)
        new_order["items"][index]["return_requested"] = True
        new_order["items"][index]["return_id"] = return_id
        new_order["version"] = order["version"] + 1
        new_order["updated_at"] = now

        result = await db.orders.replace_one({"_id": order_id, "version": order["version"]}, new_order)
        if result.modified_count == 1:
            return

    raise ConflictError("Order was modified concurrently, please retry", kind="ConcurrentUpdate")


# ======================================================
# CREATE
# ======================================================

async def create_return(db, actor: dict, data, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()

    order_id = parse_object_id(data.order_id, "order_id")
    item_id = parse_object_id(data.order_item_id, "order_item_id")

    order = await db.orders.find_one({"_id": order_id, "is_deleted": {"$ne": True}})
    if not order:
        raise NotFoundError("Order not found", kind="OrderNotFound")

    if not same_id(order["user_id"], actor["user_id"]):
        await _deny(db, actor, "CREATE_RETURN", "You do not have permission to return items from this order")

    _, item = _find_item(order, item_id)

    if item.get("status") != "delivered":
        raise ValidationError("Only delivered items can be returned", kind="ItemNotDelivered")

    if item.get("return_requested"):
        raise ConflictError("A return has already been requested for this item", kind="ReturnAlreadyRequested")

    delivered_at = item.get("delivered_at") or order.get("delivered_at")
    if delivered_at and now > delivered_at + timedelta(days=RETURN_WINDOW_DAYS):
        raise ValidationError(
            f"Return window of {RETURN_WINDOW_DAYS} days has expired",
            kind="ReturnWindowExpired",
        )

    ret = {
        "_id": ObjectId(),
        "order_id": order_id,
        "order_number": order.get("order_number"),
        "order_item_id": item_id,
        "user_id": order["user_id"],
        "seller_id": item["seller_id"],
        "product_id": item["product_id"],
        "type": data.type,
        "reason": data.reason,
        "reason_category": data.reason_category,
        "description": data.description,
        "images": list(data.images),
        "video": _video(data.video.url, now) if data.video else None,
        "status": "pending",
        "status_history": [history_entry("pending", "user", now, "Return requested")],
        "penalty_applied": False,
        "penalty_applied_at": None,
        "auto_approved": False,
        "approved_at": None,
        "rejected_at": None,
        "rejection_reason": None,
        "pickup_date": None,
        "received_at": None,
        "refund_amount": None,
        "refunded_at": None,
        "created_at": now,
        "updated_at": now,
    }

    await db.returns.insert_one(ret)
    try:
        await _link_item_return(db, order_id, item_id, ret["_id"], now)
    except Exception:
        await db.returns.delete_one({"_id": ret["_id"]})
        raise

    logger.info(
        "RETURN_CREATED return=%s order=%s item=%s seller=%s",
        ret["_id"],
        order.get("order_number"),
        item_id,
        item["seller_id"],
    )

    await send_notification(
        db,
        recipient_id=item["seller_id"],
        recipient_role="seller",
        type="return",
        title="New Return Request",
        message=f"A return has been requested for {item.get('name')} in order {order.get('order_number')}",
        data={"return_id": str(ret["_id"]), "order_id": str(order_id)},
    )
    return ret


# ======================================================
# READ
# ======================================================

async def get_return(db, return_id, actor: dict) -> dict:
    rid = parse_object_id(return_id, "return_id")
    ret = await db.returns.find_one({"_id": rid})
    if not ret:
        raise NotFoundError("Return not found", kind="ReturnNotFound")

    if actor["role"] == "user" and not same_id(ret["user_id"], actor["user_id"]):
        await _deny(db, actor, "VIEW_RETURN", "You do not have permission to view this return", rid)
    if actor["role"] == "seller" and not same_id(ret["seller_id"], actor["seller_id"]):
        await _deny(db, actor, "VIEW_RETURN", "You do not have permission to view this return", rid)

    return ret


async def list_returns(db, actor: dict, *, status: str | None = None, page: int = 1, limit: int = 20) -> dict:
    query = {}
    if actor["role"] == "user":
        query["user_id"] = actor["user_id"]
    elif actor["role"] == "seller":
        query["seller_id"] = actor["seller_id"]

    if status:
        query["status"] = status

    page = max(page, 1)
    total = await db.returns.count_documents(query)
    returns = await (
        db.returns.find(query)
        .sort("created_at", -1)
        .skip((page - 1) * limit)
        .limit(limit)
        .to_list(None)
    )
    return {
        "returns": returns,
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    }


# ======================================================
# VIDEO EVIDENCE
# ======================================================

async def upload_return_video(db, return_id, actor: dict, url: str, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    ret = await get_return(db, return_id, actor)

    if actor["role"] != "user":
        await _deny(db, actor, "UPLOAD_RETURN_VIDEO", "Only the customer can upload return evidence", ret["_id"])

    result = await db.returns.update_one(
        {"_id": ret["_id"], "status": "pending"},
        {"$set": {"video": _video(url, now), "updated_at": now}},
    )
    if result.modified_count == 0:
        raise ValidationError("Video can only be uploaded while the return is pending", kind="InvalidTransition")

    logger.info("RETURN_VIDEO_UPLOADED return=%s", ret["_id"])
    return await db.returns.find_one({"_id": ret["_id"]})


async def review_return_video(
    db,
    return_id,
    actor: dict,
    comments: str | None = None,
    now: datetime | None = None,
) -> dict:
    now = now or datetime.utcnow()
    ret = await get_return(db, return_id, actor)

    if actor["role"] == "user":
        await _deny(db, actor, "REVIEW_RETURN_VIDEO", "Only the seller can review return evidence", ret["_id"])

    if not ret.get("video"):
        raise ValidationError("No video has been uploaded for this return", kind="NoVideo")

    await db.returns.update_one(
        {"_id": ret["_id"]},
        {"$set": {
            "video.reviewed_by_seller": True,
            "video.reviewed_at": now,
            "video.seller_comments": comments,
            "updated_at": now,
        }},
    )

    logger.info("RETURN_VIDEO_REVIEWED return=%s role=%s", ret["_id"], actor["role"])
    return await db.returns.find_one({"_id": ret["_id"]})


# ======================================================
# STATUS
# ======================================================

def _status_fields(status: str, actor: dict, data, now: datetime, refund_default: float | None) -> dict:
    fields = {"status": status, "updated_at": now}

    if status == "approved":
        fields["approved_at"] = now
        fields["approved_by"] = actor.get("user_id")
    elif status == "rejected":
        fields["rejected_at"] = now
        fields["rejected_by"] = actor.get("user_id")
        fields["rejection_reason"] = data.rejection_reason or "No reason provided"
    elif status == "pickup_scheduled":
        fields["pickup_date"] = data.pickup_date
        fields["pickup_slot"] = data.pickup_slot
    elif status == "picked_up":
        fields["picked_up_at"] = now
    elif status == "received":
        fields["received_at"] = now
        fields["received_condition"] = data.received_condition
    elif status == "refunded":
        fields["refund_amount"] = data.refund_amount if data.refund_amount is not None else refund_default
        fields["refunded_at"] = now
    elif status == "exchanged":
        fields["exchanged_at"] = now
    elif status == "closed":
        fields["closed_at"] = now

    return fields


async def update_return_status(db, return_id, actor: dict, data, now: datetime | None = None) -> dict:
    now = now or datetime.utcnow()
    ret = await get_return(db, return_id, actor)

    if actor["role"] == "user":
        await _deny(db, actor, "UPDATE_RETURN_STATUS", "You do not have permission to update this return", ret["_id"])

    current = ret["status"]
    status = data.status
    if status not in RETURN_TRANSITIONS.get(current, set()):
        raise ValidationError(f"Cannot move return from {current} to {status}", kind="InvalidTransition")

    refund_default = None
    if status == "refunded":
        # the item is marked returned first; if that fails the return stays
        # received and the refund can be retried
        order = await db.orders.find_one({"_id": ret["order_id"]})
        _, item = _find_item(order or {}, ret["order_item_id"])
        if item.get("status") != "returned":
            order = await update_item_status(
                db,
                ret["order_id"],
                ret["order_item_id"],
                {"role": "admin", "user_id": actor.get("user_id"), "seller_id": None},
                "returned",
                comment="Return refunded",
                now=now,
            )
            _, item = _find_item(order, ret["order_item_id"])
        refund_default = item.get("total")

    result = await db.returns.update_one(
        {"_id": ret["_id"], "status": current},
        {
            "$set": _status_fields(status, actor, data, now, refund_default),
            "$push": {"status_history": history_entry(status, actor["role"], now, data.comment)},
        },
    )
    if result.modified_count == 0:
        raise ConflictError("Return was updated concurrently, please retry", kind="ConcurrentUpdate")

    logger.info(
        "RETURN_STATUS_UPDATED return=%s from=%s to=%s role=%s",
        ret["_id"],
        current,
        status,
        actor["role"],
    )

    await send_notification(
        db,
        recipient_id=ret["user_id"],
        recipient_role="user",
        type="return",
        title="Return Status Updated",
        message=f"Your return request for order {ret.get('order_number')} is now {status.replace('_', ' ')}",
        data={"return_id": str(ret["_id"]), "status": status},
    )

    return await db.returns.find_one({"_id": ret["_id"]})
