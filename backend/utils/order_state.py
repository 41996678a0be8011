import copy
from datetime import datetime

from config.constants import (
    ORDER_STATUSES,
    SELLER_ALLOWED_STATUSES,
    SELLER_SOURCE_STATUSES,
    USER_ALLOWED_STATUSES,
)
from utils.errors import ForbiddenError, ValidationError
from utils.guards import same_id

# ============================================================
# ORDER STATE MACHINE (pure rules)
# ============================================================
# Operates on plain order/item dicts and returns new copies.
# Persistence, stock restore and notifications live in
# utils/order_service.py.


def validate_status(status: str | None) -> str:
    if not status:
        raise ValidationError("Status is required", kind="InvalidStatus")
    if status not in ORDER_STATUSES:
        raise ValidationError(
            f"Invalid status. Allowed: {', '.join(ORDER_STATUSES)}",
            kind="InvalidStatus",
        )
    return status


def history_entry(status: str, actor_role: str, now: datetime, comment: str | None = None) -> dict:
    return {
        "status": status,
        "timestamp": now,
        "comment": comment or "",
        "updated_by": actor_role,
    }


# ------------------------------------------------------------
# permissions
# ------------------------------------------------------------

def check_item_permission(actor: dict, order: dict, item: dict, status: str) -> None:
    role = actor["role"]

    if role == "admin":
        return

    if role == "user":
        if (
            status not in USER_ALLOWED_STATUSES
            or not same_id(order.get("user_id"), actor["user_id"])
            or item.get("status") != "pending"
        ):
            raise ForbiddenError("You do not have permission to update this item status")
        return

    if role == "seller":
        if not same_id(item.get("seller_id"), actor.get("seller_id")):
            raise ForbiddenError("You do not have permission to update this item")
        if status not in SELLER_ALLOWED_STATUSES:
            raise ForbiddenError(
                f"Sellers can only update status to: {', '.join(sorted(SELLER_ALLOWED_STATUSES))}"
            )
        if item.get("status") not in SELLER_SOURCE_STATUSES:
            raise ForbiddenError(f"Item is already {item.get('status')} and can no longer be updated by the seller")
        return

    raise ForbiddenError("Unknown role")


def addressed_items(actor: dict, order: dict, status: str) -> list[dict]:
    """
    Items an order-level update applies to, after permission checks.
    """
    role = actor["role"]
    items = order.get("items", [])

    if role == "admin":
        return list(items)

    if role == "user":
        if (
            status not in USER_ALLOWED_STATUSES
            or not same_id(order.get("user_id"), actor["user_id"])
            or order.get("status") != "pending"
        ):
            raise ForbiddenError("You do not have permission to update this order status")
        open_items = [i for i in items if i.get("status") != "cancelled"]
        if any(i.get("status") != "pending" for i in open_items):
            raise ForbiddenError("Order has items that are already being processed")
        return open_items

    if role == "seller":
        own = [i for i in items if same_id(i.get("seller_id"), actor.get("seller_id"))]
        if not own:
            raise ForbiddenError("You do not have permission to update this order")
        if status not in SELLER_ALLOWED_STATUSES:
            raise ForbiddenError(
                f"Sellers can only update status to: {', '.join(sorted(SELLER_ALLOWED_STATUSES))}"
            )
        # items already past processing are left as they are
        open_items = [i for i in own if i.get("status") in SELLER_SOURCE_STATUSES]
        if not open_items:
            raise ForbiddenError("None of your items in this order can be updated")
        return open_items

    raise ForbiddenError("Unknown role")


# ------------------------------------------------------------
# transitions
# ------------------------------------------------------------

def apply_item_transition(
    item: dict,
    status: str,
    *,
    actor_role: str,
    now: datetime,
    comment: str | None = None,
    tracking: dict | None = None,
    cancellation_reason: str | None = None,
) -> tuple[dict, bool]:
    """
    Returns (new_item, restore_stock). restore_stock is True only the
    first time an item is cancelled.
    """
    new_item = copy.deepcopy(item)
    new_item["status"] = status
    new_item.setdefault("status_history", []).append(
        history_entry(status, actor_role, now, comment)
    )

    restore = False

    if status == "shipped":
        new_item["shipped_at"] = now
        for key, value in (tracking or {}).items():
            if value:
                new_item[key] = value
    elif status == "delivered":
        new_item["delivered_at"] = now
    elif status == "cancelled":
        new_item["cancelled_at"] = now
        new_item["cancellation_reason"] = cancellation_reason or "No reason provided"
        if not new_item.get("stock_restored"):
            new_item["stock_restored"] = True
            restore = True

    return new_item, restore


def derive_order_status(items: list[dict]) -> str | None:
    statuses = {i.get("status") for i in items}
    if len(statuses) == 1:
        return statuses.pop()
    return None


def promote_order(
    order: dict,
    *,
    actor_role: str,
    now: datetime,
    comment: str | None = None,
    tracking: dict | None = None,
    cancellation_reason: str | None = None,
) -> bool:
    """
    Re-derive the order-level status from its items, in place.
    Returns True if the order status changed.
    """
    uniform = derive_order_status(order.get("items", []))
    if uniform is None or uniform == order.get("status"):
        return False

    order["status"] = uniform
    order.setdefault("status_history", []).append(
        history_entry(uniform, actor_role, now, comment or f"All items are now {uniform}")
    )

    if uniform == "shipped":
        order["shipped_at"] = now
        for key, value in (tracking or {}).items():
            if value:
                order[key] = value
    elif uniform == "delivered":
        order["delivered_at"] = now
    elif uniform == "cancelled":
        order["cancelled_at"] = now
        order["cancellation_reason"] = cancellation_reason or "All items cancelled"

    return True


def transition_item(
    order: dict,
    item_id,
    status: str,
    actor: dict,
    *,
    now: datetime,
    comment: str | None = None,
    tracking: dict | None = None,
    cancellation_reason: str | None = None,
) -> tuple[dict, list[dict], bool]:
    """
    Single-item transition. Returns (new_order, items_to_restore, promoted).
    Raises LookupError if the item is not part of the order.
    """
    new_order = copy.deepcopy(order)
    items = new_order.get("items", [])
    index = next((n for n, i in enumerate(items) if same_id(i.get("_id"), item_id)), None)
    if index is None:
        raise LookupError(item_id)

    check_item_permission(actor, order, items[index], status)

    new_item, restore = apply_item_transition(
        items[index],
        status,
        actor_role=actor["role"],
        now=now,
        comment=comment,
        tracking=tracking,
        cancellation_reason=cancellation_reason,
    )
    items[index] = new_item

    promoted = promote_order(
        new_order,
        actor_role=actor["role"],
        now=now,
        tracking=tracking,
    )
    return new_order, ([new_item] if restore else []), promoted


def transition_order(
    order: dict,
    status: str,
    actor: dict,
    *,
    now: datetime,
    comment: str | None = None,
    tracking: dict | None = None,
    cancellation_reason: str | None = None,
) -> tuple[dict, list[dict], bool]:
    """
    Order-level transition: the per-item transition applied to every item
    the actor addresses, then order status re-derived.
    Returns (new_order, items_to_restore, promoted).
    """
    targets = addressed_items(actor, order, status)
    target_ids = {str(i.get("_id")) for i in targets}

    new_order = copy.deepcopy(order)
    restored = []
    new_items = []
    for item in new_order.get("items", []):
        if str(item.get("_id")) in target_ids:
            item, restore = apply_item_transition(
                item,
                status,
                actor_role=actor["role"],
                now=now,
                comment=comment,
                tracking=tracking,
                cancellation_reason=cancellation_reason,
            )
            if restore:
                restored.append(item)
        new_items.append(item)
    new_order["items"] = new_items

    promoted = promote_order(
        new_order,
        actor_role=actor["role"],
        now=now,
        comment=comment or None,
        tracking=tracking,
        cancellation_reason=cancellation_reason,
    )
    return new_order, restored, promoted
