import logging
from datetime import datetime

from config.constants import COUPON_CAS_RETRIES, UNLIMITED
from utils.errors import ConflictError

logger = logging.getLogger(__name__)


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def build_order_context(*, subtotal: float, user_id, lines: list[dict]) -> dict:
    return {
        "subtotal": subtotal,
        "user_id": user_id,
        "seller_ids": {str(line["seller_id"]) for line in lines},
        "product_ids": {str(line["product_id"]) for line in lines},
        "category_ids": {str(line["category_id"]) for line in lines if line.get("category_id")},
    }


def _ids(values) -> set:
    return {str(v) for v in values or []}


def user_usage_count(coupon: dict, user_id) -> int:
    entry = (coupon.get("user_usage") or {}).get(str(user_id)) or {}
    return int(entry.get("count", 0))


def compute_discount(coupon: dict, subtotal: float) -> dict:
    coupon_type = coupon.get("type")
    value = float(coupon.get("value") or 0)

    if coupon_type == "percentage":
        discount = subtotal * value / 100
        cap = coupon.get("max_discount_value")
        if cap and discount > cap:
            discount = float(cap)
        return {"discount": round(discount, 2), "free_shipping": False}

    if coupon_type == "fixed":
        # Flat amount; deliberately not capped at the subtotal.
        return {"discount": round(value, 2), "free_shipping": False}

    if coupon_type == "free_shipping":
        return {"discount": 0.0, "free_shipping": True}

    # buy_x_get_y is recorded on the order but not priced here
    return {"discount": 0.0, "free_shipping": False}


def evaluate_coupon(coupon: dict | None, ctx: dict, *, prior_orders: int, now: datetime) -> dict:
    """
    Run the eligibility checks in order and return the coupon outcome.
    The first failing check raises ConflictError with its kind.
    """
    # 1. existence, activity, validity window
    if (
        not coupon
        or not coupon.get("is_active")
        or not coupon.get("start_date")
        or not coupon.get("end_date")
        or not (coupon["start_date"] <= now <= coupon["end_date"])
    ):
        raise ConflictError("Invalid or expired coupon code", kind="InvalidOrExpiredCoupon")

    # 2. minimum order value
    min_value = coupon.get("min_order_value")
    if min_value and ctx["subtotal"] < min_value:
        raise ConflictError(
            f"Minimum order value for this coupon is {min_value}",
            kind="MinOrderValueNotMet",
        )

    # 3. scope
    scope = coupon.get("applicable_for", "all")
    if scope == "new_users" and prior_orders > 0:
        raise ConflictError("This coupon is only for new users", kind="CouponNotApplicable")
    if scope == "existing_users" and prior_orders == 0:
        raise ConflictError("This coupon is only for returning customers", kind="CouponNotApplicable")
    if scope == "specific_users" and str(ctx["user_id"]) not in _ids(coupon.get("specific_users")):
        raise ConflictError("This coupon is not applicable for your account", kind="CouponNotApplicable")

    product_scope = coupon.get("applicable_products", "all")
    if product_scope == "specific_products":
        if not ctx["product_ids"] & _ids(coupon.get("specific_products")):
            raise ConflictError("This coupon is not applicable to these products", kind="CouponNotApplicable")
    elif product_scope == "specific_categories":
        if not ctx["category_ids"] & _ids(coupon.get("specific_categories")):
            raise ConflictError("This coupon is not applicable to these categories", kind="CouponNotApplicable")

    if coupon.get("applicable_sellers", "all") == "specific_sellers":
        if not ctx["seller_ids"] & _ids(coupon.get("specific_sellers")):
            raise ConflictError("This coupon is not applicable to these sellers", kind="CouponNotApplicable")

    # 4. global usage
    usage_limit = coupon.get("usage_limit", UNLIMITED)
    if usage_limit != UNLIMITED and coupon.get("usage_count", 0) >= usage_limit:
        raise ConflictError("This coupon has reached its usage limit", kind="UsageLimitReached")

    # 5. per-user usage
    per_user_limit = coupon.get("per_user_limit", UNLIMITED)
    if per_user_limit != UNLIMITED and user_usage_count(coupon, ctx["user_id"]) >= per_user_limit:
        raise ConflictError(
            "You have already used this coupon the maximum number of times",
            kind="PerUserLimitReached",
        )

    outcome = compute_discount(coupon, ctx["subtotal"])
    outcome.update({
        "coupon_id": coupon["_id"],
        "code": coupon["code"],
        "type": coupon.get("type"),
    })
    return outcome


# ======================================================
# DB-BACKED VALIDATION
# ======================================================

async def load_coupon(db, code: str) -> dict | None:
    return await db.offers.find_one({"code": normalize_code(code)})


async def validate_coupon(db, code: str, ctx: dict, now: datetime | None = None) -> tuple[dict, dict]:
    now = now or datetime.utcnow()
    coupon = await load_coupon(db, code)

    prior_orders = 0
    if coupon and coupon.get("applicable_for") in {"new_users", "existing_users"}:
        prior_orders = await db.orders.count_documents({"user_id": ctx["user_id"]})

    outcome = evaluate_coupon(coupon, ctx, prior_orders=prior_orders, now=now)
    return coupon, outcome


async def commit_coupon_usage(db, coupon: dict, ctx: dict, now: datetime | None = None) -> dict:
    """
    Count one use of the coupon for this user.

    Compare-and-swap on usage_count: every successful use increments it,
    so a concurrent commit turns our write into a no-op and we re-read,
    re-validate and try again.
    """
    now = now or datetime.utcnow()
    user_key = str(ctx["user_id"])

    for _ in range(COUPON_CAS_RETRIES):
        result = await db.offers.update_one(
            {"_id": coupon["_id"], "usage_count": coupon.get("usage_count", 0)},
            {
                "$inc": {
                    "usage_count": 1,
                    f"user_usage.{user_key}.count": 1,
                },
                "$set": {
                    f"user_usage.{user_key}.last_used": now,
                    "updated_at": now,
                },
            },
        )
        if result.modified_count == 1:
            return await db.offers.find_one({"_id": coupon["_id"]})

        logger.info("COUPON_CAS_RETRY coupon=%s user=%s", coupon.get("code"), user_key)
        coupon, _ = await validate_coupon(db, coupon["code"], ctx, now=now)

    raise ConflictError("Coupon is being used concurrently, please retry", kind="ConcurrentUpdate")


async def revert_coupon_usage(db, coupon_id, user_id) -> None:
    user_key = str(user_id)
    await db.offers.update_one(
        {"_id": coupon_id, "usage_count": {"$gt": 0}},
        {
            "$inc": {
                "usage_count": -1,
                f"user_usage.{user_key}.count": -1,
            },
            "$set": {"updated_at": datetime.utcnow()},
        },
    )
