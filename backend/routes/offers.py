import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pymongo.errors import DuplicateKeyError

from database import get_db
from models.offer import CouponPreview, OfferCreate, OfferUpdate
from utils.audit import log_audit
from utils.errors import ConflictError, NotFoundError, ValidationError
from utils.guards import parse_object_id
from utils.mongo import serialize_doc
from utils.order_service import preview_coupon
from utils.security import require_role

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/offers",
    tags=["Offers"]
)


def _offer_out(offer: dict) -> dict:
    data = serialize_doc(offer)
    # per-user ledger is internal
    data.pop("user_usage", None)
    return data


async def _get_offer(db, offer_id) -> dict:
    offer = await db.offers.find_one({"_id": parse_object_id(offer_id, "offer_id")})
    if not offer:
        raise NotFoundError("Offer not found", kind="OfferNotFound")
    return offer


# ======================================================
# PREVIEW (USER)
# ======================================================

@router.post("/validate")
async def validate_offer(
    payload: CouponPreview,
    user=Depends(require_role("user")),
    db=Depends(get_db),
):
    preview = await preview_coupon(
        db,
        user_id=user["user_id"],
        code=payload.code,
        items=payload.items,
    )
    return {"valid": True, **preview}


# ======================================================
# ADMIN CRUD
# ======================================================

@router.post("", status_code=201)
async def create_offer(
    payload: OfferCreate,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    now = datetime.utcnow()
    offer = payload.model_dump()
    offer.update({
        "specific_users": [parse_object_id(v, "user_id") for v in payload.specific_users],
        "specific_products": [parse_object_id(v, "product_id") for v in payload.specific_products],
        "specific_categories": [parse_object_id(v, "category_id") for v in payload.specific_categories],
        "specific_sellers": [parse_object_id(v, "seller_id") for v in payload.specific_sellers],
        "usage_count": 0,
        "user_usage": {},
        "created_by": admin["user_id"],
        "created_at": now,
        "updated_at": now,
    })

    try:
        await db.offers.insert_one(offer)
    except DuplicateKeyError:
        raise ConflictError("Offer code already exists", kind="DuplicateCode")

    await log_audit(
        db,
        actor_id=str(admin["user_id"]),
        actor_role="admin",
        action="OFFER_CREATED",
        metadata={"offer_id": str(offer["_id"]), "code": offer["code"]},
    )
    logger.info("OFFER_CREATED code=%s", offer["code"])
    return _offer_out(offer)


@router.get("")
async def list_offers(
    is_active: bool | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    query = {}
    if is_active is not None:
        query["is_active"] = is_active

    total = await db.offers.count_documents(query)
    offers = await (
        db.offers.find(query)
        .sort("created_at", -1)
        .skip((page - 1) * limit)
        .limit(limit)
        .to_list(None)
    )
    return {
        "offers": [_offer_out(o) for o in offers],
        "pagination": {"page": page, "limit": limit, "total": total, "pages": (total + limit - 1) // limit},
    }


@router.get("/{offer_id}")
async def offer_detail(
    offer_id: str,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    return _offer_out(await _get_offer(db, offer_id))


@router.patch("/{offer_id}")
async def update_offer(
    offer_id: str,
    payload: OfferUpdate,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    offer = await _get_offer(db, offer_id)
    updates = payload.model_dump(exclude_unset=True)
    if not updates:
        raise ValidationError("No fields to update")

    start = updates.get("start_date", offer.get("start_date"))
    end = updates.get("end_date", offer.get("end_date"))
    if start and end and end < start:
        raise ValidationError("end_date must be after start_date")

    if offer.get("type") == "percentage" and (updates.get("value") or 0) > 100:
        raise ValidationError("Percentage coupons cannot exceed 100")

    updates["updated_at"] = datetime.utcnow()
    await db.offers.update_one({"_id": offer["_id"]}, {"$set": updates})

    await log_audit(
        db,
        actor_id=str(admin["user_id"]),
        actor_role="admin",
        action="OFFER_UPDATED",
        metadata={"offer_id": str(offer["_id"]), "fields": sorted(updates)},
    )
    return _offer_out(await db.offers.find_one({"_id": offer["_id"]}))


@router.delete("/{offer_id}")
async def deactivate_offer(
    offer_id: str,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    offer = await _get_offer(db, offer_id)
    await db.offers.update_one(
        {"_id": offer["_id"]},
        {"$set": {"is_active": False, "updated_at": datetime.utcnow()}},
    )

    await log_audit(
        db,
        actor_id=str(admin["user_id"]),
        actor_role="admin",
        action="OFFER_DEACTIVATED",
        metadata={"offer_id": str(offer["_id"])},
    )
    return {"message": "Offer deactivated"}
