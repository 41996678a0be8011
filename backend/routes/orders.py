from datetime import datetime

from fastapi import APIRouter, Depends, Query

from database import get_db
from models.order import OrderCreate, StatusUpdate
from utils.order_service import (
    create_order,
    generate_invoice,
    get_order,
    get_order_stats,
    list_orders,
    update_item_status,
    update_order_status,
)
from utils.security import get_actor, require_role
from utils.serializers import serialize_order
from utils.mongo import serialize_value

router = APIRouter(
    prefix="/orders",
    tags=["Orders"]
)


# ======================================================
# CREATE ORDER (USER)
# ======================================================

@router.post("", status_code=201)
async def place_order(
    payload: OrderCreate,
    user=Depends(require_role("user")),
    db=Depends(get_db),
):
    order = await create_order(db, user_id=user["user_id"], data=payload)
    return {
        "message": "Order placed successfully",
        "order": serialize_order(order),
    }


# ======================================================
# LIST / STATS / DETAIL
# ======================================================

@router.get("")
async def my_orders(
    status: str | None = Query(None),
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
    duration: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    include_deleted: bool = Query(False),
    actor=Depends(get_actor),
    db=Depends(get_db),
):
    result = await list_orders(
        db,
        actor,
        status=status,
        start_date=start_date,
        end_date=end_date,
        duration=duration,
        page=page,
        limit=limit,
        include_deleted=include_deleted,
    )
    return {
        "orders": [serialize_order(o) for o in result["orders"]],
        "pagination": result["pagination"],
    }


# declared before /{order_id} so "stats" is not taken for an id
@router.get("/stats")
async def order_stats(
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
    duration: str | None = Query(None),
    actor=Depends(get_actor),
    db=Depends(get_db),
):
    stats = await get_order_stats(
        db,
        actor,
        start_date=start_date,
        end_date=end_date,
        duration=duration,
    )
    return serialize_value(stats)


@router.get("/{order_id}")
async def order_detail(
    order_id: str,
    seller_items_only: bool = Query(False),
    actor=Depends(get_actor),
    db=Depends(get_db),
):
    order = await get_order(db, order_id, actor, seller_items_only=seller_items_only)
    return serialize_order(order)


# ======================================================
# STATUS UPDATES
# ======================================================

@router.patch("/{order_id}/status")
async def change_order_status(
    order_id: str,
    payload: StatusUpdate,
    actor=Depends(get_actor),
    db=Depends(get_db),
):
    order = await update_order_status(
        db,
        order_id,
        actor,
        payload.status,
        comment=payload.comment,
        tracking=payload.tracking(),
        cancellation_reason=payload.cancellation_reason,
    )
    return {
        "message": "Order status updated",
        "order": serialize_order(order),
    }


@router.patch("/{order_id}/items/{item_id}/status")
async def change_item_status(
    order_id: str,
    item_id: str,
    payload: StatusUpdate,
    actor=Depends(get_actor),
    db=Depends(get_db),
):
    order = await update_item_status(
        db,
        order_id,
        item_id,
        actor,
        payload.status,
        comment=payload.comment,
        tracking=payload.tracking(),
        cancellation_reason=payload.cancellation_reason,
    )
    return {
        "message": "Order item status updated",
        "order": serialize_order(order),
    }


# ======================================================
# INVOICE
# ======================================================

@router.post("/{order_id}/invoice")
async def order_invoice(
    order_id: str,
    actor=Depends(get_actor),
    db=Depends(get_db),
):
    invoice = await generate_invoice(db, order_id, actor)
    return {
        "message": "Invoice generated successfully",
        "invoice": invoice,
    }
