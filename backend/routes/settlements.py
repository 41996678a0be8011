from fastapi import APIRouter, Depends, Query

from database import get_db
from models.settlement import SettlementUpdate
from utils.audit import log_audit
from utils.security import require_role
from utils.serializers import serialize_settlement
from utils.settlement_service import (
    get_seller_settlement,
    list_all_settlements,
    list_seller_settlements,
    run_settlement_sweep,
    update_settlement_status,
)

router = APIRouter(
    prefix="/settlements",
    tags=["Settlements"]
)


# ======================================================
# SELLER
# ======================================================

@router.get("/seller")
async def seller_settlements(
    status: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    result = await list_seller_settlements(
        db, seller["seller_id"], status=status, page=page, limit=limit
    )
    return {
        "settlements": [serialize_settlement(s) for s in result["settlements"]],
        "pagination": result["pagination"],
    }


@router.get("/seller/{settlement_id}")
async def seller_settlement_detail(
    settlement_id: str,
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    settlement = await get_seller_settlement(db, seller["seller_id"], settlement_id)
    return serialize_settlement(settlement)


# ======================================================
# ADMIN
# ======================================================

@router.get("/admin")
async def admin_settlements(
    seller_id: str | None = Query(None),
    status: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    result = await list_all_settlements(
        db, seller_id=seller_id, status=status, page=page, limit=limit
    )
    return {
        "settlements": [serialize_settlement(s) for s in result["settlements"]],
        "pagination": result["pagination"],
    }


@router.patch("/admin/{settlement_id}")
async def admin_update_settlement(
    settlement_id: str,
    payload: SettlementUpdate,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    settlement = await update_settlement_status(db, settlement_id, admin, payload)
    return {
        "message": "Settlement status updated",
        "settlement": serialize_settlement(settlement),
    }


@router.post("/admin/run")
async def admin_run_settlement(
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    created = await run_settlement_sweep(db)

    await log_audit(
        db,
        actor_id=str(admin["user_id"]),
        actor_role="admin",
        action="SETTLEMENT_SWEEP_TRIGGERED",
        metadata={"created": len(created)},
    )
    return {
        "created": len(created),
        "settlements": [serialize_settlement(s) for s in created],
    }
