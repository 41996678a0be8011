from fastapi import APIRouter, Depends, Query

from database import get_db
from models.returns import ReturnCreate, ReturnStatusUpdate, VideoIn, VideoReview
from utils.return_service import (
    create_return,
    get_return,
    list_returns,
    review_return_video,
    update_return_status,
    upload_return_video,
)
from utils.security import get_actor, require_role
from utils.serializers import serialize_return

router = APIRouter(
    prefix="/returns",
    tags=["Returns"]
)


@router.post("", status_code=201)
async def request_return(
    payload: ReturnCreate,
    user=Depends(require_role("user")),
    db=Depends(get_db),
):
    ret = await create_return(db, user, payload)
    return {
        "message": "Return requested",
        "return": serialize_return(ret),
    }


@router.get("")
async def returns_list(
    status: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    actor=Depends(get_actor),
    db=Depends(get_db),
):
    result = await list_returns(db, actor, status=status, page=page, limit=limit)
    return {
        "returns": [serialize_return(r) for r in result["returns"]],
        "pagination": result["pagination"],
    }


@router.get("/{return_id}")
async def return_detail(
    return_id: str,
    actor=Depends(get_actor),
    db=Depends(get_db),
):
    return serialize_return(await get_return(db, return_id, actor))


# ======================================================
# VIDEO EVIDENCE
# ======================================================

@router.post("/{return_id}/video")
async def attach_video(
    return_id: str,
    payload: VideoIn,
    user=Depends(require_role("user")),
    db=Depends(get_db),
):
    ret = await upload_return_video(db, return_id, user, payload.url)
    return serialize_return(ret)


@router.post("/{return_id}/video/review")
async def review_video(
    return_id: str,
    payload: VideoReview,
    actor=Depends(require_role("seller", "admin")),
    db=Depends(get_db),
):
    ret = await review_return_video(db, return_id, actor, payload.comments)
    return serialize_return(ret)


# ======================================================
# STATUS
# ======================================================

@router.patch("/{return_id}/status")
async def change_return_status(
    return_id: str,
    payload: ReturnStatusUpdate,
    actor=Depends(require_role("seller", "admin")),
    db=Depends(get_db),
):
    ret = await update_return_status(db, return_id, actor, payload)
    return {
        "message": "Return status updated",
        "return": serialize_return(ret),
    }
