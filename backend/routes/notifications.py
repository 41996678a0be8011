from fastapi import APIRouter, Depends, Query

from database import get_db
from utils.errors import NotFoundError
from utils.guards import parse_object_id
from utils.mongo import serialize_docs
from utils.notification import list_notifications, mark_notification_read
from utils.security import get_actor

router = APIRouter(
    prefix="/notifications",
    tags=["Notifications"]
)


def _recipient_id(actor: dict):
    # seller notifications are addressed to the seller profile
    return actor["seller_id"] if actor["role"] == "seller" else actor["user_id"]


@router.get("")
async def my_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(20, ge=1, le=100),
    actor=Depends(get_actor),
    db=Depends(get_db),
):
    notifications = await list_notifications(
        db, _recipient_id(actor), unread_only=unread_only, limit=limit
    )
    return {"notifications": serialize_docs(notifications)}


@router.post("/{notification_id}/read")
async def read_notification(
    notification_id: str,
    actor=Depends(get_actor),
    db=Depends(get_db),
):
    found = await mark_notification_read(
        db, parse_object_id(notification_id, "notification_id"), _recipient_id(actor)
    )
    if not found:
        raise NotFoundError("Notification not found", kind="NotificationNotFound")
    return {"message": "Notification marked as read"}
