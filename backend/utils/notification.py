import asyncio
import logging
from datetime import datetime

import resend

from config.env import EMAIL_FROM, RESEND_API_KEY

logger = logging.getLogger(__name__)

RECIPIENT_COLLECTIONS = {
    "user": "users",
    "admin": "users",
    "seller": "sellers",
}


def _send_email(to_email: str, title: str, message: str) -> dict:
    resend.api_key = RESEND_API_KEY
    html = (
        '<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">'
        f'<h2 style="color: #333;">{title}</h2>'
        f'<p style="color: #666; font-size: 16px;">{message}</p>'
        '<p style="color: #999; font-size: 12px;">This is an automated message, please do not reply to this email.</p>'
        "</div>"
    )
    return resend.Emails.send({
        "from": EMAIL_FROM,
        "to": [to_email],
        "subject": title,
        "html": html,
    })


async def send_notification(
    db,
    *,
    recipient_id,
    recipient_role: str,
    type: str,
    title: str,
    message: str,
    data: dict | None = None,
    email: bool = True,
    sms: bool = False,
    in_app: bool = True,
) -> bool:
    """
    Fire-and-forget from the caller's point of view: never raises.
    Returns False if any channel failed.
    """
    try:
        collection = RECIPIENT_COLLECTIONS.get(recipient_role)
        if not collection:
            raise ValueError(f"Invalid recipient role: {recipient_role}")

        recipient = await db[collection].find_one({"_id": recipient_id})
        if not recipient:
            raise LookupError(f"Recipient not found: {recipient_id}")

        if in_app:
            await db.notifications.insert_one({
                "recipient_id": recipient_id,
                "recipient_role": recipient_role,
                "type": type,
                "title": title,
                "message": message,
                "data": data or {},
                "read": False,
                "created_at": datetime.utcnow(),
            })

        if email and recipient.get("email"):
            if RESEND_API_KEY:
                await asyncio.to_thread(_send_email, recipient["email"], title, message)
            else:
                logger.info("EMAIL_SKIPPED recipient=%s reason=not_configured", recipient_id)

        if sms and recipient.get("phone"):
            logger.warning("SMS_SKIPPED recipient=%s reason=no_sms_provider", recipient_id)

        return True

    except Exception as e:
        logger.warning(
            "NOTIFICATION_FAILED recipient=%s role=%s type=%s error=%s",
            recipient_id,
            recipient_role,
            type,
            e,
        )
        return False


async def list_notifications(db, recipient_id, *, unread_only: bool = False, limit: int = 20) -> list[dict]:
    query = {"recipient_id": recipient_id}
    if unread_only:
        query["read"] = False
    return await db.notifications.find(query).sort("created_at", -1).limit(limit).to_list(None)


async def mark_notification_read(db, notification_id, recipient_id) -> bool:
    result = await db.notifications.update_one(
        {"_id": notification_id, "recipient_id": recipient_id},
        {"$set": {"read": True, "read_at": datetime.utcnow()}},
    )
    return result.matched_count == 1
