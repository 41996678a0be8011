import logging
from datetime import datetime

logger = logging.getLogger(__name__)


async def log_audit(
    db,
    actor_id: str,
    actor_role: str,
    action: str,
    metadata: dict | None = None
):
    await db.audit_logs.insert_one({
        "actor_id": actor_id,
        "actor_role": actor_role,
        "action": action,
        "metadata": metadata or {},
        "created_at": datetime.utcnow()
    })


async def log_access_denied(db, actor: dict, action: str, detail: str, metadata: dict | None = None):
    """
    Permission failures are access-control events; record them but never
    let the audit write mask the original error.
    """
    logger.warning(
        "ACCESS_DENIED actor=%s role=%s action=%s detail=%s",
        actor.get("user_id"),
        actor.get("role"),
        action,
        detail,
    )
    try:
        await log_audit(
            db,
            actor_id=str(actor.get("user_id")),
            actor_role=actor.get("role"),
            action=f"DENIED_{action}",
            metadata={"detail": detail, **(metadata or {})},
        )
    except Exception:
        logger.exception("AUDIT_WRITE_ERROR action=%s", action)
