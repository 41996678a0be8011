import asyncio
import logging
from datetime import datetime, timedelta

from config.constants import ARCHIVE_SWEEP_INTERVAL_SECONDS, TERMINAL_ORDER_STATUSES
from config.env import AUDIT_RETENTION_DAYS, ORDER_RETENTION_DAYS
from database import get_db

logger = logging.getLogger(__name__)


async def run_archive_sweep(db, now: datetime | None = None) -> dict:
    """
    Soft-delete old finished orders and purge expired audit records.
    Settlement fields are never touched here.
    """
    now = now or datetime.utcnow()
    order_cutoff = now - timedelta(days=ORDER_RETENTION_DAYS)
    audit_cutoff = now - timedelta(days=AUDIT_RETENTION_DAYS)

    archived = await db.orders.update_many(
        {
            "created_at": {"$lt": order_cutoff},
            "status": {"$in": sorted(TERMINAL_ORDER_STATUSES)},
            "is_deleted": {"$ne": True},
        },
        {
            "$set": {"is_deleted": True, "deleted_at": now},
            "$inc": {"version": 1},
        },
    )

    purged = await db.audit_logs.delete_many({"created_at": {"$lt": audit_cutoff}})

    logger.info(
        "ARCHIVE_SWEEP orders_archived=%s audit_purged=%s",
        archived.modified_count,
        purged.deleted_count,
    )
    return {"orders_archived": archived.modified_count, "audit_purged": purged.deleted_count}


async def order_archive_worker():
    db = get_db()

    while True:
        try:
            await run_archive_sweep(db)
        except Exception:
            logger.exception("ARCHIVE_SWEEP_ERROR")

        await asyncio.sleep(ARCHIVE_SWEEP_INTERVAL_SECONDS)
