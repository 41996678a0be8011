import asyncio
import logging
from datetime import datetime, timedelta

from config.constants import PENALTY_SWEEP_INTERVAL_SECONDS
from config.env import RETURN_REVIEW_WINDOW_HOURS
from database import get_db
from utils.notification import send_notification

logger = logging.getLogger(__name__)


def _penalty_guard(cutoff: datetime) -> dict:
    return {
        "video.uploaded_at": {"$lt": cutoff},
        "video.reviewed_by_seller": False,
        "penalty_applied": False,
    }


async def run_return_penalty_sweep(db, now: datetime | None = None) -> int:
    """
    Penalize sellers who left return video evidence unreviewed past the
    review window. The write repeats the selection guard, so a return is
    penalized at most once no matter how many sweeps overlap.
    Returns the number of returns penalized.
    """
    now = now or datetime.utcnow()
    cutoff = now - timedelta(hours=RETURN_REVIEW_WINDOW_HOURS)
    penalized = 0

    returns = await db.returns.find(_penalty_guard(cutoff)).to_list(None)

    for ret in returns:
        try:
            result = await db.returns.update_one(
                {"_id": ret["_id"], **_penalty_guard(cutoff)},
                {"$set": {
                    "penalty_applied": True,
                    "auto_approved": True,
                    "penalty_applied_at": now,
                    "updated_at": now,
                }},
            )
            if result.modified_count != 1:
                continue

            penalized += 1
            logger.info("RETURN_PENALTY_APPLIED return=%s seller=%s", ret["_id"], ret["seller_id"])

            await send_notification(
                db,
                recipient_id=ret["seller_id"],
                recipient_role="seller",
                type="penalty",
                title="Return Penalty Applied",
                message=(
                    f"A penalty has been applied because the return video for order "
                    f"{ret.get('order_number')} was not reviewed within {RETURN_REVIEW_WINDOW_HOURS} hours"
                ),
                data={"return_id": str(ret["_id"])},
            )
        except Exception:
            logger.exception("RETURN_PENALTY_ERROR return=%s", ret["_id"])

    return penalized


async def return_penalty_worker():
    db = get_db()

    while True:
        try:
            count = await run_return_penalty_sweep(db)
            if count:
                logger.info("RETURN_PENALTY_SWEEP penalized=%s", count)
        except Exception:
            logger.exception("RETURN_PENALTY_SWEEP_ERROR")

        await asyncio.sleep(PENALTY_SWEEP_INTERVAL_SECONDS)
