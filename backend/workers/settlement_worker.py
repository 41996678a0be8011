import asyncio
import logging

from config.constants import SETTLEMENT_SWEEP_INTERVAL_SECONDS
from database import get_db
from utils.settlement_service import run_settlement_sweep

logger = logging.getLogger(__name__)


async def settlement_worker():
    db = get_db()

    while True:
        try:
            await run_settlement_sweep(db)
        except Exception:
            logger.exception("SETTLEMENT_SWEEP_ERROR")

        await asyncio.sleep(SETTLEMENT_SWEEP_INTERVAL_SECONDS)
