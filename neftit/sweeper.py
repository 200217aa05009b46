# neftit/sweeper.py
"""
Background orphan sweep.

Any stake that reached the chain without its StakeRecord (receipt timeouts,
undecodable responses, crashes between confirmation and the database write)
is picked up here. Every wallet with on-chain activity is compared against
getStakeInfo on a fixed interval.
"""
import asyncio
import logging

from .config import SWEEP_INTERVAL
from .errors import LifecycleError

logger = logging.getLogger(__name__)


async def sweep_once(reconciler) -> dict:
    swept, failed = 0, 0
    for wallet in reconciler.store.wallets():
        try:
            await reconciler.recover_orphans(wallet)
            swept += 1
        except LifecycleError as e:
            failed += 1
            logger.warning("Sweep skipped %s: %s", wallet, e.message)
    return {"swept": swept, "failed": failed}


async def run_sweeper(reconciler, interval: int = SWEEP_INTERVAL):
    if interval <= 0:
        logger.warning("Sweeper disabled: SWEEP_INTERVAL=%s", interval)
        return

    logger.info("Sweeper running (every %ds)", interval)
    while True:
        try:
            stats = await sweep_once(reconciler)
            if stats["failed"]:
                logger.info("Sweep done: %(swept)d ok, %(failed)d failed", stats)
        except Exception as e:
            logger.exception("Sweeper error: %s", e)
        await asyncio.sleep(interval)
