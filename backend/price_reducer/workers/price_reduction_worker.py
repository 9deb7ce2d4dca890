"""
Price Reduction Worker

Runs one reduction cycle: every listing that is enabled, active, not paused
by vacation mode and due by its interval gets at most one price change.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from price_reducer.services.reduction_scheduler import ReductionScheduler, reduction_scheduler
from price_reducer.utils.logger import logger


async def run_once(scheduler: Optional[ReductionScheduler] = None) -> Dict[str, Any]:
    scheduler = scheduler or reduction_scheduler
    logger.info("[price-reduction-worker] Starting reduction cycle...")
    result = await scheduler.run_cycle()
    summary = {
        "status": "completed",
        "processed": result.processed,
        "reduced": result.reduced,
        "skipped": result.skipped,
        "failed": result.failed,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    logger.info(f"[price-reduction-worker] Cycle finished: {summary}")
    return summary


if __name__ == "__main__":
    asyncio.run(run_once())
