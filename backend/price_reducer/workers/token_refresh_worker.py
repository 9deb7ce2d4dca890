"""
Token Refresh Worker

Refreshes access tokens of connected eBay accounts that expire within the
next 15 minutes, so reduction and sync runs rarely have to refresh inline.
A revoked refresh token moves the account to ``expired``.
"""
import asyncio
from typing import Any, Dict

from price_reducer.models_sqlalchemy import SessionLocal
from price_reducer.services.ebay_oauth import run_token_refresh_job
from price_reducer.utils.logger import logger

REFRESH_WINDOW_MINUTES = 15


async def run_once(session_factory=SessionLocal) -> Dict[str, Any]:
    logger.info("[token-refresh-worker] Checking for expiring tokens...")
    result = await run_token_refresh_job(session_factory, within_minutes=REFRESH_WINDOW_MINUTES)
    logger.info(
        "[token-refresh-worker] checked=%s refreshed=%s failed=%s",
        result["accounts_checked"],
        result["accounts_refreshed"],
        len(result["errors"]),
    )
    return result


if __name__ == "__main__":
    asyncio.run(run_once())
