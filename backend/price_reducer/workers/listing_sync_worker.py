"""
Listing Sync Worker

Reconciles local listings with eBay for every connected account. Accounts
whose last sync is within SYNC_FRESHNESS_HOURS are skipped. One account
failing does not stop the others.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from price_reducer.errors import PriceReducerError
from price_reducer.models_sqlalchemy import SessionLocal
from price_reducer.models_sqlalchemy.models import ConnectionStatus, MarketplaceCredential
from price_reducer.services.listing_sync import ListingSynchronizer, is_sync_fresh, listing_synchronizer
from price_reducer.utils.logger import logger


async def run_once(
    session_factory=SessionLocal,
    synchronizer: Optional[ListingSynchronizer] = None,
) -> Dict[str, Any]:
    synchronizer = synchronizer or listing_synchronizer
    now = datetime.now(timezone.utc)

    db = session_factory()
    try:
        user_ids = [
            row.user_id
            for row in db.query(MarketplaceCredential)
            .filter(MarketplaceCredential.connection_status == ConnectionStatus.CONNECTED.value)
            .all()
        ]
        due = [user_id for user_id in user_ids if not is_sync_fresh(db, user_id, now)]
    finally:
        db.close()

    logger.info(f"[listing-sync-worker] {len(due)} of {len(user_ids)} connected accounts need a sync")

    totals = {"imported": 0, "updated": 0, "closed": 0, "conflicts": 0}
    synced = 0
    errors = []
    for user_id in due:
        try:
            result = await synchronizer.reconcile(user_id, now)
        except PriceReducerError as exc:
            logger.warning(f"[listing-sync-worker] user {user_id} failed: {exc.code}: {exc.message}")
            errors.append({"user_id": user_id, "code": exc.code, "message": exc.message})
            continue
        synced += 1
        for key in totals:
            totals[key] += getattr(result, key)
        errors.extend({"user_id": user_id, "message": message} for message in result.errors)

    return {
        "status": "completed",
        "accounts_checked": len(user_ids),
        "accounts_synced": synced,
        **totals,
        "errors": errors,
        "timestamp": now.isoformat(),
    }


if __name__ == "__main__":
    asyncio.run(run_once())
