"""
Market Analysis Worker

Refreshes comparable-price signals for connected accounts that have active
listings on a market-based strategy.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict

from price_reducer.errors import PriceReducerError
from price_reducer.models_sqlalchemy import SessionLocal
from price_reducer.models_sqlalchemy.models import (
    ConnectionStatus,
    Listing,
    ListingStatus,
    MarketplaceCredential,
    Strategy,
    StrategyKind,
)
from price_reducer.services.market_analysis import run_market_analysis
from price_reducer.utils.logger import logger


async def run_once(session_factory=SessionLocal, **analysis_kwargs) -> Dict[str, Any]:
    now = datetime.now(timezone.utc)

    db = session_factory()
    try:
        user_ids = [
            user_id
            for (user_id,) in db.query(Listing.user_id)
            .join(Strategy, Listing.strategy_id == Strategy.id)
            .join(MarketplaceCredential, MarketplaceCredential.user_id == Listing.user_id)
            .filter(
                Listing.listing_status == ListingStatus.ACTIVE.value,
                Strategy.kind == StrategyKind.MARKET_BASED.value,
                MarketplaceCredential.connection_status == ConnectionStatus.CONNECTED.value,
            )
            .distinct()
            .all()
        ]
    finally:
        db.close()

    analyzed = 0
    errors = []
    for user_id in user_ids:
        try:
            result = await run_market_analysis(user_id, session_factory=session_factory, now=now, **analysis_kwargs)
        except PriceReducerError as exc:
            logger.warning(f"[market-analysis-worker] user {user_id} failed: {exc.code}: {exc.message}")
            errors.append({"user_id": user_id, "code": exc.code, "message": exc.message})
            continue
        analyzed += result["analyzed"]
        errors.extend({"user_id": user_id, "message": message} for message in result["errors"])

    logger.info(f"[market-analysis-worker] accounts={len(user_ids)} listings_analyzed={analyzed}")
    return {
        "status": "completed",
        "accounts_checked": len(user_ids),
        "listings_analyzed": analyzed,
        "errors": errors,
        "timestamp": now.isoformat(),
    }


if __name__ == "__main__":
    asyncio.run(run_once())
