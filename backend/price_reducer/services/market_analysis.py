"""Market signal refresh for listings priced by a market_based strategy.

Comparable listings come from the Browse API search on the first words of the
title. The stored signal (average, lowest, competitor count) is what the
strategy engine reads; it never calls eBay itself.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Dict, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from price_reducer.config import settings
from price_reducer.errors import AuthError, PriceReducerError
from price_reducer.models_sqlalchemy import SessionLocal
from price_reducer.models_sqlalchemy.models import Listing, ListingStatus, Strategy, StrategyKind
from price_reducer.services.ebay_api_client import EbayApiClient, client_for_user
from price_reducer.services.strategy_engine import round2
from price_reducer.utils.dates import utc_now
from price_reducer.utils.logger import logger

SEARCH_TITLE_WORDS = 5


def search_keywords(title: Optional[str]) -> str:
    return " ".join((title or "").split()[:SEARCH_TITLE_WORDS])


async def analyze_listing(
    db: Session,
    listing: Listing,
    client: EbayApiClient,
    now: Optional[datetime] = None,
) -> Dict[str, object]:
    """Search comparables for one listing and store the signal on it.

    The listing's own item is excluded. With no comparables the average and
    lowest price are cleared and the count is zero, which the engine treats
    as insufficient data.
    """
    now = now or utc_now()
    keywords = search_keywords(listing.title)
    comparables = await client.search_comparables(keywords, limit=settings.MARKET_ANALYSIS_SAMPLE_SIZE)
    prices = [
        item.price
        for item in comparables
        if item.item_id != listing.ebay_item_id and item.price > 0
    ][: settings.MARKET_ANALYSIS_SAMPLE_SIZE]

    if prices:
        listing.market_average_price = round2(sum(prices, Decimal("0")) / len(prices))
        listing.market_lowest_price = round2(min(prices))
    else:
        listing.market_average_price = None
        listing.market_lowest_price = None
    listing.market_competitor_count = len(prices)
    listing.market_analyzed_at = now
    db.commit()

    logger.info(
        "[market] listing_id=%s keywords=%r competitors=%s average=%s lowest=%s",
        listing.id, keywords, len(prices), listing.market_average_price, listing.market_lowest_price,
    )
    return {
        "listing_id": listing.id,
        "competitor_count": len(prices),
        "average_price": listing.market_average_price,
        "lowest_price": listing.market_lowest_price,
    }


async def run_market_analysis(
    user_id: str,
    *,
    session_factory: Callable[[], Session] = SessionLocal,
    client_factory: Callable[[Session, str], EbayApiClient] = client_for_user,
    now: Optional[datetime] = None,
) -> Dict[str, object]:
    """Refresh stale market signals for a user's active market-based listings."""
    now = now or utc_now()
    stale_before = now - timedelta(hours=settings.MARKET_ANALYSIS_MAX_AGE_HOURS)
    analyzed, errors = 0, []

    db = session_factory()
    try:
        listings = (
            db.query(Listing)
            .join(Strategy, Listing.strategy_id == Strategy.id)
            .filter(
                Listing.user_id == user_id,
                Listing.listing_status == ListingStatus.ACTIVE.value,
                Strategy.kind == StrategyKind.MARKET_BASED.value,
                Strategy.active.is_(True),
                or_(Listing.market_analyzed_at.is_(None), Listing.market_analyzed_at < stale_before),
            )
            .all()
        )
        client = client_factory(db, user_id)
        for listing in listings:
            try:
                await analyze_listing(db, listing, client, now)
                analyzed += 1
            except AuthError:
                db.rollback()
                raise
            except PriceReducerError as exc:
                db.rollback()
                logger.warning("[market] listing_id=%s analysis failed: %s", listing.id, exc.message)
                errors.append(f"{listing.id}: {exc.message}")
    finally:
        db.close()

    return {"user_id": user_id, "candidates": analyzed + len(errors), "analyzed": analyzed, "errors": errors}
