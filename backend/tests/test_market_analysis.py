from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import NOW, make_listing, make_strategy
from price_reducer.errors import AuthError, TransientError
from price_reducer.models.ebay import ComparableItem
from price_reducer.models_sqlalchemy.models import Listing
from price_reducer.services.market_analysis import analyze_listing, run_market_analysis, search_keywords
from price_reducer.utils.dates import to_utc


def comparable(item_id, price):
    return ComparableItem(item_id=item_id, title=f"Comparable {item_id}", price=Decimal(price))


def _reload(session_factory, listing_id):
    session = session_factory()
    try:
        return session.query(Listing).filter(Listing.id == listing_id).one()
    finally:
        session.close()


def test_search_keywords_uses_first_title_words():
    assert search_keywords("Vintage Canon AE-1 35mm film camera body") == "Vintage Canon AE-1 35mm film"
    assert search_keywords(None) == ""


@pytest.mark.asyncio
async def test_analyze_listing_stores_signal_and_excludes_own_item(db, user, fake_client):
    listing = make_listing(db, user)
    fake_client.comparables = [
        comparable("110000000001", "1.00"),
        comparable("2", "90.00"),
        comparable("3", "95.50"),
        comparable("4", "0"),
        comparable("5", "100.01"),
    ]

    result = await analyze_listing(db, listing, fake_client, NOW)

    assert result["competitor_count"] == 3
    assert listing.market_average_price == Decimal("95.17")
    assert listing.market_lowest_price == Decimal("90.00")
    assert listing.market_competitor_count == 3
    assert to_utc(listing.market_analyzed_at) == NOW
    assert fake_client.searches == ["Vintage Canon AE-1 35mm film"]


@pytest.mark.asyncio
async def test_no_comparables_clears_the_signal(db, user, fake_client):
    listing = make_listing(db, user, market_average_price=Decimal("80"), market_competitor_count=7)

    await analyze_listing(db, listing, fake_client, NOW)

    assert listing.market_average_price is None
    assert listing.market_lowest_price is None
    assert listing.market_competitor_count == 0


@pytest.mark.asyncio
async def test_run_covers_only_stale_market_based_listings(db, user, fake_client, session_factory, client_factory):
    market = make_strategy(db, user, name="Follow market", kind="market_based")
    fixed = make_strategy(db, user)
    stale = make_listing(db, user, ebay_item_id="1", strategy_id=market.id, market_analyzed_at=NOW - timedelta(hours=7))
    fresh = make_listing(db, user, ebay_item_id="2", strategy_id=market.id, market_analyzed_at=NOW - timedelta(hours=1))
    never = make_listing(db, user, ebay_item_id="3", strategy_id=market.id)
    make_listing(db, user, ebay_item_id="4", strategy_id=fixed.id)
    make_listing(db, user, ebay_item_id="5", strategy_id=market.id, listing_status="Ended")
    fake_client.comparables = [comparable("9", "80.00")]

    result = await run_market_analysis(user.id, session_factory=session_factory, client_factory=client_factory, now=NOW)

    assert result == {"user_id": user.id, "candidates": 2, "analyzed": 2, "errors": []}
    assert _reload(session_factory, stale.id).market_average_price == Decimal("80.00")
    assert _reload(session_factory, never.id).market_competitor_count == 1
    assert _reload(session_factory, fresh.id).market_average_price is None


class FlakyClient:
    def __init__(self, error):
        self.error = error

    async def search_comparables(self, keywords, *, limit=50):
        raise self.error


@pytest.mark.asyncio
async def test_transient_failures_are_collected(db, user, session_factory):
    market = make_strategy(db, user, name="Follow market", kind="market_based")
    make_listing(db, user, strategy_id=market.id)
    client = FlakyClient(TransientError("Browse search returned 503", status_code=503))

    result = await run_market_analysis(
        user.id, session_factory=session_factory, client_factory=lambda db, uid: client, now=NOW
    )

    assert result["analyzed"] == 0
    assert result["candidates"] == 1
    assert "Browse search returned 503" in result["errors"][0]


@pytest.mark.asyncio
async def test_auth_failure_stops_the_run(db, user, session_factory):
    market = make_strategy(db, user, name="Follow market", kind="market_based")
    make_listing(db, user, strategy_id=market.id)
    client = FlakyClient(AuthError("eBay connection has expired", code="connection_expired"))

    with pytest.raises(AuthError):
        await run_market_analysis(user.id, session_factory=session_factory, client_factory=lambda db, uid: client, now=NOW)
