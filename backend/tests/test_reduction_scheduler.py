import asyncio
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import NOW, make_listing, make_strategy
from price_reducer.errors import AuthError, MarketplaceRejection, TransientError, ValidationError
from price_reducer.models_sqlalchemy.models import Listing, PriceReductionEvent, User
from price_reducer.services.reduction_scheduler import ReductionScheduler, is_due
from price_reducer.services.vacation import set_vacation_mode


@pytest.fixture
def scheduler(session_factory, client_factory):
    return ReductionScheduler(session_factory=session_factory, client_factory=client_factory, max_concurrency=2)


def _reload(session_factory, listing_id):
    session = session_factory()
    try:
        return session.query(Listing).filter(Listing.id == listing_id).one()
    finally:
        session.close()


def _events(session_factory, listing_id):
    session = session_factory()
    try:
        return session.query(PriceReductionEvent).filter(PriceReductionEvent.listing_id == listing_id).all()
    finally:
        session.close()


@pytest.mark.asyncio
async def test_cycle_reduces_due_listing_and_records_event(db, user, scheduler, fake_client, session_factory):
    strategy = make_strategy(db, user, magnitude=Decimal("15"))
    listing = make_listing(db, user, strategy_id=strategy.id, minimum_price=Decimal("90"))

    result = await scheduler.run_cycle(NOW)

    assert (result.processed, result.reduced, result.failed) == (1, 1, 0)
    assert fake_client.price_updates[0]["new_price"] == Decimal("90.00")
    assert fake_client.price_updates[0]["item_id"] == "110000000001"

    stored = _reload(session_factory, listing.id)
    assert stored.current_price == Decimal("90.00")
    assert stored.price_version == 1
    assert stored.total_reductions == 1
    assert stored.sync_status == "synced"
    assert stored.reduction_lock_token is None

    events = _events(session_factory, listing.id)
    assert len(events) == 1
    assert events[0].old_price == Decimal("100.00")
    assert events[0].new_price == Decimal("90.00")
    assert events[0].reduction_percentage == Decimal("10.00")
    assert events[0].strategy_name == "Weekly 10%"
    assert events[0].trigger == "scheduled"


@pytest.mark.asyncio
async def test_second_run_before_interval_selects_nothing(db, user, scheduler, fake_client, session_factory):
    """Immediately re-running the cycle must not reduce the same listing again."""
    listing = make_listing(db, user)

    first = await scheduler.run_cycle(NOW)
    second = await scheduler.run_cycle(NOW + timedelta(minutes=5))

    assert first.reduced == 1
    assert second.processed == 0
    assert len(fake_client.price_updates) == 1
    assert len(_events(session_factory, listing.id)) == 1


@pytest.mark.asyncio
async def test_listing_not_due_is_not_selected(db, user, scheduler, fake_client):
    make_listing(db, user, listed_at=NOW - timedelta(days=2), created_at=NOW - timedelta(days=2))

    result = await scheduler.run_cycle(NOW)

    assert result.processed == 0
    assert fake_client.price_updates == []


def test_is_due_uses_last_reduction_before_listing_age(db, user):
    listing = make_listing(db, user, last_price_reduction=NOW - timedelta(days=3))

    assert is_due(listing, NOW) is False
    assert is_due(listing, NOW + timedelta(days=4)) is True


@pytest.mark.asyncio
async def test_vacation_mode_pauses_without_touching_listing_flags(db, user, scheduler, fake_client, session_factory):
    listing = make_listing(db, user)
    set_vacation_mode(db, user.id, True, now=NOW)

    paused = await scheduler.run_cycle(NOW)

    assert paused.processed == 0
    assert fake_client.price_updates == []
    assert _reload(session_factory, listing.id).enable_auto_reduction is True

    set_vacation_mode(db, user.id, False)
    resumed = await scheduler.run_cycle(NOW)

    assert resumed.reduced == 1


@pytest.mark.asyncio
async def test_inactive_strategy_is_skipped(db, user, scheduler, fake_client):
    strategy = make_strategy(db, user, active=False)
    make_listing(db, user, strategy_id=strategy.id)

    result = await scheduler.run_cycle(NOW)

    assert result.skipped == 1
    assert result.outcomes[0].reason == "strategy_inactive"
    assert fake_client.price_updates == []


@pytest.mark.asyncio
async def test_listing_at_floor_is_skipped_without_marketplace_call(db, user, scheduler, fake_client):
    make_listing(db, user, current_price=Decimal("60"), minimum_price=Decimal("60"))

    result = await scheduler.run_cycle(NOW)

    assert result.skipped == 1
    assert result.outcomes[0].reason == "at_floor"
    assert fake_client.price_updates == []


@pytest.mark.asyncio
async def test_marketplace_rejection_fails_without_changing_price(db, user, scheduler, fake_client, session_factory):
    listing = make_listing(db, user)
    fake_client.update_error = MarketplaceRejection("Price below category minimum", status_code=400, error_id="25002")

    result = await scheduler.run_cycle(NOW)

    assert result.failed == 1
    stored = _reload(session_factory, listing.id)
    assert stored.current_price == Decimal("100.00")
    assert stored.price_version == 0
    assert stored.sync_status == "error"
    assert stored.sync_error == "Price below category minimum"
    assert stored.enable_auto_reduction is True
    assert stored.reduction_lock_token is None
    assert _events(session_factory, listing.id) == []


@pytest.mark.asyncio
async def test_transient_failure_defers_listing_to_next_cycle(db, user, scheduler, fake_client, session_factory):
    listing = make_listing(db, user)
    fake_client.update_error = TransientError("GET timed out", code="timeout")

    result = await scheduler.run_cycle(NOW)

    assert result.failed == 1
    assert result.outcomes[0].reason.startswith("transient")
    stored = _reload(session_factory, listing.id)
    assert stored.current_price == Decimal("100.00")
    assert stored.sync_status == "pending"
    assert stored.reduction_lock_token is None

    fake_client.update_error = None
    retried = await scheduler.run_cycle(NOW + timedelta(hours=1))
    assert retried.reduced == 1


@pytest.mark.asyncio
async def test_auth_error_fails_listing_and_leaves_configuration(db, user, scheduler, fake_client, session_factory):
    """Revoked refresh token: every listing of the user fails with an auth reason, nothing retried."""
    first = make_listing(db, user)
    second = make_listing(db, user, ebay_item_id="110000000002")
    fake_client.update_error = AuthError("eBay rejected the refresh token", code="refresh_token_revoked")

    result = await scheduler.run_cycle(NOW)

    assert result.failed == 2
    assert {o.reason for o in result.outcomes} == {"auth: refresh_token_revoked"}
    for listing_id in (first.id, second.id):
        stored = _reload(session_factory, listing_id)
        assert stored.current_price == Decimal("100.00")
        assert stored.sync_status == "synced"
        assert stored.enable_auto_reduction is True
        assert stored.reduction_lock_token is None


@pytest.mark.asyncio
async def test_claim_held_by_another_worker_skips_listing(db, user, scheduler, fake_client):
    make_listing(db, user, reduction_lock_token="other-worker", reduction_locked_at=NOW - timedelta(minutes=1))

    result = await scheduler.run_cycle(NOW)

    assert result.skipped == 1
    assert result.outcomes[0].reason == "conflict"
    assert fake_client.price_updates == []


@pytest.mark.asyncio
async def test_stale_claim_is_taken_over(db, user, scheduler, fake_client):
    make_listing(db, user, reduction_lock_token="crashed-worker", reduction_locked_at=NOW - timedelta(hours=2))

    result = await scheduler.run_cycle(NOW)

    assert result.reduced == 1


@pytest.mark.asyncio
async def test_concurrent_cycles_reduce_each_listing_once(db, user, session_factory, client_factory, fake_client):
    for n in range(4):
        make_listing(db, user, ebay_item_id=f"11000000010{n}")
    a = ReductionScheduler(session_factory=session_factory, client_factory=client_factory)
    b = ReductionScheduler(session_factory=session_factory, client_factory=client_factory)

    first, second = await asyncio.gather(a.run_cycle(NOW), b.run_cycle(NOW))

    assert first.reduced + second.reduced == 4
    assert len(fake_client.price_updates) == 4
    session = session_factory()
    try:
        assert session.query(PriceReductionEvent).count() == 4
    finally:
        session.close()


@pytest.mark.asyncio
async def test_price_written_by_sync_during_update_loses_the_commit(db, user, scheduler, fake_client, session_factory):
    """A concurrent price write mid-flight means the claim is lost; the listing is left for the next sync."""
    listing = make_listing(db, user)

    def concurrent_sync(_kwargs):
        session = session_factory()
        try:
            session.query(Listing).filter(Listing.id == listing.id).update(
                {Listing.price_version: Listing.price_version + 1, Listing.current_price: Decimal("97")},
                synchronize_session=False,
            )
            session.commit()
        finally:
            session.close()

    fake_client.before_update = concurrent_sync

    result = await scheduler.run_cycle(NOW)

    assert result.skipped == 1
    assert result.outcomes[0].reason == "conflict"
    stored = _reload(session_factory, listing.id)
    assert stored.current_price == Decimal("97.00")
    assert stored.sync_status == "pending"
    assert stored.reduction_lock_token is None
    assert _events(session_factory, listing.id) == []


@pytest.mark.asyncio
async def test_manual_reduction_ignores_due_and_vacation(db, user, scheduler, fake_client, session_factory):
    listing = make_listing(db, user, last_price_reduction=NOW - timedelta(hours=1))
    set_vacation_mode(db, user.id, True, now=NOW)

    outcome = await scheduler.reduce_listing_now(user.id, listing.id, custom_price=Decimal("75"), now=NOW)

    assert outcome.status == "reduced"
    assert outcome.new_price == Decimal("75.00")
    events = _events(session_factory, listing.id)
    assert events[0].trigger == "manual"


@pytest.mark.asyncio
@pytest.mark.parametrize("custom_price,code", [
    (Decimal("50"), "below_minimum_price"),
    (Decimal("100"), "not_a_reduction"),
])
async def test_manual_reduction_validates_custom_price(db, user, scheduler, fake_client, custom_price, code):
    listing = make_listing(db, user)

    with pytest.raises(ValidationError) as excinfo:
        await scheduler.reduce_listing_now(user.id, listing.id, custom_price=custom_price, now=NOW)

    assert excinfo.value.code == code
    assert fake_client.price_updates == []


@pytest.mark.asyncio
async def test_manual_reduction_of_foreign_listing_is_not_found(db, user, scheduler):
    listing = make_listing(db, user)

    with pytest.raises(LookupError):
        await scheduler.reduce_listing_now("someone-else", listing.id, now=NOW)


@pytest.mark.asyncio
async def test_inventory_api_listing_updates_through_offer(db, user, scheduler, fake_client):
    make_listing(db, user, source="inventory_api", sku="SKU-abc-123", offer_id="OFFER-9")

    await scheduler.run_cycle(NOW)

    update = fake_client.price_updates[0]
    assert update["use_inventory_api"] is True
    assert update["sku"] == "SKU-abc-123"
    assert update["offer_id"] == "OFFER-9"


@pytest.mark.asyncio
async def test_cycle_scoped_to_one_user_leaves_other_sellers_alone(db, user, scheduler, fake_client, session_factory):
    other = User(email="other@example.com")
    db.add(other)
    db.commit()
    mine = make_listing(db, user)
    theirs = make_listing(db, other, ebay_item_id="110000000002")

    result = await scheduler.run_cycle(NOW, user_id=user.id)

    assert result.processed == 1
    assert result.outcomes[0].listing_id == mine.id
    assert [update["item_id"] for update in fake_client.price_updates] == ["110000000001"]
    assert _reload(session_factory, theirs.id).current_price == Decimal("100.00")
