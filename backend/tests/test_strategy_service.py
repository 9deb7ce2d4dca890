from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import NOW, make_listing, make_strategy
from price_reducer.errors import ConflictError, ValidationError
from price_reducer.models.listing import StrategyCreate, StrategyPreviewRequest
from price_reducer.models_sqlalchemy.models import Listing, Strategy, User
from price_reducer.services.strategy_service import compute_strategy_preview, create_strategy, delete_strategy
from price_reducer.services.vacation import is_paused, set_vacation_mode


def test_create_strategy_rounds_magnitude(db, user):
    strategy = create_strategy(
        db, user.id, StrategyCreate(name="Slow burn", kind="time_based", magnitude=Decimal("2.505"), interval_days=3)
    )

    assert strategy.id
    assert strategy.magnitude == Decimal("2.51")
    assert strategy.kind == "time_based"


def test_duplicate_strategy_name_is_a_conflict(db, user):
    create_strategy(db, user.id, StrategyCreate(name="Weekly", magnitude=Decimal("5")))

    with pytest.raises(ConflictError) as excinfo:
        create_strategy(db, user.id, StrategyCreate(name="Weekly", magnitude=Decimal("10")))

    assert excinfo.value.code == "duplicate_strategy"


def test_same_name_for_another_user_is_fine(db, user):
    other = User(email="other@example.com")
    db.add(other)
    db.commit()

    create_strategy(db, user.id, StrategyCreate(name="Weekly", magnitude=Decimal("5")))
    create_strategy(db, other.id, StrategyCreate(name="Weekly", magnitude=Decimal("5")))

    assert db.query(Strategy).count() == 2


def test_invalid_strategy_is_rejected_before_insert(db, user):
    with pytest.raises(ValidationError) as excinfo:
        create_strategy(db, user.id, StrategyCreate(name="Too steep", magnitude=Decimal("80")))

    assert excinfo.value.code == "invalid_magnitude"
    assert db.query(Strategy).count() == 0


def test_strategy_in_use_cannot_be_deleted(db, user):
    strategy = make_strategy(db, user)
    make_listing(db, user, strategy_id=strategy.id)

    with pytest.raises(ConflictError) as excinfo:
        delete_strategy(db, user.id, strategy.id)

    assert excinfo.value.code == "strategy_in_use"
    assert db.query(Strategy).count() == 1


def test_unused_strategy_is_deleted(db, user):
    strategy = make_strategy(db, user)

    delete_strategy(db, user.id, strategy.id)

    assert db.query(Strategy).count() == 0


def test_deleting_someone_elses_strategy_is_not_found(db, user):
    strategy = make_strategy(db, user)

    with pytest.raises(LookupError):
        delete_strategy(db, "someone-else", strategy.id)


def test_preview_with_saved_strategy_writes_nothing(db, user):
    strategy = make_strategy(db, user, magnitude=Decimal("10"))
    listing = make_listing(db, user, minimum_price=Decimal("70"))

    preview = compute_strategy_preview(
        db, user.id, StrategyPreviewRequest(listing_id=listing.id, strategy_id=strategy.id, steps=10), now=NOW
    )

    assert preview.new_price == Decimal("90.00")
    assert preview.applied is True
    assert [step.price for step in preview.projection] == [
        Decimal("90.00"), Decimal("81.00"), Decimal("72.90"), Decimal("70.00")
    ]
    assert preview.projection[1].at - preview.projection[0].at == timedelta(days=7)

    db.expire_all()
    stored = db.query(Listing).filter(Listing.id == listing.id).one()
    assert stored.current_price == Decimal("100.00")
    assert stored.price_version == 0


def test_preview_with_adhoc_dollar_strategy(db, user):
    listing = make_listing(db, user)

    preview = compute_strategy_preview(
        db,
        user.id,
        StrategyPreviewRequest(
            listing_id=listing.id,
            strategy=StrategyCreate(name="Try $15", reduction_type="dollar", magnitude=Decimal("15")),
            steps=2,
        ),
        now=NOW,
    )

    assert preview.new_price == Decimal("85.00")
    assert [step.price for step in preview.projection] == [Decimal("85.00"), Decimal("70.00")]


def test_preview_defaults_to_listing_rule(db, user):
    listing = make_listing(db, user, reduction_percentage=Decimal("5"))

    preview = compute_strategy_preview(db, user.id, StrategyPreviewRequest(listing_id=listing.id, steps=1), now=NOW)

    assert preview.new_price == Decimal("95.00")


def test_preview_for_market_strategy_without_data_holds_price(db, user):
    strategy = make_strategy(db, user, name="Market", kind="market_based")
    listing = make_listing(db, user)

    preview = compute_strategy_preview(
        db, user.id, StrategyPreviewRequest(listing_id=listing.id, strategy_id=strategy.id), now=NOW
    )

    assert preview.applied is False
    assert preview.reason == "insufficient_market_data"
    assert preview.projection == []


def test_preview_of_unknown_listing_is_not_found(db, user):
    with pytest.raises(LookupError):
        compute_strategy_preview(db, user.id, StrategyPreviewRequest(listing_id="missing"), now=NOW)


def test_vacation_mode_is_reversible_and_timestamped(db, user):
    set_vacation_mode(db, user.id, True, now=NOW)

    assert is_paused(db, user.id) is True
    assert user.vacation_mode_since is not None

    set_vacation_mode(db, user.id, False)

    assert is_paused(db, user.id) is False
    assert user.vacation_mode_since is None


def test_vacation_for_unknown_user_is_not_found(db):
    with pytest.raises(LookupError):
        set_vacation_mode(db, "missing", True)
