from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from price_reducer.errors import ValidationError
from price_reducer.services.strategy_engine import (
    MarketSignal,
    PricingSnapshot,
    StrategyRule,
    compute_next_price,
    elapsed_intervals,
    project_schedule,
    round2,
    rule_for_listing,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def snapshot(current="100", original="100", minimum="90", listed_days_ago=10):
    return PricingSnapshot(
        current_price=Decimal(current),
        original_price=Decimal(original),
        minimum_price=Decimal(minimum),
        listed_at=NOW - timedelta(days=listed_days_ago),
    )


def rule(kind="fixed_percentage", reduction_type="percentage", magnitude="15", interval_days=7):
    return StrategyRule(
        kind=kind,
        reduction_type=reduction_type,
        magnitude=Decimal(magnitude),
        interval_days=interval_days,
    )


def test_percentage_reduction_clamps_to_floor():
    """100 at 15% would be 85; the 90 floor wins and the change still applies."""
    result = compute_next_price(snapshot(), rule(), now=NOW)

    assert result.new_price == Decimal("90.00")
    assert result.applied is True
    assert result.reason == "clamped_to_floor"


def test_percentage_reduction_above_floor():
    result = compute_next_price(snapshot(minimum="50"), rule(magnitude="10"), now=NOW)

    assert result.new_price == Decimal("90.00")
    assert result.applied is True
    assert result.reason == "reduced"


def test_dollar_reduction():
    result = compute_next_price(
        snapshot(current="49.99", original="59.99", minimum="30"),
        rule(reduction_type="dollar", magnitude="5"),
        now=NOW,
    )

    assert result.new_price == Decimal("44.99")
    assert result.applied is True


def test_listing_already_at_floor_is_not_applied():
    result = compute_next_price(snapshot(current="90"), rule(), now=NOW)

    assert result.applied is False
    assert result.reason == "at_floor"
    assert result.new_price == Decimal("90.00")


def test_rounding_is_half_up_to_cents():
    # 19.99 * 0.95 = 18.9905 -> 18.99
    result = compute_next_price(snapshot(current="19.99", original="19.99", minimum="1"), rule(magnitude="5"), now=NOW)
    assert result.new_price == Decimal("18.99")
    assert round2("2.345") == Decimal("2.35")


def test_tiny_step_that_rounds_to_current_price_is_not_applied():
    result = compute_next_price(
        snapshot(current="0.10", original="0.10", minimum="0.01"), rule(magnitude="1"), now=NOW
    )

    assert result.applied is False
    assert result.new_price == Decimal("0.10")


@pytest.mark.parametrize("average,expected_price,applied", [
    ("95", Decimal("95.00"), True),
    ("105", Decimal("100.00"), False),
    ("80", Decimal("90.00"), True),
])
def test_market_based_follows_average_within_bounds(average, expected_price, applied):
    signal = MarketSignal(average_price=Decimal(average), lowest_price=None, competitor_count=12)

    result = compute_next_price(snapshot(), rule(kind="market_based"), signal, now=NOW)

    assert result.new_price == expected_price
    assert result.applied is applied
    assert result.warnings == ()


def test_market_based_without_data_is_a_no_op():
    result = compute_next_price(snapshot(), rule(kind="market_based"), None, now=NOW)

    assert result.applied is False
    assert result.reason == "insufficient_market_data"


def test_market_based_low_confidence_warns_but_applies():
    signal = MarketSignal(average_price=Decimal("95"), lowest_price=Decimal("89"), competitor_count=3)

    result = compute_next_price(snapshot(), rule(kind="market_based"), signal, now=NOW)

    assert result.applied is True
    assert result.new_price == Decimal("95.00")
    assert result.warnings == ("low_confidence_market_signal:3_competitors",)


def test_time_based_step_grows_with_listing_age():
    """Two whole weekly intervals elapsed: factor 1 + 0.5 * 2 = 2, so 10% becomes 20%."""
    result = compute_next_price(
        snapshot(minimum="10", listed_days_ago=15),
        rule(kind="time_based", magnitude="10"),
        now=NOW,
    )

    assert result.new_price == Decimal("80.00")


def test_time_based_factor_is_capped_at_double_step():
    result = compute_next_price(
        snapshot(minimum="10", listed_days_ago=200),
        rule(kind="time_based", magnitude="10"),
        now=NOW,
    )

    assert result.new_price == Decimal("80.00")


def test_result_never_exceeds_original_price():
    """A current price above original (manual eBay edit) is pulled back under the ceiling."""
    result = compute_next_price(
        snapshot(current="150", original="100", minimum="50"), rule(magnitude="10"), now=NOW
    )

    assert result.new_price == Decimal("100.00")
    assert result.applied is True


def test_compute_is_pure():
    snap, r = snapshot(minimum="10"), rule(magnitude="10")
    first = compute_next_price(snap, r, now=NOW)
    second = compute_next_price(snap, r, now=NOW)

    assert first == second
    assert snap.current_price == Decimal("100")


@pytest.mark.parametrize("bad_rule,code", [
    (rule(kind="random_walk"), "invalid_strategy_kind"),
    (rule(reduction_type="ratio"), "invalid_reduction_type"),
    (rule(magnitude="0"), "invalid_magnitude"),
    (rule(magnitude="75"), "invalid_magnitude"),
    (rule(reduction_type="dollar", magnitude="1000"), "invalid_magnitude"),
    (rule(interval_days=0), "invalid_interval"),
    (rule(interval_days=366), "invalid_interval"),
])
def test_malformed_configuration_raises(bad_rule, code):
    with pytest.raises(ValidationError) as excinfo:
        compute_next_price(snapshot(), bad_rule, now=NOW)
    assert excinfo.value.code == code


def test_floor_above_original_raises():
    with pytest.raises(ValidationError) as excinfo:
        compute_next_price(snapshot(original="80", minimum="90"), rule(), now=NOW)
    assert excinfo.value.code == "floor_above_original"


def test_elapsed_intervals_counts_whole_intervals_only():
    assert elapsed_intervals(NOW - timedelta(days=13, hours=23), 7, NOW) == 1
    assert elapsed_intervals(NOW - timedelta(days=14), 7, NOW) == 2
    assert elapsed_intervals(NOW + timedelta(days=1), 7, NOW) == 0
    assert elapsed_intervals(None, 7, NOW) == 0


def test_project_schedule_walks_down_to_floor():
    schedule = project_schedule(snapshot(minimum="70"), rule(magnitude="10"), None, start=NOW, steps=10)

    assert [price for _, price in schedule] == [
        Decimal("90.00"),
        Decimal("81.00"),
        Decimal("72.90"),
        Decimal("70.00"),
    ]
    assert schedule[1][0] - schedule[0][0] == timedelta(days=7)


def test_inline_rule_prefers_dollar_amount_when_set():
    class Row:
        strategy = None
        reduction_amount = Decimal("2.50")
        reduction_percentage = Decimal("5")
        reduction_interval_days = 3

    inline = rule_for_listing(Row())

    assert inline.reduction_type == "dollar"
    assert inline.magnitude == Decimal("2.50")
    assert inline.interval_days == 3
    assert inline.strategy_id is None
