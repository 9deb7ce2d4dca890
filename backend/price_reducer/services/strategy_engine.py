"""Pure price computation, one function per strategy kind.

Nothing in this module touches the network or the database. Callers hand in
plain snapshots (see :func:`snapshot_from_listing`) and an explicit ``now``,
which keeps every computation reproducible and table-testable.

Money policy: ``Decimal`` quantized to cents with ROUND_HALF_UP. A computed
price that rounds to the current price is reported as ``applied=False``.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, Dict, List, Optional, Tuple

from price_reducer.errors import ValidationError
from price_reducer.models_sqlalchemy.models import ReductionType, StrategyKind
from price_reducer.utils.dates import to_utc

CENT = Decimal("0.01")

PERCENTAGE_RANGE = (Decimal("1"), Decimal("50"))
DOLLAR_RANGE = (Decimal("1"), Decimal("999"))
INTERVAL_RANGE = (1, 365)

# time_based: each whole elapsed interval adds half a step, capped at a double step.
TIME_BASED_STEP_GROWTH = Decimal("0.5")
TIME_BASED_MAX_FACTOR = Decimal("2")

# Below this many comparable listings the market average is flagged as weak.
LOW_CONFIDENCE_COMPETITORS = 5


def round2(value) -> Decimal:
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PricingSnapshot:
    current_price: Decimal
    original_price: Decimal
    minimum_price: Decimal
    listed_at: Optional[datetime] = None


@dataclass(frozen=True)
class StrategyRule:
    kind: str
    reduction_type: str
    magnitude: Decimal
    interval_days: int
    strategy_id: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class MarketSignal:
    average_price: Optional[Decimal] = None
    lowest_price: Optional[Decimal] = None
    competitor_count: int = 0


@dataclass(frozen=True)
class PriceComputation:
    new_price: Decimal
    applied: bool
    reason: str
    warnings: Tuple[str, ...] = field(default_factory=tuple)


def validate_strategy_config(kind: str, reduction_type: str, magnitude, interval_days: int) -> None:
    """Raise :class:`ValidationError` for a malformed strategy definition."""
    kinds = {k.value for k in StrategyKind}
    if kind not in kinds:
        raise ValidationError(f"Unknown strategy kind '{kind}'", code="invalid_strategy_kind")

    types = {t.value for t in ReductionType}
    if reduction_type not in types:
        raise ValidationError(f"Unknown reduction type '{reduction_type}'", code="invalid_reduction_type")

    try:
        magnitude = Decimal(str(magnitude))
    except ArithmeticError as exc:
        raise ValidationError("Strategy magnitude must be a number", code="invalid_magnitude") from exc

    # market_based follows the market average; magnitude is informational there.
    if kind != StrategyKind.MARKET_BASED.value:
        low, high = PERCENTAGE_RANGE if reduction_type == ReductionType.PERCENTAGE.value else DOLLAR_RANGE
        if not (low <= magnitude <= high):
            raise ValidationError(
                f"Magnitude {magnitude} outside {low}-{high} for {reduction_type} reductions",
                code="invalid_magnitude",
            )

    if not isinstance(interval_days, int) or not (INTERVAL_RANGE[0] <= interval_days <= INTERVAL_RANGE[1]):
        raise ValidationError(
            f"Interval must be between {INTERVAL_RANGE[0]} and {INTERVAL_RANGE[1]} days",
            code="invalid_interval",
        )


def validate_pricing(snapshot: PricingSnapshot) -> None:
    if snapshot.minimum_price <= 0:
        raise ValidationError("Minimum price must be greater than zero", code="invalid_minimum_price")
    if snapshot.minimum_price > snapshot.original_price:
        raise ValidationError("Minimum price cannot exceed the original price", code="floor_above_original")


def elapsed_intervals(listed_at: Optional[datetime], interval_days: int, now: datetime) -> int:
    if listed_at is None:
        return 0
    age = to_utc(now) - to_utc(listed_at)
    if age <= timedelta(0):
        return 0
    return int(age / timedelta(days=interval_days))


def _step(current: Decimal, rule: StrategyRule, factor: Decimal = Decimal("1")) -> Decimal:
    magnitude = Decimal(str(rule.magnitude)) * factor
    if rule.reduction_type == ReductionType.DOLLAR.value:
        return round2(current - magnitude)
    return round2(current * (Decimal("1") - magnitude / Decimal("100")))


def _fixed(snapshot, rule, signal, now) -> Tuple[Optional[Decimal], str, List[str]]:
    return _step(snapshot.current_price, rule), "reduced", []


def _time_based(snapshot, rule, signal, now) -> Tuple[Optional[Decimal], str, List[str]]:
    intervals = elapsed_intervals(snapshot.listed_at, rule.interval_days, now)
    factor = min(Decimal("1") + TIME_BASED_STEP_GROWTH * intervals, TIME_BASED_MAX_FACTOR)
    return _step(snapshot.current_price, rule, factor), "reduced", []


def _market_based(snapshot, rule, signal, now) -> Tuple[Optional[Decimal], str, List[str]]:
    if signal is None or signal.average_price is None or signal.competitor_count <= 0:
        return None, "insufficient_market_data", []

    warnings = []
    if signal.competitor_count < LOW_CONFIDENCE_COMPETITORS:
        warnings.append(f"low_confidence_market_signal:{signal.competitor_count}_competitors")

    average = round2(signal.average_price)
    if average >= snapshot.current_price:
        return None, "market_above_current", warnings
    return average, "reduced", warnings


_HANDLERS: Dict[str, Callable] = {
    StrategyKind.FIXED_PERCENTAGE.value: _fixed,
    StrategyKind.TIME_BASED.value: _time_based,
    StrategyKind.MARKET_BASED.value: _market_based,
}


def compute_next_price(
    snapshot: PricingSnapshot,
    rule: StrategyRule,
    signal: Optional[MarketSignal] = None,
    *,
    now: datetime,
) -> PriceComputation:
    """Return the next price for ``snapshot`` under ``rule``.

    The result is always within ``[minimum_price, original_price]`` when
    applied. Only malformed configuration raises.
    """
    validate_strategy_config(rule.kind, rule.reduction_type, rule.magnitude, rule.interval_days)
    validate_pricing(snapshot)

    current = round2(snapshot.current_price)
    floor = round2(snapshot.minimum_price)
    ceiling = round2(snapshot.original_price)
    snapshot = PricingSnapshot(current, ceiling, floor, snapshot.listed_at)

    if current <= floor:
        return PriceComputation(current, False, "at_floor")

    candidate, reason, warnings = _HANDLERS[rule.kind](snapshot, rule, signal, now)
    if candidate is None:
        return PriceComputation(current, False, reason, tuple(warnings))

    candidate = min(candidate, ceiling)
    new_price = max(floor, candidate)
    if new_price == floor and candidate < floor:
        reason = "clamped_to_floor"

    if new_price >= current:
        return PriceComputation(current, False, "no_change", tuple(warnings))
    return PriceComputation(new_price, True, reason, tuple(warnings))


def project_schedule(
    snapshot: PricingSnapshot,
    rule: StrategyRule,
    signal: Optional[MarketSignal],
    *,
    start: datetime,
    steps: int,
) -> List[Tuple[datetime, Decimal]]:
    """Dry-run the next ``steps`` reductions, one interval apart.

    Stops early once a step would not change the price (floor reached or
    market no-op).
    """
    schedule = []
    at = start
    for _ in range(steps):
        result = compute_next_price(snapshot, rule, signal, now=at)
        if not result.applied:
            break
        schedule.append((at, result.new_price))
        snapshot = PricingSnapshot(
            result.new_price, snapshot.original_price, snapshot.minimum_price, snapshot.listed_at
        )
        at = at + timedelta(days=rule.interval_days)
    return schedule


# ---------------------------------------------------------------------------
# Adapters from stored rows. They only read attributes.
# ---------------------------------------------------------------------------

def snapshot_from_listing(listing) -> PricingSnapshot:
    return PricingSnapshot(
        current_price=round2(listing.current_price),
        original_price=round2(listing.original_price),
        minimum_price=round2(listing.minimum_price),
        listed_at=to_utc(listing.listed_at or listing.created_at),
    )


def rule_from_strategy(strategy) -> StrategyRule:
    return StrategyRule(
        kind=strategy.kind,
        reduction_type=strategy.reduction_type,
        magnitude=Decimal(str(strategy.magnitude)),
        interval_days=int(strategy.interval_days),
        strategy_id=strategy.id,
        name=strategy.name,
    )


def rule_for_listing(listing) -> StrategyRule:
    """Assigned strategy if any, otherwise the listing's inline fixed rule."""
    if listing.strategy is not None:
        return rule_from_strategy(listing.strategy)

    if listing.reduction_amount is not None and Decimal(str(listing.reduction_amount)) > 0:
        reduction_type, magnitude = ReductionType.DOLLAR.value, Decimal(str(listing.reduction_amount))
    else:
        reduction_type = ReductionType.PERCENTAGE.value
        magnitude = Decimal(str(listing.reduction_percentage or 0))
    return StrategyRule(
        kind=StrategyKind.FIXED_PERCENTAGE.value,
        reduction_type=reduction_type,
        magnitude=magnitude,
        interval_days=int(listing.reduction_interval_days),
        name="listing_default",
    )


def signal_from_listing(listing) -> Optional[MarketSignal]:
    if listing.market_average_price is None:
        return None
    return MarketSignal(
        average_price=Decimal(str(listing.market_average_price)),
        lowest_price=(
            Decimal(str(listing.market_lowest_price)) if listing.market_lowest_price is not None else None
        ),
        competitor_count=int(listing.market_competitor_count or 0),
    )
