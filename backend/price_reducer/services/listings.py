"""User-owned listing settings and the read side of price history.

Settings are the fields reconciliation never writes: the auto-reduction
flag, the assigned strategy, the floor and the inline rule. Every write is
validated against the listing's pricing before it is committed, and
``next_price_reduction`` is recomputed from the effective rule.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from price_reducer.errors import ValidationError
from price_reducer.models.listing import ListingSettingsUpdate
from price_reducer.models_sqlalchemy.models import (
    Listing,
    ListingStatus,
    PriceReductionEvent,
    ReductionType,
    Strategy,
    StrategyKind,
)
from price_reducer.services.strategy_engine import (
    PricingSnapshot,
    round2,
    validate_pricing,
    validate_strategy_config,
)
from price_reducer.utils.dates import to_utc, utc_now
from price_reducer.utils.logger import logger

INLINE_FIELDS = {"reduction_percentage", "reduction_amount", "reduction_interval_days"}


def _owned_listing(db: Session, user_id: str, listing_id: str) -> Listing:
    listing = db.query(Listing).filter(Listing.id == listing_id, Listing.user_id == user_id).first()
    if listing is None:
        raise LookupError(f"Listing {listing_id} not found")
    return listing


def _validate_inline_rule(percentage, amount, interval_days: int) -> None:
    if amount is not None and Decimal(str(amount)) > 0:
        validate_strategy_config(
            StrategyKind.FIXED_PERCENTAGE.value, ReductionType.DOLLAR.value, amount, interval_days
        )
    else:
        validate_strategy_config(
            StrategyKind.FIXED_PERCENTAGE.value, ReductionType.PERCENTAGE.value, percentage or 0, interval_days
        )


def update_listing_settings(
    db: Session,
    user_id: str,
    listing_id: str,
    update: ListingSettingsUpdate,
    *,
    now: Optional[datetime] = None,
) -> Listing:
    """Apply ``update`` to one of the user's listings.

    Raises ``LookupError`` for a listing or strategy the user does not own
    and ``ValidationError`` when the result would break the pricing rules
    (positive floor when enabled, floor never above the original price).
    """
    now = now or utc_now()
    listing = _owned_listing(db, user_id, listing_id)
    fields = update.model_fields_set

    strategy = listing.strategy
    if "strategy_id" in fields:
        strategy = None
        if update.strategy_id is not None:
            strategy = (
                db.query(Strategy).filter(Strategy.id == update.strategy_id, Strategy.user_id == user_id).first()
            )
            if strategy is None:
                raise LookupError(f"Strategy {update.strategy_id} not found")

    enabled = listing.enable_auto_reduction
    if update.enable_auto_reduction is not None:
        enabled = update.enable_auto_reduction
    if update.enable_auto_reduction and listing.listing_status != ListingStatus.ACTIVE.value:
        raise ValidationError("Only active listings can be reduced automatically", code="listing_not_active")

    minimum = round2(listing.minimum_price)
    if update.minimum_price is not None:
        minimum = round2(update.minimum_price)
    if minimum < 0:
        raise ValidationError("Minimum price cannot be negative", code="invalid_minimum_price")
    if minimum > round2(listing.original_price):
        raise ValidationError("Minimum price cannot exceed the original price", code="floor_above_original")
    if enabled:
        validate_pricing(PricingSnapshot(round2(listing.current_price), round2(listing.original_price), minimum))

    percentage = listing.reduction_percentage
    amount = listing.reduction_amount
    interval_days = listing.reduction_interval_days
    if "reduction_percentage" in fields:
        percentage = round2(update.reduction_percentage) if update.reduction_percentage is not None else None
    if "reduction_amount" in fields:
        amount = round2(update.reduction_amount) if update.reduction_amount is not None else None
    if update.reduction_interval_days is not None:
        interval_days = update.reduction_interval_days
    if fields & INLINE_FIELDS or (enabled and strategy is None):
        _validate_inline_rule(percentage, amount, interval_days)

    listing.strategy_id = strategy.id if strategy is not None else None
    listing.strategy = strategy
    listing.enable_auto_reduction = enabled
    listing.minimum_price = minimum
    listing.reduction_percentage = percentage
    listing.reduction_amount = amount
    listing.reduction_interval_days = interval_days

    if enabled:
        anchor = listing.last_price_reduction or listing.listed_at or listing.created_at or now
        rule_interval = strategy.interval_days if strategy is not None else interval_days
        listing.next_price_reduction = to_utc(anchor) + timedelta(days=int(rule_interval))
    else:
        listing.next_price_reduction = None

    db.commit()
    db.refresh(listing)
    logger.info(
        "[listings] settings updated listing_id=%s user_id=%s enabled=%s strategy_id=%s minimum=%s",
        listing_id, user_id, listing.enable_auto_reduction, listing.strategy_id, listing.minimum_price,
    )
    return listing


def get_price_history(db: Session, user_id: str, listing_id: str) -> List[PriceReductionEvent]:
    """Every recorded price change of a listing, oldest first. Ended listings keep theirs."""
    _owned_listing(db, user_id, listing_id)
    return (
        db.query(PriceReductionEvent)
        .filter(PriceReductionEvent.listing_id == listing_id, PriceReductionEvent.user_id == user_id)
        .order_by(PriceReductionEvent.created_at.asc())
        .all()
    )
