"""Saved strategies and the dry-run preview.

Strategies are per user and referenced by listings through ``strategy_id``.
Deleting one that is still referenced is refused; callers deactivate it
instead.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from price_reducer.errors import ConflictError
from price_reducer.models.listing import (
    PreviewStep,
    StrategyCreate,
    StrategyPreviewRequest,
    StrategyPreviewResponse,
)
from price_reducer.models_sqlalchemy.models import Listing, Strategy
from price_reducer.services.strategy_engine import (
    StrategyRule,
    compute_next_price,
    project_schedule,
    round2,
    rule_for_listing,
    rule_from_strategy,
    signal_from_listing,
    snapshot_from_listing,
    validate_strategy_config,
)
from price_reducer.utils.dates import utc_now
from price_reducer.utils.logger import logger


def create_strategy(db: Session, user_id: str, payload: StrategyCreate) -> Strategy:
    validate_strategy_config(payload.kind, payload.reduction_type, payload.magnitude, payload.interval_days)

    exists = db.query(Strategy.id).filter(Strategy.user_id == user_id, Strategy.name == payload.name).first()
    if exists:
        raise ConflictError(f"A strategy named '{payload.name}' already exists", code="duplicate_strategy")

    strategy = Strategy(
        user_id=user_id,
        name=payload.name,
        kind=payload.kind,
        reduction_type=payload.reduction_type,
        magnitude=round2(payload.magnitude),
        interval_days=payload.interval_days,
        active=payload.active,
    )
    db.add(strategy)
    db.commit()
    db.refresh(strategy)
    logger.info("[strategies] created strategy_id=%s user_id=%s kind=%s", strategy.id, user_id, strategy.kind)
    return strategy


def delete_strategy(db: Session, user_id: str, strategy_id: str) -> None:
    strategy = db.query(Strategy).filter(Strategy.id == strategy_id, Strategy.user_id == user_id).first()
    if strategy is None:
        raise LookupError(f"Strategy {strategy_id} not found")

    in_use = db.query(Listing.id).filter(Listing.strategy_id == strategy_id).count()
    if in_use:
        raise ConflictError(
            f"Strategy is assigned to {in_use} listing(s); deactivate it instead",
            code="strategy_in_use",
        )
    db.delete(strategy)
    db.commit()
    logger.info("[strategies] deleted strategy_id=%s user_id=%s", strategy_id, user_id)


def compute_strategy_preview(
    db: Session,
    user_id: str,
    request: StrategyPreviewRequest,
    now: Optional[datetime] = None,
) -> StrategyPreviewResponse:
    """Run the engine for a listing and a candidate strategy. Nothing is written."""
    now = now or utc_now()
    listing = db.query(Listing).filter(Listing.id == request.listing_id, Listing.user_id == user_id).first()
    if listing is None:
        raise LookupError(f"Listing {request.listing_id} not found")

    if request.strategy_id:
        strategy = (
            db.query(Strategy).filter(Strategy.id == request.strategy_id, Strategy.user_id == user_id).first()
        )
        if strategy is None:
            raise LookupError(f"Strategy {request.strategy_id} not found")
        rule = rule_from_strategy(strategy)
    elif request.strategy is not None:
        candidate = request.strategy
        validate_strategy_config(candidate.kind, candidate.reduction_type, candidate.magnitude, candidate.interval_days)
        rule = StrategyRule(
            kind=candidate.kind,
            reduction_type=candidate.reduction_type,
            magnitude=round2(candidate.magnitude),
            interval_days=candidate.interval_days,
            name=candidate.name,
        )
    else:
        rule = rule_for_listing(listing)

    snapshot = snapshot_from_listing(listing)
    signal = signal_from_listing(listing)
    result = compute_next_price(snapshot, rule, signal, now=now)
    schedule = project_schedule(snapshot, rule, signal, start=now, steps=request.steps)
    return StrategyPreviewResponse(
        listing_id=listing.id,
        current_price=snapshot.current_price,
        minimum_price=snapshot.minimum_price,
        new_price=result.new_price,
        applied=result.applied,
        reason=result.reason,
        warnings=list(result.warnings),
        projection=[PreviewStep(step=i + 1, price=price, at=at) for i, (at, price) in enumerate(schedule)],
    )
