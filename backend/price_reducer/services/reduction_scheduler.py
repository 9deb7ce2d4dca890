"""One reduction cycle over every due listing.

A cycle is triggered from outside (worker tick or HTTP) and is safe to run
twice at once: each listing is claimed with a compare-and-swap on
``price_version`` plus ``reduction_lock_token`` before eBay is called, and
the new price is committed with a second CAS on the same token. A listing
whose claim fails is skipped for this cycle.

Database writes are always committed before awaiting eBay, so no
transaction is held open across network I/O.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, List, Optional
from uuid import uuid4

from sqlalchemy import or_
from sqlalchemy.orm import Session

from price_reducer.config import settings
from price_reducer.errors import AuthError, MarketplaceRejection, TransientError, ValidationError
from price_reducer.models.listing import CycleResult, ReductionOutcome
from price_reducer.models_sqlalchemy import SessionLocal
from price_reducer.models_sqlalchemy.models import (
    Listing,
    ListingSource,
    ListingStatus,
    PriceReductionEvent,
    ReductionTrigger,
    SyncStatus,
    User,
)
from price_reducer.services.ebay_api_client import EbayApiClient, client_for_user
from price_reducer.services.strategy_engine import (
    PriceComputation,
    PricingSnapshot,
    StrategyRule,
    compute_next_price,
    round2,
    rule_for_listing,
    signal_from_listing,
    snapshot_from_listing,
)
from price_reducer.services.vacation import is_paused
from price_reducer.utils.dates import to_utc, utc_now
from price_reducer.utils.logger import logger

REDUCED = "reduced"
SKIPPED = "skipped"
FAILED = "failed"


def interval_days_for(listing: Listing) -> int:
    if listing.strategy is not None:
        return int(listing.strategy.interval_days)
    return int(listing.reduction_interval_days)


def is_due(listing: Listing, now: datetime) -> bool:
    """Interval elapsed since the last reduction, or since the listing went live."""
    anchor = listing.last_price_reduction or listing.listed_at or listing.created_at
    if anchor is None:
        return True
    return to_utc(now) - to_utc(anchor) >= timedelta(days=interval_days_for(listing))


def manual_price(snapshot: PricingSnapshot, custom_price) -> PriceComputation:
    price = round2(custom_price)
    if price < snapshot.minimum_price:
        raise ValidationError(
            f"Price {price} is below the minimum price {snapshot.minimum_price}", code="below_minimum_price"
        )
    if price >= snapshot.current_price:
        raise ValidationError(
            f"Price {price} must be lower than the current price {snapshot.current_price}",
            code="not_a_reduction",
        )
    return PriceComputation(price, True, "manual")


class ReductionScheduler:

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        client_factory: Callable[[Session, str], EbayApiClient] = client_for_user,
        max_concurrency: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self._client_factory = client_factory
        self._max_concurrency = max_concurrency or settings.REDUCTION_MAX_CONCURRENCY

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def select_candidates(self, db: Session, now: datetime, user_id: Optional[str] = None) -> List[str]:
        query = (
            db.query(Listing)
            .join(User, Listing.user_id == User.id)
            .filter(
                Listing.enable_auto_reduction.is_(True),
                Listing.listing_status == ListingStatus.ACTIVE.value,
                User.vacation_mode.is_(False),
            )
        )
        if user_id is not None:
            query = query.filter(Listing.user_id == user_id)
        listings = query.all()
        return [listing.id for listing in listings if is_due(listing, now)]

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self, now: Optional[datetime] = None, *, user_id: Optional[str] = None) -> CycleResult:
        """Reduce every due listing, or only ``user_id``'s when given."""
        now = now or utc_now()
        db = self._session_factory()
        try:
            listing_ids = self.select_candidates(db, now, user_id)
        finally:
            db.close()

        logger.info(
            "[scheduler] cycle start candidates=%s now=%s user_id=%s", len(listing_ids), now.isoformat(), user_id
        )
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _run_safe(listing_id: str) -> ReductionOutcome:
            async with semaphore:
                try:
                    return await self.process_listing(listing_id, now)
                except Exception as exc:
                    logger.error(
                        "[scheduler] listing_id=%s failed unexpectedly: %s", listing_id, exc, exc_info=True
                    )
                    return ReductionOutcome(listing_id=listing_id, status=FAILED, reason=f"unexpected: {exc}")

        outcomes = list(await asyncio.gather(*[_run_safe(listing_id) for listing_id in listing_ids]))
        result = CycleResult(
            processed=len(outcomes),
            reduced=sum(1 for o in outcomes if o.status == REDUCED),
            skipped=sum(1 for o in outcomes if o.status == SKIPPED),
            failed=sum(1 for o in outcomes if o.status == FAILED),
            outcomes=outcomes,
        )
        logger.info(
            "[scheduler] cycle done processed=%s reduced=%s skipped=%s failed=%s",
            result.processed, result.reduced, result.skipped, result.failed,
        )
        return result

    async def reduce_listing_now(
        self,
        user_id: str,
        listing_id: str,
        *,
        custom_price: Optional[Decimal] = None,
        now: Optional[datetime] = None,
    ) -> ReductionOutcome:
        """Manual reduction: ignores due-ness and vacation, same single-flight path."""
        db = self._session_factory()
        try:
            owner = db.query(Listing.user_id).filter(Listing.id == listing_id).scalar()
        finally:
            db.close()
        if owner is None or owner != user_id:
            raise LookupError(f"Listing {listing_id} not found")
        return await self.process_listing(
            listing_id,
            now or utc_now(),
            trigger=ReductionTrigger.MANUAL.value,
            custom_price=custom_price,
        )

    # ------------------------------------------------------------------
    # Per listing
    # ------------------------------------------------------------------

    async def process_listing(
        self,
        listing_id: str,
        now: datetime,
        *,
        trigger: str = ReductionTrigger.SCHEDULED.value,
        custom_price: Optional[Decimal] = None,
    ) -> ReductionOutcome:
        manual = trigger == ReductionTrigger.MANUAL.value
        db = self._session_factory()
        try:
            listing = db.query(Listing).filter(Listing.id == listing_id).first()
            if listing is None:
                return ReductionOutcome(listing_id=listing_id, status=SKIPPED, reason="not_found")

            skip_reason = self._skip_reason(db, listing, now, manual)
            if skip_reason:
                return ReductionOutcome(listing_id=listing_id, status=SKIPPED, reason=skip_reason)

            rule = rule_for_listing(listing)
            snapshot = snapshot_from_listing(listing)
            try:
                if custom_price is not None:
                    computation = manual_price(snapshot, custom_price)
                else:
                    computation = compute_next_price(snapshot, rule, signal_from_listing(listing), now=now)
            except ValidationError as exc:
                if manual:
                    raise
                self._record_failure(db, listing_id, exc.message, SyncStatus.ERROR.value)
                logger.warning("[scheduler] listing_id=%s invalid configuration: %s", listing_id, exc.message)
                return ReductionOutcome(listing_id=listing_id, status=FAILED, reason=f"validation: {exc.message}")

            for warning in computation.warnings:
                logger.info("[scheduler] listing_id=%s warning=%s", listing_id, warning)

            if not computation.applied:
                return ReductionOutcome(
                    listing_id=listing_id,
                    status=SKIPPED,
                    reason=computation.reason,
                    old_price=snapshot.current_price,
                )

            target = {
                "user_id": listing.user_id,
                "item_id": listing.ebay_item_id,
                "sku": listing.sku,
                "offer_id": listing.offer_id,
                "currency": listing.currency,
                "use_inventory_api": listing.source == ListingSource.INVENTORY_API.value,
            }
            version = listing.price_version
            db.rollback()

            token = self._claim(db, listing_id, version, now)
            if token is None:
                logger.info("[scheduler] listing_id=%s claim lost, skipping this cycle", listing_id)
                return ReductionOutcome(listing_id=listing_id, status=SKIPPED, reason="conflict")

            return await self._apply(db, listing_id, token, version, snapshot, computation, rule, trigger, target, now)
        finally:
            db.close()

    def _skip_reason(self, db: Session, listing: Listing, now: datetime, manual: bool) -> Optional[str]:
        if listing.listing_status != ListingStatus.ACTIVE.value:
            return "not_active"
        if listing.strategy is not None and not listing.strategy.active:
            return "strategy_inactive"
        if manual:
            return None
        if not listing.enable_auto_reduction:
            return "auto_reduction_disabled"
        if is_paused(db, listing.user_id):
            return "vacation_mode"
        if not is_due(listing, now):
            return "not_due"
        return None

    async def _apply(
        self,
        db: Session,
        listing_id: str,
        token: str,
        version: int,
        snapshot: PricingSnapshot,
        computation: PriceComputation,
        rule: StrategyRule,
        trigger: str,
        target: dict,
        now: datetime,
    ) -> ReductionOutcome:
        old_price = snapshot.current_price
        new_price = computation.new_price
        client = self._client_factory(db, target["user_id"])
        try:
            await client.update_price(
                item_id=target["item_id"],
                new_price=new_price,
                currency=target["currency"],
                sku=target["sku"],
                offer_id=target["offer_id"],
                use_inventory_api=target["use_inventory_api"],
            )
        except MarketplaceRejection as exc:
            self._release(db, listing_id, token, exc.message, SyncStatus.ERROR.value)
            logger.warning("[scheduler] listing_id=%s rejected by eBay: %s", listing_id, exc.message)
            return ReductionOutcome(
                listing_id=listing_id, status=FAILED, reason=f"rejected: {exc.message}", old_price=old_price
            )
        except TransientError as exc:
            self._release(db, listing_id, token, exc.message, SyncStatus.PENDING.value)
            logger.warning("[scheduler] listing_id=%s transient failure, deferred: %s", listing_id, exc.message)
            return ReductionOutcome(
                listing_id=listing_id, status=FAILED, reason=f"transient: {exc.message}", old_price=old_price
            )
        except AuthError as exc:
            self._release(db, listing_id, token, exc.message)
            logger.warning("[scheduler] listing_id=%s auth failure: %s", listing_id, exc.message)
            return ReductionOutcome(
                listing_id=listing_id, status=FAILED, reason=f"auth: {exc.code}", old_price=old_price
            )
        except Exception:
            self._release(db, listing_id, token, "Unexpected error during price update", SyncStatus.ERROR.value)
            raise

        if not self._commit(db, listing_id, token, version, old_price, computation, rule, trigger, now):
            # eBay has the new price but our claim was taken over; let the
            # next reconciliation bring the authoritative price back.
            self._release(db, listing_id, token, "Price changed while the eBay update was in flight")
            self._record_failure(
                db, listing_id, "Price changed while the eBay update was in flight", SyncStatus.PENDING.value
            )
            logger.error("[scheduler] listing_id=%s lost claim after eBay update, marked pending", listing_id)
            return ReductionOutcome(listing_id=listing_id, status=SKIPPED, reason="conflict", old_price=old_price)

        logger.info(
            "[scheduler] listing_id=%s reduced %s -> %s (%s, %s)",
            listing_id, old_price, new_price, rule.kind, computation.reason,
        )
        return ReductionOutcome(
            listing_id=listing_id, status=REDUCED, reason=computation.reason, old_price=old_price, new_price=new_price
        )

    # ------------------------------------------------------------------
    # Optimistic concurrency helpers
    # ------------------------------------------------------------------

    def _claim(self, db: Session, listing_id: str, version: int, now: datetime) -> Optional[str]:
        stale_before = now - timedelta(minutes=settings.REDUCTION_LOCK_STALE_MINUTES)
        token = str(uuid4())
        claimed = (
            db.query(Listing)
            .filter(
                Listing.id == listing_id,
                Listing.price_version == version,
                or_(Listing.reduction_lock_token.is_(None), Listing.reduction_locked_at < stale_before),
            )
            .update(
                {Listing.reduction_lock_token: token, Listing.reduction_locked_at: now},
                synchronize_session=False,
            )
        )
        db.commit()
        return token if claimed == 1 else None

    def _commit(
        self,
        db: Session,
        listing_id: str,
        token: str,
        version: int,
        old_price: Decimal,
        computation: PriceComputation,
        rule: StrategyRule,
        trigger: str,
        now: datetime,
    ) -> bool:
        new_price = computation.new_price
        updated = (
            db.query(Listing)
            .filter(
                Listing.id == listing_id,
                Listing.reduction_lock_token == token,
                Listing.price_version == version,
            )
            .update(
                {
                    Listing.current_price: new_price,
                    Listing.price_version: version + 1,
                    Listing.last_price_reduction: now,
                    Listing.next_price_reduction: now + timedelta(days=rule.interval_days),
                    Listing.total_reductions: Listing.total_reductions + 1,
                    Listing.sync_status: SyncStatus.SYNCED.value,
                    Listing.sync_error: None,
                    Listing.reduction_lock_token: None,
                    Listing.reduction_locked_at: None,
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            db.rollback()
            return False

        amount = old_price - new_price
        listing = db.query(Listing).filter(Listing.id == listing_id).first()
        db.add(
            PriceReductionEvent(
                listing_id=listing_id,
                user_id=listing.user_id,
                ebay_item_id=listing.ebay_item_id,
                old_price=old_price,
                new_price=new_price,
                reduction_amount=amount,
                reduction_percentage=round2(amount / old_price * 100),
                strategy_id=rule.strategy_id,
                strategy_name=rule.name,
                strategy_kind=rule.kind,
                trigger=trigger,
                created_at=now,
            )
        )
        db.commit()
        return True

    def _release(
        self,
        db: Session,
        listing_id: str,
        token: str,
        error: str,
        sync_status: Optional[str] = None,
    ) -> None:
        db.rollback()
        values = {
            Listing.reduction_lock_token: None,
            Listing.reduction_locked_at: None,
            Listing.sync_error: error,
        }
        if sync_status is not None:
            values[Listing.sync_status] = sync_status
        db.query(Listing).filter(Listing.id == listing_id, Listing.reduction_lock_token == token).update(
            values, synchronize_session=False
        )
        db.commit()

    def _record_failure(self, db: Session, listing_id: str, error: str, sync_status: str) -> None:
        db.query(Listing).filter(Listing.id == listing_id).update(
            {Listing.sync_error: error, Listing.sync_status: sync_status}, synchronize_session=False
        )
        db.commit()


reduction_scheduler = ReductionScheduler()
