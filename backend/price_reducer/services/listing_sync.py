"""One-way reconciliation of eBay listings into local records.

The rule that matters: sync never overwrites user intent. Only
marketplace-owned columns (see ``MARKETPLACE_FIELDS`` and the price) are
written; strategy, floor, inline rule and the auto-reduction flag belong to
the user.

Price writes go through the same optimistic check the scheduler uses
(``price_version`` unchanged and no reduction claim in flight). A listing
that loses that race is left alone and counted as a conflict; the next run
picks it up.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional, Set

from sqlalchemy.orm import Session

from price_reducer.config import settings
from price_reducer.errors import AuthError, ConflictError, MarketplaceRejection, TransientError, ValidationError
from price_reducer.models.ebay import ListingPayload, RemoteListing
from price_reducer.models.listing import (
    CatalogListingRequest,
    CatalogListingResponse,
    ListingResponse,
    ReconcileResult,
)
from price_reducer.models_sqlalchemy import SessionLocal
from price_reducer.models_sqlalchemy.models import Listing, ListingSource, ListingStatus, SyncStatus, User
from price_reducer.services.catalog_client import KeepaClient
from price_reducer.services.ebay_api_client import client_for_user
from price_reducer.services.strategy_engine import CENT, round2
from price_reducer.utils.dates import to_utc, utc_now
from price_reducer.utils.logger import logger
from price_reducer.utils.sku import content_fingerprint, generate_sku

IMPORTED = "imported"
UPDATED = "updated"
UNCHANGED = "unchanged"

MARKETPLACE_FIELDS = (
    "title",
    "currency",
    "quantity_available",
    "view_count",
    "watch_count",
    "ebay_url",
    "image_url",
)


def is_sync_fresh(db: Session, user_id: str, now: Optional[datetime] = None) -> bool:
    """True when a reconciliation of the user completed within ``SYNC_FRESHNESS_HOURS``.

    Reads ``users.last_reconciled_at``, which only :meth:`ListingSynchronizer.reconcile`
    writes, so publishing a single listing does not count as a sync.
    """
    now = now or utc_now()
    latest = db.query(User.last_reconciled_at).filter(User.id == user_id).scalar()
    if latest is None:
        return False
    return now - to_utc(latest) < timedelta(hours=settings.SYNC_FRESHNESS_HOURS)


def default_minimum_price(price: Decimal) -> Decimal:
    return max(round2(price * Decimal(str(settings.DEFAULT_MINIMUM_PRICE_RATIO))), CENT)


class ListingSynchronizer:

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        client_factory=client_for_user,
        catalog_client: Optional[KeepaClient] = None,
    ):
        self._session_factory = session_factory
        self._client_factory = client_factory
        self._catalog = catalog_client or KeepaClient()

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def reconcile(self, user_id: str, now: Optional[datetime] = None) -> ReconcileResult:
        now = now or utc_now()
        db = self._session_factory()
        try:
            client = self._client_factory(db, user_id)
            remote_listings = await client.list_active_listings()

            result = ReconcileResult()
            seen: Set[str] = set()
            for remote in remote_listings:
                if not remote.item_id:
                    continue
                seen.add(remote.item_id)
                try:
                    outcome = self._reconcile_one(db, user_id, remote, now)
                except ConflictError as exc:
                    db.rollback()
                    result.conflicts += 1
                    logger.info("[sync] user_id=%s item_id=%s skipped: %s", user_id, remote.item_id, exc.message)
                    continue
                except ValidationError as exc:
                    db.rollback()
                    logger.warning("[sync] user_id=%s item_id=%s rejected: %s", user_id, remote.item_id, exc.message)
                    result.errors.append(f"{remote.item_id}: {exc.message}")
                    continue
                except Exception as exc:
                    db.rollback()
                    logger.error(
                        "[sync] user_id=%s item_id=%s failed: %s", user_id, remote.item_id, exc, exc_info=True
                    )
                    result.errors.append(f"{remote.item_id}: {exc}")
                    continue
                if outcome == IMPORTED:
                    result.imported += 1
                elif outcome == UPDATED:
                    result.updated += 1

            result.closed = self._close_missing(db, user_id, seen, now)
            db.query(User).filter(User.id == user_id).update(
                {User.last_reconciled_at: now}, synchronize_session=False
            )
            db.commit()
        finally:
            db.close()

        logger.info(
            "[sync] user_id=%s remote=%s imported=%s updated=%s closed=%s conflicts=%s errors=%s",
            user_id, len(seen), result.imported, result.updated, result.closed, result.conflicts, len(result.errors),
        )
        return result

    def _find_local(self, db: Session, user_id: str, remote: RemoteListing) -> Optional[Listing]:
        listing = (
            db.query(Listing)
            .filter(Listing.user_id == user_id, Listing.ebay_item_id == remote.item_id)
            .first()
        )
        if listing is None and remote.sku:
            listing = db.query(Listing).filter(Listing.user_id == user_id, Listing.sku == remote.sku).first()
        return listing

    def _reconcile_one(self, db: Session, user_id: str, remote: RemoteListing, now: datetime) -> str:
        price = round2(remote.current_price)
        if price <= 0:
            raise ValidationError(f"eBay reports no usable price ({price})", code="invalid_remote_price")
        local = self._find_local(db, user_id, remote)

        if local is None:
            db.add(
                Listing(
                    user_id=user_id,
                    ebay_item_id=remote.item_id,
                    sku=remote.sku,
                    source=ListingSource.TRADING_API.value,
                    title=remote.title,
                    currency=remote.currency,
                    ebay_url=remote.ebay_url,
                    image_url=remote.image_url,
                    listed_at=remote.listed_at,
                    quantity_available=remote.quantity_available,
                    view_count=remote.view_count,
                    watch_count=remote.watch_count,
                    current_price=price,
                    original_price=price,
                    minimum_price=default_minimum_price(price),
                    enable_auto_reduction=False,
                    strategy_id=None,
                    listing_status=ListingStatus.ACTIVE.value,
                    sync_status=SyncStatus.SYNCED.value,
                    last_synced_with_ebay=now,
                )
            )
            db.commit()
            logger.info("[sync] imported item_id=%s user_id=%s price=%s", remote.item_id, user_id, price)
            return IMPORTED

        changes = {}
        for field in MARKETPLACE_FIELDS:
            value = getattr(remote, field)
            if value is not None and getattr(local, field) != value:
                changes[field] = value
        if local.ebay_item_id is None:
            changes["ebay_item_id"] = remote.item_id
        if remote.listed_at is not None and to_utc(local.listed_at) != to_utc(remote.listed_at):
            changes["listed_at"] = remote.listed_at
        if local.listing_status != ListingStatus.ACTIVE.value:
            changes["listing_status"] = ListingStatus.ACTIVE.value
            changes["ended_at"] = None

        bookkeeping = {"last_synced_with_ebay": now}
        if local.sync_status == SyncStatus.PENDING.value:
            bookkeeping["sync_status"] = SyncStatus.SYNCED.value
            bookkeeping["sync_error"] = None

        if price != round2(local.current_price):
            if price < round2(local.minimum_price):
                logger.warning(
                    "[sync] item_id=%s eBay price %s is below the floor %s", remote.item_id, price, local.minimum_price
                )
            values = {getattr(Listing, key): value for key, value in {**changes, **bookkeeping}.items()}
            values[Listing.current_price] = price
            values[Listing.price_version] = local.price_version + 1
            written = (
                db.query(Listing)
                .filter(
                    Listing.id == local.id,
                    Listing.price_version == local.price_version,
                    Listing.reduction_lock_token.is_(None),
                )
                .update(values, synchronize_session=False)
            )
            if written != 1:
                raise ConflictError(f"price of {remote.item_id} changed or is being reduced", code="price_conflict")
            db.commit()
            return UPDATED

        for key, value in {**changes, **bookkeeping}.items():
            setattr(local, key, value)
        db.commit()
        return UPDATED if changes else UNCHANGED

    def _close_missing(self, db: Session, user_id: str, seen: Set[str], now: datetime) -> int:
        query = db.query(Listing).filter(
            Listing.user_id == user_id,
            Listing.listing_status == ListingStatus.ACTIVE.value,
            Listing.ebay_item_id.isnot(None),
        )
        if seen:
            query = query.filter(Listing.ebay_item_id.notin_(seen))

        closed = 0
        for listing in query.all():
            listing.listing_status = ListingStatus.ENDED.value
            listing.ended_at = now
            closed += 1
            logger.info("[sync] closed item_id=%s user_id=%s", listing.ebay_item_id, user_id)
        db.commit()
        return closed

    # ------------------------------------------------------------------
    # Catalog-driven creation
    # ------------------------------------------------------------------

    async def create_listing_from_catalog(
        self,
        user_id: str,
        request: CatalogListingRequest,
        now: Optional[datetime] = None,
    ) -> CatalogListingResponse:
        now = now or utc_now()
        price = round2(request.price)
        floor = round2(request.minimum_price)
        if floor <= 0:
            raise ValidationError("Minimum price must be greater than zero", code="invalid_minimum_price")
        if floor > price:
            raise ValidationError("Minimum price cannot exceed the listing price", code="floor_above_original")

        title, description = request.title, request.description
        images, aspects = list(request.image_urls), {}
        if request.catalog_id and not (title and description and images):
            product = await self._catalog.fetch_product(request.catalog_id)
            title = title or product.title
            description = description or product.description
            images = images or product.images
            aspects = product.attributes
        if not title:
            raise ValidationError("A title is required when no catalog product is given", code="missing_title")
        description = description or title

        catalog_id = request.catalog_id.strip().upper() if request.catalog_id else None
        db = self._session_factory()
        try:
            user = db.query(User).filter(User.id == user_id).first()
            if user is None:
                raise LookupError(f"User {user_id} not found")

            fingerprint = content_fingerprint(
                title=title,
                description=description,
                price=price,
                quantity=request.quantity,
                condition=request.condition,
                category_id=request.category_id,
            )
            sku = generate_sku(user_id, catalog_id, fingerprint, user.sku_prefix)
            payload = ListingPayload(
                sku=sku,
                title=title,
                description=description,
                price=price,
                currency=settings.EBAY_CURRENCY,
                quantity=request.quantity,
                condition=request.condition,
                category_id=request.category_id,
                image_urls=images,
                aspects=aspects,
            )

            listing = db.query(Listing).filter(Listing.user_id == user_id, Listing.sku == sku).first()
            created = listing is None
            if created:
                listing = Listing(
                    user_id=user_id,
                    sku=sku,
                    catalog_id=catalog_id,
                    source=ListingSource.INVENTORY_API.value,
                    title=title[:80],
                    currency=settings.EBAY_CURRENCY,
                    image_url=images[0] if images else None,
                    quantity_available=request.quantity,
                    current_price=price,
                    original_price=price,
                    minimum_price=floor,
                    enable_auto_reduction=False,
                    sync_status=SyncStatus.PENDING.value,
                )
                db.add(listing)
                db.commit()
            listing_id, offer_id = listing.id, listing.offer_id

            client = self._client_factory(db, user_id)
            try:
                if offer_id:
                    logger.info("[sync] sku=%s already exists, revising offer_id=%s", sku, offer_id)
                    await client.update_catalog_listing(payload, offer_id)
                    item_id = None
                else:
                    published = await client.publish_listing(payload)
                    offer_id, item_id = published.offer_id, published.item_id
            except (MarketplaceRejection, TransientError, AuthError) as exc:
                status = SyncStatus.PENDING.value if isinstance(exc, TransientError) else SyncStatus.ERROR.value
                db.query(Listing).filter(Listing.id == listing_id).update(
                    {Listing.sync_status: status, Listing.sync_error: exc.message}, synchronize_session=False
                )
                db.commit()
                raise

            listing = db.query(Listing).filter(Listing.id == listing_id).first()
            listing.offer_id = offer_id
            if item_id and listing.ebay_item_id is None:
                listing.ebay_item_id = item_id
            listing.sync_status = SyncStatus.SYNCED.value
            listing.sync_error = None
            listing.last_synced_with_ebay = now
            db.commit()

            logger.info(
                "[sync] catalog listing sku=%s item_id=%s created=%s user_id=%s",
                sku, listing.ebay_item_id, created, user_id,
            )
            return CatalogListingResponse(
                listing_id=listing_id, sku=sku, ebay_item_id=listing.ebay_item_id, created=created
            )
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Ending
    # ------------------------------------------------------------------

    async def end_listing(
        self,
        user_id: str,
        listing_id: str,
        *,
        reason: str = "NotAvailable",
        now: Optional[datetime] = None,
    ) -> ListingResponse:
        """End the item on eBay, then soft-close the local record.

        The row and its price history are kept. eBay reporting the item as
        already closed counts as success.
        """
        now = now or utc_now()
        db = self._session_factory()
        try:
            listing = db.query(Listing).filter(Listing.id == listing_id, Listing.user_id == user_id).first()
            if listing is None:
                raise LookupError(f"Listing {listing_id} not found")
            if listing.listing_status == ListingStatus.ENDED.value:
                return ListingResponse.model_validate(listing)
            if not listing.ebay_item_id:
                raise ValidationError("Listing has not been published on eBay", code="missing_item_id")
            item_id = listing.ebay_item_id
            db.rollback()

            client = self._client_factory(db, user_id)
            try:
                await client.end_listing(item_id, reason)
            except MarketplaceRejection as exc:
                if not _already_ended(exc):
                    self._record_sync_error(db, listing_id, exc.message, SyncStatus.ERROR.value)
                    raise
                logger.info("[sync] item_id=%s was already closed on eBay", item_id)
            except (TransientError, AuthError) as exc:
                status = SyncStatus.PENDING.value if isinstance(exc, TransientError) else SyncStatus.ERROR.value
                self._record_sync_error(db, listing_id, exc.message, status)
                raise

            listing = db.query(Listing).filter(Listing.id == listing_id).first()
            listing.listing_status = ListingStatus.ENDED.value
            listing.ended_at = now
            listing.sync_status = SyncStatus.SYNCED.value
            listing.sync_error = None
            db.commit()
            db.refresh(listing)
            logger.info("[sync] ended item_id=%s listing_id=%s user_id=%s", item_id, listing_id, user_id)
            return ListingResponse.model_validate(listing)
        finally:
            db.close()

    def _record_sync_error(self, db: Session, listing_id: str, error: str, sync_status: str) -> None:
        db.query(Listing).filter(Listing.id == listing_id).update(
            {Listing.sync_status: sync_status, Listing.sync_error: error}, synchronize_session=False
        )
        db.commit()


def _already_ended(exc: MarketplaceRejection) -> bool:
    # 1047: "Auction has already been closed."
    return exc.error_id == "1047" or "already" in exc.message.lower()


listing_synchronizer = ListingSynchronizer()
