from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from price_reducer.models.ebay import (
    EbayAuthorizationUrl,
    EbayConnectionStatus,
    EbayCredentialsInput,
)
from price_reducer.models.listing import (
    CatalogListingRequest,
    CatalogListingResponse,
    CycleResult,
    ListingResponse,
    ListingSettingsUpdate,
    ManualReductionRequest,
    PriceHistoryEntry,
    ReconcileResult,
    ReductionOutcome,
    StrategyCreate,
    StrategyPreviewRequest,
    StrategyPreviewResponse,
    StrategyResponse,
    VacationModeRequest,
)
from price_reducer.models_sqlalchemy import get_db
from price_reducer.models_sqlalchemy.models import User
from price_reducer.services.auth import get_current_user
from price_reducer.services.credential_vault import credential_vault
from price_reducer.services.ebay_oauth import ebay_oauth_service
from price_reducer.services.listings import get_price_history, update_listing_settings
from price_reducer.services.listing_sync import is_sync_fresh, listing_synchronizer
from price_reducer.services.reduction_scheduler import reduction_scheduler
from price_reducer.services.strategy_service import compute_strategy_preview, create_strategy, delete_strategy
from price_reducer.services.vacation import set_vacation_mode
from price_reducer.utils.logger import logger

router = APIRouter(prefix="/price-reducer", tags=["price-reducer"])


# ---- Reconciliation and reduction ----


@router.post("/sync", response_model=Optional[ReconcileResult])
async def trigger_reconciliation(
    force: bool = Query(False, description="Run even if the last sync is still fresh"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Pull active listings from eBay. Returns null when the last sync is still fresh."""
    if not force and is_sync_fresh(db, current_user.id):
        logger.info(f"Skipping sync for user {current_user.id}: last sync is fresh")
        return None
    return await listing_synchronizer.reconcile(current_user.id)


@router.post("/cycle", response_model=CycleResult)
async def trigger_reduction_cycle(current_user: User = Depends(get_current_user)):
    """Run a cycle over the caller's own due listings. The global cycle belongs to the worker."""
    logger.info(f"Reduction cycle requested by user {current_user.id}")
    return await reduction_scheduler.run_cycle(user_id=current_user.id)


@router.post("/preview", response_model=StrategyPreviewResponse)
async def preview_strategy(
    request: StrategyPreviewRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return compute_strategy_preview(db, current_user.id, request)


@router.post("/listings/{listing_id}/reduce", response_model=ReductionOutcome)
async def reduce_listing(
    listing_id: str,
    request: ManualReductionRequest,
    current_user: User = Depends(get_current_user),
):
    return await reduction_scheduler.reduce_listing_now(
        current_user.id, listing_id, custom_price=request.custom_price
    )


@router.put("/listings/{listing_id}/settings", response_model=ListingResponse)
async def update_settings(
    listing_id: str,
    payload: ListingSettingsUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Enroll a listing: auto-reduction flag, strategy, floor and inline rule."""
    return update_listing_settings(db, current_user.id, listing_id, payload)


@router.get("/listings/{listing_id}/history", response_model=List[PriceHistoryEntry])
async def listing_price_history(
    listing_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return get_price_history(db, current_user.id, listing_id)


@router.post("/listings/{listing_id}/end", response_model=ListingResponse)
async def end_listing(
    listing_id: str,
    current_user: User = Depends(get_current_user),
):
    return await listing_synchronizer.end_listing(current_user.id, listing_id)


@router.post("/listings/catalog", response_model=CatalogListingResponse)
async def create_catalog_listing(
    request: CatalogListingRequest,
    current_user: User = Depends(get_current_user),
):
    return await listing_synchronizer.create_listing_from_catalog(current_user.id, request)


# ---- eBay connection ----


@router.get("/ebay/connect", response_model=EbayAuthorizationUrl)
async def connect_marketplace(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return ebay_oauth_service.start_authorization(db, current_user.id)


@router.get("/ebay/callback", response_model=EbayConnectionStatus)
async def handle_oauth_callback(
    code: str = Query(...),
    state: str = Query(...),
    db: Session = Depends(get_db),
):
    """eBay redirects the browser here; the state identifies the user."""
    return await ebay_oauth_service.handle_callback(db, code, state)


@router.post("/ebay/disconnect", response_model=EbayConnectionStatus)
async def disconnect_marketplace(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return await ebay_oauth_service.disconnect(db, current_user.id)


@router.get("/ebay/status", response_model=EbayConnectionStatus)
async def get_connection_status(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return credential_vault.get_connection_status(db, current_user.id)


@router.put("/ebay/credentials", response_model=EbayConnectionStatus)
async def store_credentials(
    payload: EbayCredentialsInput,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return credential_vault.put(
        db,
        current_user.id,
        app_id=payload.app_id,
        client_secret=payload.client_secret,
        dev_id=payload.dev_id,
    )


# ---- User settings ----


@router.put("/vacation")
async def update_vacation_mode(
    request: VacationModeRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    user = set_vacation_mode(db, current_user.id, request.enabled)
    return {"vacation_mode": user.vacation_mode, "vacation_mode_since": user.vacation_mode_since}


@router.post("/strategies", response_model=StrategyResponse, status_code=status.HTTP_201_CREATED)
async def add_strategy(
    payload: StrategyCreate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return create_strategy(db, current_user.id, payload)


@router.delete("/strategies/{strategy_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_strategy(
    strategy_id: str,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    delete_strategy(db, current_user.id, strategy_id)
