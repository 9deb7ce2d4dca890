from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from decimal import Decimal


class StrategyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    kind: str = "fixed_percentage"
    reduction_type: str = "percentage"
    magnitude: Decimal
    interval_days: int = 7
    active: bool = True


class StrategyResponse(BaseModel):
    id: str
    name: str
    kind: str
    reduction_type: str
    magnitude: Decimal
    interval_days: int
    active: bool

    class Config:
        from_attributes = True


class StrategyPreviewRequest(BaseModel):
    listing_id: str
    strategy_id: Optional[str] = None
    # Ad-hoc strategy when no saved strategy is referenced.
    strategy: Optional[StrategyCreate] = None
    steps: int = Field(default=5, ge=1, le=50)


class PreviewStep(BaseModel):
    step: int
    price: Decimal
    at: datetime


class StrategyPreviewResponse(BaseModel):
    listing_id: str
    current_price: Decimal
    minimum_price: Decimal
    new_price: Decimal
    applied: bool
    reason: str
    warnings: List[str] = []
    projection: List[PreviewStep] = []


class ManualReductionRequest(BaseModel):
    custom_price: Optional[Decimal] = None


class VacationModeRequest(BaseModel):
    enabled: bool


class CatalogListingRequest(BaseModel):
    catalog_id: Optional[str] = None
    title: Optional[str] = None
    description: Optional[str] = None
    price: Decimal
    minimum_price: Decimal
    quantity: int = Field(default=1, ge=1)
    condition: str = "NEW"
    category_id: Optional[str] = None
    image_urls: List[str] = []


class CatalogListingResponse(BaseModel):
    listing_id: str
    sku: str
    ebay_item_id: Optional[str] = None
    created: bool


class ReductionOutcome(BaseModel):
    listing_id: str
    status: str
    reason: Optional[str] = None
    old_price: Optional[Decimal] = None
    new_price: Optional[Decimal] = None


class CycleResult(BaseModel):
    processed: int = 0
    reduced: int = 0
    skipped: int = 0
    failed: int = 0
    outcomes: List[ReductionOutcome] = []


class ReconcileResult(BaseModel):
    imported: int = 0
    updated: int = 0
    closed: int = 0
    conflicts: int = 0
    errors: List[str] = []


class ListingSettingsUpdate(BaseModel):
    """User-owned reduction settings. Omitted fields are left unchanged; an
    explicit ``strategy_id: null`` unassigns the strategy."""

    enable_auto_reduction: Optional[bool] = None
    strategy_id: Optional[str] = None
    minimum_price: Optional[Decimal] = None
    reduction_percentage: Optional[Decimal] = None
    reduction_amount: Optional[Decimal] = None
    reduction_interval_days: Optional[int] = None


class ListingResponse(BaseModel):
    id: str
    ebay_item_id: Optional[str] = None
    sku: Optional[str] = None
    title: str
    listing_status: str
    ended_at: Optional[datetime] = None
    current_price: Decimal
    original_price: Decimal
    minimum_price: Decimal
    strategy_id: Optional[str] = None
    reduction_percentage: Optional[Decimal] = None
    reduction_amount: Optional[Decimal] = None
    reduction_interval_days: int
    enable_auto_reduction: bool
    last_price_reduction: Optional[datetime] = None
    next_price_reduction: Optional[datetime] = None
    total_reductions: int
    sync_status: str
    sync_error: Optional[str] = None

    class Config:
        from_attributes = True


class PriceHistoryEntry(BaseModel):
    id: str
    listing_id: str
    old_price: Decimal
    new_price: Decimal
    reduction_amount: Decimal
    reduction_percentage: Decimal
    strategy_id: Optional[str] = None
    strategy_name: Optional[str] = None
    strategy_kind: str
    trigger: str
    created_at: datetime

    class Config:
        from_attributes = True
