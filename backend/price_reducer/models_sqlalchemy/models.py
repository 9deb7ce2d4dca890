from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
import enum
import uuid

from . import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ListingStatus(str, enum.Enum):
    ACTIVE = "Active"
    ENDED = "Ended"


class SyncStatus(str, enum.Enum):
    SYNCED = "synced"
    PENDING = "pending"
    ERROR = "error"


class ListingSource(str, enum.Enum):
    TRADING_API = "trading_api"
    INVENTORY_API = "inventory_api"


class StrategyKind(str, enum.Enum):
    FIXED_PERCENTAGE = "fixed_percentage"
    MARKET_BASED = "market_based"
    TIME_BASED = "time_based"


class ReductionType(str, enum.Enum):
    PERCENTAGE = "percentage"
    DOLLAR = "dollar"


class ConnectionStatus(str, enum.Enum):
    DISCONNECTED = "disconnected"
    AUTHORIZING = "authorizing"
    CONNECTED = "connected"
    EXPIRED = "expired"


class ReductionTrigger(str, enum.Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True, nullable=False)
    # Durable pause gate, read fresh by the scheduler on every cycle.
    vacation_mode = Column(Boolean, nullable=False, default=False)
    vacation_mode_since = Column(DateTime(timezone=True), nullable=True)
    sku_prefix = Column(String(16), nullable=False, default="SKU-")
    # Written only by a completed reconciliation; gates SYNC_FRESHNESS_HOURS.
    last_reconciled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    listings = relationship("Listing", back_populates="user")
    strategies = relationship("Strategy", back_populates="user")
    credential = relationship("MarketplaceCredential", back_populates="user", uselist=False)


class Strategy(Base):
    __tablename__ = "strategies"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(100), nullable=False)
    kind = Column(String(32), nullable=False, default=StrategyKind.FIXED_PERCENTAGE.value)
    reduction_type = Column(String(16), nullable=False, default=ReductionType.PERCENTAGE.value)
    magnitude = Column(Numeric(12, 2), nullable=False)
    interval_days = Column(Integer, nullable=False, default=7)
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="strategies")
    listings = relationship("Listing", back_populates="strategy")

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_strategies_user_name"),
        Index("idx_strategies_user_id", "user_id"),
    )


class Listing(Base):
    __tablename__ = "listings"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    # Identity
    ebay_item_id = Column(String(64), nullable=True)
    sku = Column(String(80), nullable=True)
    offer_id = Column(String(64), nullable=True)
    catalog_id = Column(String(32), nullable=True)
    source = Column(String(32), nullable=False, default=ListingSource.TRADING_API.value)

    # Marketplace-owned content
    title = Column(Text, nullable=False, default="")
    currency = Column(String(3), nullable=False, default="USD")
    ebay_url = Column(Text, nullable=True)
    image_url = Column(Text, nullable=True)
    listed_at = Column(DateTime(timezone=True), nullable=True)
    quantity_available = Column(Integer, nullable=False, default=0)
    view_count = Column(Integer, nullable=False, default=0)
    watch_count = Column(Integer, nullable=False, default=0)
    listing_status = Column(String(16), nullable=False, default=ListingStatus.ACTIVE.value)
    ended_at = Column(DateTime(timezone=True), nullable=True)

    # Pricing. current_price is the single authoritative price field; every
    # committed write bumps price_version.
    current_price = Column(Numeric(12, 2), nullable=False)
    original_price = Column(Numeric(12, 2), nullable=False)
    minimum_price = Column(Numeric(12, 2), nullable=False)
    price_version = Column(Integer, nullable=False, default=0)

    # User-owned reduction configuration. strategy_id wins over the inline rule.
    strategy_id = Column(String(36), ForeignKey("strategies.id", ondelete="RESTRICT"), nullable=True)
    reduction_percentage = Column(Numeric(5, 2), nullable=True, default=5)
    reduction_amount = Column(Numeric(12, 2), nullable=True)
    reduction_interval_days = Column(Integer, nullable=False, default=7)
    enable_auto_reduction = Column(Boolean, nullable=False, default=False)

    # Scheduler state
    last_price_reduction = Column(DateTime(timezone=True), nullable=True)
    next_price_reduction = Column(DateTime(timezone=True), nullable=True)
    total_reductions = Column(Integer, nullable=False, default=0)
    reduction_lock_token = Column(String(36), nullable=True)
    reduction_locked_at = Column(DateTime(timezone=True), nullable=True)

    # Market signal
    market_average_price = Column(Numeric(12, 2), nullable=True)
    market_lowest_price = Column(Numeric(12, 2), nullable=True)
    market_competitor_count = Column(Integer, nullable=True)
    market_analyzed_at = Column(DateTime(timezone=True), nullable=True)

    # Sync metadata
    last_synced_with_ebay = Column(DateTime(timezone=True), nullable=True)
    sync_status = Column(String(16), nullable=False, default=SyncStatus.SYNCED.value)
    sync_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="listings")
    strategy = relationship("Strategy", back_populates="listings")
    reduction_events = relationship("PriceReductionEvent", back_populates="listing")

    __table_args__ = (
        UniqueConstraint("user_id", "ebay_item_id", name="uq_listings_user_item"),
        UniqueConstraint("user_id", "sku", name="uq_listings_user_sku"),
        CheckConstraint("minimum_price <= original_price", name="ck_listings_minimum_within_original"),
        CheckConstraint(
            "NOT enable_auto_reduction OR minimum_price > 0", name="ck_listings_enabled_requires_minimum"
        ),
        CheckConstraint(
            "reduction_interval_days BETWEEN 1 AND 365", name="ck_listings_interval_range"
        ),
        Index("idx_listings_user_status", "user_id", "listing_status"),
        Index("idx_listings_auto_reduction", "enable_auto_reduction", "listing_status"),
        Index("idx_listings_strategy_id", "strategy_id"),
    )


class PriceReductionEvent(Base):
    """Append-only price history. Rows are never updated or deleted."""

    __tablename__ = "price_reduction_events"

    id = Column(String(36), primary_key=True, default=_uuid)
    listing_id = Column(String(36), ForeignKey("listings.id", ondelete="RESTRICT"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    ebay_item_id = Column(String(64), nullable=True)
    old_price = Column(Numeric(12, 2), nullable=False)
    new_price = Column(Numeric(12, 2), nullable=False)
    reduction_amount = Column(Numeric(12, 2), nullable=False)
    reduction_percentage = Column(Numeric(6, 2), nullable=False)
    strategy_id = Column(String(36), nullable=True)
    strategy_name = Column(String(100), nullable=True)
    strategy_kind = Column(String(32), nullable=False)
    trigger = Column(String(16), nullable=False, default=ReductionTrigger.SCHEDULED.value)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)

    listing = relationship("Listing", back_populates="reduction_events")

    __table_args__ = (
        Index("idx_price_reduction_events_listing", "listing_id", "created_at"),
        Index("idx_price_reduction_events_user", "user_id"),
    )


class MarketplaceCredential(Base):
    """One eBay connection per user.

    Secret columns hold ``ENC:v1:`` blobs. There are deliberately no
    decrypting accessors here; only the credential vault decrypts.
    """

    __tablename__ = "ebay_credentials"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)

    app_id = Column(String(255), nullable=True)
    _client_secret = Column("client_secret", Text, nullable=True)
    dev_id = Column(String(255), nullable=True)

    _access_token = Column("access_token", Text, nullable=True)
    _refresh_token = Column("refresh_token", Text, nullable=True)
    access_token_expires_at = Column(DateTime(timezone=True), nullable=True)
    refresh_token_expires_at = Column(DateTime(timezone=True), nullable=True)

    ebay_user_id = Column(String(64), nullable=True)
    ebay_username = Column(String(255), nullable=True)
    connection_status = Column(String(16), nullable=False, default=ConnectionStatus.DISCONNECTED.value)
    connected_at = Column(DateTime(timezone=True), nullable=True)
    last_refreshed_at = Column(DateTime(timezone=True), nullable=True)
    refresh_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    user = relationship("User", back_populates="credential")

    __table_args__ = (
        Index("idx_ebay_credentials_status_expiry", "connection_status", "access_token_expires_at"),
    )


class OAuthState(Base):
    """Short-lived PKCE correlation row, consumed on the first callback."""

    __tablename__ = "oauth_states"

    id = Column(String(36), primary_key=True, default=_uuid)
    state_hash = Column(String(64), nullable=False, unique=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    _code_verifier = Column("code_verifier", Text, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    expires_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_oauth_states_expires_at", "expires_at"),
    )
