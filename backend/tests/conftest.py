from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from price_reducer.config import settings
from price_reducer.models.ebay import ComparableItem, PublishedListing, RemoteListing
from price_reducer.models_sqlalchemy import Base
from price_reducer.models_sqlalchemy.models import Listing, Strategy, User

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch):
    """Deterministic settings: sandbox eBay app, fixed key, no backoff or pacing."""
    monkeypatch.setattr(settings, "ENCRYPTION_KEY", "test-encryption-key")
    monkeypatch.setattr(settings, "EBAY_ENVIRONMENT", "sandbox")
    monkeypatch.setattr(settings, "EBAY_SANDBOX_CLIENT_ID", "platform-client-id")
    monkeypatch.setattr(settings, "EBAY_SANDBOX_CERT_ID", "platform-cert-id")
    monkeypatch.setattr(settings, "EBAY_SANDBOX_RUNAME", "Test_RuName")
    monkeypatch.setattr(settings, "MARKETPLACE_BACKOFF_SECONDS", 0.0)
    monkeypatch.setattr(settings, "MARKETPLACE_CALLS_PER_MINUTE", 0)
    monkeypatch.setattr(settings, "KEEPA_API_KEY", "keepa-test-key")


@pytest.fixture
def session_factory(tmp_path):
    """File-backed SQLite so concurrent sessions see each other's commits."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'price_reducer_test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db):
    row = User(email="seller@example.com")
    db.add(row)
    db.commit()
    db.refresh(row)
    return row


def make_strategy(db, user, **overrides) -> Strategy:
    values = dict(
        user_id=user.id,
        name="Weekly 10%",
        kind="fixed_percentage",
        reduction_type="percentage",
        magnitude=Decimal("10"),
        interval_days=7,
        active=True,
    )
    values.update(overrides)
    strategy = Strategy(**values)
    db.add(strategy)
    db.commit()
    db.refresh(strategy)
    return strategy


def make_listing(db, user, **overrides) -> Listing:
    values = dict(
        user_id=user.id,
        ebay_item_id="110000000001",
        title="Vintage Canon AE-1 35mm film camera body",
        current_price=Decimal("100.00"),
        original_price=Decimal("100.00"),
        minimum_price=Decimal("60.00"),
        reduction_percentage=Decimal("10"),
        reduction_interval_days=7,
        enable_auto_reduction=True,
        listed_at=NOW - timedelta(days=10),
        created_at=NOW - timedelta(days=10),
    )
    values.update(overrides)
    listing = Listing(**values)
    db.add(listing)
    db.commit()
    db.refresh(listing)
    return listing


def remote(item_id: str, price: str, **overrides) -> RemoteListing:
    values = dict(
        item_id=item_id,
        title=f"Remote item {item_id}",
        current_price=Decimal(price),
        currency="USD",
        quantity_available=1,
        listed_at=NOW - timedelta(days=3),
    )
    values.update(overrides)
    return RemoteListing(**values)


class FakeMarketplaceClient:
    """Stands in for EbayApiClient; records calls and replays scripted results."""

    def __init__(self):
        self.remote_listings: List[RemoteListing] = []
        self.comparables: List[ComparableItem] = []
        self.price_updates = []
        self.published = []
        self.revised = []
        self.searches = []
        self.update_error: Optional[Exception] = None
        self.list_error: Optional[Exception] = None
        self.publish_error: Optional[Exception] = None
        self.end_error: Optional[Exception] = None
        self.ended = []
        self.before_update = None

    async def update_price(self, **kwargs):
        if self.before_update is not None:
            self.before_update(kwargs)
        if self.update_error is not None:
            raise self.update_error
        self.price_updates.append(kwargs)

    async def list_active_listings(self):
        if self.list_error is not None:
            raise self.list_error
        return list(self.remote_listings)

    async def publish_listing(self, payload):
        if self.publish_error is not None:
            raise self.publish_error
        self.published.append(payload)
        return PublishedListing(sku=payload.sku, offer_id="OFFER-1", item_id="120000000001")

    async def update_catalog_listing(self, payload, offer_id):
        self.revised.append((payload, offer_id))

    async def end_listing(self, item_id, reason="NotAvailable"):
        if self.end_error is not None:
            raise self.end_error
        self.ended.append(item_id)

    async def search_comparables(self, keywords, *, limit=50):
        self.searches.append(keywords)
        return list(self.comparables)


@pytest.fixture
def fake_client():
    return FakeMarketplaceClient()


@pytest.fixture
def client_factory(fake_client):
    def factory(db, user_id):
        return fake_client

    return factory
