from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime
from decimal import Decimal


class EbayAuthCallback(BaseModel):
    code: str
    state: str


class EbayAuthorizationUrl(BaseModel):
    authorization_url: str
    expires_at: datetime


class EbayTokenResponse(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_in: int
    refresh_token_expires_in: Optional[int] = None
    token_type: str = "User Access Token"


class EbayCredentialsInput(BaseModel):
    app_id: str
    client_secret: str
    dev_id: Optional[str] = None


class EbayConnectionStatus(BaseModel):
    """Public projection of a credential row. Carries no secrets."""

    status: str
    connected: bool
    ebay_user_id: Optional[str] = None
    ebay_username: Optional[str] = None
    app_id: Optional[str] = None
    has_client_secret: bool = False
    access_token_expires_at: Optional[datetime] = None
    refresh_token_expires_at: Optional[datetime] = None
    last_refreshed_at: Optional[datetime] = None
    refresh_error: Optional[str] = None


class RemoteListing(BaseModel):
    """One active listing as reported by the marketplace."""

    item_id: str
    title: str
    current_price: Decimal
    currency: str = "USD"
    quantity_available: int = 0
    sku: Optional[str] = None
    view_count: int = 0
    watch_count: int = 0
    listed_at: Optional[datetime] = None
    ebay_url: Optional[str] = None
    image_url: Optional[str] = None


class ComparableItem(BaseModel):
    item_id: str
    title: str
    price: Decimal
    currency: str = "USD"


class PublishedListing(BaseModel):
    sku: str
    offer_id: Optional[str] = None
    item_id: Optional[str] = None


class ListingPayload(BaseModel):
    """Content pushed to the Inventory API for a catalog-driven listing."""

    sku: str
    title: str
    description: str
    price: Decimal
    currency: str = "USD"
    quantity: int = 1
    condition: str = "NEW"
    category_id: Optional[str] = None
    image_urls: List[str] = []
    aspects: dict = {}
