"""Authenticated eBay calls used by the scheduler, the synchronizer and market analysis.

One client instance serves one user. Every call:

- asks the token provider for a valid access token (refreshing if needed),
- waits on the shared :data:`marketplace_budget`,
- classifies the outcome into the error taxonomy: 4xx business rule ->
  :class:`MarketplaceRejection`, 429/5xx/timeout -> :class:`TransientError`,
- retries transient failures with exponential backoff (tenacity),
- retries a 401 exactly once with a forced token refresh.
"""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from xml.etree import ElementTree as ET
from xml.sax.saxutils import escape

import httpx
from tenacity import AsyncRetrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from price_reducer.config import settings
from price_reducer.errors import AuthError, MarketplaceRejection, TransientError
from price_reducer.models.ebay import ComparableItem, ListingPayload, PublishedListing, RemoteListing
from price_reducer.services.ebay_oauth import ebay_oauth_service
from price_reducer.services.rate_limit import RateLimitBudget, marketplace_budget
from price_reducer.utils.logger import logger

NS = {"e": "urn:ebay:apis:eBLBaseComponents"}

# Trading API error codes that mean "token invalid or expired".
TRADING_AUTH_ERROR_CODES = {"931", "932", "16110", "21916013", "21917053"}

TokenProvider = Callable[..., Awaitable[str]]


def _xml_text(val: Any) -> str:
    return escape("" if val is None else str(val))


def _money(value: Decimal) -> str:
    return f"{Decimal(value):.2f}"


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if not raw:
        return None
    try:
        return max(float(raw), 0.0)
    except ValueError:
        return None


def _rest_error_message(response: httpx.Response) -> Tuple[str, Optional[str]]:
    try:
        body = response.json()
    except ValueError:
        return (response.text or "")[:300] or f"HTTP {response.status_code}", None
    errors = body.get("errors") if isinstance(body, dict) else None
    if errors:
        first = errors[0]
        return first.get("longMessage") or first.get("message") or str(first), str(first.get("errorId") or "")
    return str(body)[:300], None


def parse_trading_response(xml_text: str) -> Dict[str, Any]:
    """Compact summary of a Trading API response: ack, item id, errors, warnings."""
    out: Dict[str, Any] = {"ack": None, "item_id": None, "errors": [], "warnings": []}
    if not xml_text:
        return out
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError:
        out["parse_error"] = "invalid_xml"
        return out

    out["ack"] = root.findtext(".//e:Ack", default=None, namespaces=NS)
    out["item_id"] = root.findtext("e:ItemID", default=None, namespaces=NS)
    for err in root.findall(".//e:Errors", namespaces=NS):
        entry = {
            "code": err.findtext("e:ErrorCode", default=None, namespaces=NS),
            "severity": err.findtext("e:SeverityCode", default=None, namespaces=NS),
            "short": err.findtext("e:ShortMessage", default=None, namespaces=NS),
            "long": err.findtext("e:LongMessage", default=None, namespaces=NS),
            "classification": err.findtext("e:ErrorClassification", default=None, namespaces=NS),
        }
        if entry["severity"] == "Warning":
            out["warnings"].append(entry)
        else:
            out["errors"].append(entry)
    return out


def _is_trading_auth_failure(response: httpx.Response) -> bool:
    if response.status_code == 401:
        return True
    if response.status_code != 200:
        return False
    parsed = parse_trading_response(response.text)
    return any(err["code"] in TRADING_AUTH_ERROR_CODES for err in parsed["errors"])


def _raise_for_trading_errors(parsed: Dict[str, Any], call_name: str) -> None:
    if parsed.get("parse_error"):
        raise TransientError(f"{call_name}: unreadable response from eBay", code="invalid_xml")
    if parsed["ack"] not in ("Failure", "PartialFailure") or not parsed["errors"]:
        return
    err = parsed["errors"][0]
    message = f"{call_name}: {err.get('long') or err.get('short') or 'request failed'}"
    if err.get("classification") == "SystemError":
        raise TransientError(message, code="ebay_system_error")
    raise MarketplaceRejection(message, error_id=err.get("code"))


def parse_active_listings(xml_text: str, currency: str = "USD") -> Tuple[List[RemoteListing], int]:
    """Parse a GetMyeBaySelling ActiveList page. Returns (listings, total_pages)."""
    root = ET.fromstring(xml_text)
    active = root.find(".//e:ActiveList", namespaces=NS)
    if active is None:
        return [], 0

    total_pages = int(active.findtext("e:PaginationResult/e:TotalNumberOfPages", default="0", namespaces=NS) or 0)
    listings = []
    for item in active.findall("e:ItemArray/e:Item", namespaces=NS):
        price_el = item.find("e:SellingStatus/e:CurrentPrice", namespaces=NS)
        if price_el is None:
            price_el = item.find("e:BuyItNowPrice", namespaces=NS)
        quantity = item.findtext("e:QuantityAvailable", default=None, namespaces=NS)
        if quantity is None:
            total = int(item.findtext("e:Quantity", default="0", namespaces=NS) or 0)
            sold = int(item.findtext("e:SellingStatus/e:QuantitySold", default="0", namespaces=NS) or 0)
            quantity = max(total - sold, 0)
        listings.append(
            RemoteListing(
                item_id=item.findtext("e:ItemID", default="", namespaces=NS),
                title=item.findtext("e:Title", default="", namespaces=NS),
                current_price=Decimal(price_el.text) if price_el is not None and price_el.text else Decimal("0"),
                currency=(price_el.get("currencyID") if price_el is not None else None) or currency,
                quantity_available=int(quantity),
                sku=item.findtext("e:SKU", default=None, namespaces=NS),
                view_count=int(item.findtext("e:HitCount", default="0", namespaces=NS) or 0),
                watch_count=int(item.findtext("e:WatchCount", default="0", namespaces=NS) or 0),
                listed_at=item.findtext("e:ListingDetails/e:StartTime", default=None, namespaces=NS),
                ebay_url=item.findtext("e:ListingDetails/e:ViewItemURL", default=None, namespaces=NS),
                image_url=item.findtext("e:PictureDetails/e:GalleryURL", default=None, namespaces=NS),
            )
        )
    return listings, total_pages


class EbayApiClient:

    def __init__(
        self,
        user_id: str,
        token_provider: TokenProvider,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        budget: Optional[RateLimitBudget] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
    ):
        self.user_id = user_id
        self._token_provider = token_provider
        self._transport = transport
        self._budget = budget or marketplace_budget
        self._max_attempts = max_attempts or settings.MARKETPLACE_MAX_ATTEMPTS
        self._backoff = settings.MARKETPLACE_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds

    @property
    def base_url(self) -> str:
        return settings.ebay_api_base_url.rstrip("/")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(settings.MARKETPLACE_TIMEOUT_SECONDS, connect=5.0),
            transport=self._transport,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=stop_after_attempt(self._max_attempts),
            wait=wait_exponential(multiplier=self._backoff, min=0, max=settings.MARKETPLACE_BACKOFF_MAX_SECONDS),
            retry=retry_if_exception_type(TransientError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _send_once(
        self,
        method: str,
        url: str,
        build_headers: Callable[[str], Dict[str, str]],
        is_auth_failure: Callable[[httpx.Response], bool],
        **kwargs,
    ) -> httpx.Response:
        token = await self._token_provider(force_refresh=False)
        for attempt in ("initial", "after_refresh"):
            await self._budget.acquire()
            try:
                async with self._client() as client:
                    response = await client.request(method, url, headers=build_headers(token), **kwargs)
            except httpx.TimeoutException as exc:
                raise TransientError(f"{method} {url} timed out", code="timeout") from exc
            except httpx.HTTPError as exc:
                raise TransientError(f"{method} {url} failed: {exc}", code="network_error") from exc

            if not is_auth_failure(response):
                break
            if attempt == "after_refresh":
                raise AuthError("eBay rejected a freshly refreshed access token", code="token_rejected")
            logger.info("[ebay_api] access token rejected, forcing refresh user_id=%s", self.user_id)
            token = await self._token_provider(force_refresh=True)

        if response.status_code == 429:
            retry_after = _retry_after_seconds(response)
            if retry_after:
                self._budget.pause(retry_after)
            raise TransientError(
                f"{method} {url} rate limited", status_code=429, retry_after=retry_after, code="rate_limited"
            )
        if response.status_code >= 500:
            raise TransientError(f"{method} {url} returned {response.status_code}", status_code=response.status_code)
        if response.status_code >= 400:
            message, error_id = _rest_error_message(response)
            raise MarketplaceRejection(message, status_code=response.status_code, error_id=error_id)
        return response

    async def _send(self, method: str, url: str, build_headers, is_auth_failure, **kwargs) -> httpx.Response:
        response = None
        async for attempt in self._retrying():
            with attempt:
                response = await self._send_once(method, url, build_headers, is_auth_failure, **kwargs)
        return response

    def _rest_headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            "Content-Language": "en-US",
            "X-EBAY-C-MARKETPLACE-ID": settings.EBAY_MARKETPLACE_ID,
        }

    async def _rest(self, method: str, path: str, **kwargs) -> httpx.Response:
        return await self._send(
            method,
            f"{self.base_url}{path}",
            self._rest_headers,
            lambda response: response.status_code == 401,
            **kwargs,
        )

    async def _trading(self, call_name: str, body_xml: str) -> Dict[str, Any]:
        request_xml = (
            '<?xml version="1.0" encoding="utf-8"?>'
            f'<{call_name}Request xmlns="urn:ebay:apis:eBLBaseComponents">'
            "<ErrorLanguage>en_US</ErrorLanguage>"
            "<WarningLevel>High</WarningLevel>"
            f"{body_xml}"
            f"</{call_name}Request>"
        )

        def headers(token: str) -> Dict[str, str]:
            return {
                "X-EBAY-API-CALL-NAME": call_name,
                "X-EBAY-API-SITEID": settings.EBAY_SITE_ID,
                "X-EBAY-API-COMPATIBILITY-LEVEL": settings.EBAY_COMPATIBILITY_LEVEL,
                "X-EBAY-API-IAF-TOKEN": token,
                "Content-Type": "text/xml; charset=utf-8",
                "Accept": "text/xml",
            }

        response = None
        parsed: Dict[str, Any] = {}
        async for attempt in self._retrying():
            with attempt:
                response = await self._send_once(
                    "POST",
                    f"{self.base_url}/ws/api.dll",
                    headers,
                    _is_trading_auth_failure,
                    content=request_xml.encode("utf-8"),
                )
                parsed = parse_trading_response(response.text)
                # SystemError failures come back as HTTP 200; retry them too.
                _raise_for_trading_errors(parsed, call_name)
        parsed["raw"] = response.text
        return parsed

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    async def list_active_listings(self) -> List[RemoteListing]:
        """Every active listing for the user, following GetMyeBaySelling pagination."""
        listings: List[RemoteListing] = []
        page = 1
        while True:
            result = await self._trading(
                "GetMyeBaySelling",
                "<ActiveList><Include>true</Include>"
                "<Pagination>"
                f"<EntriesPerPage>{settings.SYNC_PAGE_SIZE}</EntriesPerPage>"
                f"<PageNumber>{page}</PageNumber>"
                "</Pagination></ActiveList>",
            )
            page_listings, total_pages = parse_active_listings(result["raw"], settings.EBAY_CURRENCY)
            listings.extend(page_listings)
            logger.info(
                "[ebay_api] GetMyeBaySelling page=%s/%s items=%s user_id=%s",
                page, total_pages, len(page_listings), self.user_id,
            )
            if page >= total_pages or not page_listings:
                break
            page += 1
        return listings

    async def update_price(
        self,
        *,
        item_id: Optional[str],
        new_price: Decimal,
        currency: str = "USD",
        sku: Optional[str] = None,
        offer_id: Optional[str] = None,
        use_inventory_api: bool = False,
    ) -> None:
        """Push a new price. Inventory-API listings go through their offer."""
        if use_inventory_api and sku and offer_id:
            response = await self._rest(
                "POST",
                "/sell/inventory/v1/bulk_update_price_quantity",
                json={
                    "requests": [
                        {
                            "sku": sku,
                            "offers": [
                                {
                                    "offerId": offer_id,
                                    "price": {"value": _money(new_price), "currency": currency},
                                }
                            ],
                        }
                    ]
                },
            )
            for entry in (response.json() or {}).get("responses", []):
                status_code = int(entry.get("statusCode") or 200)
                if status_code >= 400:
                    errors = entry.get("errors") or [{}]
                    raise MarketplaceRejection(
                        errors[0].get("message") or f"Price update rejected for {sku}",
                        status_code=status_code,
                        error_id=str(errors[0].get("errorId") or ""),
                    )
            logger.info("[ebay_api] Inventory price updated sku=%s price=%s", sku, _money(new_price))
            return

        if not item_id:
            raise MarketplaceRejection("Listing has no eBay item id", code="missing_item_id")
        await self._trading(
            "ReviseFixedPriceItem",
            "<Item>"
            f"<ItemID>{_xml_text(item_id)}</ItemID>"
            f'<StartPrice currencyID="{_xml_text(currency)}">{_money(new_price)}</StartPrice>'
            "</Item>",
        )
        logger.info("[ebay_api] Trading price updated item_id=%s price=%s", item_id, _money(new_price))

    async def end_listing(self, item_id: str, reason: str = "NotAvailable") -> None:
        await self._trading(
            "EndFixedPriceItem",
            f"<ItemID>{_xml_text(item_id)}</ItemID><EndingReason>{_xml_text(reason)}</EndingReason>",
        )
        logger.info("[ebay_api] Ended listing item_id=%s user_id=%s", item_id, self.user_id)

    async def _put_inventory_item(self, payload: ListingPayload) -> None:
        await self._rest(
            "PUT",
            f"/sell/inventory/v1/inventory_item/{payload.sku}",
            json={
                "availability": {"shipToLocationAvailability": {"quantity": payload.quantity}},
                "condition": payload.condition,
                "product": {
                    "title": payload.title[:80],
                    "description": payload.description,
                    "imageUrls": payload.image_urls[:12],
                    "aspects": {k: [str(v)[:65] for v in vs] for k, vs in payload.aspects.items()},
                },
            },
        )

    @staticmethod
    def _offer_body(payload: ListingPayload) -> Dict[str, Any]:
        body = {
            "sku": payload.sku,
            "marketplaceId": settings.EBAY_MARKETPLACE_ID,
            "format": "FIXED_PRICE",
            "availableQuantity": payload.quantity,
            "listingDescription": payload.description,
            "pricingSummary": {"price": {"value": _money(payload.price), "currency": payload.currency}},
        }
        if payload.category_id:
            body["categoryId"] = payload.category_id
        return body

    async def update_catalog_listing(self, payload: ListingPayload, offer_id: str) -> None:
        """Revise an already published catalog listing in place."""
        await self._put_inventory_item(payload)
        await self._rest("PUT", f"/sell/inventory/v1/offer/{offer_id}", json=self._offer_body(payload))
        logger.info("[ebay_api] Revised sku=%s offer_id=%s", payload.sku, offer_id)

    async def publish_listing(self, payload: ListingPayload) -> PublishedListing:
        """Create or replace the inventory item, reuse or create its offer, publish.

        Every step is keyed by SKU, so repeating the call does not create a
        second listing.
        """
        sku = payload.sku
        await self._put_inventory_item(payload)
        offer_body = self._offer_body(payload)

        try:
            existing = await self._rest("GET", "/sell/inventory/v1/offer", params={"sku": sku})
            offers = (existing.json() or {}).get("offers") or []
        except MarketplaceRejection as exc:
            # eBay answers 404 when the SKU has no offer yet.
            if exc.status_code != 404:
                raise
            offers = []
        if offers:
            offer = offers[0]
            offer_id = offer["offerId"]
            await self._rest("PUT", f"/sell/inventory/v1/offer/{offer_id}", json=offer_body)
            listing_id = (offer.get("listing") or {}).get("listingId")
            if offer.get("status") == "PUBLISHED" and listing_id:
                return PublishedListing(sku=sku, offer_id=offer_id, item_id=listing_id)
        else:
            created = await self._rest("POST", "/sell/inventory/v1/offer", json=offer_body)
            offer_id = created.json()["offerId"]

        published = await self._rest("POST", f"/sell/inventory/v1/offer/{offer_id}/publish")
        listing_id = (published.json() or {}).get("listingId")
        logger.info("[ebay_api] Published sku=%s offer_id=%s item_id=%s", sku, offer_id, listing_id)
        return PublishedListing(sku=sku, offer_id=offer_id, item_id=listing_id)

    async def search_comparables(self, keywords: str, *, limit: int = 50) -> List[ComparableItem]:
        """Fixed-price active listings matching ``keywords`` (Browse API)."""
        keywords = (keywords or "").strip()
        if not keywords:
            return []
        response = await self._rest(
            "GET",
            "/buy/browse/v1/item_summary/search",
            params={
                "q": keywords,
                "limit": str(max(1, min(limit, 200))),
                "filter": "buyingOptions:{FIXED_PRICE}",
            },
        )
        results = []
        for summary in (response.json() or {}).get("itemSummaries") or []:
            price = summary.get("price") or {}
            if not price.get("value"):
                continue
            results.append(
                ComparableItem(
                    item_id=str(summary.get("legacyItemId") or summary.get("itemId") or ""),
                    title=summary.get("title") or "",
                    price=Decimal(str(price["value"])),
                    currency=price.get("currency") or "USD",
                )
            )
        return results


def client_for_user(db, user_id: str) -> EbayApiClient:
    """Client whose tokens come from the lifecycle manager, bound to ``db``."""

    async def token_provider(force_refresh: bool = False) -> str:
        return await ebay_oauth_service.get_valid_access_token(db, user_id, force_refresh=force_refresh)

    return EbayApiClient(user_id, token_provider)
