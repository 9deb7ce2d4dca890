"""Keepa product lookups used when creating listings from catalog data.

Keepa meters requests with a token bucket; every response reports the
remaining ``tokensLeft``. We remember the last reported value and refuse to
spend more once it drops below ``KEEPA_MIN_TOKENS`` instead of burning the
budget on a request that will be throttled anyway.
"""
from __future__ import annotations

import html
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from price_reducer.config import settings
from price_reducer.errors import TransientError, ValidationError
from price_reducer.utils.logger import logger, marketplace_logger

IMAGE_BASE_URL = "https://m.media-amazon.com/images/I/"
ASIN_PATTERN = re.compile(r"^B[0-9A-Z]{9}$")

# Keepa product field -> eBay item aspect name.
ASPECT_FIELDS = {
    "brand": "Brand",
    "model": "Model",
    "color": "Color",
    "size": "Size",
    "manufacturer": "Manufacturer",
}


@dataclass
class CatalogProduct:
    catalog_id: str
    title: str
    description: str
    images: List[str] = field(default_factory=list)
    attributes: Dict[str, List[str]] = field(default_factory=dict)


def _image_area(image: Dict[str, Any], variant: str) -> int:
    return int(image.get(f"{variant}H") or 0) * int(image.get(f"{variant}W") or 0)


def rank_images(product: Dict[str, Any]) -> List[str]:
    """Image URLs, largest first. Prefers the ``images`` array over ``imagesCSV``."""
    images = product.get("images")
    if isinstance(images, list) and images:
        candidates = []
        for position, image in enumerate(images):
            if not image:
                continue
            variant = "l" if image.get("l") else "m"
            name = image.get(variant)
            if not name:
                continue
            # Ties keep Keepa's order, which puts the main image first.
            candidates.append((-_image_area(image, variant), variant != "l", position, name))
        candidates.sort()
        return [IMAGE_BASE_URL + name for _, _, _, name in candidates]

    csv = product.get("imagesCSV") or ""
    return [IMAGE_BASE_URL + name.strip() for name in csv.split(",") if name.strip()]


def build_description(product: Dict[str, Any]) -> str:
    if product.get("description"):
        return product["description"]

    parts = []
    features = product.get("features") or []
    if features:
        parts.append("<h3>Product Features</h3><ul>")
        parts.extend(f"<li>{html.escape(str(feature))}</li>" for feature in features)
        parts.append("</ul>")
    return "".join(parts) or "Product information available upon request."


def build_attributes(product: Dict[str, Any]) -> Dict[str, List[str]]:
    attributes = {}
    for source, aspect in ASPECT_FIELDS.items():
        if product.get(source):
            attributes[aspect] = [str(product[source])]
    mpn = product.get("partNumber") or product.get("model")
    if mpn:
        attributes["MPN"] = [str(mpn)]
    if product.get("upcList"):
        attributes["UPC"] = [str(product["upcList"][0])]
    return attributes


class KeepaClient:

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or settings.KEEPA_API_KEY
        self._transport = transport
        self.tokens_left: Optional[int] = None

    def _check_budget(self) -> None:
        if self.tokens_left is not None and self.tokens_left < settings.KEEPA_MIN_TOKENS:
            raise TransientError(
                f"Keepa token budget exhausted ({self.tokens_left} left)",
                code="catalog_budget_exhausted",
            )

    async def fetch_product(self, asin: str) -> CatalogProduct:
        asin = (asin or "").strip().upper()
        if not ASIN_PATTERN.match(asin):
            raise ValidationError(f"Invalid ASIN '{asin}'", code="invalid_catalog_id")
        if not self.api_key:
            raise ValidationError("Keepa API key is not configured", code="missing_catalog_key")
        self._check_budget()

        params = {"key": self.api_key, "domain": settings.KEEPA_DOMAIN, "asin": asin, "stats": 0}
        try:
            async with httpx.AsyncClient(
                timeout=httpx.Timeout(settings.MARKETPLACE_TIMEOUT_SECONDS, connect=5.0),
                transport=self._transport,
            ) as client:
                response = await client.get(f"{settings.KEEPA_BASE_URL}/product", params=params)
        except httpx.TimeoutException as exc:
            raise TransientError("Keepa request timed out", code="timeout") from exc
        except httpx.HTTPError as exc:
            raise TransientError(f"Keepa request failed: {exc}", code="network_error") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}
        if "tokensLeft" in data:
            self.tokens_left = int(data["tokensLeft"])

        marketplace_logger.log_event(
            "keepa_product",
            f"Keepa product lookup asin={asin} status={response.status_code} tokens_left={self.tokens_left}",
            request_data={"api_key": self.api_key, "asin": asin},
            status="info" if response.status_code == 200 else "error",
        )

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(
                f"Keepa returned {response.status_code}", status_code=response.status_code
            )
        if response.status_code >= 400:
            raise ValidationError(
                f"Keepa rejected the request ({response.status_code})", code="catalog_request_rejected"
            )

        products = data.get("products") or []
        if not products or not products[0].get("title"):
            raise ValidationError(f"No catalog product found for {asin}", code="catalog_product_not_found")

        product = products[0]
        result = CatalogProduct(
            catalog_id=asin,
            title=product["title"][:80],
            description=build_description(product),
            images=rank_images(product),
            attributes=build_attributes(product),
        )
        logger.info("[keepa] asin=%s images=%s tokens_left=%s", asin, len(result.images), self.tokens_left)
        return result
