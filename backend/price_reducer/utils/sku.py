"""Deterministic SKUs for listings created from catalog data.

Format version 1::

    <prefix><sha256(owner_id)[:8]>[-<catalog_id>]-<sha256(fingerprint)[:12]>

e.g. ``SKU-3f2a9c1e-B00EXAMPLE-9b1d4e7f0a2c``. The catalog segment lets a
seller (and us) find the source product without another index; the content
hash keeps SKUs unique when no catalog id exists. Same inputs, same SKU.

A future format must change the hash lengths (or add a marker) so that
:func:`parse_sku` can still tell v1 SKUs apart.
"""
import hashlib
import json
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

SKU_FORMAT_VERSION = 1
OWNER_HASH_LENGTH = 8
CONTENT_HASH_LENGTH = 12
MAX_SKU_LENGTH = 50  # eBay Inventory API limit

_PREFIX_PATTERN = re.compile(r"^[A-Za-z0-9_-]{0,10}$")
_CATALOG_PATTERN = re.compile(r"^[A-Z0-9]+$")
_V1_PATTERN = re.compile(
    r"^(?P<prefix>.*?)(?P<owner>[0-9a-f]{8})(?:-(?P<catalog>[A-Z0-9]+))?-(?P<content>[0-9a-f]{12})$"
)


@dataclass(frozen=True)
class SkuParts:
    prefix: str
    owner_hash: str
    catalog_id: Optional[str]
    content_hash: str
    version: int = SKU_FORMAT_VERSION


def _sha256(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _json_default(value: Any) -> str:
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    return str(value)


def content_fingerprint(**fields: Any) -> str:
    """Canonical JSON of the listing content; key order does not matter."""
    return json.dumps(fields, sort_keys=True, separators=(",", ":"), default=_json_default)


def generate_sku(
    owner_id: str,
    catalog_id: Optional[str],
    fingerprint: str,
    prefix: str = "SKU-",
) -> str:
    if not owner_id:
        raise ValueError("owner_id is required to build a SKU")
    if not _PREFIX_PATTERN.match(prefix or ""):
        raise ValueError(f"Invalid SKU prefix '{prefix}'")

    parts = [f"{prefix}{_sha256(owner_id)[:OWNER_HASH_LENGTH]}"]
    if catalog_id:
        catalog_id = catalog_id.strip().upper()
        if not _CATALOG_PATTERN.match(catalog_id):
            raise ValueError(f"Invalid catalog id '{catalog_id}'")
        parts.append(catalog_id)
    parts.append(_sha256(fingerprint)[:CONTENT_HASH_LENGTH])

    sku = "-".join(parts)
    if len(sku) > MAX_SKU_LENGTH:
        raise ValueError(f"SKU '{sku}' exceeds {MAX_SKU_LENGTH} characters")
    return sku


def parse_sku(sku: str, prefix: Optional[str] = None) -> Optional[SkuParts]:
    """Split a v1 SKU into its segments. Returns None for foreign SKUs."""
    if prefix is not None:
        if not sku.startswith(prefix):
            return None
        body, head = sku[len(prefix):], prefix
    else:
        body, head = sku, None

    match = _V1_PATTERN.match(body)
    if match is None:
        return None
    if head is not None and match.group("prefix"):
        return None
    return SkuParts(
        prefix=head if head is not None else match.group("prefix"),
        owner_hash=match.group("owner"),
        catalog_id=match.group("catalog"),
        content_hash=match.group("content"),
    )
