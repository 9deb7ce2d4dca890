from decimal import Decimal

import pytest

from price_reducer.utils.sku import MAX_SKU_LENGTH, content_fingerprint, generate_sku, parse_sku

OWNER = "6f1c2a7e-0000-4000-8000-000000000001"


def test_same_inputs_give_same_sku():
    fingerprint = content_fingerprint(title="Lamp", price=Decimal("19.9"), quantity=1)

    assert generate_sku(OWNER, "B00EXAMPLE", fingerprint) == generate_sku(OWNER, "B00EXAMPLE", fingerprint)


def test_fingerprint_ignores_key_order_and_normalizes_money():
    a = content_fingerprint(title="Lamp", price=Decimal("19.9"), quantity=1)
    b = content_fingerprint(quantity=1, price=Decimal("19.90"), title="Lamp")

    assert a == b


def test_different_content_or_owner_gives_different_sku():
    base = content_fingerprint(title="Lamp", price=Decimal("19.90"))
    changed = content_fingerprint(title="Lamp", price=Decimal("18.90"))

    assert generate_sku(OWNER, None, base) != generate_sku(OWNER, None, changed)
    assert generate_sku(OWNER, None, base) != generate_sku("another-owner", None, base)


def test_generated_sku_parses_back_into_segments():
    sku = generate_sku(OWNER, "b00example", content_fingerprint(title="Lamp"), prefix="AB-")

    parts = parse_sku(sku, prefix="AB-")

    assert sku.startswith("AB-")
    assert parts.prefix == "AB-"
    assert parts.catalog_id == "B00EXAMPLE"
    assert len(parts.owner_hash) == 8
    assert len(parts.content_hash) == 12
    assert parts.version == 1


def test_sku_without_catalog_id_parses():
    sku = generate_sku(OWNER, None, content_fingerprint(title="Lamp"))

    parts = parse_sku(sku)

    assert parts.prefix == "SKU-"
    assert parts.catalog_id is None


@pytest.mark.parametrize("foreign", ["MY-OWN-SKU-42", "", "SKU-zzzzzzzz-abc"])
def test_foreign_skus_do_not_parse(foreign):
    assert parse_sku(foreign) is None


def test_parse_with_wrong_prefix_returns_none():
    sku = generate_sku(OWNER, None, content_fingerprint(title="Lamp"))

    assert parse_sku(sku, prefix="XY-") is None


@pytest.mark.parametrize("catalog_id", ["B00-EXAMPLE", "ASIN WITH SPACE"])
def test_invalid_catalog_id_raises(catalog_id):
    with pytest.raises(ValueError):
        generate_sku(OWNER, catalog_id, content_fingerprint(title="Lamp"))


def test_overlong_sku_raises():
    with pytest.raises(ValueError):
        generate_sku(OWNER, "X" * MAX_SKU_LENGTH, content_fingerprint(title="Lamp"))


def test_invalid_prefix_raises():
    with pytest.raises(ValueError):
        generate_sku(OWNER, None, content_fingerprint(title="Lamp"), prefix="bad prefix!")
