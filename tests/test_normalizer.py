"""
test_normalizer.py — Tests for stocksync/services/normalizer.py

Covers: alias resolution, defaults, SKU-less rows, discontinued derivation,
present-field tracking, partial merges, page de-duplication.

Called by: pytest
Depends on: stocksync/services/normalizer.py
"""

import pytest

from stocksync.services.normalizer import (
    FIELD_ALIASES,
    InventoryRecord,
    normalize,
    normalize_page,
    source_fields_for,
)


def test_finale_spelling():
    rec = normalize(
        {
            "productId": "WID-1",
            "productName": "Widget",
            "quantityOnHand": "12.0",
            "averageCost": "3.25",
            "primarySupplierName": "Acme Supply",
            "reorderPoint": 5,
            "reorderQuantity": 20,
        }
    )
    assert rec.sku == "WID-1"
    assert rec.product_name == "Widget"
    assert rec.stock == 12
    assert rec.cost == 3.25
    assert rec.vendor == "Acme Supply"
    assert rec.reorder_point == 5
    assert rec.reorder_quantity == 20


@pytest.mark.parametrize("alias", ["productSku", "productSKU", "itemSKU", "sku", "productId"])
def test_every_sku_alias(alias):
    assert normalize({alias: "X-1"}).sku == "X-1"


def test_first_non_blank_alias_wins():
    rec = normalize({"productSku": "  ", "sku": "REAL", "productId": "FALLBACK"})
    assert rec.sku == "REAL"


def test_vendor_aliases_in_order():
    rec = normalize({"sku": "A", "supplierName": "Second", "vendor": "Last"})
    assert rec.vendor == "Second"
    assert FIELD_ALIASES["vendor"][0] == "primarySupplierName"


def test_missing_values_default():
    rec = normalize({"sku": "A", "quantityOnHand": "n/a"})
    assert rec.stock == 0
    assert rec.cost == 0.0
    assert rec.vendor is None
    assert rec.location is None
    assert rec.discontinued is False


def test_non_finite_cost_becomes_zero():
    assert normalize({"sku": "A", "cost": "nan"}).cost == 0.0


def test_row_without_sku_is_dropped():
    assert normalize({"productName": "No key", "quantityOnHand": 3}) is None
    assert normalize({"sku": "   "}) is None
    assert normalize(["not", "a", "dict"]) is None


@pytest.mark.parametrize(
    "row,expected",
    [
        ({"discontinued": True}, True),
        ({"discontinued": "false"}, False),
        ({"active": False}, True),
        ({"isActive": "true"}, False),
        ({"statusId": "PRODUCT_INACTIVE"}, True),
        ({"statusId": "PRODUCT_ACTIVE"}, False),
        ({}, False),
    ],
)
def test_discontinued_derivation(row, expected):
    assert normalize({"sku": "A", **row}).discontinued is expected


def test_present_tracks_fetched_fields():
    rec = normalize({"productId": "A", "quantityOnHand": 0, "reorderPoint": 4})
    assert rec.present == frozenset({"stock", "reorder_point"})


def test_merged_with_keeps_stored_values_outside_fields():
    rec = normalize({"productId": "A", "quantityOnHand": 7})
    stored = {"stock": 1, "cost": 9.5, "vendor": "Acme", "product_name": "Widget", "reorder_point": 3}
    merged = rec.merged_with(stored, keep=("stock",))
    assert merged.stock == 7
    assert merged.cost == 9.5
    assert merged.vendor == "Acme"
    assert merged.reorder_point == 3
    assert merged.product_name == "Widget"


def test_normalize_page_counts_drops_and_dedupes():
    rows = [
        {"sku": "A", "stock": 1},
        {"name": "no sku"},
        {"sku": "B", "stock": 2},
        {"sku": "A", "stock": 5},
    ]
    records, dropped = normalize_page(rows)
    assert dropped == 1
    assert {r.sku: r.stock for r in records} == {"A": 5, "B": 2}


def test_source_fields_for_stock_fields():
    fields = source_fields_for(("stock", "reorder_point"))
    assert fields[0] == "productSku"
    assert "productId" in fields
    assert "quantityOnHand" in fields
    assert "reorderPoint" in fields
    assert "averageCost" not in fields
    assert len(fields) == len(set(fields))


def test_record_equality_ignores_present():
    assert InventoryRecord(sku="A", present=frozenset({"stock"})) == InventoryRecord(sku="A")
