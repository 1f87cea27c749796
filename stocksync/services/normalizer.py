"""
Record normalizer — Finale's many field spellings -> one InventoryRecord.

Finale (and the report exports layered on top of it) use different names
for the same logical field depending on endpoint and account setup. Every
alias we have observed lives in FIELD_ALIASES; nothing downstream of this
module ever sees a source field name.

Business Rules:
- First alias holding a non-blank value wins, in table order
- Missing/unparseable quantities -> 0, optional strings -> None
- A row with no SKU under any alias is dropped (cannot be keyed)
- ``present`` records which canonical fields the row actually carried, so
  partial strategies (stock-only fetches) can merge with stored values

Called by: services/sync_engine.py, services/strategy.py (source_fields_for)
Depends on: utils (safe_int, safe_float, clean_str)
"""

import logging
import math
from dataclasses import dataclass, field, replace

from ..utils import clean_str, safe_float, safe_int

log = logging.getLogger("stocksync.normalizer")

FIELD_ALIASES: dict[str, tuple[str, ...]] = {
    "sku": ("productSku", "productSKU", "itemSKU", "sku", "productId"),
    "finale_id": ("productUrl", "itemID", "finaleId", "id"),
    "product_name": ("productName", "internalName", "description", "itemName", "name"),
    "stock": ("quantityOnHand", "qtyOnHand", "stock", "quantityAvailable", "quantity"),
    "cost": ("averageCost", "unitCost", "cost", "lastCost", "unitPrice"),
    "vendor": ("primarySupplierName", "primaryVendor", "supplierName", "supplier", "vendor"),
    "location": ("primaryLocation", "facilityName", "location"),
    "reorder_point": ("reorderPoint", "reorderLevel", "reorder_point"),
    "reorder_quantity": ("reorderQuantity", "reorderQty", "reorder_quantity"),
    "sales_last_30_days": ("salesLast30Days", "sales30Days", "sales_last_30_days"),
    "sales_last_90_days": ("salesLast90Days", "sales90Days", "sales_last_90_days"),
    "status": ("statusId", "status"),
    "active": ("active", "isActive"),
    "discontinued": ("discontinued", "isDiscontinued"),
}

INT_FIELDS = ("stock", "reorder_point", "reorder_quantity", "sales_last_30_days", "sales_last_90_days")
STR_FIELDS = ("finale_id", "product_name", "vendor", "location")

# Canonical fields written to InventoryItem (status/active fold into discontinued)
RECORD_FIELDS = (
    "product_name",
    "stock",
    "cost",
    "vendor",
    "location",
    "reorder_point",
    "reorder_quantity",
    "sales_last_30_days",
    "sales_last_90_days",
    "discontinued",
    "finale_id",
)

_TRUE = {"true", "1", "yes", "y"}
_INACTIVE_STATUSES = {"PRODUCT_INACTIVE", "INACTIVE", "DISCONTINUED", "ARCHIVED"}


@dataclass(frozen=True)
class InventoryRecord:
    sku: str
    product_name: str | None = None
    stock: int = 0
    cost: float = 0.0
    vendor: str | None = None
    location: str | None = None
    reorder_point: int = 0
    reorder_quantity: int = 0
    sales_last_30_days: int = 0
    sales_last_90_days: int = 0
    discontinued: bool = False
    finale_id: str | None = None
    present: frozenset = field(default_factory=frozenset, compare=False)

    def merged_with(self, stored: dict, keep: tuple[str, ...]) -> "InventoryRecord":
        """Fill every field outside ``keep`` from the stored row.

        Used by stock-only strategies so unfetched fields keep their stored
        values instead of collapsing to defaults.
        """
        updates = {k: stored[k] for k in RECORD_FIELDS if k not in keep and k in stored}
        return replace(self, **updates)


def _pick(raw: dict, canonical: str):
    for alias in FIELD_ALIASES[canonical]:
        value = raw.get(alias)
        if value is None or (isinstance(value, str) and not value.strip()):
            continue
        return value
    return None


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in _TRUE


def _is_discontinued(raw: dict) -> bool | None:
    discontinued = _pick(raw, "discontinued")
    if discontinued is not None:
        return _as_bool(discontinued)
    active = _pick(raw, "active")
    if active is not None:
        return not _as_bool(active)
    status = _pick(raw, "status")
    if status is not None:
        return str(status).strip().upper() in _INACTIVE_STATUSES
    return None


def normalize(raw: dict) -> InventoryRecord | None:
    """Map one source row to an InventoryRecord. None when it has no SKU."""
    if not isinstance(raw, dict):
        log.warning(f"Dropping non-object row of type {type(raw).__name__}")
        return None

    sku = clean_str(_pick(raw, "sku"))
    if not sku:
        return None

    values: dict = {"sku": sku}
    present = set()

    for name in INT_FIELDS:
        value = _pick(raw, name)
        if value is not None:
            present.add(name)
        values[name] = safe_int(value, 0)

    cost = _pick(raw, "cost")
    if cost is not None:
        present.add("cost")
    cost = safe_float(cost, 0.0)
    values["cost"] = round(cost, 4) if math.isfinite(cost) else 0.0

    for name in STR_FIELDS:
        value = _pick(raw, name)
        if value is not None:
            present.add(name)
        values[name] = clean_str(value)

    discontinued = _is_discontinued(raw)
    if discontinued is not None:
        present.add("discontinued")
    values["discontinued"] = bool(discontinued)

    return InventoryRecord(present=frozenset(present), **values)


def normalize_page(rows: list[dict]) -> tuple[list[InventoryRecord], int]:
    """Normalize a page. Returns (records, dropped_count).

    Duplicate SKUs inside one page collapse to the last occurrence.
    """
    by_sku: dict[str, InventoryRecord] = {}
    dropped = 0
    for raw in rows:
        rec = normalize(raw)
        if rec is None:
            dropped += 1
            continue
        by_sku[rec.sku] = rec
    return list(by_sku.values()), dropped


def source_fields_for(canonical: tuple[str, ...]) -> tuple[str, ...]:
    """Every source alias that can feed the given canonical fields."""
    out: list[str] = []
    for name in ("sku", *canonical):
        for alias in FIELD_ALIASES.get(name, ()):
            if alias not in out:
                out.append(alias)
    return tuple(out)
