"""
Critical item monitor — read-only view of SKUs that need purchasing attention.

Critical = out of stock (stock <= 0) or at/below the reorder point.
Ordering: out-of-stock first, then sync_priority desc, then stock asc.

Each view row adds:
- status: "out_of_stock" | "below_reorder"
- days_until_stockout: stock / (sales_last_30_days / 30), None without sales
- action_required: what a buyer should do next

Called by: routers/inventory.py
Depends on: models (InventoryItem)
"""

from sqlalchemy import case, func, or_
from sqlalchemy.orm import Session

from ..models import InventoryItem

DEFAULT_LIMIT = 100
URGENT_DAYS = 7


def _critical_filter():
    return or_(
        InventoryItem.stock <= 0,
        InventoryItem.stock <= InventoryItem.reorder_point,
    )


def days_until_stockout(stock: int, sales_last_30_days: int) -> float | None:
    if (stock or 0) <= 0:
        return 0.0
    daily = (sales_last_30_days or 0) / 30
    if daily <= 0:
        return None
    return round(stock / daily, 1)


def _action(item: InventoryItem, days_left: float | None) -> str:
    if item.is_out_of_stock:
        return "Reorder immediately"
    if days_left is not None and days_left <= URGENT_DAYS:
        return "Reorder this week"
    return "Review reorder quantity"


def _view(item: InventoryItem) -> dict:
    days_left = days_until_stockout(item.stock, item.sales_last_30_days)
    return {
        "sku": item.sku,
        "product_name": item.product_name,
        "stock": item.stock,
        "reorder_point": item.reorder_point,
        "reorder_quantity": item.reorder_quantity,
        "vendor": item.vendor,
        "location": item.location,
        "sync_priority": item.sync_priority,
        "last_synced_at": item.last_synced_at.isoformat() if item.last_synced_at else None,
        "status": "out_of_stock" if item.is_out_of_stock else "below_reorder",
        "days_until_stockout": days_left,
        "action_required": _action(item, days_left),
    }


def get_critical_items(db: Session, limit: int = DEFAULT_LIMIT) -> list[dict]:
    """Critical SKUs, most urgent first."""
    out_of_stock_first = case((InventoryItem.stock <= 0, 0), else_=1)
    items = (
        db.query(InventoryItem)
        .filter(_critical_filter())
        .order_by(
            out_of_stock_first,
            InventoryItem.sync_priority.desc(),
            InventoryItem.stock.asc(),
            InventoryItem.sku,
        )
        .limit(max(1, limit))
        .all()
    )
    return [_view(i) for i in items]


def critical_summary(db: Session) -> dict:
    out_of_stock, critical = db.query(
        func.count(case((InventoryItem.stock <= 0, 1))),
        func.count(case((_critical_filter(), 1))),
    ).one()
    return {
        "out_of_stock": out_of_stock or 0,
        "below_reorder": (critical or 0) - (out_of_stock or 0),
        "total_critical": critical or 0,
    }
