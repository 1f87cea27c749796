"""
Sync strategy selection — trade completeness for speed based on staleness.

  since last successful run   strategy    what it does
  < 1 hour                    critical    stock fields, only out-of-stock / below-reorder SKUs
  < 24 hours                  inventory   stock fields for SKUs we already have
  < 7 days                    active      full detail, non-discontinued products
  otherwise / never           full        full detail, everything, retire vanished SKUs

Each profile also fixes the downstream batch size and an overall time
budget for the run.

Called by: services/sync_engine.py, routers/sync.py
Depends on: services/normalizer.py (canonical field names)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Literal

from .normalizer import RECORD_FIELDS, InventoryRecord, source_fields_for

StrategyName = Literal["critical", "inventory", "active", "full"]
STRATEGIES: tuple[str, ...] = ("critical", "inventory", "active", "full")

CRITICAL_WINDOW = timedelta(hours=1)
INVENTORY_WINDOW = timedelta(hours=24)
ACTIVE_WINDOW = timedelta(days=7)

STOCK_FIELDS = ("stock", "reorder_point", "reorder_quantity")


def _is_critical(stock, reorder_point) -> bool:
    stock = stock or 0
    return stock <= 0 or stock <= (reorder_point or 0)


@dataclass(frozen=True)
class StrategyProfile:
    name: str
    fields: tuple[str, ...]
    batch_size: int
    timeout_seconds: int
    adds_new: bool
    retires_missing: bool = False
    skip_discontinued: bool = False
    critical_only: bool = False

    @property
    def source_fields(self) -> tuple[str, ...] | None:
        """Source field names to request; None means everything."""
        if self.fields == RECORD_FIELDS:
            return None
        return source_fields_for(self.fields)

    @property
    def is_partial(self) -> bool:
        return self.fields != RECORD_FIELDS

    def keeps(self, record: InventoryRecord, stored: dict | None) -> bool:
        """Whether this strategy syncs the record at all."""
        if stored is None and not self.adds_new:
            return False
        if self.skip_discontinued and record.discontinued:
            return False
        if self.critical_only:
            # A SKU that was critical and got restocked must be synced too
            was_critical = stored is not None and _is_critical(
                stored.get("stock"), stored.get("reorder_point")
            )
            return was_critical or _is_critical(record.stock, record.reorder_point)
        return True


PROFILES: dict[str, StrategyProfile] = {
    "critical": StrategyProfile(
        name="critical",
        fields=STOCK_FIELDS,
        batch_size=50,
        timeout_seconds=5 * 60,
        adds_new=False,
        critical_only=True,
    ),
    "inventory": StrategyProfile(
        name="inventory",
        fields=STOCK_FIELDS,
        batch_size=100,
        timeout_seconds=10 * 60,
        adds_new=False,
    ),
    "active": StrategyProfile(
        name="active",
        fields=RECORD_FIELDS,
        batch_size=100,
        timeout_seconds=30 * 60,
        adds_new=True,
        skip_discontinued=True,
    ),
    "full": StrategyProfile(
        name="full",
        fields=RECORD_FIELDS,
        batch_size=100,
        timeout_seconds=60 * 60,
        adds_new=True,
        retires_missing=True,
    ),
}


def select_strategy(last_success_at: datetime | None, now: datetime | None = None) -> StrategyName:
    """Pick a strategy from the time since the last *successful* run."""
    if last_success_at is None:
        return "full"
    now = now or datetime.now(timezone.utc)
    if last_success_at.tzinfo is None:
        last_success_at = last_success_at.replace(tzinfo=timezone.utc)
    elapsed = now - last_success_at
    if elapsed < CRITICAL_WINDOW:
        return "critical"
    if elapsed < INVENTORY_WINDOW:
        return "inventory"
    if elapsed < ACTIVE_WINDOW:
        return "active"
    return "full"


def get_profile(name: str) -> StrategyProfile:
    try:
        return PROFILES[name]
    except KeyError:
        raise ValueError(f"Unknown sync strategy: {name}") from None