"""Sync priority — how urgently a SKU needs re-syncing, 0 (idle) to 10 (now).

Pure function; the batch writer calls it on every write so the stored
value always reflects the latest stock/reorder inputs.
"""

from datetime import datetime, timezone

MAX_PRIORITY = 10

# Base by stock position
BASE_OUT_OF_STOCK = 10
BASE_BELOW_REORDER = 9
BASE_NEAR_REORDER = 7
BASE_HEALTHY = 5

# Staleness boosts (hours since last sync)
STALE_HOURS_HIGH = 24
STALE_HOURS_LOW = 6


def priority(stock: int, reorder_point: int, hours_since_last_sync: float | None) -> int:
    """Urgency in [0, 10].

    stock <= 0 is treated as out of stock (Finale allows negative on-hand).
    ``hours_since_last_sync`` of None means never synced: maximally stale.
    """
    stock = stock or 0
    reorder_point = max(reorder_point or 0, 0)

    if stock <= 0:
        base = BASE_OUT_OF_STOCK
    elif stock <= reorder_point:
        base = BASE_BELOW_REORDER
    elif stock <= 2 * reorder_point:
        base = BASE_NEAR_REORDER
    else:
        base = BASE_HEALTHY

    if hours_since_last_sync is None or hours_since_last_sync > STALE_HOURS_HIGH:
        base += 2
    elif hours_since_last_sync > STALE_HOURS_LOW:
        base += 1

    return max(0, min(base, MAX_PRIORITY))


def hours_since(last_synced_at: datetime | None, now: datetime | None = None) -> float | None:
    if last_synced_at is None:
        return None
    now = now or datetime.now(timezone.utc)
    if last_synced_at.tzinfo is None:
        last_synced_at = last_synced_at.replace(tzinfo=timezone.utc)
    return max((now - last_synced_at).total_seconds() / 3600, 0.0)
