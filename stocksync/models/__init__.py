"""Database models — re-exports all models.

Import from here:  from stocksync.models import InventoryItem, SyncRun, ...
Or from submodules: from stocksync.models.sync import SyncRun
"""

from .base import Base, UTCDateTime  # noqa: F401

# Inventory
from .inventory import SYNC_STATUSES, InventoryItem  # noqa: F401

# Sync runs & run registry
from .sync import RUN_STATUSES, STRATEGY_TYPES, SYNC_TYPES, SyncLock, SyncRun  # noqa: F401

# Runtime settings store
from .config import SystemConfig  # noqa: F401
