"""Runtime settings store — SystemConfig rows that override .env at runtime.

Keys the engine reads:
  sync_enabled            "true"/"false"  — master switch for scheduled + manual syncs
  sync_frequency_minutes  integer         — minimum gap between scheduled syncs

Missing or unparseable rows fall back to config.settings.
"""

import logging
import os
import time
from datetime import datetime, timezone

from sqlalchemy.orm import Session

from ..config import settings
from ..models import SystemConfig
from ..utils import safe_int

log = logging.getLogger("stocksync.settings_store")

_config_cache: dict[str, str] = {}
_config_cache_ts: float = 0
_CONFIG_CACHE_TTL = 0 if os.environ.get("TESTING") else 300  # 5 minutes (disabled in tests)


def _load_config_cache(db: Session) -> dict[str, str]:
    """Load all system_config rows into the in-memory cache."""
    global _config_cache, _config_cache_ts
    rows = db.query(SystemConfig).all()
    _config_cache = {r.key: r.value for r in rows}
    _config_cache_ts = time.time()
    return _config_cache


def get_config_values(db: Session, keys: list[str]) -> dict[str, str]:
    """Get multiple config values with in-memory caching."""
    if time.time() - _config_cache_ts > _CONFIG_CACHE_TTL:
        _load_config_cache(db)
    return {k: _config_cache[k] for k in keys if k in _config_cache}


def get_config_value(db: Session, key: str) -> str | None:
    return get_config_values(db, [key]).get(key)


def set_config_value(db: Session, key: str, value: str, updated_by: str = "system") -> SystemConfig:
    """Upsert a config row and invalidate the cache."""
    global _config_cache_ts
    row = db.query(SystemConfig).filter(SystemConfig.key == key).first()
    old_value = row.value if row else None
    if row is None:
        row = SystemConfig(key=key)
        db.add(row)
    row.value = value
    row.updated_by = updated_by
    row.updated_at = datetime.now(timezone.utc)
    db.commit()
    _config_cache_ts = 0
    log.info(f"Config {key} changed: {old_value} -> {value} by {updated_by}")
    return row


def sync_enabled(db: Session) -> bool:
    raw = get_config_value(db, "sync_enabled")
    if raw is None:
        return settings.sync_enabled
    return raw.strip().lower() in ("true", "1", "yes", "on")


def sync_frequency_minutes(db: Session) -> int:
    value = safe_int(get_config_value(db, "sync_frequency_minutes"))
    if value is None or value <= 0:
        return settings.sync_frequency_minutes
    return value
