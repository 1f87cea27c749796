"""
Change detection — skip writes for records whose monitored fields are unchanged.

The fingerprint covers exactly MONITORED_FIELDS. Display name, sales counts
and anything else can change without triggering a write.

Business Rules:
- Sorted-key JSON over the monitored subset, MD5 hex digest
- Numbers are canonicalized (5 and 5.0 hash alike), strings stripped
- No stored hash (new SKU) -> changed
- Any failure while fingerprinting fails OPEN: the record is treated as
  changed and the anomaly is logged; a record is never silently dropped

Called by: services/sync_engine.py, services/batch_writer.py
Depends on: errors.py (MalformedDataError)
"""

import hashlib
import json
import logging
import math

from ..errors import MalformedDataError

log = logging.getLogger("stocksync.change_detection")

MONITORED_FIELDS = ("stock", "cost", "reorder_point", "vendor", "location")


def _canonical_number(value) -> int | float:
    if isinstance(value, bool):
        raise MalformedDataError(f"boolean where a number was expected: {value!r}")
    num = float(value)
    if not math.isfinite(num):
        raise MalformedDataError(f"non-finite number {value!r}")
    num = round(num, 4)
    return int(num) if num.is_integer() else num


def _canonical_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        raise MalformedDataError(f"structured value where text was expected: {value!r}")
    return str(value).strip()


def _monitored_values(record) -> dict:
    get = record.get if isinstance(record, dict) else lambda k: getattr(record, k)
    return {
        "stock": _canonical_number(get("stock") or 0),
        "cost": _canonical_number(get("cost") or 0),
        "reorder_point": _canonical_number(get("reorder_point") or 0),
        "vendor": _canonical_text(get("vendor")),
        "location": _canonical_text(get("location")),
    }


def fingerprint(record) -> str:
    """Deterministic hash of the monitored fields of a record or dict.

    Raises MalformedDataError when a monitored value cannot be canonicalized.
    """
    try:
        values = _monitored_values(record)
    except MalformedDataError:
        raise
    except (TypeError, ValueError, AttributeError, KeyError) as e:
        raise MalformedDataError(str(e), sku=getattr(record, "sku", None)) from e
    payload = json.dumps(values, sort_keys=True, separators=(",", ":"))
    return hashlib.md5(payload.encode("utf-8")).hexdigest()


def safe_fingerprint(record) -> str | None:
    """Fingerprint, or None when it cannot be computed (logged)."""
    try:
        return fingerprint(record)
    except MalformedDataError as e:
        sku = getattr(record, "sku", None) or (record.get("sku") if isinstance(record, dict) else None)
        log.warning(f"Fingerprint failed for {sku}: {e} — treating as changed")
        return None


def is_changed(record, stored_hash: str | None) -> bool:
    """True when the record must be written."""
    if not stored_hash:
        return True
    current = safe_fingerprint(record)
    if current is None:
        return True
    return current != stored_hash


def sync_stats(total: int, changed: int, duration_seconds: float) -> dict:
    """Efficiency numbers stored in a run's metadata."""
    if total <= 0:
        return {"change_rate": 0.0, "efficiency_gain": 0.0, "items_per_second": 0.0}
    per_second = changed / duration_seconds if duration_seconds > 0 else 0.0
    return {
        "change_rate": round(changed / total * 100, 1),
        "efficiency_gain": round((total - changed) / total * 100, 1),
        "items_per_second": round(per_second, 2),
    }
