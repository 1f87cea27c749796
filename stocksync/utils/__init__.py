"""Shared utility helpers used across the connector and services."""


def safe_int(v, default=None):
    """Safely convert a value to int, returning ``default`` on failure.

    Accepts numeric strings with decimals ("12.0") since the source often
    ships quantities as floats.
    """
    if v is None or v == "":
        return default
    try:
        return int(v)
    except (ValueError, TypeError):
        try:
            return int(float(v))
        except (ValueError, TypeError, OverflowError):
            return default


def safe_float(v, default=None):
    """Safely convert a value to float, returning ``default`` on failure."""
    if v is None or v == "":
        return default
    try:
        return float(v)
    except (ValueError, TypeError):
        return default


def clean_str(v):
    """Strip a string value; blank or non-scalar values become None."""
    if v is None or isinstance(v, (list, dict)):
        return None
    s = str(v).strip()
    return s or None
