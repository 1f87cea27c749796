"""
test_utils_errors.py — Tests for stocksync/utils and the error taxonomy

Called by: pytest
Depends on: stocksync/utils/__init__.py, stocksync/errors.py
"""

import pytest

from stocksync.errors import (
    AuthError,
    CapacityExceededError,
    PartialBatchFailure,
    StuckRunError,
    SyncConflictError,
    SyncError,
    TransientNetworkError,
)
from stocksync.utils import clean_str, safe_float, safe_int


@pytest.mark.parametrize(
    "value,expected",
    [("12", 12), ("12.0", 12), (7.9, 7), ("", None), (None, None), ("abc", None), ([1], None)],
)
def test_safe_int(value, expected):
    assert safe_int(value) == expected


def test_safe_int_default():
    assert safe_int("n/a", default=0) == 0


def test_safe_float():
    assert safe_float("2.50") == 2.5
    assert safe_float("") is None
    assert safe_float("x", default=0.0) == 0.0


def test_clean_str():
    assert clean_str("  SKU-1 ") == "SKU-1"
    assert clean_str("   ") is None
    assert clean_str(None) is None
    assert clean_str({"a": 1}) is None
    assert clean_str(42) == "42"


def test_retryable_flags():
    assert TransientNetworkError("timeout").retryable is True
    assert CapacityExceededError("busy").retryable is True
    assert AuthError("401").retryable is False
    assert SyncConflictError().retryable is False


def test_public_message_is_short_and_named():
    assert SyncError().public_message == "SyncError"
    assert AuthError("bad key").public_message == "AuthError: bad key"
    assert len(TransientNetworkError("x" * 1000).public_message) == 300


def test_structured_errors_keep_context():
    cause = RuntimeError("disk full")
    failure = PartialBatchFailure(3, 100, cause)
    assert failure.cause is cause
    assert "batch 3 (100 items)" in failure.message

    stuck = StuckRunError(9, 95)
    assert stuck.run_id == 9
    assert stuck.public_message == "StuckRunError: run 9 running for 95 minutes"

    assert SyncConflictError(running_run_id=4).message == "A sync is already in progress"
