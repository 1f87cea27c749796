"""
conftest.py — Shared Test Fixtures for stocksync

Provides an in-memory SQLite database, a FastAPI TestClient wired to it,
and small builders for inventory rows, normalized records and fake Finale
responses.

Business Rules:
- All tests run against an isolated in-memory DB (no prod data risk)
- Each test function gets fresh tables
- Retry policies in tests never really sleep

Called by: all test files via pytest autodiscovery
Depends on: stocksync.models (Base), stocksync.database (get_db)
"""

import os

os.environ["TESTING"] = "1"  # Must be set before importing stocksync modules
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("RATE_LIMIT_API_ENABLED", "false")

from datetime import datetime, timezone

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from stocksync.models import Base, InventoryItem
from stocksync.rate_limit import TokenBucket
from stocksync.services.change_detection import fingerprint
from stocksync.services.normalizer import InventoryRecord
from stocksync.utils.retry import RetryPolicy

# ── In-memory SQLite engine ──────────────────────────────────────────

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


# ── Fixtures ─────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def db_session():
    """Create all tables, yield a session, then tear down."""
    Base.metadata.create_all(bind=engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def no_sleep_retry():
    """Retry policy factory whose sleeps are recorded instead of slept."""
    slept: list[float] = []

    async def _async_sleep(seconds):
        slept.append(seconds)

    def make(**kwargs) -> RetryPolicy:
        kwargs.setdefault("max_attempts", 3)
        kwargs.setdefault("base_delay", 0.01)
        return RetryPolicy(sleep=slept.append, async_sleep=_async_sleep, **kwargs)

    make.slept = slept
    return make


@pytest.fixture()
def fast_limiter() -> TokenBucket:
    return TokenBucket(rate=1000.0, capacity=100)


@pytest.fixture()
def client(db_session: Session) -> TestClient:
    """FastAPI TestClient with get_db overridden to the test session."""
    from stocksync.database import get_db
    from stocksync.main import app

    def _override_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_db
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()


# ── Builders ─────────────────────────────────────────────────────────


def make_record(sku: str, **fields) -> InventoryRecord:
    fields.setdefault("stock", 100)
    fields.setdefault("reorder_point", 10)
    fields.setdefault("cost", 2.5)
    return InventoryRecord(sku=sku, **fields)


def make_item(db: Session, sku: str, **fields) -> InventoryItem:
    """Insert a synced InventoryItem with a correct content_hash."""
    fields.setdefault("stock", 100)
    fields.setdefault("reorder_point", 10)
    fields.setdefault("cost", 2.5)
    fields.setdefault("sync_priority", 5)
    fields.setdefault("sync_status", "completed")
    fields.setdefault("last_synced_at", datetime.now(timezone.utc))
    item = InventoryItem(sku=sku, **fields)
    item.content_hash = fingerprint(item)
    db.add(item)
    db.commit()
    return item


def finale_rows(rows: list[dict]) -> dict:
    """Columnar Finale body (field -> value array) for a list of row dicts."""
    keys: list[str] = []
    for row in rows:
        for k in row:
            if k not in keys:
                keys.append(k)
    return {k: [row.get(k) for row in rows] for k in keys}


def mock_finale(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))
