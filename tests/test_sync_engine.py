"""
test_sync_engine.py — End-to-end tests for stocksync/services/sync_engine.py

A fake Finale catalog (httpx.MockTransport) feeds a real connector; the
engine writes into the in-memory test DB.

Covers: first full sync, change detection skipping unchanged rows, forced
rewrites, stock-only strategies (merge, no new SKUs, critical filter),
staged-swap retirement (and when it is skipped), auth failure, batch
failure -> partial, conflict, cancellation, time budget, auto strategy,
responsiveness of the event loop during store retries, targeted retry of
named SKUs.

Called by: pytest
Depends on: stocksync/services/sync_engine.py
"""

import asyncio
import itertools
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import httpx
import pytest
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from conftest import finale_rows, make_item, mock_finale
from stocksync.config import settings
from stocksync.connectors.finale import FinaleConnector
from stocksync.errors import SyncConflictError
from stocksync.models import InventoryItem, SyncRun
from stocksync.services import run_recorder
from stocksync.services.batch_writer import BatchWriter
from stocksync.services.critical_items import get_critical_items
from stocksync.services.sync_engine import SyncEngine, cancel_active


def _row(sku, stock, rp=10, cost=2.5, vendor="Acme", name=None) -> dict:
    return {
        "productId": sku,
        "productName": name or f"Item {sku}",
        "quantityOnHand": stock,
        "reorderPoint": rp,
        "averageCost": cost,
        "primarySupplierName": vendor,
    }


class FakeFinale:
    """Serves a catalog page by page; honors the fields= restriction."""

    def __init__(self, catalog: list[dict], html: bool = False):
        self.catalog = catalog
        self.html = html
        self.calls: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.html:
            return httpx.Response(200, text="<html>Sign in</html>", headers={"content-type": "text/html"})
        offset = int(request.url.params["offset"])
        limit = int(request.url.params["limit"])
        rows = self.catalog[offset : offset + limit]
        if "fields" in request.url.params:
            wanted = set(request.url.params["fields"].split(","))
            rows = [{k: v for k, v in r.items() if k in wanted} for r in rows]
        return httpx.Response(200, json=finale_rows(rows))


@pytest.fixture()
def make_engine(db_session: Session, fast_limiter, no_sleep_retry):
    def make(finale: FakeFinale, **kwargs) -> SyncEngine:
        connector = FinaleConnector(
            "key",
            "secret",
            "acme",
            client=mock_finale(finale),
            limiter=fast_limiter,
            retry=no_sleep_retry(),
        )
        kwargs.setdefault("page_size", 10)
        return SyncEngine(connector, db_session, **kwargs)

    return make


def _skus(db: Session) -> set[str]:
    return {i.sku for i in db.query(InventoryItem).all()}


# ── Full sync ────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_first_sync_is_full_and_loads_catalog(db_session, make_engine):
    finale = FakeFinale([_row(f"SKU-{i:02d}", stock=i + 20) for i in range(15)])
    run = await make_engine(finale).run()

    assert run.sync_type == "full"
    assert run.status == "success"
    assert run.items_processed == 15
    assert run.items_updated == 15
    assert run.errors == []
    assert run.run_metadata["items_created"] == 15
    assert run.run_metadata["pages"] == 2
    assert run.run_metadata["change_rate"] == 100.0
    assert run.run_metadata["progress"] == 100.0
    assert run.run_metadata["trigger"] == "manual"
    assert len(_skus(db_session)) == 15
    assert "fields" not in finale.calls[0].url.params
    assert run_recorder.holder_run_id(db_session) is None


@pytest.mark.asyncio
async def test_unchanged_records_are_not_written(db_session, make_engine):
    catalog = [_row(f"SKU-{i:02d}", stock=50) for i in range(5)]
    await make_engine(FakeFinale(catalog)).run(strategy="full")
    before = {i.sku: i.last_synced_at for i in db_session.query(InventoryItem).all()}

    run = await make_engine(FakeFinale(catalog)).run(strategy="full")
    assert run.status == "success"
    assert run.items_updated == 0
    assert run.run_metadata["unchanged"] == 5
    assert run.run_metadata["efficiency_gain"] == 100.0
    db_session.expire_all()
    after = {i.sku: i.last_synced_at for i in db_session.query(InventoryItem).all()}
    assert after == before


@pytest.mark.asyncio
async def test_only_changed_records_are_written(db_session, make_engine):
    catalog = [_row(f"SKU-{i:02d}", stock=50) for i in range(5)]
    await make_engine(FakeFinale(catalog)).run(strategy="full")

    catalog[2] = _row("SKU-02", stock=49)
    catalog[3] = _row("SKU-03", stock=50, name="Renamed only")
    run = await make_engine(FakeFinale(catalog)).run(strategy="full")

    assert run.items_updated == 1
    assert run.run_metadata["changed"] == 1
    item = db_session.query(InventoryItem).filter_by(sku="SKU-02").one()
    assert item.stock == 49


@pytest.mark.asyncio
async def test_force_rewrites_unchanged(db_session, make_engine):
    catalog = [_row("A", stock=50)]
    await make_engine(FakeFinale(catalog)).run(strategy="full")
    run = await make_engine(FakeFinale(catalog)).run(strategy="full", force=True)

    assert run.items_updated == 1
    assert run.run_metadata["forced"] is True
    item = db_session.query(InventoryItem).filter_by(sku="A").one()
    assert item.sync_status == "unchanged"


@pytest.mark.asyncio
async def test_full_sync_retires_missing_skus(db_session, make_engine):
    for sku in ("A", "B", "GONE"):
        make_item(db_session, sku)
    run = await make_engine(FakeFinale([_row("A", 100), _row("B", 100)])).run(strategy="full")

    assert run.status == "success"
    assert run.run_metadata["items_retired"] == 1
    db_session.expire_all()
    assert _skus(db_session) == {"A", "B"}


@pytest.mark.asyncio
async def test_capped_fetch_does_not_retire(db_session, make_engine):
    for sku in ("A", "B", "C", "D"):
        make_item(db_session, sku)
    finale = FakeFinale([_row("A", 1), _row("B", 1), _row("C", 1)])
    run = await make_engine(finale, max_records=2).run(strategy="full")

    assert run.run_metadata["capped"] is True
    assert run.run_metadata["items_retired"] == 0
    assert _skus(db_session) == {"A", "B", "C", "D"}


@pytest.mark.asyncio
async def test_empty_catalog_does_not_retire(db_session, make_engine):
    make_item(db_session, "A")
    run = await make_engine(FakeFinale([])).run(strategy="full")
    assert run.run_metadata["items_retired"] == 0
    assert _skus(db_session) == {"A"}


@pytest.mark.asyncio
async def test_active_skips_discontinued(db_session, make_engine):
    catalog = [_row("LIVE", 10), {**_row("OLD", 10), "statusId": "PRODUCT_INACTIVE"}]
    run = await make_engine(FakeFinale(catalog)).run(strategy="active")
    assert run.sync_type == "active"
    assert run.run_metadata["filtered"] == 1
    assert _skus(db_session) == {"LIVE"}


# ── Stock-only strategies ────────────────────────────────────────────


@pytest.mark.asyncio
async def test_inventory_merges_stock_and_skips_new(db_session, make_engine):
    make_item(db_session, "A", stock=10, vendor="Acme", product_name="Widget", cost=4.0, reorder_quantity=25)
    finale = FakeFinale([_row("A", 7, vendor="Changed", cost=9.0), _row("NEW", 3)])
    run = await make_engine(finale).run(strategy="inventory")

    assert run.status == "success"
    assert run.run_metadata["filtered"] == 1
    assert "quantityOnHand" in finale.calls[0].url.params["fields"]
    item = db_session.query(InventoryItem).filter_by(sku="A").one()
    assert item.stock == 7
    assert item.vendor == "Acme"
    assert item.cost == 4.0
    assert item.product_name == "Widget"
    assert item.reorder_quantity == 25
    assert _skus(db_session) == {"A"}


@pytest.mark.asyncio
async def test_critical_syncs_only_critical_skus(db_session, make_engine):
    make_item(db_session, "HEALTHY", stock=100, reorder_point=10)
    make_item(db_session, "LOW", stock=5, reorder_point=10)
    make_item(db_session, "DROPPING", stock=50, reorder_point=10)
    finale = FakeFinale([_row("HEALTHY", 90), _row("LOW", 4), _row("DROPPING", 0)])
    run = await make_engine(finale).run(strategy="critical")

    assert run.items_updated == 2
    stock = {i.sku: i.stock for i in db_session.query(InventoryItem).all()}
    assert stock == {"HEALTHY": 100, "LOW": 4, "DROPPING": 0}


@pytest.mark.asyncio
async def test_stock_to_zero_becomes_top_critical_item(db_session, make_engine):
    make_item(db_session, "OTHER", stock=2, reorder_point=10, sync_priority=9)
    make_item(db_session, "A", stock=5, reorder_point=3, sync_priority=7)
    await make_engine(FakeFinale([_row("A", 0, rp=3), _row("OTHER", 2)])).run(strategy="inventory")

    item = db_session.query(InventoryItem).filter_by(sku="A").one()
    assert item.sync_priority == 10
    assert get_critical_items(db_session)[0]["sku"] == "A"


# ── Failures ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_html_session_page_fails_run_without_retries(db_session, make_engine):
    finale = FakeFinale([], html=True)
    run = await make_engine(finale).run(strategy="full")

    assert run.status == "error"
    assert run.errors[0].startswith("AuthError")
    assert len(finale.calls) == 1
    assert run_recorder.holder_run_id(db_session) is None


@pytest.mark.asyncio
async def test_batch_failure_makes_run_partial_and_skips_retire(db_session, make_engine):
    make_item(db_session, "GONE")
    catalog = [_row(f"SKU-{i:03d}", 40) for i in range(120)]

    original = BatchWriter._commit
    state = {"n": 0}

    def flaky_commit(self, db, batch):
        state["n"] += 1
        if state["n"] == 1:
            raise SQLAlchemyError("disk full")
        return original(self, db, batch)

    with patch.object(BatchWriter, "_commit", flaky_commit):
        run = await make_engine(FakeFinale(catalog), page_size=50).run(strategy="full")

    assert run.status == "partial"
    assert run.items_processed == 120
    assert run.items_updated == 20
    assert len(run.errors) == 1
    assert "batch 1" in run.errors[0]
    assert "items_retired" in run.run_metadata
    assert run.run_metadata["items_retired"] == 0
    assert "GONE" in _skus(db_session)
    assert run.run_metadata["failed_skus"] == [f"SKU-{i:03d}" for i in range(100)]


@pytest.mark.asyncio
async def test_conflict_when_run_in_progress(db_session, make_engine):
    holder = run_recorder.start(db_session, "full")
    with pytest.raises(SyncConflictError) as exc_info:
        await make_engine(FakeFinale([_row("A", 1)])).run(strategy="critical")
    assert exc_info.value.running_run_id == holder.id
    assert db_session.query(SyncRun).count() == 1


@pytest.mark.asyncio
async def test_cancelled_run_finalizes_as_error(db_session, make_engine):
    engine = make_engine(FakeFinale([_row(f"SKU-{i}", 5) for i in range(5)]))
    engine.cancel()
    run = await engine.run(strategy="full")

    assert run.status == "error"
    assert run.errors == ["SyncCancelledError: cancelled"]
    assert run.items_updated == 0
    assert _skus(db_session) == set()


@pytest.mark.asyncio
async def test_time_budget_exceeded(db_session, make_engine):
    clock = itertools.chain([0.0], itertools.repeat(10_000.0))
    engine = make_engine(FakeFinale([_row("A", 5)]), clock=lambda: next(clock))
    run = await engine.run(strategy="full")

    assert run.status == "error"
    assert run.errors[0].startswith("SyncTimeoutError")
    assert run_recorder.holder_run_id(db_session) is None


def test_cancel_active_without_runs():
    assert cancel_active() == 0


# ── Strategy selection ───────────────────────────────────────────────


@pytest.mark.asyncio
async def test_recent_success_selects_critical(db_session, make_engine):
    started = datetime.now(timezone.utc) - timedelta(minutes=30)
    db_session.add(
        SyncRun(
            sync_type="full",
            status="success",
            errors=[],
            run_metadata={},
            started_at=started,
            finalized_at=started + timedelta(minutes=2),
        )
    )
    db_session.commit()
    make_item(db_session, "A", stock=0, reorder_point=5)

    engine = make_engine(FakeFinale([_row("A", 0, rp=5)]))
    assert engine.choose_strategy() == "critical"
    run = await engine.run()
    assert run.sync_type == "critical"
    assert run.status == "success"


# ── Event loop ───────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_event_loop_keeps_running_during_batch_retry(db_session, make_engine):
    original = BatchWriter._commit
    state = {"n": 0}

    def locked_once(self, db, batch):
        state["n"] += 1
        if state["n"] == 1:
            raise OperationalError("COMMIT", {}, Exception("database is locked"))
        return original(self, db, batch)

    gaps: list[float] = []
    done = asyncio.Event()

    async def heartbeat():
        last = time.monotonic()
        while not done.is_set():
            await asyncio.sleep(0.02)
            now = time.monotonic()
            gaps.append(now - last)
            last = now

    engine = make_engine(FakeFinale([_row(f"SKU-{i}", 30) for i in range(5)]))
    with patch.object(BatchWriter, "_commit", locked_once), patch.object(settings, "retry_base_delay", 0.5):
        beat = asyncio.create_task(heartbeat())
        run = await engine.run(strategy="full")
        done.set()
        await beat

    assert run.status == "success"
    assert run.items_updated == 5
    assert state["n"] == 2
    # The 0.5s backoff sleeps in a worker thread, not on the loop
    assert len(gaps) >= 10
    assert max(gaps) < 0.25


# ── Targeted retry ───────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_retry_skus_rewrites_named_skus_only(db_session, make_engine):
    retried = make_item(db_session, "SKU-03", stock=1, cost=9.0)
    untouched = make_item(db_session, "SKU-04", stock=1)
    finale = FakeFinale([_row(f"SKU-{i:02d}", stock=40) for i in range(25)])

    run = await make_engine(finale).retry_skus(["SKU-03", " NOPE ", ""])

    assert run.sync_type == "retry"
    assert run.status == "success"
    assert run.items_updated == 1
    assert run.run_metadata["requested"] == 2
    assert run.run_metadata["found"] == 1
    assert run.run_metadata["missing"] == ["NOPE"]
    db_session.refresh(retried)
    assert retried.stock == 40
    assert retried.cost == 2.5
    db_session.refresh(untouched)
    assert untouched.stock == 1
    assert run_recorder.holder_run_id(db_session) is None


@pytest.mark.asyncio
async def test_retry_stops_scanning_once_all_found(db_session, make_engine):
    finale = FakeFinale([_row(f"SKU-{i:02d}", stock=40) for i in range(25)])
    run = await make_engine(finale).retry_skus(["SKU-02", "SKU-07"])

    assert run.run_metadata["found"] == 2
    assert run.run_metadata["missing"] == []
    assert len(finale.calls) == 1
    assert _skus(db_session) == {"SKU-02", "SKU-07"}


@pytest.mark.asyncio
async def test_retry_run_does_not_count_as_successful_sync(db_session, make_engine):
    await make_engine(FakeFinale([_row("A", 5)])).retry_skus(["A"])
    assert run_recorder.last_successful_run(db_session) is None


@pytest.mark.asyncio
async def test_retry_requires_skus(make_engine):
    with pytest.raises(ValueError):
        await make_engine(FakeFinale([])).retry_skus([" ", ""])
