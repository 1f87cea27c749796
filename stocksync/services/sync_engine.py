"""
Sync engine — one inventory sync run from strategy choice to finalized SyncRun.

Flow:
  select strategy (time since last success) -> claim run -> load stored
  SKU snapshot -> stream pages from Finale -> normalize -> strategy filter
  -> change detection -> batch writer -> retire vanished SKUs (full only)
  -> finalize with counts, errors and change stats

Business Rules:
- One running run at a time (run_recorder registry claim)
- Pages are normalized and written as they arrive, never buffered whole
- Unchanged records are not written unless force=True
- Stock-only strategies merge fetched stock fields with the stored row
- Full sync is a staged swap: upsert everything, THEN delete SKUs missing
  from a complete fetch, in one transaction. Skipped when the fetch was
  capped, came back empty, or any batch failed.
- Time budget and cancellation are checked between pages and batches;
  either one finalizes the run as ``error``
- Fetch/auth errors finalize as ``error``; batch failures as ``partial``
- Store work (snapshot load, batch commits, retirement) runs in the default
  executor, never on the event loop
- SKUs of failed batches are kept in run metadata; retry_skus() re-upserts
  them (or any named SKUs) as a ``retry`` run

Called by: routers/sync.py, scheduler.py
Depends on: connectors/finale.py, services/*, logging_config.run_logger
"""

import asyncio
import logging
import threading
import time
from typing import Callable

from sqlalchemy import delete
from sqlalchemy.orm import Session

from ..config import settings
from ..connectors.finale import FinaleConnector
from ..errors import SyncCancelledError, SyncConflictError, SyncError, SyncTimeoutError
from ..logging_config import run_logger
from ..models import InventoryItem, SyncRun
from . import run_recorder
from .batch_writer import BatchOutcome, BatchWriter, WriteSummary
from .change_detection import is_changed, sync_stats
from .normalizer import RECORD_FIELDS, normalize_page
from .strategy import StrategyProfile, get_profile, select_strategy

log = logging.getLogger("stocksync.sync_engine")

RETIRE_CHUNK = 500
FAILED_SKU_LIMIT = 1000

_active_engines: set["SyncEngine"] = set()


class SyncEngine:
    def __init__(
        self,
        connector: FinaleConnector,
        db: Session,
        *,
        session_factory: Callable[[], Session] | None = None,
        max_workers: int | None = None,
        page_size: int | None = None,
        max_records: int | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.connector = connector
        self.db = db
        self.session_factory = session_factory
        self.max_workers = max_workers or settings.sync_batch_workers
        self.page_size = page_size or settings.finale_page_size
        self.max_records = max_records or settings.sync_max_records
        self.clock = clock
        self.cancel_event = threading.Event()

    def cancel(self) -> None:
        """Stop after the batch in flight; the run finalizes as error."""
        self.cancel_event.set()

    def choose_strategy(self) -> str:
        last = run_recorder.last_successful_run(self.db)
        return select_strategy(last.started_at if last else None)

    async def run(self, strategy: str | None = None, force: bool = False, trigger: str = "manual") -> SyncRun:
        """Execute one sync run and return the finalized SyncRun.

        Raises SyncConflictError when another run holds the slot. Errors
        classified as SyncError are recorded on the run, not raised.
        """
        profile = get_profile(strategy or self.choose_strategy())
        metadata = {"strategy": profile.name, "trigger": trigger, "forced": force}

        async def work(tracker, rlog):
            rlog.info(f"Sync started ({trigger}, force={force})")
            await self._execute(profile, tracker, force, rlog)

        return await self._tracked(profile.name, metadata, work)

    async def retry_skus(self, skus: list[str], trigger: str = "api") -> SyncRun:
        """Re-fetch and re-upsert the named SKUs as a ``retry`` run.

        Every found SKU is written with all fields, changed or not. SKUs
        Finale no longer has are listed in the run's ``missing`` metadata.
        """
        wanted = {s.strip() for s in skus if s and s.strip()}
        if not wanted:
            raise ValueError("no SKUs to retry")
        metadata = {"trigger": trigger, "requested": len(wanted)}

        async def work(tracker, rlog):
            rlog.info(f"Retrying {len(wanted)} SKUs ({trigger})")
            await self._execute_retry(wanted, tracker, rlog)

        return await self._tracked("retry", metadata, work)

    async def _tracked(self, sync_type: str, metadata: dict, work) -> SyncRun:
        _active_engines.add(self)
        try:
            with run_recorder.track(self.db, sync_type, metadata) as tracker:
                await work(tracker, run_logger(tracker.run.id, sync_type))
        except SyncConflictError:
            raise
        except SyncError as e:
            log.error(f"Sync run {tracker.run.id} ({sync_type}) failed: {e.public_message}")
        finally:
            _active_engines.discard(self)
        return tracker.run

    # ── Stages ────────────────────────────────────────────────────────

    def _load_existing(self) -> dict[str, dict]:
        """sku -> stored values, for change detection and partial merges."""
        cols = [getattr(InventoryItem, name) for name in RECORD_FIELDS]
        rows = self.db.query(InventoryItem.sku, InventoryItem.content_hash, *cols).all()
        return {row.sku: dict(row._mapping) for row in rows}

    def _stop_reason(self, deadline: float) -> str | None:
        if self.cancel_event.is_set():
            return "cancelled"
        if self.clock() >= deadline:
            return "timeout"
        return None

    def _raise_if_stopped(self, stop_reason: str | None, profile: StrategyProfile, rlog) -> None:
        if stop_reason == "cancelled":
            rlog.warning("Sync cancelled between batches")
            raise SyncCancelledError("cancelled")
        if stop_reason == "timeout":
            rlog.warning(f"Sync exceeded its {profile.timeout_seconds}s budget")
            raise SyncTimeoutError(f"{profile.name} sync exceeded {profile.timeout_seconds}s budget")

    def _writer(self, batch_size: int, fields: tuple[str, ...], deadline: float, tracker) -> BatchWriter:
        def on_batch(outcome: BatchOutcome, summary: WriteSummary) -> None:
            failure = outcome.failure
            if failure is None:
                return
            tracker.failed_batches += 1
            tracker.add_error(failure.public_message)
            failed = tracker.metadata.setdefault("failed_skus", [])
            room = max(FAILED_SKU_LIMIT - len(failed), 0)
            failed.extend(failure.skus[:room])
            if len(failure.skus) > room:
                dropped = len(failure.skus) - room
                tracker.metadata["failed_skus_truncated"] = tracker.metadata.get("failed_skus_truncated", 0) + dropped

        return BatchWriter(
            self.db,
            batch_size=batch_size,
            fields=fields,
            max_workers=self.max_workers,
            session_factory=self.session_factory,
            cancel_event=self.cancel_event,
            deadline=deadline,
            clock=self.clock,
            on_batch=on_batch,
        )

    async def _execute(self, profile: StrategyProfile, tracker, force: bool, rlog) -> None:
        loop = asyncio.get_running_loop()
        started = self.clock()
        deadline = started + profile.timeout_seconds
        existing = await loop.run_in_executor(None, self._load_existing)
        seen: set[str] = set()
        counts = {"fetched": 0, "dropped": 0, "filtered": 0, "unchanged": 0, "changed": 0, "pages": 0}
        writer = self._writer(profile.batch_size, profile.fields, deadline, tracker)

        stop_reason = None
        try:
            async for page in self.connector.iter_pages(
                profile.source_fields, self.page_size, self.max_records
            ):
                counts["pages"] += 1
                records, dropped = normalize_page(page.rows)
                counts["fetched"] += len(page.rows)
                counts["dropped"] += dropped

                to_write = []
                for rec in records:
                    seen.add(rec.sku)
                    stored = existing.get(rec.sku)
                    if not profile.keeps(rec, stored):
                        counts["filtered"] += 1
                        continue
                    if profile.is_partial and stored is not None:
                        fetched_fields = tuple(f for f in profile.fields if f in rec.present)
                        rec = rec.merged_with(stored, fetched_fields)
                    if force or is_changed(rec, stored["content_hash"] if stored else None):
                        to_write.append(rec)
                    else:
                        counts["unchanged"] += 1
                counts["changed"] += len(to_write)
                await loop.run_in_executor(None, writer.submit, to_write)

                stop_reason = writer.summary.stop_reason or self._stop_reason(deadline)
                if stop_reason:
                    break
                expected = max(len(existing), counts["fetched"], 1)
                tracker.progress(min(counts["fetched"] / expected * 100, 99.0), **counts)
        finally:
            summary = await loop.run_in_executor(None, writer.flush)
            tracker.items_processed = summary.items_processed
            tracker.items_updated = summary.items_updated
            tracker.metadata.update(counts)
            tracker.metadata["items_created"] = summary.items_created
            tracker.metadata["requests"] = self.connector.requests_made
            tracker.metadata["capped"] = self.connector.capped

        self._raise_if_stopped(stop_reason or summary.stop_reason, profile, rlog)

        if profile.retires_missing:
            tracker.metadata["items_retired"] = await loop.run_in_executor(
                None, self._retire_missing, existing, seen, summary, tracker, rlog
            )

        duration = max(self.clock() - started, 0.0)
        tracker.metadata.update(sync_stats(counts["fetched"] - counts["dropped"], counts["changed"], duration))
        tracker.metadata["progress"] = 100.0
        rlog.info(
            f"Sync done: {counts['fetched']} fetched, {counts['changed']} changed, "
            f"{summary.items_updated} written, {summary.batches_failed} failed batches"
        )

    async def _execute_retry(self, wanted: set[str], tracker, rlog) -> None:
        """Scan the full catalog for ``wanted``; stop early once all are found."""
        loop = asyncio.get_running_loop()
        profile = get_profile("full")
        deadline = self.clock() + profile.timeout_seconds
        writer = self._writer(profile.batch_size, RECORD_FIELDS, deadline, tracker)
        found: set[str] = set()

        try:
            async for page in self.connector.iter_pages(
                profile.source_fields, self.page_size, self.max_records
            ):
                records, _dropped = normalize_page(page.rows)
                hits = []
                for rec in records:
                    if rec.sku in wanted and rec.sku not in found:
                        found.add(rec.sku)
                        hits.append(rec)
                await loop.run_in_executor(None, writer.submit, hits)
                if found == wanted or writer.stopped or self._stop_reason(deadline):
                    break
        finally:
            summary = await loop.run_in_executor(None, writer.flush)
            missing = sorted(wanted - found)
            tracker.items_processed = summary.items_processed
            tracker.items_updated = summary.items_updated
            tracker.metadata.update(
                found=len(found),
                missing=missing[:FAILED_SKU_LIMIT],
                items_created=summary.items_created,
                requests=self.connector.requests_made,
            )

        self._raise_if_stopped(summary.stop_reason or self._stop_reason(deadline), profile, rlog)
        if missing:
            rlog.warning(f"{len(missing)} of {len(wanted)} SKUs not found in Finale")
        rlog.info(f"Retry done: {summary.items_updated} written, {summary.batches_failed} failed batches")

    def _retire_missing(self, existing: dict, seen: set[str], summary: WriteSummary, tracker, rlog) -> int:
        """Delete SKUs that vanished from a complete catalog fetch. One transaction."""
        if self.connector.capped:
            rlog.warning("Fetch was capped; not retiring missing SKUs")
            return 0
        if summary.batches_failed:
            rlog.warning("Batch failures this run; not retiring missing SKUs")
            return 0
        if not seen:
            rlog.warning("Catalog came back empty; not retiring missing SKUs")
            return 0

        stale = sorted(set(existing) - seen)
        if not stale:
            return 0
        try:
            for i in range(0, len(stale), RETIRE_CHUNK):
                chunk = stale[i : i + RETIRE_CHUNK]
                self.db.execute(delete(InventoryItem).where(InventoryItem.sku.in_(chunk)))
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            log.error(f"Retiring {len(stale)} missing SKUs failed: {e}", exc_info=True)
            tracker.failed_batches += 1
            tracker.add_error(f"retire missing SKUs failed: {e}"[:300])
            return 0
        rlog.info(f"Retired {len(stale)} SKUs no longer in Finale")
        return len(stale)


def cancel_active() -> int:
    """Cancel every run in progress in this process (used on shutdown)."""
    engines = list(_active_engines)
    for engine in engines:
        engine.cancel()
    return len(engines)


async def run_sync(strategy: str | None = None, force: bool = False, trigger: str = "manual") -> SyncRun:
    """Run a sync with a fresh session and a connector built from settings."""
    from ..database import SessionLocal

    db = SessionLocal()
    try:
        engine = SyncEngine(
            FinaleConnector.from_settings(),
            db,
            session_factory=SessionLocal,
        )
        return await engine.run(strategy=strategy, force=force, trigger=trigger)
    finally:
        db.close()


async def retry_failed_skus(skus: list[str], trigger: str = "api") -> SyncRun:
    """Targeted re-upsert of ``skus`` with a fresh session and connector."""
    from ..database import SessionLocal

    db = SessionLocal()
    try:
        engine = SyncEngine(
            FinaleConnector.from_settings(),
            db,
            session_factory=SessionLocal,
        )
        return await engine.retry_skus(skus, trigger=trigger)
    finally:
        db.close()
