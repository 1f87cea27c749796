"""
Batch writer — idempotent, failure-isolating upsert of InventoryItem rows.

This is the only write path for inventory rows. Every write recomputes
sync_priority and re-stamps content_hash / sync_status / last_synced_at,
so no caller can leave a stale priority behind.

Business Rules:
- Fixed-size batches keyed by SKU; one transaction per batch
- Upsert, never insert-only: rerunning the same snapshot is a no-op in effect
- Last writer wins by SKU (single-flight registry prevents overlapping runs)
- Transient store errors (OperationalError) are retried with the shared policy
- A batch that still fails is rolled back, recorded as PartialBatchFailure,
  and the next batch is attempted anyway
- Cancellation / time budget are checked BETWEEN batches only: a batch that
  started always commits or rolls back as a whole
- items_processed counts every record in an attempted batch,
  items_updated counts records that committed

Called by: services/sync_engine.py
Depends on: services/priority.py, services/change_detection.py, utils/retry.py
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ..errors import PartialBatchFailure
from ..models import InventoryItem
from ..utils.retry import RetryPolicy
from .change_detection import safe_fingerprint
from .normalizer import RECORD_FIELDS, InventoryRecord
from .priority import hours_since, priority

log = logging.getLogger("stocksync.batch_writer")

DEFAULT_BATCH_SIZE = 100


def _is_transient_store_error(exc: BaseException) -> bool:
    return isinstance(exc, OperationalError)


@dataclass
class BatchOutcome:
    batch_number: int
    size: int
    written: int = 0
    created: int = 0
    failure: PartialBatchFailure | None = None


@dataclass
class WriteSummary:
    items_processed: int = 0
    items_updated: int = 0
    items_created: int = 0
    batches_attempted: int = 0
    batches_failed: int = 0
    items_skipped: int = 0
    stop_reason: str | None = None
    failures: list[PartialBatchFailure] = field(default_factory=list)

    @property
    def error_messages(self) -> list[str]:
        return [f.public_message for f in self.failures]


class BatchWriter:
    """Buffer records and commit them in fixed-size batches.

    Sequential by default, in the caller's session. With ``max_workers`` > 1
    disjoint batches run on a bounded thread pool, each in its own session
    from ``session_factory``.
    """

    def __init__(
        self,
        db: Session | None,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        fields: tuple[str, ...] = RECORD_FIELDS,
        retry: RetryPolicy | None = None,
        max_workers: int = 1,
        session_factory: Callable[[], Session] | None = None,
        cancel_event: threading.Event | None = None,
        deadline: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        on_batch: Callable[[BatchOutcome, "WriteSummary"], None] | None = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if max_workers > 1 and session_factory is None:
            raise ValueError("parallel batches need a session_factory")
        if max_workers <= 1 and db is None:
            raise ValueError("sequential writes need a session")
        self.db = db
        self.batch_size = batch_size
        self.fields = fields
        self.retry = retry or RetryPolicy.from_settings(
            name="batch_writer.commit", retry_on=_is_transient_store_error
        )
        self.max_workers = max_workers
        self.session_factory = session_factory
        self.cancel_event = cancel_event or threading.Event()
        self.deadline = deadline
        self.clock = clock
        self.on_batch = on_batch

        self.summary = WriteSummary()
        self._buffer: list[InventoryRecord] = []
        self._batch_no = 0
        self._executor: ThreadPoolExecutor | None = None
        self._slots: threading.BoundedSemaphore | None = None
        self._pending: list[Future] = []
        if max_workers > 1:
            self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="batch-writer")
            self._slots = threading.BoundedSemaphore(max_workers)

    # ── Public API ────────────────────────────────────────────────────

    def submit(self, records: Iterable[InventoryRecord]) -> None:
        """Queue records; every full batch is committed right away."""
        self._buffer.extend(records)
        while len(self._buffer) >= self.batch_size:
            batch = self._buffer[: self.batch_size]
            del self._buffer[: self.batch_size]
            self._dispatch(batch)

    def flush(self) -> WriteSummary:
        """Commit the remainder and wait for in-flight batches."""
        if self._buffer:
            batch, self._buffer = self._buffer, []
            self._dispatch(batch)
        self._drain(wait=True)
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
        return self.summary

    def write(self, records: Iterable[InventoryRecord]) -> WriteSummary:
        """submit() + flush() in one call."""
        self.submit(records)
        return self.flush()

    @property
    def stopped(self) -> bool:
        return self.summary.stop_reason is not None

    # ── Dispatch ──────────────────────────────────────────────────────

    def _check_stop(self) -> str | None:
        if self.summary.stop_reason:
            return self.summary.stop_reason
        if self.cancel_event.is_set():
            self.summary.stop_reason = "cancelled"
        elif self.deadline is not None and self.clock() >= self.deadline:
            self.summary.stop_reason = "timeout"
        return self.summary.stop_reason

    def _dispatch(self, batch: list[InventoryRecord]) -> None:
        if self._check_stop():
            self.summary.items_skipped += len(batch)
            return
        self._batch_no += 1
        number = self._batch_no

        if self._executor is None:
            self._record(self._run_batch(number, batch, self.db))
            return

        self._slots.acquire()
        future = self._executor.submit(self._run_in_own_session, number, batch)
        future.add_done_callback(lambda _f: self._slots.release())
        self._pending.append(future)
        self._drain(wait=False)

    def _drain(self, wait: bool) -> None:
        still_running = []
        for future in self._pending:
            if wait or future.done():
                self._record(future.result())
            else:
                still_running.append(future)
        self._pending = still_running

    def _record(self, outcome: BatchOutcome) -> None:
        s = self.summary
        s.batches_attempted += 1
        s.items_processed += outcome.size
        s.items_updated += outcome.written
        s.items_created += outcome.created
        if outcome.failure is not None:
            s.batches_failed += 1
            s.failures.append(outcome.failure)
        if self.on_batch is not None:
            self.on_batch(outcome, s)

    # ── One batch ─────────────────────────────────────────────────────

    def _run_in_own_session(self, number: int, batch: list[InventoryRecord]) -> BatchOutcome:
        db = self.session_factory()
        try:
            return self._run_batch(number, batch, db)
        finally:
            db.close()

    def _run_batch(self, number: int, batch: list[InventoryRecord], db: Session) -> BatchOutcome:
        outcome = BatchOutcome(batch_number=number, size=len(batch))
        try:
            outcome.created = self.retry.call(lambda: self._commit(db, batch))
            outcome.written = len(batch)
            log.debug(f"Batch {number}: committed {len(batch)} items ({outcome.created} new)")
        except Exception as e:
            outcome.failure = PartialBatchFailure(number, len(batch), e, skus=[r.sku for r in batch])
            log.error(f"Batch {number} ({len(batch)} items) failed: {e}", exc_info=True)
        return outcome

    def _commit(self, db: Session, batch: list[InventoryRecord]) -> int:
        """Upsert one batch in one transaction. Returns rows created."""
        now = datetime.now(timezone.utc)
        skus = [r.sku for r in batch]
        try:
            existing = {
                item.sku: item
                for item in db.query(InventoryItem).filter(InventoryItem.sku.in_(skus)).all()
            }
            created = 0
            for rec in batch:
                item = existing.get(rec.sku)
                if item is None:
                    item = InventoryItem(sku=rec.sku)
                    db.add(item)
                    existing[rec.sku] = item
                    created += 1
                    apply_fields = RECORD_FIELDS
                else:
                    apply_fields = self.fields
                apply_record(item, rec, apply_fields, now)
            db.commit()
            return created
        except Exception:
            db.rollback()
            raise


def apply_record(
    item: InventoryItem,
    rec: InventoryRecord,
    fields: tuple[str, ...],
    now: datetime,
) -> None:
    """Copy record values onto a row and recompute the derived sync columns."""
    previous_hash = item.content_hash
    hours = hours_since(item.last_synced_at, now)

    for name in fields:
        setattr(item, name, getattr(rec, name))

    new_hash = safe_fingerprint(item)
    item.content_hash = new_hash
    item.sync_priority = priority(item.stock, item.reorder_point, hours)
    # Forced rewrites of an identical row are still writes, just flagged
    item.sync_status = "unchanged" if new_hash and new_hash == previous_hash else "completed"
    item.last_synced_at = now
