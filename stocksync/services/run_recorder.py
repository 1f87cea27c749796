"""
Sync run recorder — run log, single-flight registry, stuck-run sweep.

Every SyncRun row is created and mutated here and nowhere else.

Business Rules:
- start() creates the run in ``running`` and claims the registry in the same
  transaction; the claim is a conditional UPDATE (run_id IS NULL), so a
  second start fails with SyncConflictError instead of queuing
- track() finalizes on every exit path (success, partial, error,
  cancellation, unexpected exception) and always releases the claim
- A finalized run is immutable: finalize() on it raises RunFinalizedError
- Only the first N error messages are stored (N = sync_error_list_limit);
  the overflow count goes to metadata
- find_stuck() reports runs left ``running`` past the timeout and changes
  nothing; mark_failed() is the explicit operator action that closes one
- sync_metrics() summarizes finalized runs in a window: success rate,
  durations, throughput, spacing of successful syncs, top error types

Called by: services/sync_engine.py, routers/sync.py, scheduler.py
Depends on: models (SyncRun, SyncLock), config (settings)
"""

import logging
from contextlib import contextmanager
from collections import Counter
from datetime import datetime, timedelta, timezone

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import settings
from ..errors import RunFinalizedError, StuckRunError, SyncConflictError, SyncError
from ..models import RUN_STATUSES, STRATEGY_TYPES, SYNC_TYPES, SyncLock, SyncRun

log = logging.getLogger("stocksync.run_recorder")

LOCK_NAME = "inventory"
FINAL_STATUSES = tuple(s for s in RUN_STATUSES if s != "running")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(dt: datetime) -> datetime:
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


# ── Registry ──────────────────────────────────────────────────────────


def _ensure_lock_row(db: Session) -> None:
    if db.get(SyncLock, LOCK_NAME) is not None:
        return
    db.add(SyncLock(name=LOCK_NAME))
    try:
        db.commit()
    except IntegrityError:
        # Another process created it first
        db.rollback()


def holder_run_id(db: Session) -> int | None:
    return db.query(SyncLock.run_id).filter(SyncLock.name == LOCK_NAME).scalar()


def release(db: Session, run: SyncRun) -> bool:
    """Release the claim if ``run`` still holds it. Returns True if released."""
    result = db.execute(
        update(SyncLock)
        .where(SyncLock.name == LOCK_NAME, SyncLock.run_id == run.id)
        .values(run_id=None, claimed_at=None)
    )
    db.commit()
    return result.rowcount == 1


# ── Lifecycle ─────────────────────────────────────────────────────────


def start(db: Session, sync_type: str, metadata: dict | None = None) -> SyncRun:
    """Create a running SyncRun and claim the single running slot."""
    if sync_type not in SYNC_TYPES:
        raise ValueError(f"Unknown sync type: {sync_type}")
    _ensure_lock_row(db)

    run = SyncRun(
        sync_type=sync_type,
        status="running",
        items_processed=0,
        items_updated=0,
        errors=[],
        started_at=_now(),
        run_metadata=dict(metadata or {}),
    )
    db.add(run)
    db.flush()

    claimed = db.execute(
        update(SyncLock)
        .where(SyncLock.name == LOCK_NAME, SyncLock.run_id.is_(None))
        .values(run_id=run.id, claimed_at=_now())
    )
    if claimed.rowcount != 1:
        db.rollback()
        holder = holder_run_id(db)
        log.info(f"Sync start rejected: run {holder} holds the slot")
        raise SyncConflictError(running_run_id=holder)

    db.commit()
    log.info(f"Sync run {run.id} started ({sync_type})")
    return run


def update_progress(db: Session, run: SyncRun, percent: float, **extra) -> None:
    """Store progress (0-100) and any extra counters in the run's metadata."""
    if run.is_finalized:
        return
    meta = dict(run.run_metadata or {})
    meta["progress"] = round(max(0.0, min(float(percent), 100.0)), 1)
    meta.update(extra)
    run.run_metadata = meta
    db.commit()


def finalize(
    db: Session,
    run: SyncRun,
    status: str,
    *,
    items_processed: int | None = None,
    items_updated: int | None = None,
    errors: list[str] | None = None,
    metadata: dict | None = None,
) -> SyncRun:
    """Close a run. Raises RunFinalizedError if it was closed already."""
    if status not in FINAL_STATUSES:
        raise ValueError(f"Invalid final status: {status}")
    if run.is_finalized:
        raise RunFinalizedError(run.id)

    limit = settings.sync_error_list_limit
    errors = list(errors or [])
    meta = dict(run.run_metadata or {})
    if metadata:
        meta.update(metadata)
    if len(errors) > limit:
        meta["errors_truncated"] = len(errors) - limit
        errors = errors[:limit]

    now = _now()
    run.status = status
    if items_processed is not None:
        run.items_processed = items_processed
    if items_updated is not None:
        run.items_updated = items_updated
    run.errors = errors
    run.run_metadata = meta
    run.finalized_at = now
    run.duration_ms = max(int((now - _as_utc(run.started_at)).total_seconds() * 1000), 0)
    db.commit()

    log.info(
        f"Sync run {run.id} finalized: {status}, "
        f"{run.items_processed} processed, {run.items_updated} updated, "
        f"{len(errors)} errors, {run.duration_ms}ms"
    )
    return run


class RunTracker:
    """Accumulates counts and errors for one run; yielded by track()."""

    def __init__(self, db: Session, run: SyncRun):
        self.db = db
        self.run = run
        self.items_processed = 0
        self.items_updated = 0
        self.errors: list[str] = []
        self.metadata: dict = {}
        self.failed_batches = 0

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    def progress(self, percent: float, **extra) -> None:
        update_progress(self.db, self.run, percent, **extra)

    @property
    def status(self) -> str:
        return "partial" if self.failed_batches else "success"

    def finish(self, status: str | None = None) -> SyncRun:
        return finalize(
            self.db,
            self.run,
            status or self.status,
            items_processed=self.items_processed,
            items_updated=self.items_updated,
            errors=self.errors,
            metadata=self.metadata,
        )

    def fail(self, exc: BaseException) -> None:
        """Finalize as error. Tracebacks go to the log, never to the run."""
        if self.run.is_finalized:
            return
        message = exc.public_message if isinstance(exc, SyncError) else f"{type(exc).__name__}: {exc}"[:300]
        self.errors.append(message)
        self.metadata.setdefault("abort_reason", message)
        self.finish("error")


@contextmanager
def track(db: Session, sync_type: str, metadata: dict | None = None):
    """start() a run, yield its RunTracker, finalize + release on exit."""
    run = start(db, sync_type, metadata)
    tracker = RunTracker(db, run)
    failed = False
    try:
        yield tracker
        if not run.is_finalized:
            tracker.finish()
    except BaseException as e:
        failed = True
        db.rollback()
        try:
            tracker.fail(e)
        except Exception:
            log.exception(f"Could not record failure of sync run {run.id}")
        raise
    finally:
        try:
            release(db, run)
        except Exception:
            db.rollback()
            log.exception(f"Could not release sync slot held by run {run.id}")
            # The run's own failure is the one the caller needs to see
            if not failed:
                raise


# ── Queries ───────────────────────────────────────────────────────────


def last_successful_run(db: Session) -> SyncRun | None:
    """Latest successful strategy run (targeted retries do not count)."""
    return (
        db.query(SyncRun)
        .filter(SyncRun.status == "success", SyncRun.sync_type.in_(STRATEGY_TYPES))
        .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
        .first()
    )


def last_run(db: Session) -> SyncRun | None:
    return db.query(SyncRun).order_by(SyncRun.started_at.desc(), SyncRun.id.desc()).first()


def current_run(db: Session) -> SyncRun | None:
    """The run holding the slot, if any."""
    run_id = holder_run_id(db)
    return db.get(SyncRun, run_id) if run_id else None


def run_history(db: Session, limit: int = 20) -> list[SyncRun]:
    return (
        db.query(SyncRun)
        .order_by(SyncRun.started_at.desc(), SyncRun.id.desc())
        .limit(max(1, min(limit, 200)))
        .all()
    )


def find_stuck(
    db: Session, older_than_minutes: int | None = None, now: datetime | None = None
) -> list[StuckRunError]:
    """Runs still ``running`` after the timeout. Read-only."""
    minutes = settings.stuck_run_timeout_minutes if older_than_minutes is None else older_than_minutes
    now = now or _now()
    cutoff = now - timedelta(minutes=minutes)
    runs = (
        db.query(SyncRun)
        .filter(SyncRun.status == "running", SyncRun.started_at < cutoff)
        .order_by(SyncRun.started_at)
        .all()
    )
    reports = []
    for run in runs:
        running_minutes = int((now - _as_utc(run.started_at)).total_seconds() // 60)
        reports.append(StuckRunError(run.id, running_minutes))
    if reports:
        log.warning(f"Found {len(reports)} stuck sync run(s): {[r.run_id for r in reports]}")
    return reports


def mark_failed(db: Session, run_id: int, reason: str = "Marked failed by operator") -> SyncRun | None:
    """Close a (stuck) run as error and free the slot if it holds it.

    Returns None when the run does not exist; raises RunFinalizedError when
    it is already closed.
    """
    run = db.get(SyncRun, run_id)
    if run is None:
        return None
    finalize(
        db,
        run,
        "error",
        errors=list(run.errors or []) + [reason[:300]],
        metadata={"abort_reason": reason[:300], "marked_failed": True},
    )
    if release(db, run):
        log.warning(f"Sync slot released from failed run {run_id}")
    return run


# ── Metrics ───────────────────────────────────────────────────────────

METRICS_TREND_POINTS = 5
METRICS_SPACING_RUNS = 20


def _items_per_second(run: SyncRun) -> float | None:
    if not run.duration_ms or not run.items_processed:
        return None
    return round(run.items_processed / (run.duration_ms / 1000), 1)


def sync_metrics(db: Session, days: int = 7, now: datetime | None = None) -> dict:
    """Health of the sync loop over the last ``days`` days.

    Business Rules:
    - Only finalized runs count; a running run has no outcome yet
    - success_rate is success / finalized, as a percentage
    - Throughput and spacing use successful runs only
    - Error types are the text before the first ":" of each stored error
    """
    now = now or _now()
    since = now - timedelta(days=days)
    runs = (
        db.query(SyncRun)
        .filter(SyncRun.finalized_at.isnot(None), SyncRun.started_at >= since)
        .order_by(SyncRun.started_at, SyncRun.id)
        .all()
    )

    by_status = Counter(r.status for r in runs)
    successes = [r for r in runs if r.status == "success"]
    durations = [r.duration_ms for r in runs if r.duration_ms is not None]

    trend = []
    for run in successes:
        ips = _items_per_second(run)
        if ips is not None:
            trend.append({"started_at": _as_utc(run.started_at).isoformat(), "items_per_second": ips})

    spaced = [_as_utc(r.started_at) for r in successes[-METRICS_SPACING_RUNS:]]
    gaps = [(b - a).total_seconds() / 60 for a, b in zip(spaced, spaced[1:])]

    error_types = Counter(
        message.split(":", 1)[0].strip()
        for run in runs
        for message in (run.errors or [])
        if message
    )

    return {
        "period_days": days,
        "total_runs": len(runs),
        "by_status": {status: by_status.get(status, 0) for status in FINAL_STATUSES},
        "success_rate": round(len(successes) / len(runs) * 100, 1) if runs else None,
        "avg_duration_ms": round(sum(durations) / len(durations)) if durations else None,
        "avg_items_per_second": (
            round(sum(p["items_per_second"] for p in trend) / len(trend), 1) if trend else None
        ),
        "items_per_second_trend": trend[-METRICS_TREND_POINTS:],
        "avg_minutes_between_syncs": round(sum(gaps) / len(gaps), 1) if gaps else None,
        "syncs_per_day": round(len(runs) / days, 1) if days > 0 else 0.0,
        "top_errors": [{"error": e, "count": c} for e, c in error_types.most_common(10)],
    }


OVERDUE_HOURS = 24


def sync_health(db: Session, now: datetime | None = None) -> dict:
    """Last-success age plus stuck runs, with operator warnings."""
    now = now or _now()
    last = last_successful_run(db)
    stuck = find_stuck(db, now=now)

    warnings = []
    hours = None
    if last is None:
        warnings.append("No sync has been performed yet")
    else:
        hours = round((now - _as_utc(last.started_at)).total_seconds() / 3600, 1)
        if hours > OVERDUE_HOURS:
            warnings.append(f"Sync may be overdue: last success {round(hours)} hours ago")
    if stuck:
        warnings.append(f"{len(stuck)} sync run(s) appear stuck")

    return {
        "last_success_at": _as_utc(last.started_at).isoformat() if last else None,
        "hours_since_last_success": hours,
        "stuck_runs": [r.run_id for r in stuck],
        "warnings": warnings,
    }
