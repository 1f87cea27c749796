"""Background scheduler — automatic inventory syncs.

Runs on a tick loop (scheduler_tick_seconds, default 5 min). Each tick:
  - Stuck sweep: report runs left ``running`` past the stuck timeout (no changes)
  - Auto sync: when sync_enabled and sync_frequency_minutes have passed since
    the last run started, run one sync with the auto-selected strategy
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

log = logging.getLogger("stocksync.scheduler")


def _utc(dt):
    """Make a naive datetime UTC-aware (no-op if already aware)."""
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


async def start_scheduler():
    """Launch the background scheduler loop. Call once on app startup."""
    from .config import settings

    log.info(
        f"Background scheduler started — tick every {settings.scheduler_tick_seconds}s"
    )

    # Let the app finish booting before the first tick
    await asyncio.sleep(10)

    while True:
        try:
            await _scheduler_tick()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"Scheduler tick error: {e}", exc_info=True)
        await asyncio.sleep(settings.scheduler_tick_seconds)


def sync_due(db, now: datetime | None = None) -> bool:
    """True when an automatic sync should start this tick."""
    from .services import run_recorder, settings_store

    if not settings_store.sync_enabled(db):
        return False
    if run_recorder.holder_run_id(db) is not None:
        return False
    last = run_recorder.last_run(db)
    if last is None:
        return True
    now = now or datetime.now(timezone.utc)
    frequency = timedelta(minutes=settings_store.sync_frequency_minutes(db))
    return now - _utc(last.started_at) >= frequency


async def _scheduler_tick():
    """Check what needs to run this tick."""
    from .config import settings
    from .database import SessionLocal
    from .errors import SyncConflictError
    from .services import run_recorder
    from .services.sync_engine import run_sync

    db = SessionLocal()
    try:
        # ── Stuck sweep (every tick) ──
        try:
            stuck = run_recorder.find_stuck(db)
            for report in stuck:
                log.warning(f"Stuck sync: {report.public_message} — mark it failed via the API")
        except Exception as e:
            log.error(f"Stuck sweep error: {e}")
            db.rollback()

        # ── Auto sync ──
        if not settings.finale_configured:
            log.debug("Scheduler tick: Finale not configured — skipping auto sync")
            return
        if not sync_due(db):
            return
    finally:
        db.close()

    try:
        run = await run_sync(trigger="scheduler")
        log.info(f"Scheduled sync run {run.id} finished: {run.status}")
    except SyncConflictError as e:
        log.info(f"Scheduled sync skipped: {e.public_message}")
