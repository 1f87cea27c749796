"""Sync API — trigger runs, inspect run history and metrics, handle stuck
runs, retry failed SKUs, check the Finale connection."""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from ..config import settings
from ..database import get_db
from ..connectors.finale import FinaleConnector
from ..errors import RunFinalizedError, SyncConflictError
from ..models import SyncRun
from ..rate_limit import api_limiter, get_rate_limiter
from ..schemas.sync import (
    CheckStuckResponse,
    ConnectionTestRequest,
    ConnectionTestResponse,
    MarkFailedRequest,
    RetryFailedRequest,
    StuckRunOut,
    SyncRunOut,
    SyncMetricsResponse,
    SyncStatusResponse,
    SyncTriggerRequest,
    SyncTriggerResponse,
)
from ..services import run_recorder, settings_store
from ..services.strategy import select_strategy
from ..services.sync_engine import retry_failed_skus, run_sync

router = APIRouter(tags=["sync"])
log = logging.getLogger("stocksync.routers.sync")


def _run_out(run) -> SyncRunOut | None:
    return SyncRunOut.model_validate(run) if run is not None else None


async def _background_sync(strategy: str | None, force: bool) -> None:
    try:
        await run_sync(strategy=strategy, force=force, trigger="api")
    except SyncConflictError as e:
        log.info(f"Background sync not started: {e.public_message}")


@router.post("/api/sync/trigger", response_model=SyncTriggerResponse)
@api_limiter.limit(settings.rate_limit_trigger)
async def api_trigger_sync(
    request: Request,
    body: SyncTriggerRequest,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
):
    if not settings_store.sync_enabled(db):
        raise HTTPException(503, "Sync is disabled")
    if not settings.finale_configured:
        raise HTTPException(503, "Finale credentials are not configured")

    holder = run_recorder.holder_run_id(db)
    if holder is not None:
        raise HTTPException(409, f"Sync run {holder} is already in progress")

    if body.strategy:
        strategy = body.strategy
    else:
        last = run_recorder.last_successful_run(db)
        strategy = select_strategy(last.started_at if last else None)

    if body.wait:
        try:
            run = await run_sync(strategy=strategy, force=body.force, trigger="api")
        except SyncConflictError as e:
            raise HTTPException(409, e.public_message)
        return SyncTriggerResponse(status="completed", strategy=strategy, run=_run_out(run))

    background.add_task(_background_sync, strategy, body.force)
    log.info(f"Sync ({strategy}) queued from API")
    return SyncTriggerResponse(status="started", strategy=strategy)


@router.get("/api/sync/status", response_model=SyncStatusResponse)
def api_sync_status(db: Session = Depends(get_db)):
    last_success = run_recorder.last_successful_run(db)
    return SyncStatusResponse(
        enabled=settings_store.sync_enabled(db),
        frequency_minutes=settings_store.sync_frequency_minutes(db),
        running=_run_out(run_recorder.current_run(db)),
        last_run=_run_out(run_recorder.last_run(db)),
        last_success=_run_out(last_success),
        next_strategy=select_strategy(last_success.started_at if last_success else None),
        rate_limiter=get_rate_limiter().status(),
    )


@router.get("/api/sync/runs", response_model=list[SyncRunOut])
def api_sync_runs(limit: int = 20, db: Session = Depends(get_db)):
    return [_run_out(r) for r in run_recorder.run_history(db, limit)]


@router.get("/api/sync/check-stuck", response_model=CheckStuckResponse)
def api_check_stuck(older_than_minutes: int | None = None, db: Session = Depends(get_db)):
    reports = run_recorder.find_stuck(db, older_than_minutes)
    stuck = [
        StuckRunOut(run_id=r.run_id, running_minutes=r.running_minutes, message=r.message)
        for r in reports
    ]
    return CheckStuckResponse(stuck=stuck, count=len(stuck))


@router.post("/api/sync/runs/{run_id}/fail", response_model=SyncRunOut)
def api_mark_failed(run_id: int, body: MarkFailedRequest, db: Session = Depends(get_db)):
    try:
        run = run_recorder.mark_failed(db, run_id, body.reason)
    except RunFinalizedError as e:
        raise HTTPException(409, e.public_message)
    if run is None:
        raise HTTPException(404, "Sync run not found")
    log.warning(f"Sync run {run_id} marked failed: {body.reason}")
    return _run_out(run)


@router.get("/api/sync/metrics", response_model=SyncMetricsResponse)
def api_sync_metrics(days: int = Query(7, ge=1, le=90), db: Session = Depends(get_db)):
    return run_recorder.sync_metrics(db, days)


@router.post("/api/sync/retry-failed", response_model=SyncRunOut)
async def api_retry_failed(body: RetryFailedRequest, db: Session = Depends(get_db)):
    """Re-upsert named SKUs, or the failed-batch SKUs recorded on a run."""
    if not settings.finale_configured:
        raise HTTPException(503, "Finale credentials are not configured")

    skus = list(body.skus)
    if body.run_id is not None:
        source = db.get(SyncRun, body.run_id)
        if source is None:
            raise HTTPException(404, "Sync run not found")
        failed = (source.run_metadata or {}).get("failed_skus") or []
        if not failed and not skus:
            raise HTTPException(400, f"Sync run {body.run_id} has no failed SKUs")
        skus.extend(failed)
    skus = sorted({s.strip() for s in skus if s and s.strip()})
    if not skus:
        raise HTTPException(400, "Provide skus or a run_id with failed SKUs")

    holder = run_recorder.holder_run_id(db)
    if holder is not None:
        raise HTTPException(409, f"Sync run {holder} is already in progress")

    try:
        run = await retry_failed_skus(skus, trigger="api")
    except SyncConflictError as e:
        raise HTTPException(409, e.public_message)
    log.info(f"Retry of {len(skus)} SKUs finished: {run.status}")
    return _run_out(run)


@router.post("/api/sync/test-connection", response_model=ConnectionTestResponse)
async def api_test_connection(body: ConnectionTestRequest):
    api_key = body.api_key or settings.finale_api_key
    api_secret = body.api_secret or settings.finale_api_secret
    account_path = body.account_path or settings.finale_account_path
    if not (api_key and api_secret and account_path):
        raise HTTPException(400, "Missing Finale credentials")

    connector = FinaleConnector(
        api_key,
        api_secret,
        account_path,
        base_host=settings.finale_base_host,
        timeout=settings.finale_timeout_seconds,
        acquire_timeout=settings.rate_limit_acquire_timeout,
    )
    ok, message = await connector.check_connection()
    return ConnectionTestResponse(success=ok, account=connector.account, message=message)
