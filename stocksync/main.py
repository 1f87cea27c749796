"""
stocksync — Finale inventory synchronization service.

Wires the routers, the background scheduler and logging into one FastAPI app.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from sqlalchemy.orm import Session

from . import __version__
from .database import get_db
from .http_client import close_clients
from .logging_config import setup_logging
from .rate_limit import api_limiter, get_rate_limiter
from .routers import inventory, sync
from .scheduler import start_scheduler
from .services import run_recorder
from .services.sync_engine import cancel_active

log = logging.getLogger("stocksync.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    task = None
    if not os.environ.get("TESTING"):
        task = asyncio.create_task(start_scheduler())
    log.info(f"stocksync {__version__} started")
    yield
    cancelled = cancel_active()
    if cancelled:
        log.warning(f"Shutdown: cancelled {cancelled} sync run(s) in progress")
    if task is not None:
        task.cancel()
    await close_clients()


app = FastAPI(title="stocksync", version=__version__, lifespan=lifespan)
app.state.limiter = api_limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.include_router(sync.router)
app.include_router(inventory.router)


@app.get("/api/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except Exception as e:
        log.error(f"Health check database error: {e}")
        database = "error"
    sync_state = None
    if database == "ok":
        sync_state = run_recorder.sync_health(db)
    healthy = database == "ok" and not sync_state["warnings"]
    return {
        "status": "ok" if healthy else "degraded",
        "version": __version__,
        "database": database,
        "sync": sync_state,
        "rate_limiter": get_rate_limiter().status(),
    }
