"""
logging_config.py — Centralized Logging Configuration for stocksync

Sets up Loguru as the single logging backend. Intercepts Python's stdlib
logging module so every getLogger("stocksync.*") call routes through Loguru
with structured output, log rotation, and sync-run context.

Business Rules:
- All logs go through Loguru (no print() in engine code)
- JSON format in production for machine parsing
- Human-readable format in development
- Sync run id / strategy are attached to records emitted inside a run
- Log rotation: 50MB files, 7-day retention

Called by: stocksync/main.py (on startup)
Depends on: LOG_LEVEL, APP_ENV, LOG_FILE environment variables
"""

import logging
import os
import sys

from loguru import logger


def setup_logging() -> None:
    """Configure Loguru and intercept stdlib logging.

    Call once at app startup, before anything else logs.
    """
    logger.remove()

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    is_production = os.getenv("APP_ENV", "development").lower() == "production"

    if is_production:
        # Production: JSON lines to stdout (container runtime captures these)
        logger.add(
            sys.stdout,
            level=log_level,
            format="{message}",
            serialize=True,
        )
        log_file = os.getenv("LOG_FILE")
        if log_file:
            logger.add(
                log_file,
                level=log_level,
                rotation="50 MB",
                retention="7 days",
                compression="gz",
                serialize=True,
            )
    else:
        logger.add(
            sys.stdout,
            level=log_level,
            format=(
                "<green>{time:HH:mm:ss}</green> | "
                "<level>{level: <8}</level> | "
                "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
                "{extra[run]}{message}"
            ),
            colorize=True,
        )

    # Default for records emitted outside a sync run
    logger.configure(extra={"run": ""})

    logging.basicConfig(handlers=[_InterceptHandler()], level=0, force=True)

    for noisy in ("httpx", "httpcore", "uvicorn.access", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    logger.info("Logging configured", level=log_level, production=is_production)


def run_logger(run_id: int, sync_type: str):
    """Loguru logger bound to one sync run.

    Everything logged through it carries run_id/sync_type in the JSON
    output and a "[run 12 full] " prefix in the dev format.
    """
    return logger.bind(run=f"[run {run_id} {sync_type}] ", run_id=run_id, sync_type=sync_type)


class _InterceptHandler(logging.Handler):
    """Route stdlib logging records to Loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Skip frames from stdlib logging internals
        frame, depth = logging.currentframe(), 0
        while frame and (depth == 0 or frame.f_code.co_filename == logging.__file__):
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )
