"""Database connection and session factory.

Timestamp columns use models.base.UTCDateTime so naive datetimes loaded
from the store come back UTC-aware and staleness math never mixes naive
and aware values.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from .config import settings

_is_postgres = settings.database_url.startswith(("postgresql", "postgres"))
# Sync sessions are handed to executor threads, so SQLite must allow it
_is_sqlite = settings.database_url.startswith("sqlite")

engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    **(
        {
            "pool_size": 10,
            "max_overflow": 20,
            "pool_recycle": 3600,
            "connect_args": {"connect_timeout": 10},
        }
        if _is_postgres
        else {"connect_args": {"check_same_thread": False}} if _is_sqlite else {}
    ),
)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


if _is_postgres:

    @event.listens_for(engine, "connect")
    def _set_timezone(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("SET timezone = 'UTC'")
        cursor.close()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
