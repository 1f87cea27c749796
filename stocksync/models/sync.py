"""Sync models — run log and the single-flight run registry."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, Enum, Index, Integer, String

from .base import Base, UTCDateTime

# Strategy runs; "retry" is an operator re-upsert of named SKUs
STRATEGY_TYPES = ("full", "critical", "inventory", "active")
SYNC_TYPES = STRATEGY_TYPES + ("retry",)
RUN_STATUSES = ("running", "success", "partial", "error")


class SyncRun(Base):
    """Log of each sync run. Mutated only by services/run_recorder.py."""

    __tablename__ = "sync_runs"
    id = Column(Integer, primary_key=True)
    sync_type = Column(
        Enum(*SYNC_TYPES, name="sync_type", native_enum=False, create_constraint=True),
        nullable=False,
    )
    status = Column(
        Enum(*RUN_STATUSES, name="sync_run_status", native_enum=False, create_constraint=True),
        nullable=False,
        default="running",
    )
    items_processed = Column(Integer, nullable=False, default=0)
    items_updated = Column(Integer, nullable=False, default=0)
    errors = Column(JSON, default=list)
    duration_ms = Column(Integer)
    started_at = Column(UTCDateTime, nullable=False, default=lambda: datetime.now(timezone.utc))
    finalized_at = Column(UTCDateTime)
    # "metadata" is reserved on declarative classes
    run_metadata = Column("metadata", JSON, default=dict)

    __table_args__ = (
        Index("ix_sync_runs_status_started", "status", "started_at"),
        Index("ix_sync_runs_type_started", "sync_type", "started_at"),
    )

    @property
    def is_finalized(self) -> bool:
        return self.finalized_at is not None


class SyncLock(Base):
    """Run registry. A row with run_id set means the slot is taken.

    Claimed with a conditional UPDATE (WHERE run_id IS NULL) so two
    processes can never both believe they own it.
    """

    __tablename__ = "sync_locks"
    name = Column(String(50), primary_key=True)
    run_id = Column(Integer)
    claimed_at = Column(UTCDateTime)
