"""Inventory model — one row per SKU, owned by the sync engine."""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Enum,
    Float,
    Index,
    Integer,
    String,
)

from .base import Base, UTCDateTime

SYNC_STATUSES = ("pending", "syncing", "completed", "unchanged")


class InventoryItem(Base):
    """Local copy of a Finale product used for reorder decisions.

    Written only through services/batch_writer.py, which recomputes
    sync_priority and content_hash on every write.
    """

    __tablename__ = "inventory_items"
    id = Column(Integer, primary_key=True)
    sku = Column(String(255), nullable=False, unique=True, index=True)
    finale_id = Column(String(255))
    product_name = Column(String(500))
    stock = Column(Integer, nullable=False, default=0)
    cost = Column(Float, nullable=False, default=0)
    vendor = Column(String(255))
    location = Column(String(255))
    reorder_point = Column(Integer, nullable=False, default=0)
    reorder_quantity = Column(Integer, nullable=False, default=0)
    sales_last_30_days = Column(Integer, nullable=False, default=0)
    sales_last_90_days = Column(Integer, nullable=False, default=0)
    discontinued = Column(Boolean, nullable=False, default=False)

    content_hash = Column(String(64))
    sync_priority = Column(Integer, nullable=False, default=5)
    sync_status = Column(
        Enum(*SYNC_STATUSES, name="sync_status", native_enum=False, create_constraint=True),
        nullable=False,
        default="pending",
    )
    last_synced_at = Column(UTCDateTime)

    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        UTCDateTime,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        CheckConstraint("sync_priority >= 0 AND sync_priority <= 10", name="ck_inv_priority_range"),
        Index("ix_inv_stock_reorder", "stock", "reorder_point"),
        Index("ix_inv_priority", "sync_priority"),
    )

    @property
    def is_out_of_stock(self) -> bool:
        return (self.stock or 0) <= 0

    @property
    def is_critical(self) -> bool:
        return self.is_out_of_stock or (self.stock or 0) <= (self.reorder_point or 0)
