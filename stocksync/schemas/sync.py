"""
schemas/sync.py — Pydantic models for sync and inventory endpoints

Business Rules:
- Trigger accepts an optional strategy; omitted means auto-select
- Run payloads expose status, counts and short error strings only

Called by: routers/sync.py, routers/inventory.py
Depends on: pydantic
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class SyncTriggerRequest(BaseModel):
    strategy: Literal["critical", "inventory", "active", "full"] | None = None
    force: bool = False
    wait: bool = Field(False, description="Run inline and return the finalized run")


class MarkFailedRequest(BaseModel):
    reason: str = Field("Marked failed by operator", min_length=1, max_length=300)


class RetryFailedRequest(BaseModel):
    """Either explicit SKUs, a run whose failed batches should be retried, or both."""

    skus: list[str] = Field(default_factory=list, max_length=1000)
    run_id: int | None = None


class ConnectionTestRequest(BaseModel):
    """Blank fields fall back to the configured credentials."""

    api_key: str | None = None
    api_secret: str | None = None
    account_path: str | None = None


class ConnectionTestResponse(BaseModel):
    success: bool
    account: str
    message: str


class SyncRunOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sync_type: str
    status: str
    items_processed: int = 0
    items_updated: int = 0
    errors: list[str] = Field(default_factory=list)
    duration_ms: int | None = None
    started_at: datetime | None = None
    finalized_at: datetime | None = None
    # ORM attribute is run_metadata ("metadata" is reserved on declarative models)
    metadata: dict = Field(default_factory=dict, validation_alias=AliasChoices("run_metadata", "metadata"))


class SyncTriggerResponse(BaseModel):
    status: Literal["started", "completed"]
    strategy: str
    run: SyncRunOut | None = None


class SyncStatusResponse(BaseModel):
    enabled: bool
    frequency_minutes: int
    running: SyncRunOut | None = None
    last_run: SyncRunOut | None = None
    last_success: SyncRunOut | None = None
    next_strategy: str
    rate_limiter: dict


class StuckRunOut(BaseModel):
    run_id: int
    running_minutes: int
    message: str


class CheckStuckResponse(BaseModel):
    stuck: list[StuckRunOut]
    count: int


class CriticalItemOut(BaseModel):
    sku: str
    product_name: str | None = None
    stock: int
    reorder_point: int
    reorder_quantity: int = 0
    vendor: str | None = None
    location: str | None = None
    sync_priority: int
    last_synced_at: str | None = None
    status: Literal["out_of_stock", "below_reorder"]
    days_until_stockout: float | None = None
    action_required: str


class CriticalItemsResponse(BaseModel):
    items: list[CriticalItemOut]
    summary: dict


class ThroughputPoint(BaseModel):
    started_at: str
    items_per_second: float


class ErrorCount(BaseModel):
    error: str
    count: int


class SyncMetricsResponse(BaseModel):
    period_days: int
    total_runs: int
    by_status: dict[str, int]
    success_rate: float | None = None
    avg_duration_ms: int | None = None
    avg_items_per_second: float | None = None
    items_per_second_trend: list[ThroughputPoint] = Field(default_factory=list)
    avg_minutes_between_syncs: float | None = None
    syncs_per_day: float = 0.0
    top_errors: list[ErrorCount] = Field(default_factory=list)
