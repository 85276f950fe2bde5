"""
schemas/sync.py — Response models for the sync and analytics endpoints

Called by: routers/sync.py
Depends on: pydantic
"""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class SyncStatusResponse(BaseModel):
    account: str
    status: str | None = None
    mode: str | None = None
    last_attempt_at: datetime | None = None
    last_success_at: datetime | None = None
    last_full_sync_at: datetime | None = None
    duration_seconds: float | None = None
    counts: dict | None = None
    last_error: str | None = None


class SyncTriggerResponse(BaseModel):
    account: str
    mode: str
    queued: bool = True


class FunnelMetrics(BaseModel):
    total_opportunities: int = 0
    won_opportunities: int = 0
    lost_opportunities: int = 0
    pending_opportunities: int = 0
    win_rate: float = 0.0
    closed_win_rate: float = 0.0
    total_value: float = 0.0
    won_value: float = 0.0
    value_win_rate: float = 0.0
    avg_quote_value: float | None = None
    avg_days_to_quote: float | None = None
    avg_days_to_decision: float | None = None
    avg_days_to_schedule: float | None = None
    avg_days_to_close: float | None = None
    avg_total_cycle_days: float | None = None
    same_day_quote_pct: float = 0.0


class BucketMetrics(BaseModel, extra="allow"):
    bucket: str
    total_opportunities: int = 0
    won_opportunities: int = 0
    win_rate: float = 0.0
    closed_win_rate: float = 0.0


class OpportunityMetricsResponse(BaseModel):
    account: str
    funnel: FunnelMetrics
    speed_to_quote: list[BucketMetrics] = []
    revenue: list[BucketMetrics] = []
    quote_count: list[BucketMetrics] = []
    salesperson: list[BucketMetrics] = []
