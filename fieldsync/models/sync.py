"""Sync bookkeeping — one status row per account, overwritten each run."""

from sqlalchemy import JSON, Column, Float, String, Text

from ..database import UTCDateTime
from .base import Base

STATUS_IN_PROGRESS = "in_progress"
STATUS_SUCCESS = "success"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"


class SyncRun(Base):
    """Outcome of the latest orchestrator run for an account (no history)."""

    __tablename__ = "sync_runs"
    account = Column(String(50), primary_key=True)
    status = Column(String(20), nullable=False)
    sync_mode = Column(String(20))  # full | incremental
    last_attempt_at = Column(UTCDateTime, nullable=False)
    last_success_at = Column(UTCDateTime)
    last_full_sync_at = Column(UTCDateTime)
    duration_seconds = Column(Float)
    counts = Column(JSON)
    last_error = Column(Text)
