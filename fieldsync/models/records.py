"""Synced provider records — requests, quotes and jobs pulled from Jobber."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, Index, Integer, String

from ..database import UTCDateTime
from .base import Base

ENTITY_REQUEST = "request"
ENTITY_QUOTE = "quote"
ENTITY_JOB = "job"


class SyncedRecord(Base):
    """One remote entity, keyed by (entity_type, remote_id).

    `fields` is the normalized structured section the aggregator reads;
    `raw_payload` keeps the provider node untouched so new fields can be
    derived later without re-fetching.
    """

    __tablename__ = "synced_records"
    id = Column(Integer, primary_key=True)
    account = Column(String(50), nullable=False, index=True)
    entity_type = Column(String(20), nullable=False)  # request | quote | job
    remote_id = Column(String(255), nullable=False)
    fields = Column(JSON, nullable=False, default=dict)
    raw_payload = Column(JSON)
    remote_updated_at = Column(UTCDateTime)
    synced_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_synced_records_natural_key", "entity_type", "remote_id", unique=True),
        Index("ix_synced_records_account_type", "account", "entity_type"),
    )
