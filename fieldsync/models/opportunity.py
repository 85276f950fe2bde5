"""Derived opportunity rows — rebuilt from synced records after every run."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, Date, Float, Index, Integer, String

from ..database import UTCDateTime
from .base import Base


class Opportunity(Base):
    """One sales pursuit: the requests, quotes and jobs sharing a client + property."""

    __tablename__ = "opportunities"
    id = Column(Integer, primary_key=True)
    account = Column(String(50), nullable=False)
    opportunity_key = Column(String(512), nullable=False)

    # Identity
    client_name = Column(String(255))
    client_name_normalized = Column(String(255))
    service_street = Column(String(255))
    service_street_normalized = Column(String(255))
    service_city = Column(String(100))
    service_state = Column(String(50))
    service_zip = Column(String(20))
    salesperson = Column(String(255))

    # Linked records
    quote_count = Column(Integer, default=0)
    quote_numbers = Column(JSON)
    quote_ids = Column(JSON)
    request_ids = Column(JSON)
    job_ids = Column(JSON)

    # Key dates
    requested_date = Column(Date)
    first_quote_sent_at = Column(UTCDateTime)
    first_sent_date = Column(Date)
    last_quote_sent_at = Column(UTCDateTime)
    won_date = Column(Date)
    scheduled_date = Column(Date)
    closed_date = Column(Date)

    # Values
    max_quote_value = Column(Float)
    min_quote_value = Column(Float)
    total_quoted_value = Column(Float)
    won_value = Column(Float)
    actual_revenue = Column(Float)

    status = Column(String(20), nullable=False)  # won | lost | pending

    # Cycle times (days); NULL when an input date is missing
    days_to_quote = Column(Integer)
    days_to_decision = Column(Integer)
    days_to_schedule = Column(Integer)
    days_to_close = Column(Integer)
    total_cycle_days = Column(Integer)

    speed_to_quote_bucket = Column(String(20))
    revenue_bucket = Column(String(20))
    quote_count_bucket = Column(String(20))

    computed_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("ix_opportunities_account_key", "account", "opportunity_key", unique=True),
        Index("ix_opportunities_first_sent", "account", "first_sent_date"),
    )
