"""
opportunity_service.py — Rebuild sales opportunities from synced records

An opportunity is one client + service property pursuit. It folds together
every quote for that identity, the request(s) that started it and the jobs
that delivered it, then derives cycle times and reporting buckets.

Business Rules:
- Key = lower(trim(client)) + "|" + street with everything but [a-z0-9] removed
- Records with neither client nor street get a per-record key
  ("quote:<id>") so unrelated blanks never merge
- A request follows the quote that references it; a job follows its quote
  when that quote is known; otherwise both group by their own identity
- won = any quote converted OR any job exists; lost = not won AND any quote
  archived; pending otherwise
- Day counts are computed on business-timezone dates and are NULL when
  either side is missing or the difference is negative (never 0-defaulted)
- Missing amounts are skipped, not summed as zero
- Rebuild replaces the account's rows in a single transaction; output is
  deterministic so two rebuilds over the same records are identical

Called by: services/sync_orchestrator.py (after all upserts), cli.py
Depends on: models (SyncedRecord, Opportunity), config (business_timezone)
"""

import re
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

from loguru import logger
from sqlalchemy import delete, select

from ..config import settings
from ..models import ENTITY_JOB, ENTITY_QUOTE, ENTITY_REQUEST, Opportunity, SyncedRecord
from ..utils import parse_datetime

STATUS_WON = "won"
STATUS_LOST = "lost"
STATUS_PENDING = "pending"

SPEED_BUCKETS = ("Same day", "1-3 days", "4-7 days", "8+ days")
REVENUE_BUCKETS = ("$0-$1K", "$1K-$2K", "$2K-$5K", "$5K-$10K", "$10K-$25K", "$25K-$50K", "$50K+")
QUOTE_COUNT_BUCKETS = ("1 quote", "2 quotes", "3 quotes", "4+ quotes")

_REVENUE_LIMITS = (1000, 2000, 5000, 10000, 25000, 50000)
_NON_ALNUM = re.compile(r"[^a-z0-9]")


# ── Keys & buckets ────────────────────────────────────────────────────


def normalize_client(name) -> str:
    return (name or "").strip().lower()


def normalize_street(street) -> str:
    return _NON_ALNUM.sub("", (street or "").strip().lower())


def opportunity_key(client_name, street) -> str:
    return f"{normalize_client(client_name)}|{normalize_street(street)}"


def _identity_key(rec) -> str:
    fields = rec.fields or {}
    client, street = fields.get("client_name"), fields.get("service_street")
    if not normalize_client(client) and not normalize_street(street):
        return f"{rec.entity_type}:{rec.remote_id}"
    return opportunity_key(client, street)


def speed_bucket(days: int | None) -> str | None:
    if days is None:
        return None
    if days == 0:
        return "Same day"
    if days <= 3:
        return "1-3 days"
    if days <= 7:
        return "4-7 days"
    return "8+ days"


def revenue_bucket(value: float | None) -> str | None:
    if value is None:
        return None
    for limit, label in zip(_REVENUE_LIMITS, REVENUE_BUCKETS):
        if value < limit:
            return label
    return REVENUE_BUCKETS[-1]


def quote_count_bucket(count: int) -> str | None:
    if not count:
        return None
    return QUOTE_COUNT_BUCKETS[min(count, 4) - 1]


def days_between(later: date | None, earlier: date | None) -> int | None:
    """Whole days from `earlier` to `later`; None when unknown or negative."""
    if later is None or earlier is None:
        return None
    days = (later - earlier).days
    return days if days >= 0 else None


# ── Pure build ────────────────────────────────────────────────────────


@dataclass
class OpportunityData:
    opportunity_key: str
    status: str
    client_name: str | None = None
    client_name_normalized: str | None = None
    service_street: str | None = None
    service_street_normalized: str | None = None
    service_city: str | None = None
    service_state: str | None = None
    service_zip: str | None = None
    salesperson: str | None = None
    quote_count: int = 0
    quote_numbers: list = field(default_factory=list)
    quote_ids: list = field(default_factory=list)
    request_ids: list = field(default_factory=list)
    job_ids: list = field(default_factory=list)
    requested_date: date | None = None
    first_quote_sent_at: datetime | None = None
    first_sent_date: date | None = None
    last_quote_sent_at: datetime | None = None
    won_date: date | None = None
    scheduled_date: date | None = None
    closed_date: date | None = None
    max_quote_value: float | None = None
    min_quote_value: float | None = None
    total_quoted_value: float | None = None
    won_value: float | None = None
    actual_revenue: float | None = None
    days_to_quote: int | None = None
    days_to_decision: int | None = None
    days_to_schedule: int | None = None
    days_to_close: int | None = None
    total_cycle_days: int | None = None
    speed_to_quote_bucket: str | None = None
    revenue_bucket: str | None = None
    quote_count_bucket: str | None = None


@dataclass
class _Group:
    quotes: list = field(default_factory=list)
    requests: list = field(default_factory=list)
    jobs: list = field(default_factory=list)


def _ts(rec, name) -> datetime | None:
    return parse_datetime((rec.fields or {}).get(name))


def _local_date(dt: datetime | None, tz) -> date | None:
    return dt.astimezone(tz).date() if dt is not None else None


def _first_value(records, name):
    """Largest non-blank value across records, mirroring SQL MAX() over text."""
    values = [r.fields.get(name) for r in records if (r.fields or {}).get(name)]
    return max(values) if values else None


def _amounts(records, name="total") -> list[float]:
    return [r.fields[name] for r in records if (r.fields or {}).get(name) is not None]


def group_records(records) -> dict[str, _Group]:
    """Assign every request, quote and job to an opportunity key."""
    ordered = sorted(records, key=lambda r: (r.entity_type, str(r.remote_id)))
    quotes = [r for r in ordered if r.entity_type == ENTITY_QUOTE]
    requests = [r for r in ordered if r.entity_type == ENTITY_REQUEST]
    jobs = [r for r in ordered if r.entity_type == ENTITY_JOB]

    groups: dict[str, _Group] = {}
    quote_keys: dict[str, str] = {}
    request_keys: dict[str, str] = {}

    for q in quotes:
        key = _identity_key(q)
        quote_keys[q.remote_id] = key
        groups.setdefault(key, _Group()).quotes.append(q)
        request_id = q.fields.get("request_id")
        if request_id:
            request_keys.setdefault(str(request_id), key)

    for r in requests:
        key = request_keys.get(r.remote_id) or _identity_key(r)
        groups.setdefault(key, _Group()).requests.append(r)

    for j in jobs:
        quote_id = j.fields.get("quote_id")
        key = quote_keys.get(str(quote_id)) if quote_id else None
        groups.setdefault(key or _identity_key(j), _Group()).jobs.append(j)

    return groups


def _build_one(key: str, g: _Group, tz) -> OpportunityData:
    everyone = g.quotes + g.requests + g.jobs
    client_name = _first_value(g.quotes, "client_name") or _first_value(everyone, "client_name")
    street = _first_value(g.quotes, "service_street") or _first_value(everyone, "service_street")

    # Salesperson from the most recent request that names one
    salesperson = None
    staffed = [r for r in g.requests if r.fields.get("salesperson")]
    if staffed:
        latest = max(staffed, key=lambda r: (_ts(r, "created_at") or datetime.min.replace(tzinfo=timezone.utc),
                                             r.remote_id))
        salesperson = latest.fields["salesperson"]

    requested = [_ts(r, "assessment_start_at") or _ts(r, "created_at") for r in g.requests]
    requested = [d for d in requested if d is not None]
    requested_date = _local_date(min(requested), tz) if requested else None

    sent = [d for d in (_ts(q, "sent_at") for q in g.quotes) if d is not None]
    first_sent = min(sent) if sent else None
    first_sent_date = _local_date(first_sent, tz)

    converted = [q for q in g.quotes if q.fields.get("status") == "converted"]
    is_won = bool(converted) or bool(g.jobs)
    is_lost = not is_won and any(q.fields.get("status") == "archived" for q in g.quotes)
    status = STATUS_WON if is_won else STATUS_LOST if is_lost else STATUS_PENDING

    won_dates = [d for d in (_ts(q, "converted_at") or _ts(q, "approved_at") for q in converted) if d]
    if not won_dates and g.jobs:
        won_dates = [d for d in (_ts(j, "created_at") for j in g.jobs) if d]
    won_date = _local_date(min(won_dates), tz) if won_dates else None

    starts = [d for d in (_ts(j, "scheduled_start_at") for j in g.jobs) if d]
    closes = [d for d in (_ts(j, "closed_at") or _ts(j, "completed_at") for j in g.jobs) if d]
    scheduled_date = _local_date(min(starts), tz) if starts else None
    closed_date = _local_date(max(closes), tz) if closes else None

    totals = _amounts(g.quotes)
    positive = [t for t in totals if t > 0]
    won_totals = _amounts(converted)
    job_totals = _amounts(g.jobs)
    max_quote = max(totals) if totals else None

    days_to_quote = days_between(first_sent_date, requested_date)
    quote_count = len(g.quotes)

    return OpportunityData(
        opportunity_key=key,
        status=status,
        client_name=client_name,
        client_name_normalized=normalize_client(client_name) or None,
        service_street=street,
        service_street_normalized=normalize_street(street) or None,
        service_city=_first_value(everyone, "service_city"),
        service_state=_first_value(everyone, "service_state"),
        service_zip=_first_value(everyone, "service_zip"),
        salesperson=salesperson,
        quote_count=quote_count,
        quote_numbers=sorted({q.fields["quote_number"] for q in g.quotes
                              if q.fields.get("quote_number") is not None}),
        quote_ids=sorted(q.remote_id for q in g.quotes),
        request_ids=sorted(r.remote_id for r in g.requests),
        job_ids=sorted(j.remote_id for j in g.jobs),
        requested_date=requested_date,
        first_quote_sent_at=first_sent,
        first_sent_date=first_sent_date,
        last_quote_sent_at=max(sent) if sent else None,
        won_date=won_date,
        scheduled_date=scheduled_date,
        closed_date=closed_date,
        max_quote_value=max_quote,
        min_quote_value=min(positive) if positive else None,
        total_quoted_value=sum(totals) if totals else None,
        won_value=sum(won_totals) if won_totals else None,
        actual_revenue=sum(job_totals) if job_totals else None,
        days_to_quote=days_to_quote,
        days_to_decision=days_between(won_date, first_sent_date),
        days_to_schedule=days_between(scheduled_date, won_date),
        days_to_close=days_between(closed_date, scheduled_date),
        total_cycle_days=days_between(closed_date, requested_date),
        speed_to_quote_bucket=speed_bucket(days_to_quote),
        revenue_bucket=revenue_bucket(max_quote),
        quote_count_bucket=quote_count_bucket(quote_count),
    )


def build_opportunities(records, tz=None) -> list[OpportunityData]:
    """Fold synced records into opportunities, sorted by key.

    `records` needs `entity_type`, `remote_id` and `fields` (SyncedRecord
    rows or NormalizedRecords both work).
    """
    tz = tz or ZoneInfo(settings.business_timezone)
    groups = group_records(records)
    return [_build_one(key, groups[key], tz) for key in sorted(groups)]


# ── Persistence ───────────────────────────────────────────────────────


class OpportunityAggregator:
    def __init__(self, session_factory=None, tz=None):
        if session_factory is None:
            from ..database import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory
        self.tz = tz or ZoneInfo(settings.business_timezone)

    def rebuild(self, account: str) -> int:
        """Replace the account's opportunities with a fresh build. Returns the row count."""
        db = self.session_factory()
        try:
            records = db.scalars(select(SyncedRecord).where(SyncedRecord.account == account)).all()
            built = build_opportunities(records, self.tz)
            now = datetime.now(timezone.utc)
            db.execute(delete(Opportunity).where(Opportunity.account == account))
            db.add_all(Opportunity(account=account, computed_at=now, **asdict(o)) for o in built)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.info("Rebuilt {} opportunities for {} from {} records", len(built), account, len(records))
        return len(built)
