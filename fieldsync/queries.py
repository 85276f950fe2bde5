"""GraphQL query documents and sync windows for each synced entity type.

Cursor, page size and date filters are always passed as variables; the
query text itself is constant.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from .models import ENTITY_JOB, ENTITY_QUOTE, ENTITY_REQUEST
from .services.record_mapper import NormalizedRecord, map_job, map_quote, map_request

MODE_FULL = "full"
MODE_INCREMENTAL = "incremental"

_ADDRESS = "address { street city province postalCode }"

REQUESTS_QUERY = f"""
query SyncRequests($first: Int!, $after: String, $filter: RequestFilterAttributes) {{
  requests(first: $first, after: $after, filter: $filter) {{
    nodes {{
      id
      title
      requestStatus
      source
      createdAt
      updatedAt
      client {{ id name }}
      property {{ {_ADDRESS} }}
      assessment {{
        startAt
        completedAt
        assignedUsers {{ nodes {{ name {{ full }} }} }}
      }}
    }}
    pageInfo {{ hasNextPage endCursor }}
  }}
}}
"""

QUOTES_QUERY = f"""
query SyncQuotes($first: Int!, $after: String, $filter: QuoteFilterAttributes) {{
  quotes(first: $first, after: $after, filter: $filter) {{
    nodes {{
      id
      quoteNumber
      title
      quoteStatus
      amounts {{ total subtotal discountAmount }}
      client {{
        id
        name
        billingAddress {{ street city province postalCode }}
      }}
      property {{ {_ADDRESS} }}
      createdAt
      updatedAt
      sentAt
      lastTransitioned {{ approvedAt convertedAt }}
      request {{ id }}
    }}
    pageInfo {{ hasNextPage endCursor }}
  }}
}}
"""

JOBS_QUERY = f"""
query SyncJobs($first: Int!, $after: String, $filter: JobFilterAttributes) {{
  jobs(first: $first, after: $after, filter: $filter) {{
    nodes {{
      id
      jobNumber
      title
      jobStatus
      total
      invoicedTotal
      client {{ id name }}
      property {{ {_ADDRESS} }}
      createdAt
      updatedAt
      startAt
      endAt
      completedAt
      quote {{ id quoteNumber }}
    }}
    pageInfo {{ hasNextPage endCursor }}
  }}
}}
"""


@dataclass(frozen=True)
class SyncWindow:
    """Which slice of remote history a run asks for."""

    mode: str
    since: datetime


@dataclass(frozen=True)
class EntitySpec:
    entity_type: str
    root_field: str
    query: str
    filter_field: str  # Jobber only filters quotes by updatedAt
    mapper: Callable[[dict], NormalizedRecord | None]

    def variables(self, window: SyncWindow, page_size: int, cursor: str | None) -> dict:
        return {
            "first": page_size,
            "after": cursor,
            "filter": {self.filter_field: {"after": window.since.isoformat()}},
        }


REQUEST_SPEC = EntitySpec(ENTITY_REQUEST, "requests", REQUESTS_QUERY, "createdAt", map_request)
QUOTE_SPEC = EntitySpec(ENTITY_QUOTE, "quotes", QUOTES_QUERY, "updatedAt", map_quote)
JOB_SPEC = EntitySpec(ENTITY_JOB, "jobs", JOBS_QUERY, "createdAt", map_job)

# Sync order: requests → quotes → jobs
ENTITY_SPECS = (REQUEST_SPEC, QUOTE_SPEC, JOB_SPEC)


def determine_sync_window(
    last_run,
    now: datetime,
    force_full: bool = False,
    lookback_days: int = 100,
    buffer_min: int = 5,
) -> SyncWindow:
    """Full window unless the previous run succeeded; then incremental from its start.

    `last_run` is the account's SyncRun row (or None).
    """
    full = SyncWindow(MODE_FULL, now - timedelta(days=lookback_days))
    if force_full or last_run is None:
        return full
    if last_run.status != "success" or last_run.last_success_at is None:
        return full
    return SyncWindow(MODE_INCREMENTAL, last_run.last_success_at - timedelta(minutes=buffer_min))
