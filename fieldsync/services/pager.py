"""
pager.py — Rate-limit-aware cursor walk over one Jobber connection

Walks `first/after` pages for one entity type, hands every page to a
callback (the upserter), and adapts its pacing to the throttle telemetry
Jobber returns with each response.

Business Rules:
- The cursor only advances after a successful fetch; every retry targets
  the same page
- Throttle errors wait max(min_wait, ceil(shortfall / restore_rate) + margin)
- Transient and schema errors wait an exponential backoff (capped)
- Throttle, transient and schema errors share one consecutive-error counter;
  exceeding `max_consecutive_errors` aborts the walk with what was gathered
- AuthError is never retried here; it propagates to the orchestrator
- `max_pages` is a hard stop; the result is then flagged `truncated`

Called by: services/sync_orchestrator.py
Depends on: graphql_client (GraphQLClient), queries (EntitySpec, SyncWindow),
            services/throttle.py
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

from loguru import logger

from ..config import settings
from ..errors import AuthError, SchemaError, SyncError, ThrottleError
from ..queries import EntitySpec, SyncWindow
from .record_mapper import NormalizedRecord
from .throttle import ThrottleBudget, compute_throttle_wait, next_page_delay

PageHandler = Callable[[list[NormalizedRecord]], Awaitable[None]]


@dataclass
class PagerConfig:
    page_size: int = 50
    max_pages: int = 500
    max_consecutive_errors: int = 10
    min_throttle_wait: float = 1.5
    safety_margin: float = 1.0
    initial_delay: float = 3.0
    delay_floor: float = 0.5
    backoff_base: float = 1.0
    backoff_max: float = 30.0
    default_query_cost: int = 1500

    @classmethod
    def from_settings(cls, s=None) -> "PagerConfig":
        s = s or settings
        return cls(
            page_size=s.sync_page_size,
            max_pages=s.sync_max_pages,
            max_consecutive_errors=s.sync_max_consecutive_errors,
            min_throttle_wait=s.sync_min_throttle_wait_s,
            safety_margin=s.sync_throttle_safety_margin_s,
            initial_delay=s.sync_page_delay_initial_s,
            delay_floor=s.sync_page_delay_floor_s,
            backoff_base=s.sync_transient_backoff_base_s,
            backoff_max=s.sync_transient_backoff_max_s,
            default_query_cost=s.sync_default_query_cost,
        )


@dataclass
class PageWalkResult:
    entity_type: str
    pages: int = 0
    records: int = 0
    skipped: int = 0
    retries: int = 0
    succeeded: bool = True
    truncated: bool = False
    error: str | None = None


class RateLimitAwarePager:
    """Serial cursor walker. One instance can walk several entity types in turn."""

    def __init__(self, client, budget: ThrottleBudget | None = None,
                 config: PagerConfig | None = None, sleep=asyncio.sleep):
        self.client = client
        self.config = config or PagerConfig.from_settings()
        self.budget = budget or ThrottleBudget(safety_margin=self.config.safety_margin)
        self._sleep = sleep

    async def walk(self, spec: EntitySpec, window: SyncWindow, on_page: PageHandler) -> PageWalkResult:
        cfg = self.config
        result = PageWalkResult(entity_type=spec.entity_type)
        cursor: str | None = None
        delay = cfg.initial_delay
        query_cost = float(cfg.default_query_cost)
        consecutive_errors = 0

        while True:
            if result.pages >= cfg.max_pages:
                result.truncated = True
                logger.warning(
                    "{}: hit page cap ({}) with more pages remaining, stopping walk",
                    spec.root_field, cfg.max_pages,
                )
                return result

            variables = spec.variables(window, cfg.page_size, cursor)
            await self.budget.acquire(query_cost, self._sleep)
            try:
                resp = await self.client.execute(spec.query, variables)
                nodes, has_next, end_cursor = _extract_connection(resp.data, spec.root_field)
            except AuthError:
                raise
            except SyncError as e:
                consecutive_errors += 1
                result.retries += 1
                result.error = str(e)
                if consecutive_errors > cfg.max_consecutive_errors:
                    result.succeeded = False
                    logger.error(
                        "{}: giving up after {} consecutive errors on page {}: {}",
                        spec.root_field, consecutive_errors, result.pages + 1, e,
                    )
                    return result
                wait = self._retry_wait(e, consecutive_errors, query_cost)
                logger.warning(
                    "{}: page {} failed ({}), retry {}/{} in {:.1f}s",
                    spec.root_field, result.pages + 1, e.__class__.__name__,
                    consecutive_errors, cfg.max_consecutive_errors, wait,
                )
                await self._sleep(wait)
                continue

            consecutive_errors = 0
            result.error = None
            result.pages += 1
            self.budget.observe(resp.cost.throttle)
            if resp.cost.actual_query_cost:
                query_cost = float(resp.cost.actual_query_cost)

            records = []
            for node in nodes:
                rec = spec.mapper(node)
                if rec is None:
                    result.skipped += 1
                    logger.warning("{}: skipping node without id", spec.root_field)
                    continue
                records.append(rec)
            if records:
                await on_page(records)
                result.records += len(records)
                logger.info("{}: synced {} records so far", spec.root_field, result.records)

            if not has_next:
                return result
            if not end_cursor:
                # hasNextPage with no cursor would refetch page 1 forever
                result.truncated = True
                result.error = "hasNextPage=true without endCursor"
                logger.warning("{}: {}, stopping walk", spec.root_field, result.error)
                return result

            cursor = end_cursor
            delay = next_page_delay(
                resp.cost.throttle, query_cost, delay,
                floor=cfg.delay_floor, safety_margin=cfg.safety_margin,
            )
            await self._sleep(delay)

    def _retry_wait(self, error: SyncError, attempt: int, query_cost: float) -> float:
        cfg = self.config
        if isinstance(error, ThrottleError):
            status = error.throttle
            self.budget.observe(status)
            needed = error.points_needed or query_cost
            if status is not None:
                wait = compute_throttle_wait(
                    needed, status.currently_available, status.restore_rate,
                    min_wait=cfg.min_throttle_wait, safety_margin=cfg.safety_margin,
                )
            else:
                wait = max(cfg.min_throttle_wait, self._backoff(attempt))
            if error.retry_after:
                wait = max(wait, error.retry_after)
            return wait
        return self._backoff(attempt)

    def _backoff(self, attempt: int) -> float:
        cfg = self.config
        return min(cfg.backoff_max, cfg.backoff_base * (2 ** (attempt - 1)))


def _extract_connection(data: dict, root_field: str) -> tuple[list, bool, str | None]:
    """Pull nodes + pageInfo out of `data[root_field]`; SchemaError on any surprise."""
    conn = data.get(root_field) if isinstance(data, dict) else None
    if not isinstance(conn, dict):
        raise SchemaError(f"response missing '{root_field}' connection")
    nodes = conn.get("nodes")
    page_info = conn.get("pageInfo")
    if not isinstance(nodes, list) or not isinstance(page_info, dict):
        raise SchemaError(f"'{root_field}' connection missing nodes or pageInfo")
    has_next = page_info.get("hasNextPage")
    if not isinstance(has_next, bool):
        raise SchemaError(f"'{root_field}' pageInfo.hasNextPage is not a boolean")
    return nodes, has_next, page_info.get("endCursor")
