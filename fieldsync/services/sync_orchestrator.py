"""
sync_orchestrator.py — One end-to-end sync run for one Jobber account

INIT → TOKEN_READY → (PAGING ↔ UPSERTING per entity type) → AGGREGATING
     → REPORTING → DONE, with FAILED reachable from any step before
     AGGREGATING.

Business Rules:
- Full window when forced, when there is no previous run, or when the
  previous run did not succeed; otherwise incremental from its start time
- Entity types are walked in order (requests, quotes, jobs); with
  `sync_parallel_entities` they walk concurrently, sharing one
  ThrottleBudget and one TokenManager
- FAILED: AuthError anywhere, a walk that ran out of retries, or an
  unexpected exception. Aggregation is skipped on FAILED
- PARTIAL: an upsert batch failed, a walk hit the page cap, or aggregation
  raised. Every PARTIAL/FAILED run records a non-empty last_error
- SUCCESS: everything else, including a run that found zero records
- The reporter runs last and its own failure never changes the status

Called by: cli.py, routers/sync.py
Depends on: token_service, graphql_client, pager, upserter,
            opportunity_service, sync_reporter
"""

import asyncio
import enum
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone

from loguru import logger

from ..config import settings
from ..errors import AuthError
from ..graphql_client import GraphQLClient
from ..models import STATUS_FAILED, STATUS_PARTIAL, STATUS_SUCCESS
from ..queries import ENTITY_SPECS, EntitySpec, SyncWindow, determine_sync_window
from .opportunity_service import OpportunityAggregator
from .pager import PagerConfig, PageWalkResult, RateLimitAwarePager
from .sync_reporter import SyncRunReporter
from .throttle import ThrottleBudget
from .token_service import TokenManager
from .upserter import RecordUpserter, UpsertResult

MAX_ERROR_MESSAGES = 20


class SyncState(str, enum.Enum):
    INIT = "init"
    TOKEN_READY = "token_ready"
    PAGING = "paging"
    UPSERTING = "upserting"
    AGGREGATING = "aggregating"
    REPORTING = "reporting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class SyncOutcome:
    account: str
    started_at: datetime
    mode: str | None = None
    status: str | None = None
    counts: dict = field(default_factory=dict)
    pages: int = 0
    retries: int = 0
    skipped: int = 0
    upsert_failures: int = 0
    failed_batches: int = 0
    truncated: list = field(default_factory=list)
    opportunities: int | None = None
    errors: list = field(default_factory=list)
    duration_seconds: float = 0.0
    fatal: bool = False
    auth_error: bool = False
    aggregation_failed: bool = False
    report_saved: bool = False
    states: list = field(default_factory=list)

    @property
    def records_synced(self) -> int:
        return sum(self.counts.values())

    def counts_payload(self) -> dict:
        return {
            **self.counts,
            "pages": self.pages,
            "retries": self.retries,
            "skipped": self.skipped,
            "upsert_failures": self.upsert_failures,
            "opportunities": self.opportunities,
        }

    def error_summary(self) -> str | None:
        if not self.errors:
            return None
        return "; ".join(self.errors[:MAX_ERROR_MESSAGES])[:2000]

    def add_error(self, message: str) -> None:
        if len(self.errors) < MAX_ERROR_MESSAGES:
            self.errors.append(message)


class SyncOrchestrator:
    """Wires the token manager, pager, upserter, aggregator and reporter together.

    Every collaborator can be injected; the defaults build the production
    stack from settings.
    """

    def __init__(
        self,
        account: str | None = None,
        session_factory=None,
        token_manager: TokenManager | None = None,
        client=None,
        pager_config: PagerConfig | None = None,
        upserter: RecordUpserter | None = None,
        aggregator: OpportunityAggregator | None = None,
        reporter: SyncRunReporter | None = None,
        specs: tuple[EntitySpec, ...] = ENTITY_SPECS,
        parallel: bool | None = None,
        sleep=asyncio.sleep,
        clock=None,
    ):
        self.account = account or settings.sync_account
        self.session_factory = session_factory
        self.token_manager = token_manager or TokenManager(self.account, session_factory, sleep=sleep)
        self.client = client or GraphQLClient(self.token_manager.get_valid_access_token)
        self.pager_config = pager_config or PagerConfig.from_settings()
        self.upserter = upserter or RecordUpserter(session_factory)
        self.aggregator = aggregator or OpportunityAggregator(session_factory)
        self.reporter = reporter or SyncRunReporter(session_factory)
        self.specs = specs
        self.parallel = settings.sync_parallel_entities if parallel is None else parallel
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.state = SyncState.INIT

    def _enter(self, outcome: SyncOutcome, state: SyncState) -> None:
        self.state = state
        if not outcome.states or outcome.states[-1] != state:
            outcome.states.append(state)

    def _window(self, started_at: datetime, force_full: bool) -> SyncWindow:
        try:
            last = self.reporter.last_run(self.account)
        except Exception as e:
            logger.warning("Could not read previous sync run for {}, using a full window: {}",
                           self.account, e)
            last = None
        return determine_sync_window(
            last, started_at, force_full=force_full,
            lookback_days=settings.sync_full_lookback_days,
            buffer_min=settings.sync_incremental_buffer_min,
        )

    async def run(self, force_full: bool = False) -> SyncOutcome:
        started = time.monotonic()
        outcome = SyncOutcome(account=self.account, started_at=self._clock())
        self._enter(outcome, SyncState.INIT)

        window = self._window(outcome.started_at, force_full)
        outcome.mode = window.mode
        logger.info("Starting {} sync for {} (since {})",
                    window.mode, self.account, window.since.isoformat())
        self.reporter.mark_in_progress(self.account, window.mode, outcome.started_at)

        try:
            await self.token_manager.get_valid_access_token()
            self._enter(outcome, SyncState.TOKEN_READY)
            await self._walk_all(window, outcome)
        except AuthError as e:
            outcome.fatal = True
            outcome.auth_error = True
            outcome.add_error(f"auth: {e}")
            logger.error("Sync for {} aborted, authentication failed: {}", self.account, e)
        except Exception as e:
            outcome.fatal = True
            outcome.add_error(f"unexpected: {e.__class__.__name__}: {e}")
            logger.exception("Sync for {} aborted by unexpected error", self.account)

        if not outcome.fatal:
            self._enter(outcome, SyncState.AGGREGATING)
            try:
                outcome.opportunities = self.aggregator.rebuild(self.account)
            except Exception as e:
                outcome.aggregation_failed = True
                outcome.add_error(f"aggregation: {e}")
                logger.error("Opportunity rebuild failed for {}: {}", self.account, e)

        outcome.status = _final_status(outcome)
        outcome.duration_seconds = time.monotonic() - started

        self._enter(outcome, SyncState.REPORTING)
        outcome.report_saved = self.reporter.report(outcome)
        self._enter(outcome, SyncState.FAILED if outcome.status == STATUS_FAILED else SyncState.DONE)

        logger.info(
            "Sync {} finished: status={} mode={} pages={} records={} upsert_failures={} "
            "opportunities={} duration={:.1f}s errors={}",
            self.account, outcome.status, outcome.mode, outcome.pages, outcome.records_synced,
            outcome.upsert_failures, outcome.opportunities, outcome.duration_seconds,
            len(outcome.errors),
        )
        return outcome

    async def _walk_all(self, window: SyncWindow, outcome: SyncOutcome) -> None:
        budget = ThrottleBudget(safety_margin=self.pager_config.safety_margin)

        if not self.parallel:
            for spec in self.specs:
                result = await self._walk_one(spec, window, budget, outcome)
                if not result.succeeded:
                    return
            return

        results = await asyncio.gather(
            *(self._walk_one(spec, window, budget, outcome) for spec in self.specs),
            return_exceptions=True,
        )
        for r in results:
            if isinstance(r, AuthError):
                raise r
        for r in results:
            if isinstance(r, BaseException):
                raise r

    async def _walk_one(self, spec: EntitySpec, window: SyncWindow, budget: ThrottleBudget,
                        outcome: SyncOutcome) -> PageWalkResult:
        self._enter(outcome, SyncState.PAGING)
        pager = RateLimitAwarePager(self.client, budget=budget, config=self.pager_config, sleep=self._sleep)
        outcome.counts.setdefault(spec.entity_type, 0)

        async def on_page(records) -> None:
            self._enter(outcome, SyncState.UPSERTING)
            res: UpsertResult = self.upserter.upsert_page(self.account, records)
            outcome.counts[spec.entity_type] += res.upserted
            outcome.upsert_failures += res.failed
            outcome.failed_batches += res.failed_batches
            for message in res.errors:
                outcome.add_error(f"{spec.entity_type} upsert: {message}")
            self._enter(outcome, SyncState.PAGING)

        result = await pager.walk(spec, window, on_page)
        outcome.pages += result.pages
        outcome.retries += result.retries
        outcome.skipped += result.skipped

        if not result.succeeded:
            outcome.fatal = True
            outcome.add_error(f"{spec.entity_type}: retry budget exhausted: {result.error}")
        elif result.truncated:
            outcome.truncated.append(spec.entity_type)
            outcome.add_error(
                f"{spec.entity_type}: stopped after {result.pages} pages"
                + (f" ({result.error})" if result.error else " (page cap)")
            )
        logger.info("{}: {} pages, {} records, {} retries",
                    spec.root_field, result.pages, result.records, result.retries)
        return result


def _final_status(outcome: SyncOutcome) -> str:
    if outcome.fatal:
        return STATUS_FAILED
    if outcome.upsert_failures or outcome.truncated or outcome.aggregation_failed:
        return STATUS_PARTIAL
    return STATUS_SUCCESS
