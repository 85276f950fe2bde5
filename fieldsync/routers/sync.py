"""Sync trigger, sync status and opportunity analytics API."""

from datetime import date

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..database import SessionLocal, get_db
from ..dependencies import require_api_key
from ..models import Opportunity, SyncRun
from ..queries import MODE_FULL, MODE_INCREMENTAL
from ..schemas.sync import OpportunityMetricsResponse, SyncStatusResponse, SyncTriggerResponse
from ..services.opportunity_metrics import bucket_metrics, funnel_metrics
from ..services.sync_orchestrator import SyncOrchestrator

router = APIRouter(tags=["sync"], dependencies=[Depends(require_api_key)])

# Accounts with a run in flight in this process
_running: set[str] = set()


async def _run_in_background(account: str, full: bool) -> None:
    try:
        outcome = await SyncOrchestrator(account, session_factory=SessionLocal).run(force_full=full)
        logger.info("Triggered sync for {} ended with {}", account, outcome.status)
    except Exception:
        logger.exception("Triggered sync for {} crashed", account)
    finally:
        _running.discard(account)


@router.get("/api/sync/{account}/status", response_model=SyncStatusResponse)
def sync_status(account: str, db: Session = Depends(get_db)):
    run = db.get(SyncRun, account)
    if run is None:
        raise HTTPException(404, f"No sync has run for '{account}'")
    return SyncStatusResponse(
        account=run.account,
        status=run.status,
        mode=run.sync_mode,
        last_attempt_at=run.last_attempt_at,
        last_success_at=run.last_success_at,
        last_full_sync_at=run.last_full_sync_at,
        duration_seconds=run.duration_seconds,
        counts=run.counts,
        last_error=run.last_error,
    )


@router.post("/api/sync/{account}/run", response_model=SyncTriggerResponse, status_code=202)
async def trigger_sync(account: str, background: BackgroundTasks, full: bool = Query(False)):
    if account in _running:
        raise HTTPException(409, f"A sync for '{account}' is already running")
    _running.add(account)
    background.add_task(_run_in_background, account, full)
    return SyncTriggerResponse(account=account, mode=MODE_FULL if full else MODE_INCREMENTAL)


@router.get("/api/opportunities/{account}/metrics", response_model=OpportunityMetricsResponse)
def opportunity_metrics(
    account: str,
    start: date | None = Query(None),
    end: date | None = Query(None),
    db: Session = Depends(get_db),
):
    opps = db.scalars(select(Opportunity).where(Opportunity.account == account)).all()
    return {
        "account": account,
        "funnel": funnel_metrics(opps, start, end),
        "speed_to_quote": bucket_metrics(opps, "speed_to_quote_bucket", start, end),
        "revenue": bucket_metrics(opps, "revenue_bucket", start, end),
        "quote_count": bucket_metrics(opps, "quote_count_bucket", start, end),
        "salesperson": bucket_metrics(opps, "salesperson", start, end),
    }
