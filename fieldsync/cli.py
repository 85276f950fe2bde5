"""
cli.py — Command-line entry point for scheduled and manual syncs

Usage:
    fieldsync-sync run [--account residential] [--full]
    fieldsync-sync status [--account residential]
    fieldsync-sync metrics [--start 2024-01-01] [--end 2024-03-31]
    fieldsync-sync seed-token --access A --refresh R --expires-in 3600

Exit codes for `run`: 0 success or partial, 1 failed, 2 authentication failure.

Called by: cron / scheduler, operators
Depends on: services/sync_orchestrator.py, services/opportunity_metrics.py
"""

import argparse
import asyncio
import json
import sys
from datetime import date

from loguru import logger
from sqlalchemy import select

from .config import settings
from .database import SessionLocal
from .http_client import close_clients
from .logging_config import setup_logging
from .models import STATUS_FAILED, Opportunity
from .services.opportunity_metrics import bucket_metrics, funnel_metrics
from .services.sync_orchestrator import SyncOrchestrator
from .services.sync_reporter import SyncRunReporter
from .services.token_service import TokenManager

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_AUTH = 2


def _print_json(payload) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _run_sync(account: str, full: bool):
    orchestrator = SyncOrchestrator(account, session_factory=SessionLocal)
    try:
        return await orchestrator.run(force_full=full)
    finally:
        await close_clients()


def cmd_run(args) -> int:
    outcome = asyncio.run(_run_sync(args.account, args.full))
    _print_json({
        "account": outcome.account,
        "status": outcome.status,
        "mode": outcome.mode,
        "counts": outcome.counts_payload(),
        "duration_seconds": round(outcome.duration_seconds, 2),
        "errors": outcome.errors,
    })
    if outcome.auth_error:
        return EXIT_AUTH
    if outcome.status == STATUS_FAILED:
        return EXIT_FAILED
    return EXIT_OK


def cmd_status(args) -> int:
    run = SyncRunReporter(SessionLocal).last_run(args.account)
    if run is None:
        print(f"No sync has run for '{args.account}' yet")
        return EXIT_OK
    _print_json({
        "account": run.account,
        "status": run.status,
        "mode": run.sync_mode,
        "last_attempt_at": run.last_attempt_at,
        "last_success_at": run.last_success_at,
        "last_full_sync_at": run.last_full_sync_at,
        "duration_seconds": run.duration_seconds,
        "counts": run.counts,
        "last_error": run.last_error,
    })
    return EXIT_OK


def cmd_metrics(args) -> int:
    db = SessionLocal()
    try:
        opps = db.scalars(select(Opportunity).where(Opportunity.account == args.account)).all()
    finally:
        db.close()
    _print_json({
        "funnel": funnel_metrics(opps, args.start, args.end),
        "speed_to_quote": bucket_metrics(opps, "speed_to_quote_bucket", args.start, args.end),
        "revenue": bucket_metrics(opps, "revenue_bucket", args.start, args.end),
        "quote_count": bucket_metrics(opps, "quote_count_bucket", args.start, args.end),
    })
    return EXIT_OK


def cmd_seed_token(args) -> int:
    TokenManager(args.account, SessionLocal).save_token(
        args.access, args.refresh, args.expires_in, args.refresh_expires_in
    )
    print(f"Token stored for '{args.account}'")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="fieldsync-sync", description="Jobber sync engine")
    sub = parser.add_subparsers(dest="command", required=True)

    def _with_account(p):
        p.add_argument("--account", default=settings.sync_account, help="Remote account label")
        return p

    run = _with_account(sub.add_parser("run", help="Run one sync"))
    run.add_argument("--full", action="store_true", help="Ignore the last success and re-pull the full window")
    run.set_defaults(func=cmd_run)

    status = _with_account(sub.add_parser("status", help="Show the last sync run"))
    status.set_defaults(func=cmd_status)

    metrics = _with_account(sub.add_parser("metrics", help="Print opportunity funnel metrics"))
    metrics.add_argument("--start", type=date.fromisoformat, help="First sent date, inclusive (YYYY-MM-DD)")
    metrics.add_argument("--end", type=date.fromisoformat, help="Last sent date, inclusive (YYYY-MM-DD)")
    metrics.set_defaults(func=cmd_metrics)

    seed = _with_account(sub.add_parser("seed-token", help="Store an OAuth token pair"))
    seed.add_argument("--access", required=True)
    seed.add_argument("--refresh", required=True)
    seed.add_argument("--expires-in", type=int, default=3600)
    seed.add_argument("--refresh-expires-in", type=int, default=None)
    seed.set_defaults(func=cmd_seed_token)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    try:
        return args.func(args)
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
