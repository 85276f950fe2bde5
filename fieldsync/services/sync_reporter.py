"""
sync_reporter.py — Persists the per-account SyncRun status row

Business Rules:
- One row per account, overwritten on every run (no history)
- last_success_at only moves on a successful run and is set to the run's
  start time, so the next incremental window covers anything that changed
  while this run was paging
- last_full_sync_at only moves on a successful full-mode run
- The reporter never raises: a failure to record the outcome is logged and
  reported as False so it cannot mask the run's real result

Called by: services/sync_orchestrator.py
Depends on: models.SyncRun
"""

from datetime import datetime, timezone

from loguru import logger

from ..models import STATUS_IN_PROGRESS, STATUS_SUCCESS, SyncRun
from ..queries import MODE_FULL


class SyncRunReporter:
    def __init__(self, session_factory=None):
        if session_factory is None:
            from ..database import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory

    def last_run(self, account: str) -> SyncRun | None:
        db = self.session_factory()
        try:
            return db.get(SyncRun, account)
        finally:
            db.close()

    def mark_in_progress(self, account: str, mode: str | None = None,
                         started_at: datetime | None = None) -> bool:
        started_at = started_at or datetime.now(timezone.utc)
        try:
            db = self.session_factory()
            try:
                run = db.get(SyncRun, account)
                if run is None:
                    run = SyncRun(account=account)
                    db.add(run)
                run.status = STATUS_IN_PROGRESS
                run.sync_mode = mode
                run.last_attempt_at = started_at
                db.commit()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
        except Exception as e:
            logger.error("Could not mark sync in progress for {}: {}", account, e)
            return False
        return True

    def report(self, outcome) -> bool:
        """Write the outcome of a finished run. Returns False if it could not be saved."""
        try:
            db = self.session_factory()
            try:
                run = db.get(SyncRun, outcome.account)
                if run is None:
                    run = SyncRun(account=outcome.account)
                    db.add(run)
                run.status = outcome.status
                run.sync_mode = outcome.mode
                run.last_attempt_at = outcome.started_at
                run.duration_seconds = round(outcome.duration_seconds, 2)
                run.counts = outcome.counts_payload()
                run.last_error = outcome.error_summary()
                if outcome.status == STATUS_SUCCESS:
                    run.last_success_at = outcome.started_at
                    if outcome.mode == MODE_FULL:
                        run.last_full_sync_at = outcome.started_at
                db.commit()
            except Exception:
                db.rollback()
                raise
            finally:
                db.close()
        except Exception as e:
            logger.error("Could not record sync outcome for {} ({}): {}",
                         outcome.account, outcome.status, e)
            return False
        return True
