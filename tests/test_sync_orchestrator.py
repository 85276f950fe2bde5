"""
test_sync_orchestrator.py — End-to-end tests for services/sync_orchestrator.py

Runs the real pager, upserter, aggregator and reporter against the test
database; only the GraphQL client and the token manager are faked.

Called by: pytest
Depends on: fieldsync.services.sync_orchestrator, tests/conftest.py
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import func, select

from fieldsync.errors import AuthError, TransientNetworkError
from fieldsync.models import Opportunity, SyncedRecord, SyncRun
from fieldsync.services.pager import PagerConfig
from fieldsync.services.sync_orchestrator import SyncOrchestrator, SyncState
from fieldsync.services.upserter import RecordUpserter, UpsertResult

STARTED = datetime(2024, 4, 1, 6, 0, tzinfo=timezone.utc)

REQUEST = {
    "id": "r1", "requestStatus": "CONVERTED", "createdAt": "2024-03-01T15:00:00Z",
    "client": {"id": "c1", "name": "John Smith"},
    "property": {"address": {"street": "123 Main St", "city": "Austin", "province": "TX", "postalCode": "78701"}},
    "assessment": {"startAt": "2024-03-02T15:00:00Z", "assignedUsers": {"nodes": [{"name": {"full": "Ana"}}]}},
}
QUOTE = {
    "id": "q1", "quoteNumber": 101, "quoteStatus": "CONVERTED",
    "amounts": {"total": 4200.0},
    "client": {"id": "c1", "name": "John Smith"},
    "property": {"address": {"street": "123 Main St"}},
    "sentAt": "2024-03-04T15:00:00Z",
    "lastTransitioned": {"convertedAt": "2024-03-08T15:00:00Z"},
    "request": {"id": "r1"},
}
JOB = {
    "id": "j1", "jobNumber": 55, "jobStatus": "ACTIVE", "total": 4200.0,
    "client": {"id": "c1", "name": "John Smith"},
    "startAt": "2024-03-12T15:00:00Z", "quote": {"id": "q1", "quoteNumber": 101},
}


def _token_manager(error=None):
    tm = MagicMock()
    tm.get_valid_access_token = AsyncMock(side_effect=error, return_value="tok")
    return tm


def _orchestrator(session_factory, client, fake_time, **kw):
    kw.setdefault("token_manager", _token_manager())
    return SyncOrchestrator(
        "residential",
        session_factory=session_factory,
        client=client,
        pager_config=PagerConfig(page_size=2, max_pages=10, max_consecutive_errors=2),
        sleep=fake_time.sleep,
        clock=lambda: STARTED,
        **kw,
    )


def _full_dataset(make_page):
    return {
        "requests": [make_page("requests", [REQUEST])],
        "quotes": [make_page("quotes", [QUOTE])],
        "jobs": [make_page("jobs", [JOB])],
    }


@pytest.mark.asyncio
async def test_empty_dataset_is_success(db_session, session_factory, scripted_client, fake_time):
    outcome = await _orchestrator(session_factory, scripted_client(), fake_time).run()

    assert outcome.status == "success"
    assert outcome.mode == "full"
    assert outcome.records_synced == 0
    assert outcome.opportunities == 0
    assert outcome.report_saved
    run = db_session.get(SyncRun, "residential")
    assert run.status == "success"
    assert run.last_success_at == STARTED
    assert run.last_full_sync_at == STARTED
    assert run.last_error is None


@pytest.mark.asyncio
async def test_full_run_syncs_and_aggregates(db_session, session_factory, scripted_client, make_page, fake_time):
    client = scripted_client(_full_dataset(make_page))

    outcome = await _orchestrator(session_factory, client, fake_time).run()

    assert outcome.status == "success"
    assert outcome.counts == {"request": 1, "quote": 1, "job": 1}
    assert outcome.opportunities == 1
    assert [root for root, _ in client.calls] == ["requests", "quotes", "jobs"]
    opp = db_session.scalars(select(Opportunity)).one()
    assert opp.status == "won"
    assert opp.salesperson == "Ana"
    assert opp.days_to_quote == 2
    assert opp.days_to_decision == 4
    assert opp.days_to_schedule == 4
    assert outcome.states[0] == SyncState.INIT
    assert SyncState.UPSERTING in outcome.states
    assert outcome.states[-3:] == [SyncState.AGGREGATING, SyncState.REPORTING, SyncState.DONE]


def _snapshot(db_session, model, order_by, volatile):
    db_session.expire_all()
    rows = db_session.scalars(select(model).order_by(*order_by)).all()
    return [
        {c.name: getattr(r, c.name) for c in model.__table__.columns if c.name not in volatile}
        for r in rows
    ]


@pytest.mark.asyncio
async def test_rerun_is_idempotent(db_session, session_factory, scripted_client, make_page, fake_time):
    def state():
        return (
            _snapshot(db_session, SyncedRecord, (SyncedRecord.entity_type, SyncedRecord.remote_id),
                      ("id", "synced_at")),
            _snapshot(db_session, Opportunity, (Opportunity.opportunity_key,), ("id", "computed_at")),
        )

    await _orchestrator(session_factory, scripted_client(_full_dataset(make_page)), fake_time).run()
    records, opportunities = state()
    await _orchestrator(session_factory, scripted_client(_full_dataset(make_page)), fake_time).run(force_full=True)

    assert len(records) == 3
    assert len(opportunities) == 1
    assert state() == (records, opportunities)


@pytest.mark.asyncio
async def test_second_run_is_incremental_from_last_success(session_factory, scripted_client, fake_time):
    await _orchestrator(session_factory, scripted_client(), fake_time).run()
    client = scripted_client()

    outcome = await _orchestrator(session_factory, client, fake_time).run()

    assert outcome.mode == "incremental"
    since = (STARTED - timedelta(minutes=5)).isoformat()
    root, variables = client.calls[1]
    assert root == "quotes"
    assert variables["filter"] == {"updatedAt": {"after": since}}


@pytest.mark.asyncio
async def test_force_full_ignores_last_success(session_factory, scripted_client, fake_time):
    await _orchestrator(session_factory, scripted_client(), fake_time).run()
    outcome = await _orchestrator(session_factory, scripted_client(), fake_time).run(force_full=True)
    assert outcome.mode == "full"


@pytest.mark.asyncio
async def test_auth_failure_fails_run_and_skips_aggregation(db_session, session_factory, scripted_client, fake_time):
    aggregator = MagicMock()
    orchestrator = _orchestrator(
        session_factory, scripted_client(), fake_time,
        token_manager=_token_manager(AuthError("refresh token revoked")), aggregator=aggregator,
    )

    outcome = await orchestrator.run()

    assert outcome.status == "failed"
    assert outcome.auth_error
    aggregator.rebuild.assert_not_called()
    assert outcome.states[-1] == SyncState.FAILED
    run = db_session.get(SyncRun, "residential")
    assert run.status == "failed"
    assert "revoked" in run.last_error
    assert run.last_success_at is None


@pytest.mark.asyncio
async def test_exhausted_retries_fail_the_run(db_session, session_factory, scripted_client, fake_time):
    client = scripted_client({"quotes": [TransientNetworkError("timeout")] * 5})

    outcome = await _orchestrator(session_factory, client, fake_time).run()

    assert outcome.status == "failed"
    assert not outcome.auth_error
    assert "jobs" not in [root for root, _ in client.calls]
    assert "retry budget exhausted" in db_session.get(SyncRun, "residential").last_error


@pytest.mark.asyncio
async def test_failed_upsert_batch_makes_run_partial(db_session, session_factory, scripted_client, make_page, fake_time):
    upserter = RecordUpserter(session_factory)
    real = upserter.upsert_page

    def flaky(account, records):
        if records[0].entity_type == "quote":
            return UpsertResult(failed=len(records), failed_batches=1, errors=["deadlock detected"])
        return real(account, records)

    upserter.upsert_page = flaky
    outcome = await _orchestrator(
        session_factory, scripted_client(_full_dataset(make_page)), fake_time, upserter=upserter,
    ).run()

    assert outcome.status == "partial"
    assert outcome.upsert_failures == 1
    assert outcome.opportunities is not None
    assert "deadlock" in db_session.get(SyncRun, "residential").last_error


@pytest.mark.asyncio
async def test_aggregation_error_makes_run_partial(session_factory, scripted_client, fake_time):
    aggregator = MagicMock()
    aggregator.rebuild.side_effect = RuntimeError("division by zero")

    outcome = await _orchestrator(session_factory, scripted_client(), fake_time, aggregator=aggregator).run()

    assert outcome.status == "partial"
    assert outcome.aggregation_failed
    assert "division by zero" in outcome.error_summary()


@pytest.mark.asyncio
async def test_page_cap_makes_run_partial(session_factory, scripted_client, make_page, fake_time):
    endless = [make_page("jobs", [{"id": f"j{i}"}], True, f"c{i}") for i in range(20)]
    client = scripted_client({"jobs": endless})

    outcome = await _orchestrator(session_factory, client, fake_time).run()

    assert outcome.status == "partial"
    assert outcome.truncated == ["job"]
    assert outcome.counts["job"] == 10


@pytest.mark.asyncio
async def test_reporter_failure_does_not_change_status(session_factory, scripted_client, fake_time):
    reporter = MagicMock()
    reporter.last_run.return_value = None
    reporter.report.return_value = False

    outcome = await _orchestrator(session_factory, scripted_client(), fake_time, reporter=reporter).run()

    assert outcome.status == "success"
    assert outcome.report_saved is False


@pytest.mark.asyncio
async def test_parallel_walks_share_results(db_session, session_factory, scripted_client, make_page, fake_time):
    client = scripted_client(_full_dataset(make_page))

    outcome = await _orchestrator(session_factory, client, fake_time, parallel=True).run()

    assert outcome.status == "success"
    assert outcome.counts == {"request": 1, "quote": 1, "job": 1}
    assert db_session.scalar(select(func.count()).select_from(Opportunity)) == 1


@pytest.mark.asyncio
async def test_parallel_auth_error_fails_run(session_factory, scripted_client, fake_time):
    client = scripted_client({"jobs": [AuthError("revoked mid-sync")]})

    outcome = await _orchestrator(session_factory, client, fake_time, parallel=True).run()

    assert outcome.status == "failed"
    assert outcome.auth_error
