"""
conftest.py — Shared test fixtures for fieldsync

Provides an in-memory SQLite database, a fake clock/sleep pair so no test
ever waits for real, scripted GraphQL responses, and factories for tokens
and synced records.

Business Rules:
- All tests run against an isolated in-memory DB (StaticPool, one connection)
- Environment is pinned before any fieldsync module is imported
- No test touches the network or sleeps

Called by: all test files via pytest autodiscovery
Depends on: fieldsync.models (Base), fieldsync.database (get_db)
"""

import os

# Must be set before importing fieldsync modules (settings are read at import)
os.environ["TESTING"] = "1"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["JOBBER_CLIENT_ID"] = "test-client-id"
os.environ["JOBBER_CLIENT_SECRET"] = "test-client-secret"
os.environ["API_KEY"] = ""
os.environ["APP_URL"] = "http://localhost:8000"

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from fieldsync.graphql_client import GraphQLResponse
from fieldsync.models import Base, OAuthToken
from fieldsync.services.record_mapper import NormalizedRecord
from fieldsync.services.throttle import QueryCost, ThrottleStatus

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


# ── Database ─────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def db_session():
    """Create all tables, yield a session, then tear down."""
    Base.metadata.create_all(bind=engine)
    session = TestSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def session_factory():
    """Session factory sharing the test connection, for services that open their own sessions."""
    return TestSessionLocal


# ── Time ─────────────────────────────────────────────────────────────


class FakeTime:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture()
def fake_time() -> FakeTime:
    return FakeTime()


@pytest.fixture()
def now():
    """The wall-clock instant token fixtures are anchored to."""
    return NOW


# ── Factories ────────────────────────────────────────────────────────


@pytest.fixture()
def make_token(db_session: Session):
    """Insert an OAuthToken whose access token expires `expires_in` seconds after NOW."""

    def _make(account="residential", access="access-1", refresh="refresh-1",
              expires_in=3600, refresh_expires_in=None):
        token = OAuthToken(
            account=account,
            access_token=access,
            refresh_token=refresh,
            access_token_expires_at=NOW + timedelta(seconds=expires_in),
            refresh_token_expires_at=(
                NOW + timedelta(seconds=refresh_expires_in) if refresh_expires_in is not None else None
            ),
            created_at=NOW,
            updated_at=NOW,
        )
        db_session.add(token)
        db_session.commit()
        return token

    return _make


@pytest.fixture()
def make_record():
    """Build a NormalizedRecord; keyword args become its normalized fields."""

    def _make(entity_type, remote_id, **fields):
        return NormalizedRecord(
            entity_type=entity_type,
            remote_id=remote_id,
            fields=fields,
            raw_payload={"id": remote_id},
        )

    return _make


@pytest.fixture()
def make_page():
    """Build a GraphQLResponse holding one connection page."""

    def _make(root, nodes, has_next=False, cursor=None, available=10000.0,
              maximum=10000.0, restore_rate=500.0, cost=100):
        return GraphQLResponse(
            data={root: {"nodes": nodes, "pageInfo": {"hasNextPage": has_next, "endCursor": cursor}}},
            cost=QueryCost(
                requested_query_cost=cost,
                actual_query_cost=cost,
                throttle=ThrottleStatus(available, maximum, restore_rate),
            ),
        )

    return _make


class ScriptedClient:
    """Stands in for GraphQLClient: replays scripted responses per root field.

    Script items are GraphQLResponse objects or exceptions to raise. Once a
    root field's script runs out it answers with an empty last page.
    """

    def __init__(self, scripts: dict | None = None):
        self.scripts = {k: list(v) for k, v in (scripts or {}).items()}
        self.calls: list[tuple[str, dict]] = []

    @staticmethod
    def _root(query: str) -> str:
        for root in ("requests", "quotes", "jobs"):
            if f"{root}(first" in query:
                return root
        raise AssertionError("unknown query")

    async def execute(self, query, variables=None):
        root = self._root(query)
        self.calls.append((root, dict(variables or {})))
        script = self.scripts.get(root) or []
        if not script:
            return GraphQLResponse(
                data={root: {"nodes": [], "pageInfo": {"hasNextPage": False, "endCursor": None}}}
            )
        item = script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item

    def cursors(self, root: str) -> list:
        return [v.get("after") for r, v in self.calls if r == root]


@pytest.fixture()
def scripted_client():
    return ScriptedClient


# ── API ──────────────────────────────────────────────────────────────


@pytest.fixture()
def client(db_session: Session) -> TestClient:
    """FastAPI TestClient with get_db bound to the test session."""
    from fieldsync.database import get_db
    from fieldsync.main import app

    def _override_db():
        yield db_session

    app.dependency_overrides[get_db] = _override_db
    try:
        with TestClient(app) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
