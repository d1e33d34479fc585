"""
Shared fixtures: a file-backed SQLite store per test, a controllable clock,
and FastAPI clients that each carry their own session cookie.
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from funding.api import create_app
from funding.config import Settings
from funding.db import create_db_engine, init_db, make_session_factory
from funding.models import CreateProjectRequest, UpsertUser
from funding.service import FundingService
from funding.storage import SqlLedgerStore

START = datetime(2030, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

CREATOR_ID = "creator-1"
BACKER_ID = "backer-1"
OTHER_ID = "backer-2"


class FakeClock:
    def __init__(self, now: datetime = START):
        self.current = now

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current

    def set(self, value: datetime) -> None:
        self.current = value


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    store = SqlLedgerStore(make_session_factory(engine))
    for user_id in (CREATOR_ID, BACKER_ID, OTHER_ID):
        store.upsert_user(UpsertUser(id=user_id, email=f"{user_id}@example.com", first_name=user_id))
    return store


@pytest.fixture
def service(store, clock):
    return FundingService(store, clock=clock)


@pytest.fixture
def make_project(service, clock):
    def _make(goal="1.0", hours=1, creator_id=CREATOR_ID, **overrides):
        request = CreateProjectRequest(
            title=overrides.pop("title", "Community solar"),
            description=overrides.pop("description", "Panels for the school roof"),
            goal_amount=goal,
            deadline=clock() + timedelta(hours=hours),
            **overrides,
        )
        return service.create_project(creator_id, request)
    return _make


@pytest.fixture
def app(tmp_path, clock):
    settings = Settings(DATABASE_URL=f"sqlite:///{tmp_path / 'api.db'}", LOG_LEVEL="WARNING")
    app = create_app(settings, clock=clock)
    yield app
    app.state.engine.dispose()


@pytest.fixture
def login(app):
    clients = []

    def _login(user_id: str) -> TestClient:
        client = TestClient(app)
        clients.append(client)
        response = client.post("/api/mock-login", json={"id": user_id, "email": f"{user_id}@example.com"})
        assert response.status_code == 200, response.text
        return client

    yield _login
    for client in clients:
        client.close()
