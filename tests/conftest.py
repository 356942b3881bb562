import os

os.environ.setdefault("DB_BACKEND", "sqlite")

import httpx
import pytest
from sqlalchemy.orm import sessionmaker

from core.context import owner_context
from core.db import DB, build_engine
from core.models import Base
from core.services import reasoning


@pytest.fixture
def server_db(tmp_path):
    db_path = tmp_path / "trainergate.sqlite"
    engine = build_engine(f"sqlite:///{db_path}")
    Base.metadata.create_all(engine)
    previous_engine = DB.engine
    previous_session = DB.SessionLocal
    DB.engine = engine
    DB.SessionLocal = sessionmaker(bind=engine)
    try:
        yield engine
    finally:
        DB.engine = previous_engine
        DB.SessionLocal = previous_session
        engine.dispose()


@pytest.fixture
def db_session(server_db):
    db = DB.SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def owner():
    return owner_context("athlete-1", request_id="req-test")


@pytest.fixture
def other_owner():
    return owner_context("athlete-2", request_id="req-other")


@pytest.fixture
def fake_engine(monkeypatch):
    """Point the reasoning client at an in-process handler.

    Tests assign ``fake_engine.handler`` before calling into the engine.
    """

    class _Engine:
        handler = None
        requests = []

    engine = _Engine()
    engine.requests = []

    def dispatch(request):
        engine.requests.append(request)
        return engine.handler(request)

    monkeypatch.setattr(reasoning, "REASONING_ENGINE_URL", "http://reasoning.test")
    monkeypatch.setattr(reasoning, "REASONING_RETRY_BACKOFF_SECONDS", 0.0)
    monkeypatch.setattr(reasoning, "REASONING_RETRY_JITTER_SECONDS", 0.0)
    reasoning.reasoning_circuit_breaker.reset()
    reasoning.init_http_client(transport=httpx.MockTransport(dispatch))
    try:
        yield engine
    finally:
        reasoning.cleanup_http_client()
        reasoning.reasoning_circuit_breaker.reset()
