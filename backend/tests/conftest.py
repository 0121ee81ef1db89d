from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("ENV", "dev")
os.environ.setdefault("ALLOWED_HOSTS", "testserver,localhost")
os.environ.setdefault("BILLING_WEBHOOK_SIGNATURE_KEY", "whsec_test_key")
os.environ.setdefault("BILLING_GATEWAY_BACKOFF_SECONDS", "0")
os.environ.setdefault("PLATFORM_FEE_PERCENT", "20")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import creatorpay.models  # noqa: F401  (registers every table on Base.metadata)
from creatorpay.api.deps import get_gateway, get_notification_sink
from creatorpay.db.base import Base
from creatorpay.db.session import get_db
from creatorpay.main import app
from creatorpay.services.notifications import DatabaseNotificationSink
from tests.testkit import FakeGateway, RecordingSink


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite opens transactions lazily and would release SAVEPOINTs as commits.
    @event.listens_for(eng, "connect")
    def _no_implicit_tx(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _explicit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def client(db, gateway):
    """API client bound to the test session, the fake processor and the real notification sink."""

    def _db():
        yield db

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notification_sink] = lambda: DatabaseNotificationSink(db)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
