import os

os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("METRICS_REDIS_MIRROR_ENABLED", "false")

import uuid
from datetime import UTC, datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import text

from app.application.services.post_service import create_post
from app.application.services.social_account_service import connect_account
from app.core.security import create_access_token
from app.domain import models  # noqa: F401
from app.infrastructure.db.base import Base
from app.infrastructure.db.session import build_engine, build_session_factory, get_db
from main import app

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite+pysqlite:///:memory:")

FIXED_NOW = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


@pytest.fixture
def db_engine():
    engine = build_engine(TEST_DATABASE_URL)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        pytest.skip(f"Database unavailable for integration tests: {exc}")

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(db_session):
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def auth_headers(user_id) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user_id)}"}


@pytest.fixture
def now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def post(db_session, user_id):
    created = create_post(db_session, user_id=user_id, content="Launch day: the scheduler ships today.")
    db_session.commit()
    return created


@pytest.fixture
def twitter_account(db_session, user_id, now):
    account = connect_account(
        db_session,
        user_id=user_id,
        platform="twitter",
        external_account_id="tw-1001",
        username="acme",
        display_name="Acme Corp",
        access_token="twitter-access",
        refresh_token="twitter-refresh",
        token_expires_at=now + timedelta(days=30),
    )
    db_session.commit()
    return account


@pytest.fixture
def threads_account(db_session, user_id, now):
    account = connect_account(
        db_session,
        user_id=user_id,
        platform="threads",
        external_account_id="th-2002",
        username="acme.threads",
        access_token="threads-access",
        token_expires_at=now + timedelta(days=30),
    )
    db_session.commit()
    return account
