import os

# Ensure JWT_SECRET exists before importing chat_ledger.main (it calls require_jwt_secret() at import time).
os.environ.setdefault("JWT_SECRET", "test_jwt_secret")
# The app lifespan builds an engine; keep it off the network. Routes use the overridden get_db.
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite:///:memory:")
# Usage audit writes run inline unless a test opts into the queue.
os.environ["USAGE_AUDIT_QUEUE_URL"] = ""

from contextlib import contextmanager

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from chat_ledger.core.base import Base
from chat_ledger.core import config as app_config

# Import models so they register with SQLAlchemy metadata.
from chat_ledger.models.user import User  # noqa: F401
from chat_ledger.models.ledger import ApiUsage, Balance, LedgerTransaction  # noqa: F401
from chat_ledger.models.payment_event import PaymentEvent  # noqa: F401

from chat_ledger.core.database import get_db
from chat_ledger.dependencies.auth import get_current_user
from chat_ledger.services.users import create_user


@pytest.fixture(scope="session")
def db_engine():
    # In-memory SQLite for fast, isolated tests.
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def db_session(db_engine):
    # Because we use an in-memory SQLite DB with StaticPool, the DB persists
    # across tests. Reset schema per test to avoid cross-test coupling.
    Base.metadata.drop_all(bind=db_engine)
    Base.metadata.create_all(bind=db_engine)

    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def _reset_mutable_settings():
    """
    Tests sometimes tweak global settings (app_config.settings.*). Because that object is
    process-global, we must restore values after each test to avoid cross-test coupling.
    """
    keys = [
        "WELCOME_BONUS_UNITS",
        "LEGACY_MIN_BALANCE_UNITS",
        "LEDGER_MAX_RETRIES",
        "LEDGER_HISTORY_MAX_PAGE_SIZE",
        "USAGE_STATS_MAX_DAYS",
    ]
    original = {k: getattr(app_config.settings, k) for k in keys}
    try:
        yield
    finally:
        for k, v in original.items():
            setattr(app_config.settings, k, v)


@pytest.fixture()
def app(db_session):
    # Ensure settings has a JWT secret even if imported earlier.
    app_config.settings.JWT_SECRET = app_config.settings.JWT_SECRET or "test_jwt_secret"

    import chat_ledger.main as main

    fastapi_app = main.app

    def override_get_db():
        yield db_session

    fastapi_app.dependency_overrides[get_db] = override_get_db
    yield fastapi_app
    fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def users(db_session):
    """
    Two distinct active users, each created through the signup path so they
    start with the welcome bonus (100 units).
    """
    user_a = create_user(db_session, "test@example.com", name="Test User")
    user_b = create_user(db_session, "other@example.com", name="Other User")
    return user_a, user_b


@pytest.fixture()
def admin_user(db_session):
    return create_user(db_session, "admin@example.com", name="Admin", is_admin=True)


@pytest.fixture()
def client(app, users):
    """
    Default client authenticated as user_a.
    """
    user_a, _ = users
    app.dependency_overrides[get_current_user] = lambda: user_a
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.pop(get_current_user, None)


@pytest.fixture()
def admin_client(app, admin_user):
    app.dependency_overrides[get_current_user] = lambda: admin_user
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.pop(get_current_user, None)


@pytest.fixture()
def anonymous_client(app):
    """Client that goes through the real bearer-token dependency."""
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def client_for(app):
    """
    Context manager to create a client authenticated as an arbitrary user.

    Usage:
        with client_for(user) as c:
            ...
    """

    @contextmanager
    def _client_for(user: User):
        app.dependency_overrides[get_current_user] = lambda: user
        with TestClient(app) as c:
            yield c
        app.dependency_overrides.pop(get_current_user, None)

    return _client_for
