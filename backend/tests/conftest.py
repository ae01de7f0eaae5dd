import os
from datetime import timedelta

from cryptography.fernet import Fernet

# Must be set before anything from ``warden`` is imported
os.environ["TESTING"] = "1"
os.environ["FERNET_SECRET"] = Fernet.generate_key().decode()
os.environ.pop("SESSION_ENCRYPTION_KEY", None)
os.environ["HEALTH_CHECK_DELAY_SECONDS"] = "0"

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import warden.database as _db_mod  # noqa: E402
from warden.constants import DEV_EMAIL  # noqa: E402
from warden.crud import crud  # noqa: E402
from warden.database import Base  # noqa: E402
from warden.database import get_db  # noqa: E402
from warden.database import make_engine  # noqa: E402
from warden.database import make_sessionmaker  # noqa: E402
from warden.models import models  # noqa: E402,F401
from warden.services.session_manager import SessionCookie  # noqa: E402
from warden.services.session_manager import SessionSnapshot  # noqa: E402
from warden.services.session_manager import encrypt_session  # noqa: E402
from warden.utils.time import utc_now  # noqa: E402

from tests.helpers.fake_browser import FakeBrowserDriver  # noqa: E402

# Create a test database - using in-memory SQLite for tests
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

test_engine = make_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,  # Use StaticPool for in-memory database
)

TestingSessionLocal = make_sessionmaker(test_engine)

# Services that open their own sessions (scheduler) use the test database too
_db_mod.default_session_factory = TestingSessionLocal

# Import app after all engine setup is in place
from warden.main import app  # noqa: E402


@pytest.fixture
def db_session():
    """
    Creates a fresh database for each test, then tears it down after the test is done.
    """
    Base.metadata.create_all(bind=test_engine)

    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def fake_browser():
    return FakeBrowserDriver()


@pytest.fixture
def client(db_session, fake_browser):
    """
    Create a FastAPI TestClient with the test database and the fake browser.
    """

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    original_driver = app.state.browser_driver
    app.state.browser_driver = fake_browser

    client = TestClient(app, backend="asyncio")
    yield client

    app.dependency_overrides = {}
    app.state.browser_driver = original_driver
    app.state.reconnect_browser = None


@pytest.fixture
def test_session_factory(db_session):
    """
    Returns a session factory using the test database.
    """

    def get_test_session():
        return db_session

    return get_test_session


@pytest.fixture
def user(db_session):
    return crud.get_or_create_user(db_session, DEV_EMAIL)


@pytest.fixture
def make_login(db_session, user):
    """Factory creating a login owned by the dev user."""

    def _make(name="Example", login_url="https://site.com/login", **kwargs):
        kwargs.setdefault("username", "alice@example.com")
        kwargs.setdefault("password", "hunter2")
        return crud.create_login(db_session, owner_id=user.id, name=name, login_url=login_url, **kwargs)

    return _make


@pytest.fixture
def sample_snapshot():
    expires = (utc_now() + timedelta(days=7)).timestamp()
    return SessionSnapshot(
        cookies=[
            SessionCookie(name="sid", value="abc123", domain=".site.com", path="/", expires=expires, http_only=True),
            SessionCookie(name="pref", value="dark", domain=".site.com", path="/"),
        ],
        local_storage={"token": "t-1"},
        session_storage={"tab": "home"},
        user_agent="TestAgent/1.0",
    )


@pytest.fixture
def with_session(db_session, sample_snapshot):
    """Attach an encrypted session (valid for a week) to a login."""

    def _attach(login, snapshot=None, expiry=None):
        snapshot = snapshot or sample_snapshot
        return crud.store_login_session(
            db_session,
            login.id,
            session_data=encrypt_session(snapshot),
            session_expiry=expiry if expiry is not None else utc_now() + timedelta(days=7),
        )

    return _attach
