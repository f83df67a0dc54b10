"""
Pytest configuration and fixtures

IMPORTANT: All tests use transactional rollback isolation.
Nothing created during tests persists to the database.

Tests run against an in-memory SQLite database (StaticPool, one shared
connection); the environment is set before any application import.
"""
import pytest
import sys
import os
from uuid import uuid4

from cryptography.fernet import Fernet

# Add the parent directory to the path so we can import from services
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-at-least-32-characters-long")
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("WHOOP_CLIENT_ID", "test-client-id")
os.environ.setdefault("WHOOP_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("LOG_FORMAT", "text")

from sqlalchemy.orm import Session  # noqa: E402
from core.database import Base, engine  # noqa: E402
from core.security import create_access_token  # noqa: E402
from models import User  # noqa: E402
from fixtures.whoop_fixtures import FakeWhoopClient  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def _create_schema():
    """Create all tables once; the schema mirrors the Alembic head."""
    Base.metadata.create_all(engine)
    yield
    Base.metadata.drop_all(engine)


@pytest.fixture(scope="function")
def db_session():
    """
    Create a database session with transactional rollback.

    Application code may call commit()/rollback(); with create_savepoint those
    only release or roll back a SAVEPOINT inside the outer transaction, which
    is rolled back after the test.
    """
    connection = engine.connect()
    transaction = connection.begin()
    session = Session(bind=connection, join_transaction_mode="create_savepoint", expire_on_commit=False)

    yield session

    # Rollback everything - nothing persists
    session.close()
    transaction.rollback()
    connection.close()


@pytest.fixture
def test_user(db_session):
    """
    Create a test user.

    No cleanup needed - transactional rollback handles it automatically.
    """
    user = User(email=f"test_{uuid4()}@example.com")
    db_session.add(user)
    db_session.flush()
    return user


@pytest.fixture
def other_user(db_session):
    user = User(email=f"other_{uuid4()}@example.com")
    db_session.add(user)
    db_session.flush()
    return user


@pytest.fixture
def bearer_token(test_user):
    return create_access_token({"sub": str(test_user.id)})


@pytest.fixture
def auth_headers(bearer_token):
    return {"Authorization": f"Bearer {bearer_token}"}


@pytest.fixture
def fake_whoop():
    return FakeWhoopClient()


@pytest.fixture
def extended_streams_on(monkeypatch):
    """Enable the optional body/cycle streams."""
    from core.config import settings

    monkeypatch.setattr(settings, "FEATURE_FLAGS", "whoop.extended_streams")
