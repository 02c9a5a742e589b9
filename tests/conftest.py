"""
Pytest configuration and shared fixtures.

Environment variables are seeded here before any messaging import so the
cached settings pick up the test configuration. Values already present in
the environment (e.g. loaded from .env.test) take precedence.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_messaging.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")
os.environ.setdefault("MESSAGE_RATE_LIMIT_SECONDS", "0")

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from messaging.config import get_settings
get_settings.cache_clear()

from messaging import models  # noqa: E402,F401  (registers tables on Base.metadata)
from messaging.main import app  # noqa: E402
from messaging.models import User  # noqa: E402
from messaging.storage import Base, SessionLocal, engine  # noqa: E402
from messaging.utils import create_access_token  # noqa: E402


def auth_headers(user_id: str, email: str = None, expires_in: int = 3600) -> dict:
    """Cookie header carrying a signed token for user_id."""
    token = create_access_token(user_id, email=email, expires_in=expires_in)
    return {"cookie": f"token={token}"}


@pytest.fixture
def headers():
    """Factory fixture: headers("alice") -> auth cookie header for alice."""
    return auth_headers


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db():
    """Database session on fresh tables, for gateway-level tests."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()

    yield session

    session.close()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def users():
    """Directory entries for alice, bob and carol (dave has none)."""
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as session:
        session.add_all([
            User(id="alice", user_name="Alice", email="alice@example.com", photo_url="https://img/alice.png"),
            User(id="bob", user_name="Bob", email="bob@example.com"),
            User(id="carol", user_name="Carol", email="carol@example.com"),
        ])
        session.commit()
    return ["alice", "bob", "carol"]
