"""
Test configuration and fixtures for TaskFlow tests.

Provides:
- Test database with SQLite in-memory for speed, shared by request handlers
  and broker handlers
- FastAPI test client running the real lifespan (local broker, token sweep)
- Authentication helpers (JWT token generation)
- Common fixtures for users and tasks
"""

import os
import sys
import logging
from datetime import timedelta
from typing import Generator, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, JSON
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from sqlalchemy.dialects.postgresql import JSONB

# Add backend directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import database
from database import Base, get_db
from main import app
import models
from auth.security import hash_password, create_access_token
from auth.token_invalidation import token_blacklist
from realtime.manager import manager

# Configure logging for tests
logging.basicConfig(level=logging.WARNING)
logger = logging.getLogger(__name__)

# SQLite in-memory database for fast testing
SQLALCHEMY_TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture(scope="function")
def session_factory() -> Generator[sessionmaker, None, None]:
    """
    Create a fresh in-memory SQLite database for each test.

    StaticPool keeps a single connection, so every session (request, broker
    handler, socket) sees the same database.
    """
    engine = create_engine(
        SQLALCHEMY_TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Replace PostgreSQL-specific types with SQLite-compatible types
    for table in Base.metadata.tables.values():
        for column in table.columns:
            if isinstance(column.type, JSONB):
                column.type = JSON()

    Base.metadata.create_all(bind=engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()
        logger.debug("Test database cleaned up")


@pytest.fixture(scope="function")
def test_db(session_factory: sessionmaker, monkeypatch) -> Generator[Session, None, None]:
    """
    Session for arranging and asserting test data.

    database.SessionLocal is swapped so broker handlers, which open their own
    sessions, use the test database too.
    """
    monkeypatch.setattr(database, "SessionLocal", session_factory)
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(autouse=True)
def reset_in_memory_state():
    """The blacklist and socket registry are process-wide; isolate tests."""
    token_blacklist.clear()
    manager.clear()
    yield
    token_blacklist.clear()
    manager.clear()


class DrainingTestClient(TestClient):
    """
    TestClient that waits for the broker deliveries each request triggered.

    Events are delivered in background tasks. Draining after every request
    keeps notification assertions deterministic and the shared SQLite
    connection out of use while the test thread queries it.
    """

    def request(self, *args, **kwargs):
        response = super().request(*args, **kwargs)
        drain_events(self)
        return response


def drain_events(test_client: TestClient) -> None:
    if test_client.portal is not None:
        test_client.portal.call(app.state.broker.drain)


@pytest.fixture(scope="function")
def client(test_db: Session) -> Generator[TestClient, None, None]:
    """
    Create FastAPI test client with database dependency override.

    Entering the client runs the lifespan, which starts the local broker.
    """
    def override_get_db():
        try:
            yield test_db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db

    with DrainingTestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()


def make_user(db: Session, username: str, password: str = "secret123", full_name: Optional[str] = None) -> models.User:
    user = models.User(
        username=username,
        email=f"{username}@test.com",
        full_name=full_name or username.title(),
        password_hash=hash_password(password),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"Created user {username} with ID: {user.id}")
    return user


@pytest.fixture(scope="function")
def user(test_db: Session) -> models.User:
    return make_user(test_db, "alice", "alice123", "Alice Example")


@pytest.fixture(scope="function")
def other_user(test_db: Session) -> models.User:
    return make_user(test_db, "bob", "bob12345", "Bob Example")


@pytest.fixture(scope="function")
def third_user(test_db: Session) -> models.User:
    return make_user(test_db, "carol", "carol123", "Carol Example")


def create_auth_token(user: models.User, expires_delta: timedelta = None) -> str:
    """
    Helper to create JWT access token for a user.

    Args:
        user: User to create token for
        expires_delta: Optional expiration time override

    Returns:
        JWT access token string
    """
    logger.debug(f"Creating auth token for user {user.id}")
    token_data = {
        "sub": str(user.id),
        "email": user.email,
        "username": user.username,
    }
    return create_access_token(token_data, expires_delta)


def auth_header(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope="function")
def auth_token(user: models.User) -> str:
    return create_auth_token(user)


@pytest.fixture(scope="function")
def auth_headers(auth_token: str) -> Dict[str, str]:
    """Authorization headers for alice."""
    return auth_header(auth_token)


@pytest.fixture(scope="function")
def other_auth_headers(other_user: models.User) -> Dict[str, str]:
    """Authorization headers for bob."""
    return auth_header(create_auth_token(other_user))


@pytest.fixture(scope="function")
def third_auth_headers(third_user: models.User) -> Dict[str, str]:
    """Authorization headers for carol."""
    return auth_header(create_auth_token(third_user))


def create_task(client: TestClient, headers: Dict[str, str], title: str = "Write report",
                assigned_to: Optional[List[int]] = None, **fields) -> dict:
    """Create a task through the API and return its data."""
    body = {"title": title, "assigned_to": assigned_to or [], **fields}
    response = client.post("/api/tasks", json=body, headers=headers)
    assert response.status_code == 201, response.json()
    return response.json()["data"]
