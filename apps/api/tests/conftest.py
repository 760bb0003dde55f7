"""
Test configuration and fixtures.

Provides:
- Fresh in-memory SQLite schema per test
- In-memory identity/notification/attachment collaborators
- Operator JWT minting for authenticated tests
- HTTPX AsyncClient with proper headers
"""
import os
from typing import AsyncGenerator, Callable, Generator

# Must be set before casetriage modules read settings
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["TESTING"] = "1"
os.environ["ENV"] = "test"

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from casetriage.core.deps import get_db
from casetriage.core.security import create_operator_token
from casetriage.db.base import Base
from casetriage.db.enums import Role
from casetriage.db.models import Case
from casetriage.db.session import SessionLocal, engine
from casetriage.main import app
from casetriage.services import intake_service
from casetriage.services.collaborators import (
    Collaborators,
    InMemoryAttachmentStore,
    InMemoryIdentityDirectory,
    LoggingNotificationService,
    set_collaborators,
)

CSRF_HEADERS = {"X-Requested-With": "XMLHttpRequest"}


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Creates a session over a freshly created schema.

    Service code commits freely; the schema is dropped after each test.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


# =============================================================================
# Collaborators
# =============================================================================

@pytest.fixture(scope="function", autouse=True)
def collaborators() -> Generator[Collaborators, None, None]:
    """Known operators op1, op2, admin; notifications recorded in memory."""
    identity = InMemoryIdentityDirectory()
    identity.add("op1", "Operator One", "op1@example.com")
    identity.add("op2", "Operator Two", "op2@example.com")
    identity.add("admin", "Admin", "admin@example.com")
    identity.add("u1", "player_one")

    bundle = Collaborators(
        identity=identity,
        notifier=LoggingNotificationService(),
        attachments=InMemoryAttachmentStore(),
    )
    set_collaborators(bundle)
    yield bundle
    set_collaborators(None)


# =============================================================================
# Case factories
# =============================================================================

@pytest.fixture
def make_ticket(db: Session) -> Callable[..., Case]:
    """Intake a support ticket (opened on intake unless auto_open=False)."""
    def factory(subject_user_id: str = "u1", topic: str = "technical", auto_open: bool = True, **fields) -> Case:
        payload = {
            "kind": "support_ticket",
            "subject_user_id": subject_user_id,
            "fields": {"topic": topic, "subject": "Cannot log in", **fields},
        }
        return intake_service.intake(db, payload, actor_id="op1", auto_open=auto_open).case
    return factory


@pytest.fixture
def make_flag(db: Session) -> Callable[..., intake_service.IntakeResult]:
    """Intake an anti-cheat flag; returns the full IntakeResult."""
    def factory(subject_user_id: str = "u1", detector: str = "suspicious_timing", **fields):
        payload = {
            "kind": "anti_cheat_flag",
            "subject_user_id": subject_user_id,
            "fields": {"detector": detector, **fields},
        }
        return intake_service.intake(db, payload, actor_id="detector")
    return factory


# =============================================================================
# Client Fixtures
# =============================================================================

def auth_headers(operator_id: str, role: Role) -> dict[str, str]:
    token = create_operator_token(operator_id, role.value)
    return {"Authorization": f"Bearer {token}", **CSRF_HEADERS}


@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """Unauthenticated AsyncClient."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def authed_client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient for agent op1 with bearer token and CSRF header."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers=auth_headers("op1", Role.AGENT),
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def admin_client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient for the admin operator."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers=auth_headers("admin", Role.ADMIN),
    ) as c:
        yield c

    app.dependency_overrides.clear()
