"""
Test configuration and fixtures.

Provides:
- Database session on a fresh schema per test (SQLite in-memory by default)
- Controllable clock patched into the service modules
- Customer / agent / mailbox / SLA policy rows
- HTTPX AsyncClient wired to the test session
"""
import os
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import AsyncGenerator, Generator

# Must be set before helpdesk.core.config is imported.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from helpdesk.core.config import settings
from helpdesk.core.deps import get_db
from helpdesk.db.base import Base
from helpdesk.db.enums import MailboxType, TicketPriority
from helpdesk.db.models import Customer, Mailbox, SlaPolicy, User
from helpdesk.db.session import SessionLocal, engine
from helpdesk.main import app
from helpdesk.services import (
    job_service,
    mailbox_service,
    sla_service,
    ticket_service,
)


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Session on a freshly created schema.

    App code commits freely; the schema is dropped after each test.
    """
    Base.metadata.create_all(engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)


@pytest.fixture(autouse=True)
def local_storage(tmp_path, monkeypatch):
    """Keep attachment writes inside the test's tmp dir."""
    monkeypatch.setattr(settings, "STORAGE_BACKEND", "local")
    monkeypatch.setattr(settings, "LOCAL_STORAGE_PATH", str(tmp_path / "storage"))
    return tmp_path / "storage"


# =============================================================================
# Clock
# =============================================================================

class Clock:
    """Callable stand-in for the services' ``_now_utc``."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(monkeypatch) -> Clock:
    c = Clock(T0)
    for module in (sla_service, ticket_service, mailbox_service, job_service):
        monkeypatch.setattr(module, "_now_utc", c)
    return c


# =============================================================================
# Row Fixtures
# =============================================================================

@pytest.fixture
def customer(db: Session) -> Customer:
    row = Customer(email=f"customer-{uuid.uuid4().hex[:8]}@example.com", name="Casey Customer")
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def agent(db: Session) -> User:
    row = User(email=f"agent-{uuid.uuid4().hex[:8]}@helpdesk.test", name="Alex Agent")
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def mailbox(db: Session) -> Mailbox:
    row = Mailbox(
        name="Support",
        email=f"support-{uuid.uuid4().hex[:8]}@helpdesk.test",
        type=MailboxType.IMAP,
        polling_interval=2,
    )
    db.add(row)
    db.commit()
    return row


def add_policy(
    db: Session,
    priority: TicketPriority = TicketPriority.NORMAL,
    *,
    first_response_hours: str = "4",
    resolution_hours: str = "24",
    is_active: bool = True,
) -> SlaPolicy:
    row = SlaPolicy(
        name=f"{priority.value} SLA",
        priority=priority,
        first_response_hours=Decimal(first_response_hours),
        resolution_hours=Decimal(resolution_hours),
        is_active=is_active,
    )
    db.add(row)
    db.commit()
    return row


@pytest.fixture
def normal_policy(db: Session) -> SlaPolicy:
    """Normal priority: first response in 4h, resolution in 24h."""
    return add_policy(db)


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def make_policy(db: Session):
    def _make(priority: TicketPriority = TicketPriority.NORMAL, **kwargs) -> SlaPolicy:
        return add_policy(db, priority, **kwargs)

    return _make
