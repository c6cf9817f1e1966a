import itertools
import os
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("CACHE_BACKEND", "memory")
os.environ.setdefault("DB_LOG_SLOW_QUERIES", "false")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app import models_google_calendar  # noqa: E402, F401
from app.database import Base  # noqa: E402
from app.domain.calendar.encryption import SealedToken  # noqa: E402
from app.domain.calendar.provider import CalendarProvider, TokenGrant  # noqa: E402
from app.domain.calendar.schemas import BusyInterval  # noqa: E402
from app.models_google_calendar import (  # noqa: E402
    DEFAULT_BUSINESS_HOURS,
    AgentCalendarConfig,
    GoogleCalendarCredential,
)

# Monday
NOW = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)

engine = create_engine(
    "sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def _parse(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class FakeCalendarProvider(CalendarProvider):
    """In-memory calendar. Created events become busy time."""

    name = "fake"

    def __init__(self):
        self.events: dict[str, BusyInterval] = {}
        self.bodies: dict[str, dict] = {}
        self.errors: dict[str, list[Exception]] = defaultdict(list)
        self.busy_queries: list[tuple] = []
        self.deleted: list[str] = []
        self.revoked: list[str] = []
        self.refresh_count = 0
        self.rotated_refresh_token = None
        self.account_email = "owner@example.com"
        self._ids = itertools.count(1)

    def _maybe_fail(self, operation: str) -> None:
        if self.errors[operation]:
            raise self.errors[operation].pop(0)

    def add_busy(self, start: datetime, end: datetime, event_id: str = None) -> str:
        event_id = event_id or f"busy-{next(self._ids)}"
        self.events[event_id] = BusyInterval(start=start, end=end, event_id=event_id)
        return event_id

    def build_authorization_url(self, client_id, redirect_uri, state):
        return f"https://accounts.example.com/auth?client_id={client_id}&state={state}"

    async def exchange_code(self, client_id, client_secret, code, redirect_uri):
        self._maybe_fail("exchange")
        return TokenGrant(
            access_token=f"access-{code}",
            expires_in=3600,
            refresh_token=f"refresh-{code}",
            scopes=["https://www.googleapis.com/auth/calendar"],
        )

    async def refresh_access_token(self, client_id, client_secret, refresh_token):
        self._maybe_fail("refresh")
        self.refresh_count += 1
        return TokenGrant(
            access_token=f"refreshed-{self.refresh_count}",
            expires_in=3600,
            refresh_token=self.rotated_refresh_token,
        )

    async def fetch_account_email(self, access_token):
        return self.account_email

    async def revoke_token(self, token):
        self.revoked.append(token)

    async def list_busy_intervals(self, access_token, calendar_id, window_start, window_end):
        self.busy_queries.append((access_token, calendar_id, window_start, window_end))
        self._maybe_fail("list")
        return sorted(
            (b for b in self.events.values() if b.start < window_end and b.end > window_start),
            key=lambda b: b.start,
        )

    async def create_event(self, access_token, calendar_id, event):
        self._maybe_fail("create")
        event_id = f"evt-{next(self._ids)}"
        self.events[event_id] = BusyInterval(
            start=_parse(event["start"]["dateTime"]),
            end=_parse(event["end"]["dateTime"]),
            event_id=event_id,
        )
        self.bodies[event_id] = event
        return event_id

    async def delete_event(self, access_token, calendar_id, event_id):
        self._maybe_fail("delete")
        self.deleted.append(event_id)
        return self.events.pop(event_id, None) is not None


@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def provider():
    return FakeCalendarProvider()


@pytest.fixture
def clock():
    return lambda: NOW


def make_credential(
    db,
    tenant_id="t1",
    account_email="owner@example.com",
    token_expiry=NOW + timedelta(hours=1),
    access_token="stored-access",
    refresh_token="stored-refresh",
    is_active=True,
):
    credential = GoogleCalendarCredential(
        tenant_id=tenant_id,
        client_id="test-client-id",
        client_secret=SealedToken.seal("test-client-secret"),
        access_token=SealedToken.seal(access_token) if access_token else None,
        refresh_token=SealedToken.seal(refresh_token) if refresh_token else None,
        token_expiry=token_expiry,
        account_email=account_email,
        is_active=is_active,
        scopes=[],
    )
    db.add(credential)
    db.commit()
    db.refresh(credential)
    return credential


def make_config(db, credential, agent_id="agent-1", **overrides):
    fields = {
        "tenant_id": credential.tenant_id,
        "agent_id": agent_id,
        "credential_id": credential.id,
        "calendar_id": "primary",
        "timezone": "UTC",
        "business_hours": dict(DEFAULT_BUSINESS_HOURS),
        "slot_duration_minutes": 30,
        "buffer_minutes": 0,
        "lookahead_days": 30,
        "min_notice_hours": 0,
        "reminders": [],
        "is_active": True,
        "created_with_email": credential.account_email,
    }
    fields.update(overrides)
    config = AgentCalendarConfig(**fields)
    db.add(config)
    db.commit()
    db.refresh(config)
    return config


@pytest.fixture
def credential(db):
    return make_credential(db)


@pytest.fixture
def config(db, credential):
    return make_config(db, credential)
