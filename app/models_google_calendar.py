"""
Google Calendar Integration Models
"""
from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from .database import Base
from .domain.calendar.encryption import SealedTokenType

DEFAULT_BUSINESS_HOURS = {
    "monday": {"open": "09:00", "close": "17:00"},
    "tuesday": {"open": "09:00", "close": "17:00"},
    "wednesday": {"open": "09:00", "close": "17:00"},
    "thursday": {"open": "09:00", "close": "17:00"},
    "friday": {"open": "09:00", "close": "17:00"},
    "saturday": None,
    "sunday": None,
}


class GoogleCalendarCredential(Base):
    """One authorized Google account per tenant. Deactivated, never deleted."""

    __tablename__ = "google_calendar_credentials"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)

    # OAuth client + tokens (sealed)
    client_id = Column(String(255), nullable=False)
    client_secret = Column(SealedTokenType, nullable=False)
    access_token = Column(SealedTokenType, nullable=True)
    refresh_token = Column(SealedTokenType, nullable=True)
    token_expiry = Column(DateTime(timezone=True), nullable=True)
    scopes = Column(JSON, default=list)

    # Google account that granted access
    account_email = Column(String(255), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    configs = relationship("AgentCalendarConfig", back_populates="credential")


class AgentCalendarConfig(Base):
    """Booking rules for one agent against the tenant's calendar credential"""

    __tablename__ = "agent_calendar_configs"

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    agent_id = Column(String(64), nullable=False, unique=True)
    credential_id = Column(Integer, ForeignKey("google_calendar_credentials.id"), nullable=False)
    calendar_id = Column(String(500), nullable=False, default="primary")

    # IANA zone, e.g. "America/New_York"
    timezone = Column(String(100), nullable=False)
    # weekday name -> {"open": "HH:MM", "close": "HH:MM"} or None when closed
    business_hours = Column(JSON, nullable=False, default=lambda: dict(DEFAULT_BUSINESS_HOURS))
    slot_duration_minutes = Column(Integer, nullable=False, default=30)
    buffer_minutes = Column(Integer, nullable=False, default=0)
    lookahead_days = Column(Integer, nullable=False, default=30)
    min_notice_hours = Column(Integer, nullable=False, default=0)

    # Event notification settings
    enable_owner_email = Column(Boolean, default=False)
    owner_email = Column(String(255), nullable=True)
    reminders = Column(JSON, default=list)

    is_active = Column(Boolean, default=True, nullable=False)
    # Google account that was authorized when this config was created
    created_with_email = Column(String(255), nullable=True)
    # Set when the tenant disables booking; account switches never revive it
    removed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    credential = relationship("GoogleCalendarCredential", back_populates="configs")


class Appointment(Base):
    """A booked slot. Cancelled rows are kept."""

    __tablename__ = "appointments"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_event_id", name="uq_appointments_tenant_event"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    agent_id = Column(String(64), nullable=False, index=True)
    calendar_config_id = Column(Integer, ForeignKey("agent_calendar_configs.id"), nullable=False)
    calendar_id = Column(String(500), nullable=False)
    external_event_id = Column(String(255), nullable=True)
    conversation_id = Column(String(64), nullable=True)

    attendee_name = Column(String(255), nullable=False)
    attendee_email = Column(String(255), nullable=False, index=True)
    attendee_phone = Column(String(50), nullable=True)

    # Stored in UTC
    scheduled_start = Column(DateTime(timezone=True), nullable=False)
    scheduled_end = Column(DateTime(timezone=True), nullable=False)
    timezone = Column(String(100), nullable=False)
    duration_minutes = Column(Integer, nullable=False)

    # scheduled | completed | cancelled
    status = Column(String(20), nullable=False, default="scheduled")
    rescheduled_from = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    calendar_config = relationship("AgentCalendarConfig")
