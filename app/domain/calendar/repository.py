"""Calendar repository - Database operations for credentials, agent configs and appointments"""

from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models_google_calendar import AgentCalendarConfig, Appointment, GoogleCalendarCredential
from .encryption import SealedToken


def _commit(db: Session) -> None:
    try:
        db.commit()
    except Exception:
        db.rollback()
        raise


class CalendarRepository:
    """Repository for calendar database operations"""

    # Credentials
    @staticmethod
    def get_active_credential(db: Session, tenant_id: str) -> Optional[GoogleCalendarCredential]:
        return (
            db.query(GoogleCalendarCredential)
            .filter(
                GoogleCalendarCredential.tenant_id == tenant_id,
                GoogleCalendarCredential.is_active.is_(True),
            )
            .order_by(GoogleCalendarCredential.id.desc())
            .first()
        )

    @staticmethod
    def get_latest_credential(db: Session, tenant_id: str) -> Optional[GoogleCalendarCredential]:
        """Most recent credential for a tenant, active or not"""
        return (
            db.query(GoogleCalendarCredential)
            .filter(GoogleCalendarCredential.tenant_id == tenant_id)
            .order_by(GoogleCalendarCredential.id.desc())
            .first()
        )

    @staticmethod
    def get_credential(db: Session, credential_id: int) -> Optional[GoogleCalendarCredential]:
        return db.query(GoogleCalendarCredential).filter(GoogleCalendarCredential.id == credential_id).first()

    @staticmethod
    def save_credential(db: Session, tenant_id: str, **fields) -> GoogleCalendarCredential:
        """Replace the tenant's credential wholesale, keeping a single row per tenant"""
        credential = CalendarRepository.get_latest_credential(db, tenant_id)
        if credential is None:
            credential = GoogleCalendarCredential(tenant_id=tenant_id)
            db.add(credential)
        for key, value in fields.items():
            setattr(credential, key, value)
        credential.is_active = True
        credential.last_error = None
        _commit(db)
        db.refresh(credential)
        return credential

    @staticmethod
    def update_tokens(
        db: Session,
        credential: GoogleCalendarCredential,
        access_token: SealedToken,
        token_expiry: datetime,
        refresh_token: Optional[SealedToken] = None,
    ) -> None:
        credential.access_token = access_token
        credential.token_expiry = token_expiry
        if refresh_token is not None:
            credential.refresh_token = refresh_token
        credential.last_error = None
        _commit(db)

    @staticmethod
    def touch_credential(db: Session, credential: GoogleCalendarCredential) -> None:
        credential.last_used_at = datetime.now(timezone.utc)
        _commit(db)

    @staticmethod
    def record_credential_error(db: Session, credential: GoogleCalendarCredential, message: str) -> None:
        credential.last_error = message
        _commit(db)

    @staticmethod
    def deactivate_credential(db: Session, credential: GoogleCalendarCredential) -> None:
        credential.is_active = False
        _commit(db)

    # Agent configs
    @staticmethod
    def get_agent_config(db: Session, tenant_id: str, agent_id: str) -> Optional[AgentCalendarConfig]:
        return (
            db.query(AgentCalendarConfig)
            .filter(AgentCalendarConfig.tenant_id == tenant_id, AgentCalendarConfig.agent_id == agent_id)
            .first()
        )

    @staticmethod
    def get_active_config(db: Session, tenant_id: str, agent_id: str) -> Optional[AgentCalendarConfig]:
        return (
            db.query(AgentCalendarConfig)
            .filter(
                AgentCalendarConfig.tenant_id == tenant_id,
                AgentCalendarConfig.agent_id == agent_id,
                AgentCalendarConfig.is_active.is_(True),
            )
            .first()
        )

    @staticmethod
    def get_configs_for_credential(db: Session, credential_id: int) -> list[AgentCalendarConfig]:
        return (
            db.query(AgentCalendarConfig)
            .filter(AgentCalendarConfig.credential_id == credential_id)
            .order_by(AgentCalendarConfig.id)
            .all()
        )

    @staticmethod
    def save_config(db: Session, config: AgentCalendarConfig) -> AgentCalendarConfig:
        db.add(config)
        _commit(db)
        db.refresh(config)
        return config

    # Appointments
    @staticmethod
    def create_appointment(db: Session, **fields) -> Appointment:
        appointment = Appointment(**fields)
        db.add(appointment)
        _commit(db)
        db.refresh(appointment)
        return appointment

    @staticmethod
    def get_appointment(db: Session, tenant_id: str, appointment_id: int) -> Optional[Appointment]:
        return (
            db.query(Appointment)
            .filter(Appointment.id == appointment_id, Appointment.tenant_id == tenant_id)
            .first()
        )

    @staticmethod
    def update_appointment(db: Session, appointment: Appointment, **updates) -> Appointment:
        for key, value in updates.items():
            setattr(appointment, key, value)
        _commit(db)
        db.refresh(appointment)
        return appointment

    @staticmethod
    def find_scheduled_appointments(
        db: Session,
        tenant_id: str,
        agent_id: str,
        attendee_email: str,
        on_day: Optional[date] = None,
        tz: Optional[tzinfo] = None,
    ) -> list[Appointment]:
        """Scheduled appointments for an attendee, earliest first"""
        query = db.query(Appointment).filter(
            Appointment.tenant_id == tenant_id,
            Appointment.agent_id == agent_id,
            func.lower(Appointment.attendee_email) == attendee_email.strip().lower(),
            Appointment.status == "scheduled",
        )
        if on_day is not None:
            day_start = datetime.combine(on_day, time.min, tzinfo=tz or timezone.utc)
            day_end = day_start + timedelta(days=1)
            query = query.filter(
                Appointment.scheduled_start >= day_start.astimezone(timezone.utc),
                Appointment.scheduled_start < day_end.astimezone(timezone.utc),
            )
        return query.order_by(Appointment.scheduled_start).all()

    @staticmethod
    def list_upcoming(
        db: Session, tenant_id: str, agent_id: str, now: datetime, limit: int = 50
    ) -> list[Appointment]:
        return (
            db.query(Appointment)
            .filter(
                Appointment.tenant_id == tenant_id,
                Appointment.agent_id == agent_id,
                Appointment.status == "scheduled",
                Appointment.scheduled_start >= now,
            )
            .order_by(Appointment.scheduled_start)
            .limit(limit)
            .all()
        )
