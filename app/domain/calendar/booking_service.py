"""
Booking service - create, reschedule, cancel and complete appointments

Every mutation runs in the same order: valid token, live availability re-check,
external calendar mutation, then the local row. A failure at any step leaves the
steps after it untouched; when the local write fails, the event just created is
removed again.
"""
import logging
from datetime import date, datetime, time, timezone
from typing import Callable, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...models_google_calendar import Appointment
from .availability_service import AvailabilityService, CalendarContext
from .errors import CalendarError, InvalidTransition, NotConfigured, NotFound, SlotUnavailable
from .google_calendar import build_event_body
from .provider import CalendarProvider
from .repository import CalendarRepository
from .schemas import Attendee, Reminder
from .slots import as_utc

logger = logging.getLogger(__name__)

SCHEDULED = "scheduled"
COMPLETED = "completed"
CANCELLED = "cancelled"

RESCHEDULED_FIELDS = (
    "rescheduled_from",
    "scheduled_start",
    "scheduled_end",
    "duration_minutes",
    "calendar_id",
    "calendar_config_id",
    "external_event_id",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BookingService:
    def __init__(
        self,
        db: Session,
        provider: CalendarProvider,
        availability: Optional[AvailabilityService] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.repo = CalendarRepository()
        self.provider = provider
        self.availability = availability or AvailabilityService(db, provider, clock=clock)
        self.clock = clock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get(self, tenant_id: str, appointment_id: int) -> Appointment:
        appointment = self.repo.get_appointment(self.db, tenant_id, appointment_id)
        if not appointment:
            raise NotFound(f"Appointment {appointment_id} not found")
        return appointment

    def _context_for(self, appointment: Appointment) -> CalendarContext:
        config = appointment.calendar_config
        credential = config.credential if config else None
        if not credential or not credential.is_active:
            raise NotConfigured("Google Calendar is not connected for this account")
        return CalendarContext(config=config, credential=credential)

    @staticmethod
    def _event_body(context: CalendarContext, attendee: Attendee, start: datetime, end: datetime, notes: Optional[str]) -> dict:
        config = context.config
        lines = [f"Attendee: {attendee.name} <{attendee.email}>"]
        if attendee.phone:
            lines.append(f"Phone: {attendee.phone}")
        if notes:
            lines.append(f"Notes: {notes}")
        reminders = [Reminder(**r).minutes for r in config.reminders or []]
        return build_event_body(
            summary=f"Appointment with {attendee.name}",
            start=start,
            end=end,
            timezone_name=context.timezone,
            attendee_email=attendee.email,
            attendee_name=attendee.name,
            description="\n".join(lines),
            owner_email=config.owner_email if config.enable_owner_email else None,
            reminder_minutes=reminders,
        )

    async def _require_slot(
        self, context: CalendarContext, day: date, at: time, exclude_event_id: Optional[str] = None
    ):
        check = await self.availability.evaluate_slot(context, day, at, exclude_event_id)
        if not check.available:
            logger.info(f"ℹ️ Slot {day} {at:%H:%M} unavailable for agent {context.config.agent_id}: {check.reason}")
            raise SlotUnavailable(check.reason or "The requested time slot is not available", check.alternatives)
        return check.requested_slot

    async def _create_event(self, context: CalendarContext, event: dict) -> str:
        return await self.availability.run_with_token(
            context, lambda token: self.provider.create_event(token, context.calendar_id, event)
        )

    async def _delete_event(self, context: CalendarContext, calendar_id: str, event_id: str) -> bool:
        return await self.availability.run_with_token(
            context, lambda token: self.provider.delete_event(token, calendar_id, event_id)
        )

    async def _discard_event(self, context: CalendarContext, calendar_id: str, event_id: str) -> None:
        """Remove an event created for a change that is being rolled back"""
        try:
            await self._delete_event(context, calendar_id, event_id)
        except CalendarError as e:
            logger.error(f"❌ Orphaned calendar event {event_id}: {e}")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create_appointment(
        self,
        tenant_id: str,
        agent_id: str,
        attendee: Attendee,
        day: date,
        at: time,
        notes: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> Appointment:
        context = self.availability.resolve_context(tenant_id, agent_id)
        slot = await self._require_slot(context, day, at)

        event = self._event_body(context, attendee, slot.start, slot.end, notes)
        event_id = await self._create_event(context, event)

        try:
            appointment = self.repo.create_appointment(
                self.db,
                tenant_id=tenant_id,
                agent_id=agent_id,
                calendar_config_id=context.config.id,
                calendar_id=context.calendar_id,
                external_event_id=event_id,
                conversation_id=conversation_id,
                attendee_name=attendee.name,
                attendee_email=attendee.email,
                attendee_phone=attendee.phone,
                scheduled_start=slot.start,
                scheduled_end=slot.end,
                timezone=context.timezone,
                duration_minutes=context.config.slot_duration_minutes,
                status=SCHEDULED,
                notes=notes,
            )
        except SQLAlchemyError as e:
            logger.error(f"❌ Could not save appointment for agent {agent_id}, removing calendar event: {e}")
            await self._discard_event(context, context.calendar_id, event_id)
            raise
        logger.info(f"✅ Appointment {appointment.id} booked for agent {agent_id} at {slot.start.isoformat()}")
        return appointment

    async def reschedule_appointment(
        self, tenant_id: str, appointment_id: int, new_date: date, new_time: time
    ) -> Appointment:
        appointment = self._get(tenant_id, appointment_id)
        if appointment.status != SCHEDULED:
            raise InvalidTransition(f"Cannot reschedule a {appointment.status} appointment")

        context = self.availability.resolve_context(tenant_id, appointment.agent_id)
        old_event_id = appointment.external_event_id
        slot = await self._require_slot(context, new_date, new_time, exclude_event_id=old_event_id)

        attendee = Attendee(
            name=appointment.attendee_name, email=appointment.attendee_email, phone=appointment.attendee_phone
        )
        event = self._event_body(context, attendee, slot.start, slot.end, appointment.notes)
        new_event_id = await self._create_event(context, event)

        # The row moves to the new event before the old event goes, so a failure
        # at either step can be undone without losing the booking
        previous = {field: getattr(appointment, field) for field in RESCHEDULED_FIELDS}
        try:
            updated = self.repo.update_appointment(
                self.db,
                appointment,
                rescheduled_from=appointment.scheduled_start,
                scheduled_start=slot.start,
                scheduled_end=slot.end,
                duration_minutes=context.config.slot_duration_minutes,
                calendar_id=context.calendar_id,
                calendar_config_id=context.config.id,
                external_event_id=new_event_id,
            )
        except SQLAlchemyError as e:
            logger.error(f"❌ Could not save reschedule of appointment {appointment.id}, removing new event: {e}")
            await self._discard_event(context, context.calendar_id, new_event_id)
            raise

        if old_event_id:
            try:
                await self._delete_event(context, previous["calendar_id"], old_event_id)
            except CalendarError:
                logger.error(f"❌ Could not remove old event for appointment {appointment.id}, rolling back")
                try:
                    self.repo.update_appointment(self.db, appointment, **previous)
                except SQLAlchemyError as revert_error:
                    logger.error(f"❌ Appointment {appointment.id} left on event {new_event_id}: {revert_error}")
                else:
                    await self._discard_event(context, context.calendar_id, new_event_id)
                raise

        logger.info(f"✅ Appointment {appointment.id} rescheduled to {slot.start.isoformat()}")
        return updated

    async def cancel_appointment(
        self, tenant_id: str, appointment_id: int, reason: Optional[str] = None
    ) -> Appointment:
        appointment = self._get(tenant_id, appointment_id)
        if appointment.status == CANCELLED:
            return appointment
        if appointment.status != SCHEDULED:
            raise InvalidTransition(f"Cannot cancel a {appointment.status} appointment")

        if appointment.external_event_id:
            context = self._context_for(appointment)
            await self._delete_event(context, appointment.calendar_id, appointment.external_event_id)

        updated = self.repo.update_appointment(
            self.db,
            appointment,
            status=CANCELLED,
            cancelled_at=self.clock(),
            cancellation_reason=reason,
        )
        logger.info(f"✅ Appointment {appointment.id} cancelled")
        return updated

    async def complete_appointment(self, tenant_id: str, appointment_id: int) -> Appointment:
        appointment = self._get(tenant_id, appointment_id)
        if appointment.status == COMPLETED:
            return appointment
        if appointment.status != SCHEDULED:
            raise InvalidTransition(f"Cannot complete a {appointment.status} appointment")
        return self.repo.update_appointment(self.db, appointment, status=COMPLETED)

    # ------------------------------------------------------------------
    # Attendee-addressed variants used by voice agents
    # ------------------------------------------------------------------

    def find_attendee_appointment(
        self,
        tenant_id: str,
        agent_id: str,
        attendee_email: str,
        attendee_name: Optional[str] = None,
        on_day: Optional[date] = None,
    ) -> Appointment:
        """Earliest scheduled appointment matching the attendee"""
        config = self.repo.get_agent_config(self.db, tenant_id, agent_id)
        tz = ZoneInfo(config.timezone) if config else timezone.utc
        candidates = self.repo.find_scheduled_appointments(
            self.db, tenant_id, agent_id, attendee_email, on_day=on_day, tz=tz
        )
        if attendee_name:
            needle = attendee_name.strip().lower()
            candidates = [a for a in candidates if needle in (a.attendee_name or "").lower()]
        if not candidates:
            raise NotFound(f"No scheduled appointment found for {attendee_email}")
        return candidates[0]

    async def reschedule_by_attendee(
        self,
        tenant_id: str,
        agent_id: str,
        attendee_email: str,
        new_date: date,
        new_time: time,
        attendee_name: Optional[str] = None,
        current_date: Optional[date] = None,
    ) -> Appointment:
        appointment = self.find_attendee_appointment(
            tenant_id, agent_id, attendee_email, attendee_name, current_date
        )
        return await self.reschedule_appointment(tenant_id, appointment.id, new_date, new_time)

    async def cancel_by_attendee(
        self,
        tenant_id: str,
        agent_id: str,
        attendee_email: str,
        cancellation_reason: Optional[str] = None,
        attendee_name: Optional[str] = None,
        appointment_date: Optional[date] = None,
    ) -> Appointment:
        appointment = self.find_attendee_appointment(
            tenant_id, agent_id, attendee_email, attendee_name, appointment_date
        )
        return await self.cancel_appointment(tenant_id, appointment.id, cancellation_reason)

    def list_upcoming(self, tenant_id: str, agent_id: str, limit: int = 50) -> list[Appointment]:
        return self.repo.list_upcoming(self.db, tenant_id, agent_id, as_utc(self.clock()), limit)
