"""Availability service - what's free, is this free, and when is the next free slot"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar
from zoneinfo import ZoneInfo

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ...config import DEFAULT_LOOKAHEAD_DAYS, MAX_ALTERNATIVE_SLOTS
from ...models_google_calendar import AgentCalendarConfig, GoogleCalendarCredential
from .busy_time import BusyTimeFetcher
from .errors import AuthError, NotConfigured, ProviderError
from .provider import CalendarProvider
from .repository import CalendarRepository
from .schemas import BusyInterval, DayAvailability, Slot, SlotCheck
from .slots import (
    check_slot,
    fetch_window,
    generate_slots,
    slot_for,
    within_business_hours,
)
from .token_vault import TokenVault

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CalendarContext:
    """Active agent config plus the credential it books against"""

    config: AgentCalendarConfig
    credential: GoogleCalendarCredential

    @property
    def timezone(self) -> str:
        return self.config.timezone

    @property
    def calendar_id(self) -> str:
        return self.config.calendar_id or "primary"

    @property
    def slot_duration(self) -> timedelta:
        return timedelta(minutes=self.config.slot_duration_minutes)

    @property
    def buffer(self) -> timedelta:
        return timedelta(minutes=self.config.buffer_minutes or 0)

    @property
    def min_notice(self) -> timedelta:
        return timedelta(hours=self.config.min_notice_hours or 0)

    @property
    def lookahead_days(self) -> int:
        return self.config.lookahead_days or DEFAULT_LOOKAHEAD_DAYS


class AvailabilityService:
    """Orchestrates token vault -> busy-time fetch -> slot generation"""

    def __init__(
        self,
        db: Session,
        provider: CalendarProvider,
        vault: Optional[TokenVault] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.repo = CalendarRepository()
        self.provider = provider
        self.vault = vault or TokenVault(provider, clock=clock)
        self.fetcher = BusyTimeFetcher(provider)
        self.clock = clock

    # ------------------------------------------------------------------
    # Context and token handling
    # ------------------------------------------------------------------

    def resolve_context(self, tenant_id: str, agent_id: str) -> CalendarContext:
        config = self.repo.get_active_config(self.db, tenant_id, agent_id)
        if not config:
            raise NotConfigured(f"Calendar booking is not configured for agent {agent_id}")
        credential = config.credential
        if not credential or not credential.is_active:
            raise NotConfigured("Google Calendar is not connected for this account")
        return CalendarContext(config=config, credential=credential)

    def _persist_refresh(self, credential: GoogleCalendarCredential):
        def on_refresh(access_token, expiry, refresh_token):
            self.repo.update_tokens(self.db, credential, access_token, expiry, refresh_token)

        return on_refresh

    def _record_error(self, credential: GoogleCalendarCredential, message: str) -> None:
        try:
            self.repo.record_credential_error(self.db, credential, message)
        except SQLAlchemyError as e:
            logger.warning(f"⚠️ Could not record error for credential {credential.id}: {e}")

    def _touch(self, credential: GoogleCalendarCredential) -> None:
        try:
            self.repo.touch_credential(self.db, credential)
        except SQLAlchemyError as e:
            logger.warning(f"⚠️ Could not update last_used_at for credential {credential.id}: {e}")

    async def run_with_token(self, context: CalendarContext, operation: Callable[[str], Awaitable[T]]) -> T:
        """Run ``operation(access_token)``; on a reauthorize error refresh once and retry once"""
        credential = context.credential
        on_refresh = self._persist_refresh(credential)
        try:
            access_token = await self.vault.ensure_valid_access_token(credential, on_refresh)
            try:
                result = await operation(access_token)
            except ProviderError as e:
                if not e.needs_reauthorization:
                    raise
                logger.warning(f"⚠️ Google rejected token for credential {credential.id}, refreshing and retrying once")
                access_token = await self.vault.force_refresh(credential, on_refresh)
                result = await operation(access_token)
        except AuthError as e:
            self._record_error(credential, e.message)
            raise
        self._touch(context.credential)
        return result

    async def fetch_busy(
        self, context: CalendarContext, window_start: datetime, window_end: datetime
    ) -> list[BusyInterval]:
        return await self.run_with_token(
            context,
            lambda token: self.fetcher.fetch_busy_intervals(
                token, context.calendar_id, window_start, window_end
            ),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def today(self, context: CalendarContext) -> date:
        return self.clock().astimezone(ZoneInfo(context.timezone)).date()

    def horizon(self, context: CalendarContext) -> datetime:
        """Latest bookable start; slots after it are never offered"""
        return self.clock() + timedelta(days=context.lookahead_days)

    def past_horizon(self, context: CalendarContext, day: date) -> bool:
        return day > self.horizon(context).astimezone(ZoneInfo(context.timezone)).date()

    async def day_slots(
        self, context: CalendarContext, day: date, exclude_event_id: Optional[str] = None
    ) -> list[Slot]:
        """All candidate slots for ``day``; one provider query, none when closed"""
        window = fetch_window(context.config.business_hours, day, context.timezone, context.buffer)
        if window is None:
            return []
        busy = await self.fetch_busy(context, *window)
        return self._generate(context, day, busy, exclude_event_id)

    def _generate(
        self,
        context: CalendarContext,
        day: date,
        busy: list[BusyInterval],
        exclude_event_id: Optional[str] = None,
    ) -> list[Slot]:
        slots = generate_slots(
            context.config.business_hours,
            context.slot_duration,
            context.buffer,
            busy,
            day,
            context.timezone,
            now=self.clock(),
            min_notice=context.min_notice,
            exclude_event_id=exclude_event_id,
        )
        horizon = self.horizon(context)
        return [s if s.start <= horizon else s.model_copy(update={"available": False}) for s in slots]

    async def get_available_slots(self, tenant_id: str, agent_id: str, day: date) -> DayAvailability:
        context = self.resolve_context(tenant_id, agent_id)
        slots = await self.day_slots(context, day)
        return DayAvailability(date=day, timezone=context.timezone, slots=slots)

    async def get_available_slots_multiple_days(
        self, tenant_id: str, agent_id: str, start_date: date, days: int
    ) -> dict[str, list[Slot]]:
        """Available slots keyed by YYYY-MM-DD; days with nothing free are omitted"""
        context = self.resolve_context(tenant_id, agent_id)
        results: dict[str, list[Slot]] = {}
        for offset in range(max(days, 0)):
            day = start_date + timedelta(days=offset)
            if self.past_horizon(context, day):
                break
            available = [s for s in await self.day_slots(context, day) if s.available]
            if available:
                results[day.isoformat()] = available
        return results

    async def find_next_available_slot(
        self, tenant_id: str, agent_id: str, from_date: Optional[date] = None
    ) -> Optional[Slot]:
        context = self.resolve_context(tenant_id, agent_id)
        start = from_date or self.today(context)
        for offset in range(context.lookahead_days):
            day = start + timedelta(days=offset)
            if self.past_horizon(context, day):
                break
            for slot in await self.day_slots(context, day):
                if slot.available:
                    return slot
        logger.info(f"ℹ️ No free slot for agent {agent_id} within {context.lookahead_days} days of {start}")
        return None

    async def check_slot_availability(
        self,
        tenant_id: str,
        agent_id: str,
        day: date,
        at: time,
        exclude_event_id: Optional[str] = None,
    ) -> SlotCheck:
        context = self.resolve_context(tenant_id, agent_id)
        return await self.evaluate_slot(context, day, at, exclude_event_id)

    async def evaluate_slot(
        self,
        context: CalendarContext,
        day: date,
        at: time,
        exclude_event_id: Optional[str] = None,
    ) -> SlotCheck:
        """Check one requested slot against notice, lookahead, business hours and live busy data"""
        start, end = slot_for(day, at, context.slot_duration, context.timezone)
        requested = Slot(start=start, end=end, available=False)
        now = self.clock()

        if start > self.horizon(context):
            return SlotCheck(
                available=False,
                requested_slot=requested,
                reason=f"Appointments cannot be booked more than {context.lookahead_days} days in advance",
            )

        hours = context.config.business_hours
        window = fetch_window(hours, day, context.timezone, context.buffer)
        window_start = min(window[0], start) - context.buffer if window else start - context.buffer
        window_end = max(window[1], end) + context.buffer if window else end + context.buffer
        busy = await self.fetch_busy(context, window_start, window_end)

        def refuse(reason: str) -> SlotCheck:
            day_slots = self._generate(context, day, busy, exclude_event_id) if window else []
            alternatives = [s for s in day_slots if s.available][:MAX_ALTERNATIVE_SLOTS]
            return SlotCheck(available=False, requested_slot=requested, reason=reason, alternatives=alternatives)

        if start < now:
            return refuse("The requested time is in the past")
        if start < now + context.min_notice:
            return refuse(
                f"Appointments must be booked at least {context.config.min_notice_hours} hours in advance"
            )
        if not within_business_hours(hours, start, end, context.timezone):
            return refuse("The requested time is outside business hours")

        result = check_slot(start, end, busy, context.buffer, exclude_event_id)
        if not result.available:
            return refuse("The requested time slot is already booked")
        return SlotCheck(available=True, requested_slot=result)
