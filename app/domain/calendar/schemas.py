"""Calendar domain schemas - Pydantic models for validation"""

import re
from datetime import date, datetime, time
from typing import Literal, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


# ============================================================================
# ENGINE VALUES
# ============================================================================


class BusyInterval(BaseModel):
    """A blocked range on the external calendar, in UTC"""

    start: datetime
    end: datetime
    event_id: Optional[str] = None


class Slot(BaseModel):
    """A candidate bookable range"""

    start: datetime
    end: datetime
    available: bool


class DayAvailability(BaseModel):
    date: date
    timezone: str
    slots: list[Slot]

    @property
    def available_slots(self) -> list[Slot]:
        return [s for s in self.slots if s.available]


class SlotCheck(BaseModel):
    available: bool
    requested_slot: Slot
    reason: Optional[str] = None
    alternatives: list[Slot] = []


class NextSlotResponse(BaseModel):
    found: bool
    slot: Optional[Slot] = None


class ReconcileResult(BaseModel):
    deactivated_count: int = 0
    reactivated_count: int = 0
    fixed_null_count: int = 0


# ============================================================================
# CONFIGURATION
# ============================================================================


class DayHours(BaseModel):
    open: str
    close: str

    @field_validator("open", "close")
    @classmethod
    def validate_hhmm(cls, v):
        if not _HHMM.match(v):
            raise ValueError("Times must be HH:MM (24h)")
        return v

    @model_validator(mode="after")
    def validate_order(self):
        if self.open >= self.close:
            raise ValueError("open must be earlier than close")
        return self


class Reminder(BaseModel):
    value: int = Field(..., gt=0)
    unit: Literal["minutes", "hours", "days"] = "minutes"

    @property
    def minutes(self) -> int:
        if self.unit == "hours":
            return self.value * 60
        if self.unit == "days":
            return self.value * 24 * 60
        return self.value


class CalendarConfigInput(BaseModel):
    """Schema for enabling calendar booking on an agent"""

    calendar_id: str = "primary"
    timezone: str
    business_hours: dict[str, Optional[DayHours]] = Field(
        default_factory=lambda: {
            day: DayHours(open="09:00", close="17:00") if day not in ("saturday", "sunday") else None
            for day in WEEKDAYS
        }
    )
    slot_duration_minutes: int = Field(30, ge=5, le=480)
    buffer_minutes: int = Field(0, ge=0, le=240)
    lookahead_days: int = Field(30, ge=1, le=365)
    min_notice_hours: int = Field(0, ge=0, le=720)
    enable_owner_email: bool = False
    owner_email: Optional[EmailStr] = None
    reminders: list[Reminder] = []

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v):
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}") from None
        return v

    @field_validator("business_hours")
    @classmethod
    def validate_weekdays(cls, v):
        normalized = {}
        for day, hours in v.items():
            key = day.strip().lower()
            if key not in WEEKDAYS:
                raise ValueError(f"Unknown weekday: {day}")
            normalized[key] = hours
        for day in WEEKDAYS:
            normalized.setdefault(day, None)
        return normalized

    @model_validator(mode="after")
    def validate_owner_email(self):
        if self.enable_owner_email and not self.owner_email:
            raise ValueError("owner_email is required when enable_owner_email is set")
        return self

    def business_hours_json(self) -> dict:
        return {day: (hours.model_dump() if hours else None) for day, hours in self.business_hours.items()}


class CalendarConfigResponse(BaseModel):
    id: int
    agent_id: str
    calendar_id: str
    timezone: str
    business_hours: dict
    slot_duration_minutes: int
    buffer_minutes: int
    lookahead_days: int
    min_notice_hours: int
    enable_owner_email: bool
    owner_email: Optional[str] = None
    reminders: list = []
    is_active: bool
    created_with_email: Optional[str] = None
    removed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CalendarStatusResponse(BaseModel):
    connected: bool
    account_email: Optional[str] = None
    is_active: Optional[bool] = None
    token_expiry: Optional[datetime] = None
    last_used_at: Optional[datetime] = None


class OAuthCallbackRequest(BaseModel):
    code: str
    state: str


class OAuthCallbackResponse(BaseModel):
    success: bool
    account_email: Optional[str] = None
    reconciliation: ReconcileResult


# ============================================================================
# APPOINTMENTS
# ============================================================================


class Attendee(BaseModel):
    name: str
    email: EmailStr
    phone: Optional[str] = None


class BookAppointmentRequest(BaseModel):
    attendee_name: str
    attendee_email: EmailStr
    attendee_phone: Optional[str] = None
    date: date
    time: time
    notes: Optional[str] = None
    conversation_id: Optional[str] = None


class RescheduleAppointmentRequest(BaseModel):
    attendee_email: EmailStr
    attendee_name: Optional[str] = None
    current_date: Optional[date] = None
    new_date: date
    new_time: time


class RescheduleByIdRequest(BaseModel):
    new_date: date
    new_time: time


class CancelAppointmentRequest(BaseModel):
    attendee_email: EmailStr
    attendee_name: Optional[str] = None
    appointment_date: Optional[date] = None
    cancellation_reason: Optional[str] = None


class AppointmentStatusUpdate(BaseModel):
    status: Literal["completed", "cancelled"]
    cancellation_reason: Optional[str] = None


class AppointmentResponse(BaseModel):
    id: int
    agent_id: str
    external_event_id: Optional[str] = None
    attendee_name: str
    attendee_email: str
    attendee_phone: Optional[str] = None
    scheduled_start: datetime
    scheduled_end: datetime
    timezone: str
    duration_minutes: int
    status: str
    rescheduled_from: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    notes: Optional[str] = None

    class Config:
        from_attributes = True
