"""Calendar router - FastAPI endpoints for connection, availability and appointments"""

import logging
from datetime import date, time
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from sqlalchemy.orm import Session

from ...cache import CacheBackend, get_cache
from ...database import get_db
from .availability_service import AvailabilityService
from .booking_service import BookingService
from .oauth_service import CalendarConnectionService
from .provider import CalendarProvider
from .schemas import (
    AppointmentResponse,
    AppointmentStatusUpdate,
    Attendee,
    BookAppointmentRequest,
    CalendarConfigInput,
    CalendarConfigResponse,
    CalendarStatusResponse,
    CancelAppointmentRequest,
    NextSlotResponse,
    OAuthCallbackRequest,
    OAuthCallbackResponse,
    RescheduleAppointmentRequest,
    RescheduleByIdRequest,
    SlotCheck,
)
from .slots import format_slots_for_voice

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/calendar", tags=["Calendar"])

MAX_AVAILABILITY_DAYS = 14


def get_tenant_id(x_tenant_id: str = Header(..., min_length=1)) -> str:
    """Tenant resolved upstream; the caller has already authorized it"""
    return x_tenant_id


def get_provider(request: Request) -> CalendarProvider:
    return request.app.state.calendar_provider


def get_availability_service(
    db: Session = Depends(get_db), provider: CalendarProvider = Depends(get_provider)
) -> AvailabilityService:
    """Dependency injection for AvailabilityService"""
    return AvailabilityService(db, provider)


def get_booking_service(
    db: Session = Depends(get_db), provider: CalendarProvider = Depends(get_provider)
) -> BookingService:
    """Dependency injection for BookingService"""
    return BookingService(db, provider)


def get_connection_service(
    db: Session = Depends(get_db),
    provider: CalendarProvider = Depends(get_provider),
    cache: CacheBackend = Depends(get_cache),
) -> CalendarConnectionService:
    """Dependency injection for CalendarConnectionService"""
    return CalendarConnectionService(db, provider, cache)


# ============================================================================
# CONNECTION
# ============================================================================


@router.get("/status", response_model=CalendarStatusResponse)
async def get_calendar_status(
    tenant_id: str = Depends(get_tenant_id),
    service: CalendarConnectionService = Depends(get_connection_service),
):
    """Get Google Calendar connection status"""
    return service.get_status(tenant_id)


@router.get("/connect")
async def connect_google_calendar(
    tenant_id: str = Depends(get_tenant_id),
    service: CalendarConnectionService = Depends(get_connection_service),
):
    """Initiate Google Calendar OAuth flow"""
    return {"authorization_url": service.build_connect_url(tenant_id)}


@router.post("/callback", response_model=OAuthCallbackResponse)
async def google_calendar_callback(
    data: OAuthCallbackRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: CalendarConnectionService = Depends(get_connection_service),
):
    """Handle Google Calendar OAuth callback"""
    return await service.complete_connection(tenant_id, data.code, data.state)


@router.delete("/connection")
async def disconnect_google_calendar(
    tenant_id: str = Depends(get_tenant_id),
    service: CalendarConnectionService = Depends(get_connection_service),
):
    """Disconnect Google Calendar"""
    await service.disconnect(tenant_id)
    return {"success": True, "message": "Google Calendar disconnected"}


# ============================================================================
# AGENT CONFIGURATION
# ============================================================================


@router.get("/agents/{agent_id}/config", response_model=CalendarConfigResponse)
async def get_agent_calendar_config(
    agent_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: CalendarConnectionService = Depends(get_connection_service),
):
    return service.get_agent_config(tenant_id, agent_id)


@router.put("/agents/{agent_id}/config", response_model=CalendarConfigResponse)
async def configure_agent_calendar(
    agent_id: str,
    data: CalendarConfigInput,
    tenant_id: str = Depends(get_tenant_id),
    service: CalendarConnectionService = Depends(get_connection_service),
):
    """Enable or update calendar booking for an agent"""
    return service.configure_agent(tenant_id, agent_id, data)


@router.delete("/agents/{agent_id}/config")
async def disable_agent_calendar(
    agent_id: str,
    tenant_id: str = Depends(get_tenant_id),
    service: CalendarConnectionService = Depends(get_connection_service),
):
    service.remove_agent_config(tenant_id, agent_id)
    return {"success": True}


# ============================================================================
# AVAILABILITY
# ============================================================================


@router.get("/agents/{agent_id}/availability")
async def get_availability(
    agent_id: str,
    day: Optional[date] = Query(None, alias="date"),
    days: int = Query(1, ge=1, le=MAX_AVAILABILITY_DAYS),
    find_next: bool = Query(False),
    tenant_id: str = Depends(get_tenant_id),
    service: AvailabilityService = Depends(get_availability_service),
):
    """Available slots for a day, a range of days, or the next free slot"""
    if find_next:
        slot = await service.find_next_available_slot(tenant_id, agent_id, day)
        return NextSlotResponse(found=slot is not None, slot=slot)

    if day is None:
        logger.warning(f"⚠️ Availability request for agent {agent_id} without a date")
        raise HTTPException(status_code=400, detail="date is required unless find_next is set")

    if days > 1:
        results = await service.get_available_slots_multiple_days(tenant_id, agent_id, day, days)
        return {"start_date": day.isoformat(), "days": days, "availability": results}

    availability = await service.get_available_slots(tenant_id, agent_id, day)
    available = availability.available_slots
    return {
        "date": availability.date.isoformat(),
        "timezone": availability.timezone,
        "slots": available,
        "formatted": format_slots_for_voice(available, availability.timezone),
    }


@router.get("/agents/{agent_id}/availability/check", response_model=SlotCheck)
async def check_availability(
    agent_id: str,
    day: date = Query(..., alias="date"),
    at: time = Query(..., alias="time"),
    tenant_id: str = Depends(get_tenant_id),
    service: AvailabilityService = Depends(get_availability_service),
):
    """Check whether a specific slot can be booked"""
    return await service.check_slot_availability(tenant_id, agent_id, day, at)


# ============================================================================
# APPOINTMENTS
# ============================================================================


@router.get("/agents/{agent_id}/appointments", response_model=list[AppointmentResponse])
async def list_upcoming_appointments(
    agent_id: str,
    limit: int = Query(50, ge=1, le=200),
    tenant_id: str = Depends(get_tenant_id),
    service: BookingService = Depends(get_booking_service),
):
    return service.list_upcoming(tenant_id, agent_id, limit)


@router.post("/agents/{agent_id}/appointments", response_model=AppointmentResponse, status_code=201)
async def book_appointment(
    agent_id: str,
    data: BookAppointmentRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: BookingService = Depends(get_booking_service),
):
    """Book an appointment on the agent's calendar"""
    attendee = Attendee(name=data.attendee_name, email=data.attendee_email, phone=data.attendee_phone)
    return await service.create_appointment(
        tenant_id,
        agent_id,
        attendee,
        data.date,
        data.time,
        notes=data.notes,
        conversation_id=data.conversation_id,
    )


@router.post("/agents/{agent_id}/appointments/reschedule", response_model=AppointmentResponse)
async def reschedule_by_attendee(
    agent_id: str,
    data: RescheduleAppointmentRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: BookingService = Depends(get_booking_service),
):
    """Reschedule the attendee's next scheduled appointment"""
    return await service.reschedule_by_attendee(
        tenant_id,
        agent_id,
        data.attendee_email,
        data.new_date,
        data.new_time,
        attendee_name=data.attendee_name,
        current_date=data.current_date,
    )


@router.post("/agents/{agent_id}/appointments/cancel", response_model=AppointmentResponse)
async def cancel_by_attendee(
    agent_id: str,
    data: CancelAppointmentRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: BookingService = Depends(get_booking_service),
):
    """Cancel the attendee's next scheduled appointment"""
    return await service.cancel_by_attendee(
        tenant_id,
        agent_id,
        data.attendee_email,
        data.cancellation_reason,
        attendee_name=data.attendee_name,
        appointment_date=data.appointment_date,
    )


@router.post("/appointments/{appointment_id}/reschedule", response_model=AppointmentResponse)
async def reschedule_appointment(
    appointment_id: int,
    data: RescheduleByIdRequest,
    tenant_id: str = Depends(get_tenant_id),
    service: BookingService = Depends(get_booking_service),
):
    return await service.reschedule_appointment(tenant_id, appointment_id, data.new_date, data.new_time)


@router.patch("/appointments/{appointment_id}", response_model=AppointmentResponse)
async def update_appointment_status(
    appointment_id: int,
    data: AppointmentStatusUpdate,
    tenant_id: str = Depends(get_tenant_id),
    service: BookingService = Depends(get_booking_service),
):
    """Mark an appointment completed or cancelled"""
    if data.status == "completed":
        return await service.complete_appointment(tenant_id, appointment_id)
    return await service.cancel_appointment(tenant_id, appointment_id, data.cancellation_reason)
