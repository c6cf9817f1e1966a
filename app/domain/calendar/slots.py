"""
Slot generation - pure functions, no I/O

All comparisons happen in integer epoch seconds. A tenant's business-hours window
is converted from its local timezone to UTC once per day; candidates are then
stepped in UTC so DST transitions never shift individual slots.
"""
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterable, Optional, Sequence
from zoneinfo import ZoneInfo

from .schemas import WEEKDAYS, BusyInterval, Slot


def _epoch(moment: datetime) -> int:
    return int(moment.timestamp())


def _utc(seconds: int) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def as_utc(moment: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC datetime; naive values (SQLite round-trips) are read as UTC"""
    if moment is None:
        return None
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def resolve_window(business_hours: dict, day: date, tz_name: str) -> Optional[tuple[int, int]]:
    """Open/close for ``day`` as epoch seconds, or None when the day is closed"""
    hours = business_hours.get(WEEKDAYS[day.weekday()])
    if not hours:
        return None
    zone = ZoneInfo(tz_name)
    opens = datetime.combine(day, _parse_hhmm(hours["open"]), tzinfo=zone)
    closes = datetime.combine(day, _parse_hhmm(hours["close"]), tzinfo=zone)
    return _epoch(opens), _epoch(closes)


def _busy_seconds(
    busy_intervals: Iterable[BusyInterval], exclude_event_id: Optional[str] = None
) -> list[tuple[int, int]]:
    return [
        (_epoch(b.start), _epoch(b.end))
        for b in busy_intervals
        if exclude_event_id is None or b.event_id != exclude_event_id
    ]


def _blocked_until(start: int, end: int, busy: Sequence[tuple[int, int]], buffer: int) -> Optional[int]:
    """Latest end among busy intervals that conflict with [start, end), or None.

    A busy interval B conflicts iff end + buffer > B.start and start - buffer < B.end.
    Touching bounds never conflict.
    """
    latest = None
    for busy_start, busy_end in busy:
        if end + buffer > busy_start and start - buffer < busy_end:
            latest = busy_end if latest is None else max(latest, busy_end)
    return latest


def slot_conflicts(
    start: datetime,
    end: datetime,
    busy_intervals: Iterable[BusyInterval],
    buffer: timedelta = timedelta(0),
    exclude_event_id: Optional[str] = None,
) -> bool:
    """Shared overlap+buffer predicate for listing slots and validating a booking"""
    busy = _busy_seconds(busy_intervals, exclude_event_id)
    return _blocked_until(_epoch(start), _epoch(end), busy, int(buffer.total_seconds())) is not None


def check_slot(
    start: datetime,
    end: datetime,
    busy_intervals: Iterable[BusyInterval],
    buffer: timedelta = timedelta(0),
    exclude_event_id: Optional[str] = None,
) -> Slot:
    available = not slot_conflicts(start, end, busy_intervals, buffer, exclude_event_id)
    return Slot(start=start, end=end, available=available)


def generate_slots(
    business_hours: dict,
    slot_duration: timedelta,
    buffer: timedelta,
    busy_intervals: Iterable[BusyInterval],
    day: date,
    tz_name: str,
    now: Optional[datetime] = None,
    min_notice: timedelta = timedelta(0),
    exclude_event_id: Optional[str] = None,
) -> list[Slot]:
    """Candidate slots for one day, in order.

    Slots already over are dropped. Slots starting before now + min_notice are
    returned as unavailable. After a conflicting candidate the next one starts
    once the blocking event plus buffer has passed.
    """
    window = resolve_window(business_hours, day, tz_name)
    if window is None:
        return []
    opens, closes = window

    duration = int(slot_duration.total_seconds())
    if duration <= 0:
        return []
    pad = int(buffer.total_seconds())
    busy = _busy_seconds(busy_intervals, exclude_event_id)
    now_s = _epoch(now or datetime.now(timezone.utc))
    earliest_start = now_s + int(min_notice.total_seconds())

    slots: list[Slot] = []
    cursor = opens
    while cursor + duration <= closes:
        end = cursor + duration
        if end <= now_s:
            cursor = end
            continue

        blocked_until = _blocked_until(cursor, end, busy, pad)
        slots.append(
            Slot(
                start=_utc(cursor),
                end=_utc(end),
                available=blocked_until is None and cursor >= earliest_start,
            )
        )
        cursor = end if blocked_until is None else max(end, blocked_until + pad)
    return slots


def slot_for(day: date, at: time, slot_duration: timedelta, tz_name: str) -> tuple[datetime, datetime]:
    """UTC bounds of the candidate starting at local ``at`` on ``day``"""
    start = datetime.combine(day, at.replace(second=0, microsecond=0), tzinfo=ZoneInfo(tz_name))
    start_utc = _utc(_epoch(start))
    return start_utc, start_utc + slot_duration


def within_business_hours(business_hours: dict, start: datetime, end: datetime, tz_name: str) -> bool:
    local_day = start.astimezone(ZoneInfo(tz_name)).date()
    window = resolve_window(business_hours, local_day, tz_name)
    if window is None:
        return False
    opens, closes = window
    return opens <= _epoch(start) and _epoch(end) <= closes


def fetch_window(
    business_hours: dict, day: date, tz_name: str, buffer: timedelta
) -> Optional[tuple[datetime, datetime]]:
    """Range of busy data needed to evaluate every candidate on ``day``"""
    window = resolve_window(business_hours, day, tz_name)
    if window is None:
        return None
    pad = int(buffer.total_seconds())
    return _utc(window[0] - pad), _utc(window[1] + pad)


def day_bounds(day: date, tz_name: str) -> tuple[datetime, datetime]:
    zone = ZoneInfo(tz_name)
    start = datetime.combine(day, time.min, tzinfo=zone)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)
    return _utc(_epoch(start)), _utc(_epoch(end))


def format_slots_for_voice(slots: Sequence[Slot], tz_name: str, max_slots: int = 5) -> str:
    """Human-readable slot list for an agent to read back to a caller"""
    if not slots:
        return "No available time slots found."
    zone = ZoneInfo(tz_name)
    lines = []
    for slot in slots[:max_slots]:
        start = slot.start.astimezone(zone)
        end = slot.end.astimezone(zone)
        lines.append(f"- {start:%A, %B} {start.day}, {start:%Y} at {start:%I:%M %p} - {end:%I:%M %p}")
    return "\n".join(lines)
