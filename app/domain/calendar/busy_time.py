"""Busy-time fetcher - live busy intervals from the tenant's calendar"""

import logging
from datetime import datetime

from .provider import CalendarProvider
from .schemas import BusyInterval
from .slots import as_utc

logger = logging.getLogger(__name__)


class BusyTimeFetcher:
    """Queries the provider for every request; nothing is cached across calls"""

    def __init__(self, provider: CalendarProvider):
        self.provider = provider

    async def fetch_busy_intervals(
        self, access_token: str, calendar_id: str, window_start: datetime, window_end: datetime
    ) -> list[BusyInterval]:
        window_start, window_end = as_utc(window_start), as_utc(window_end)
        if window_end <= window_start:
            return []
        intervals = await self.provider.list_busy_intervals(
            access_token, calendar_id, window_start, window_end
        )
        logger.debug(
            f"📅 {len(intervals)} busy interval(s) on {calendar_id} "
            f"between {window_start.isoformat()} and {window_end.isoformat()}"
        )
        return intervals
