"""Calendar provider strategy - one implementation per external calendar API"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .schemas import BusyInterval


@dataclass
class TokenGrant:
    """Result of an OAuth code exchange or refresh"""

    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    scopes: Optional[list[str]] = None


class CalendarProvider(ABC):
    """Operations the calendar engine needs from an external calendar.

    Token methods raise ``AuthError``; calendar methods raise ``ProviderError``.
    """

    name: str

    @abstractmethod
    def build_authorization_url(self, client_id: str, redirect_uri: str, state: str) -> str:
        ...

    @abstractmethod
    async def exchange_code(
        self, client_id: str, client_secret: str, code: str, redirect_uri: str
    ) -> TokenGrant:
        ...

    @abstractmethod
    async def refresh_access_token(
        self, client_id: str, client_secret: str, refresh_token: str
    ) -> TokenGrant:
        ...

    @abstractmethod
    async def fetch_account_email(self, access_token: str) -> Optional[str]:
        ...

    @abstractmethod
    async def revoke_token(self, token: str) -> None:
        ...

    @abstractmethod
    async def list_busy_intervals(
        self, access_token: str, calendar_id: str, window_start: datetime, window_end: datetime
    ) -> list[BusyInterval]:
        """Busy intervals overlapping the window, in UTC, ordered by start"""

    @abstractmethod
    async def create_event(self, access_token: str, calendar_id: str, event: dict) -> str:
        """Create an event and return its provider id"""

    @abstractmethod
    async def delete_event(self, access_token: str, calendar_id: str, event_id: str) -> bool:
        """Delete an event. Returns False when the event was already gone."""


def get_calendar_provider(name: str = "google", **kwargs) -> CalendarProvider:
    """Select the provider implementation once, at service construction"""
    from .google_calendar import GoogleCalendarProvider

    providers = {"google": GoogleCalendarProvider}
    try:
        provider_cls = providers[name]
    except KeyError:
        raise ValueError(f"Unsupported calendar provider: {name}") from None
    return provider_cls(**kwargs)
