"""Calendar domain errors - raised by services, translated to responses in main.py"""

from enum import Enum
from typing import Optional


class CalendarError(Exception):
    """Base class for calendar engine failures"""

    code = "calendar_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class AuthError(CalendarError):
    """Stored credential can no longer produce an access token; tenant must re-authorize"""

    code = "reauthorize"


class ProviderErrorKind(str, Enum):
    REAUTHORIZE = "reauthorize"
    RATE_LIMITED = "rate_limited"
    RETRYABLE = "retryable"
    INVALID_REQUEST = "invalid_request"


class ProviderError(CalendarError):
    """Calendar provider call failed"""

    code = "provider_error"

    def __init__(self, kind: ProviderErrorKind, message: str, status_code: Optional[int] = None):
        self.kind = kind
        self.status_code = status_code
        super().__init__(message)

    @property
    def needs_reauthorization(self) -> bool:
        return self.kind == ProviderErrorKind.REAUTHORIZE

    def __str__(self):
        status = f" ({self.status_code})" if self.status_code else ""
        return f"Calendar provider {self.kind.value}{status}: {self.message}"


class SlotUnavailable(CalendarError):
    """Requested slot is taken or outside the bookable window"""

    code = "slot_unavailable"

    def __init__(self, message: str, alternatives: Optional[list] = None):
        self.alternatives = alternatives or []
        super().__init__(message)


class NotConfigured(CalendarError):
    """No active calendar configuration for the agent"""

    code = "calendar_not_configured"


class NotFound(CalendarError):
    """Appointment does not exist for this tenant"""

    code = "not_found"


class InvalidTransition(CalendarError):
    """Appointment status does not allow the requested operation"""

    code = "invalid_transition"
