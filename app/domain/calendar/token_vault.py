"""
Token vault - hands out a valid Google access token for a stored credential,
refreshing it transparently when it is about to expire
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from ...config import TOKEN_REFRESH_MARGIN_SECONDS
from .encryption import SealedToken, SealedTokenError
from .errors import AuthError
from .provider import CalendarProvider
from .slots import as_utc

logger = logging.getLogger(__name__)

# (access_token, expiry, refresh_token or None when the provider did not rotate it)
OnRefresh = Callable[[SealedToken, datetime, Optional[SealedToken]], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TokenVault:
    def __init__(
        self,
        provider: CalendarProvider,
        margin_seconds: int = TOKEN_REFRESH_MARGIN_SECONDS,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.provider = provider
        self.margin = timedelta(seconds=margin_seconds)
        self.clock = clock

    def _stored_access_token(self, credential) -> Optional[str]:
        expiry = as_utc(credential.token_expiry)
        if not credential.access_token or expiry is None:
            return None
        if expiry <= self.clock() + self.margin:
            return None
        try:
            return credential.access_token.reveal()
        except SealedTokenError:
            logger.warning(f"⚠️ Stored access token for credential {credential.id} is unreadable, refreshing")
            return None

    async def ensure_valid_access_token(self, credential, on_refresh: OnRefresh) -> str:
        """Return a usable access token, refreshing first if it expires within the margin"""
        token = self._stored_access_token(credential)
        if token:
            return token
        return await self.force_refresh(credential, on_refresh)

    async def force_refresh(self, credential, on_refresh: OnRefresh) -> str:
        """Exchange the refresh token for a new access token and persist it via ``on_refresh``"""
        if not credential.refresh_token:
            raise AuthError("No refresh token stored; re-authorize Google Calendar")
        try:
            refresh_token = credential.refresh_token.reveal()
            client_secret = credential.client_secret.reveal()
        except SealedTokenError as e:
            logger.error(f"❌ Credential {credential.id} secrets could not be decrypted")
            raise AuthError("Stored credentials could not be decrypted; re-authorize Google Calendar") from e

        logger.info(f"🔄 Refreshing Google access token for credential {credential.id}")
        grant = await self.provider.refresh_access_token(credential.client_id, client_secret, refresh_token)

        expiry = self.clock() + timedelta(seconds=grant.expires_in)
        rotated = SealedToken.seal(grant.refresh_token) if grant.refresh_token else None
        on_refresh(SealedToken.seal(grant.access_token), expiry, rotated)
        logger.info(f"✅ Access token refreshed for credential {credential.id}")
        return grant.access_token
