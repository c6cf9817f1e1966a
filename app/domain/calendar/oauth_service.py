"""
Calendar connection service
Google OAuth connect/callback/disconnect and per-agent booking configuration
"""
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from ...cache import CacheBackend
from ...config import (
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    GOOGLE_REDIRECT_URI,
    OAUTH_STATE_TTL_SECONDS,
)
from ...models_google_calendar import AgentCalendarConfig
from .encryption import SealedToken, SealedTokenError
from .errors import AuthError, NotConfigured, NotFound
from .provider import CalendarProvider
from .reconciler import AccountSwitchReconciler
from .repository import CalendarRepository
from .schemas import (
    CalendarConfigInput,
    CalendarStatusResponse,
    OAuthCallbackResponse,
    ReconcileResult,
)

logger = logging.getLogger(__name__)


def _state_key(tenant_id: str, nonce: str = "") -> str:
    return f"oauth_state:{tenant_id}:{nonce}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CalendarConnectionService:
    def __init__(
        self,
        db: Session,
        provider: CalendarProvider,
        cache: CacheBackend,
        client_id: Optional[str] = GOOGLE_CLIENT_ID,
        client_secret: Optional[str] = GOOGLE_CLIENT_SECRET,
        redirect_uri: str = GOOGLE_REDIRECT_URI,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.db = db
        self.repo = CalendarRepository()
        self.provider = provider
        self.cache = cache
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.clock = clock

    def _require_client(self) -> None:
        if not self.client_id or not self.client_secret:
            raise NotConfigured("Google Calendar OAuth client is not configured")

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def build_connect_url(self, tenant_id: str) -> str:
        self._require_client()
        nonce = secrets.token_urlsafe(24)
        self.cache.set(_state_key(tenant_id, nonce), {"tenant_id": tenant_id}, ttl=OAUTH_STATE_TTL_SECONDS)
        logger.info(f"Google Calendar OAuth initiated for tenant: {tenant_id}")
        return self.provider.build_authorization_url(self.client_id, self.redirect_uri, nonce)

    async def complete_connection(self, tenant_id: str, code: str, state: str) -> OAuthCallbackResponse:
        """Validate state, exchange the code, reconcile agent configs and store the credential"""
        self._require_client()
        pending = self.cache.pop(_state_key(tenant_id, state))
        if not pending or pending.get("tenant_id") != tenant_id:
            logger.warning(f"⚠️ Rejected OAuth callback with unknown state for tenant {tenant_id}")
            raise AuthError("Invalid or expired authorization state")

        grant = await self.provider.exchange_code(self.client_id, self.client_secret, code, self.redirect_uri)
        account_email = await self.provider.fetch_account_email(grant.access_token)

        existing = self.repo.get_latest_credential(self.db, tenant_id)
        refresh_token = SealedToken.seal(grant.refresh_token) if grant.refresh_token else None
        if refresh_token is None:
            if not existing or not existing.refresh_token:
                raise AuthError("Google did not return a refresh token; reconnect and grant offline access")
            refresh_token = existing.refresh_token

        reconciliation = ReconcileResult()
        if existing:
            reconciliation = AccountSwitchReconciler(self.db).reconcile(
                existing.id, existing.account_email, account_email
            )

        credential = self.repo.save_credential(
            self.db,
            tenant_id,
            client_id=self.client_id,
            client_secret=SealedToken.seal(self.client_secret),
            access_token=SealedToken.seal(grant.access_token),
            refresh_token=refresh_token,
            token_expiry=self.clock() + timedelta(seconds=grant.expires_in),
            scopes=grant.scopes or [],
            account_email=account_email,
        )
        logger.info(f"✅ Google Calendar connected for tenant {tenant_id} (credential {credential.id})")
        return OAuthCallbackResponse(success=True, account_email=account_email, reconciliation=reconciliation)

    def get_status(self, tenant_id: str) -> CalendarStatusResponse:
        credential = self.repo.get_active_credential(self.db, tenant_id)
        if not credential:
            return CalendarStatusResponse(connected=False)
        return CalendarStatusResponse(
            connected=True,
            account_email=credential.account_email,
            is_active=credential.is_active,
            token_expiry=credential.token_expiry,
            last_used_at=credential.last_used_at,
        )

    async def disconnect(self, tenant_id: str) -> None:
        """Deactivate the tenant's credential; the row and its agent configs are kept"""
        credential = self.repo.get_active_credential(self.db, tenant_id)
        if not credential:
            raise NotFound("Google Calendar is not connected")

        self.repo.deactivate_credential(self.db, credential)
        self.cache.delete_prefix(_state_key(tenant_id))

        token = credential.refresh_token or credential.access_token
        if token:
            try:
                await self.provider.revoke_token(token.reveal())
            except SealedTokenError:
                logger.warning(f"⚠️ Skipping token revocation for credential {credential.id}: unreadable token")
        logger.info(f"✅ Google Calendar disconnected for tenant {tenant_id}")

    # ------------------------------------------------------------------
    # Agent configuration
    # ------------------------------------------------------------------

    def configure_agent(self, tenant_id: str, agent_id: str, data: CalendarConfigInput) -> AgentCalendarConfig:
        credential = self.repo.get_active_credential(self.db, tenant_id)
        if not credential:
            raise NotConfigured("Connect Google Calendar before enabling booking for an agent")

        config = self.repo.get_agent_config(self.db, tenant_id, agent_id)
        if config is None:
            config = AgentCalendarConfig(tenant_id=tenant_id, agent_id=agent_id)

        config.credential_id = credential.id
        config.calendar_id = data.calendar_id
        config.timezone = data.timezone
        config.business_hours = data.business_hours_json()
        config.slot_duration_minutes = data.slot_duration_minutes
        config.buffer_minutes = data.buffer_minutes
        config.lookahead_days = data.lookahead_days
        config.min_notice_hours = data.min_notice_hours
        config.enable_owner_email = data.enable_owner_email
        config.owner_email = data.owner_email
        config.reminders = [r.model_dump() for r in data.reminders]
        config.created_with_email = credential.account_email
        config.is_active = True
        config.removed_at = None

        config = self.repo.save_config(self.db, config)
        logger.info(f"✅ Calendar booking configured for agent {agent_id}")
        return config

    def get_agent_config(self, tenant_id: str, agent_id: str) -> AgentCalendarConfig:
        config = self.repo.get_agent_config(self.db, tenant_id, agent_id)
        if not config:
            raise NotFound(f"No calendar configuration for agent {agent_id}")
        return config

    def remove_agent_config(self, tenant_id: str, agent_id: str) -> None:
        config = self.get_agent_config(tenant_id, agent_id)
        config.is_active = False
        config.removed_at = self.clock()
        self.repo.save_config(self.db, config)
        logger.info(f"Calendar booking disabled for agent {agent_id}")
