from datetime import timedelta
from types import SimpleNamespace

import pytest

from app.domain.calendar.encryption import SealedToken
from app.domain.calendar.errors import AuthError
from app.domain.calendar.token_vault import TokenVault
from tests.conftest import NOW


def stored_credential(expires_in=timedelta(hours=1), access="stored-access", refresh="stored-refresh"):
    return SimpleNamespace(
        id=7,
        client_id="test-client-id",
        client_secret=SealedToken.seal("test-client-secret"),
        access_token=SealedToken.seal(access) if access else None,
        refresh_token=SealedToken.seal(refresh) if refresh else None,
        token_expiry=NOW + expires_in if expires_in is not None else None,
    )


class Recorder:
    def __init__(self):
        self.calls = []

    def __call__(self, access_token, expiry, refresh_token):
        self.calls.append((access_token, expiry, refresh_token))


@pytest.fixture
def vault(provider):
    return TokenVault(provider, margin_seconds=60, clock=lambda: NOW)


async def test_valid_token_is_returned_without_refresh(vault, provider):
    on_refresh = Recorder()

    token = await vault.ensure_valid_access_token(stored_credential(), on_refresh)

    assert token == "stored-access"
    assert provider.refresh_count == 0
    assert on_refresh.calls == []


@pytest.mark.parametrize("expires_in", [timedelta(seconds=30), timedelta(seconds=-5), None])
async def test_token_inside_margin_is_refreshed(vault, provider, expires_in):
    on_refresh = Recorder()

    token = await vault.ensure_valid_access_token(stored_credential(expires_in=expires_in), on_refresh)

    assert token == "refreshed-1"
    assert provider.refresh_count == 1
    (access, expiry, refresh), = on_refresh.calls
    assert isinstance(access, SealedToken)
    assert access.reveal() == "refreshed-1"
    assert expiry == NOW + timedelta(seconds=3600)
    assert refresh is None


async def test_rotated_refresh_token_is_handed_back(vault, provider):
    provider.rotated_refresh_token = "rotated-refresh"
    on_refresh = Recorder()

    await vault.force_refresh(stored_credential(), on_refresh)

    assert on_refresh.calls[0][2].reveal() == "rotated-refresh"


async def test_unreadable_access_token_triggers_refresh(vault, provider):
    credential = stored_credential()
    credential.access_token = SealedToken("not-a-fernet-token")

    token = await vault.ensure_valid_access_token(credential, Recorder())

    assert token == "refreshed-1"


async def test_missing_refresh_token_requires_reauthorization(vault):
    credential = stored_credential(expires_in=timedelta(seconds=0), refresh=None)

    with pytest.raises(AuthError):
        await vault.ensure_valid_access_token(credential, Recorder())


async def test_rejected_refresh_propagates_auth_error(vault, provider):
    provider.errors["refresh"].append(AuthError("Token refresh rejected: invalid_grant"))
    on_refresh = Recorder()

    with pytest.raises(AuthError):
        await vault.force_refresh(stored_credential(), on_refresh)
    assert on_refresh.calls == []


async def test_force_refresh_ignores_valid_stored_token(vault, provider):
    token = await vault.force_refresh(stored_credential(), Recorder())

    assert token == "refreshed-1"
    assert provider.refresh_count == 1
