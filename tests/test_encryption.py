import pytest
from sqlalchemy import text

from app.domain.calendar.encryption import SealedToken, SealedTokenError, SealedTokenType, _fernet_key
from app.models_google_calendar import GoogleCalendarCredential


def test_seal_and_reveal():
    sealed = SealedToken.seal("ya29.secret")

    assert sealed.ciphertext != "ya29.secret"
    assert sealed.reveal() == "ya29.secret"


def test_repr_never_shows_plaintext():
    sealed = SealedToken.seal("ya29.secret")

    assert "ya29" not in repr(sealed)
    assert "ya29" not in str(sealed)
    assert "ya29" not in f"{sealed}"


def test_tampered_ciphertext_raises():
    with pytest.raises(SealedTokenError):
        SealedToken("gAAAAAB-not-really").reveal()


def test_column_rejects_plain_strings():
    with pytest.raises(TypeError):
        SealedTokenType().process_bind_param("plaintext", None)


def test_passphrase_is_derived_into_fernet_key():
    key = _fernet_key("not a fernet key")

    assert len(key) == 44
    assert _fernet_key(key.decode()) == key


def test_database_stores_only_ciphertext(db, credential):
    raw = db.execute(
        text("SELECT access_token FROM google_calendar_credentials WHERE id = :id"), {"id": credential.id}
    ).scalar_one()

    assert "stored-access" not in raw
    loaded = db.get(GoogleCalendarCredential, credential.id)
    assert loaded.access_token.reveal() == "stored-access"
