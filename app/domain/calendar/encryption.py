"""Sealed OAuth secrets - ciphertext at rest, plaintext only on explicit reveal()"""

import base64
import binascii
import hashlib
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import Text
from sqlalchemy.types import TypeDecorator

from ...config import CALENDAR_ENCRYPTION_KEY, SECRET_KEY


class SealedTokenError(ValueError):
    """Raised when stored ciphertext cannot be decrypted with the current key"""


def _fernet_key(raw_key: str) -> bytes:
    try:
        if len(base64.urlsafe_b64decode(raw_key.encode())) == 32:
            return raw_key.encode()
    except (binascii.Error, ValueError):
        pass
    # Derive a Fernet-compatible key from an arbitrary passphrase
    return base64.urlsafe_b64encode(hashlib.sha256(raw_key.encode()).digest())


@lru_cache(maxsize=1)
def get_fernet() -> Fernet:
    return Fernet(_fernet_key(CALENDAR_ENCRYPTION_KEY or SECRET_KEY))


class SealedToken:
    """An encrypted secret. Holds only ciphertext; str() and repr() never expose plaintext."""

    __slots__ = ("ciphertext",)

    def __init__(self, ciphertext: str):
        self.ciphertext = ciphertext

    @classmethod
    def seal(cls, plaintext: str) -> "SealedToken":
        return cls(get_fernet().encrypt(plaintext.encode()).decode())

    def reveal(self) -> str:
        try:
            return get_fernet().decrypt(self.ciphertext.encode()).decode()
        except (InvalidToken, ValueError) as e:
            raise SealedTokenError("Stored secret could not be decrypted") from e

    def __eq__(self, other):
        return isinstance(other, SealedToken) and other.ciphertext == self.ciphertext

    def __hash__(self):
        return hash(self.ciphertext)

    def __repr__(self):
        return "SealedToken(****)"

    __str__ = __repr__


class SealedTokenType(TypeDecorator):
    """Text column that stores SealedToken ciphertext"""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect) -> Optional[str]:
        if value is None:
            return None
        if not isinstance(value, SealedToken):
            raise TypeError("Secret columns only accept SealedToken values")
        return value.ciphertext

    def process_result_value(self, value, dialect) -> Optional[SealedToken]:
        if value is None or value == "":
            return None
        return SealedToken(value)
