"""
Encryption at rest for stored GitHub access tokens (Fernet).
"""

from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from tasklink.core.config import settings


class CredentialDecryptionError(Exception):
    """A stored credential could not be decrypted with the configured key."""


class TokenCipher:
    def __init__(self, key: str):
        self._fernet = Fernet(key.encode("utf-8"))

    def encrypt(self, token: str) -> str:
        return self._fernet.encrypt(token.encode("utf-8")).decode("utf-8")

    def decrypt(self, token_encrypted: str) -> str:
        try:
            return self._fernet.decrypt(token_encrypted.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            raise CredentialDecryptionError("Stored credential cannot be decrypted") from e


@lru_cache(maxsize=1)
def get_token_cipher(key: Optional[str] = None) -> TokenCipher:
    return TokenCipher(key or settings.CREDENTIAL_ENCRYPTION_KEY)
