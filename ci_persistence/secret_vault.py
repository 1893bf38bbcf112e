"""
Fernet-backed secret vault.

Each repository gets its own key, derived from one master secret and the
repository id, so a value encrypted for one repository cannot be decrypted
for another.

Encryption: Fernet (symmetric, AES-128-CBC + HMAC-SHA256)
Master secret: From CI_VAULT_KEY env var
"""

import base64
import binascii
import hashlib
import logging
import os
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from ci_common.errors import DecryptionFailure
from ci_common.ports import SecretVault

logger = logging.getLogger(__name__)

# First byte of every Fernet token
FERNET_VERSION = 0x80


def get_master_secret() -> str:
    """
    Get the vault master secret from the environment.

    Environment variables:
    - CI_VAULT_KEY: Master secret all repository keys are derived from
    """
    secret = os.environ.get("CI_VAULT_KEY")
    if not secret:
        raise RuntimeError("CI_VAULT_KEY is not set")
    return secret


class FernetSecretVault(SecretVault):
    """
    Encrypts secure values with a per-repository Fernet key.
    """

    def __init__(self, master_secret: str):
        if not master_secret:
            raise ValueError("master_secret must not be empty")
        self._master_secret = master_secret
        self._fernets: dict[str, Fernet] = {}

    @classmethod
    def from_env(cls) -> "FernetSecretVault":
        return cls(get_master_secret())

    def _fernet(self, repository_id: str) -> Fernet:
        fernet = self._fernets.get(repository_id)
        if fernet is None:
            # Derive a proper Fernet key from the master secret
            material = f"{self._master_secret}:{repository_id}".encode()
            key = base64.urlsafe_b64encode(hashlib.sha256(material).digest())
            fernet = Fernet(key)
            self._fernets[repository_id] = fernet
        return fernet

    def encrypt(self, repository_id: str, plaintext: str) -> str:
        return self._fernet(repository_id).encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, repository_id: str, ciphertext: str) -> str:
        try:
            plaintext = self._fernet(repository_id).decrypt(ciphertext.encode("ascii"))
        except (InvalidToken, UnicodeEncodeError) as e:
            raise DecryptionFailure(
                "Secure value could not be decrypted",
                repository_id=repository_id,
                operation="decrypt",
            ) from e
        return plaintext.decode("utf-8")

    def looks_encrypted(self, value: Any) -> bool:
        if not isinstance(value, str) or not value:
            return False
        try:
            raw = base64.urlsafe_b64decode(value.encode("ascii"))
        except (binascii.Error, UnicodeEncodeError, ValueError):
            return False
        return len(raw) > 1 and raw[0] == FERNET_VERSION
