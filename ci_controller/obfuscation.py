"""
Display-safe copies of build configuration.

Secure env values are decrypted only far enough to show which variable
they set; the value itself is replaced with a redaction marker.
"""

import copy
import logging
from typing import Any

from ci_common.config import SOURCE_KEY, EnvEntry, SecureValue, parse_env_rows
from ci_common.errors import DecryptionFailure
from ci_common.ports import SecretVault

logger = logging.getLogger(__name__)

REDACTED = "[secure]"


class ObfuscationEngine:
    """
    Replaces secure env values in a config with ``KEY=[secure]``.
    """

    def __init__(self, vault: SecretVault):
        self.vault = vault

    def obfuscate(self, config: dict[str, Any], repository_id: str) -> dict[str, Any]:
        """
        Build the display copy of a config.

        Every ``env`` row, whatever its shape, becomes one string with its
        tokens joined by a space. ``source_key`` is dropped and all other keys
        are copied unchanged. The given config is never modified.

        Args:
            config: Normalized (or stored) build config
            repository_id: Repository whose key decrypts the secure values

        Returns:
            New config mapping safe to display
        """
        obfuscated: dict[str, Any] = {}
        for key, value in config.items():
            if key == SOURCE_KEY:
                continue
            if key == "env":
                obfuscated[key] = self.obfuscate_env(value, repository_id)
            else:
                obfuscated[key] = copy.deepcopy(value)
        return obfuscated

    def obfuscate_env(self, env: Any, repository_id: str) -> Any:
        if env is None:
            return None
        if isinstance(env, str):
            return env
        return [self._render_row(row, repository_id) for row in parse_env_rows(env) or []]

    def secure_env(self, repository_id: str, plaintext: str) -> dict[str, str]:
        """
        Encrypt a ``KEY=value`` pair into a secure marker for a config.
        """
        return SecureValue(self.vault.encrypt(repository_id, plaintext)).to_wire()

    def _render_row(self, row: EnvEntry, repository_id: str) -> str:
        parts = []
        for token in row.tokens:
            if isinstance(token, SecureValue):
                parts.append(self._redact(token.ciphertext, repository_id))
            else:
                parts.append(token)
        return " ".join(parts)

    def _redact(self, ciphertext: str, repository_id: str) -> str:
        if not ciphertext:
            return ""

        try:
            if not self.vault.looks_encrypted(ciphertext):
                raise DecryptionFailure(
                    "Secure value is not a ciphertext",
                    repository_id=repository_id,
                    operation="obfuscate",
                )
            plaintext = self.vault.decrypt(repository_id, ciphertext)
        except DecryptionFailure as e:
            logger.warning(f"Redacting undecryptable secure value: {e}")
            return REDACTED

        name, separator, _ = plaintext.partition("=")
        if not separator or not name:
            return REDACTED
        return f"{name}={REDACTED}"
