"""
Collaborator interfaces the build orchestration core depends on.

Implementations live outside ci_common (see ci_persistence), so the core
only ever sees these narrow contracts.
"""

import os
from abc import ABC, abstractmethod
from typing import Any


class SecretVault(ABC):
    """
    Encrypts and decrypts strings with a per-repository key.
    """

    @abstractmethod
    def encrypt(self, repository_id: str, plaintext: str) -> str:
        """
        Encrypt a value for a repository.

        Args:
            repository_id: Repository whose key is used
            plaintext: Value to encrypt

        Returns:
            Ciphertext as a printable string
        """
        pass

    @abstractmethod
    def decrypt(self, repository_id: str, ciphertext: str) -> str:
        """
        Decrypt a value previously encrypted for the same repository.

        Raises:
            DecryptionFailure: If the value was not produced with this key
        """
        pass

    @abstractmethod
    def looks_encrypted(self, value: Any) -> bool:
        """Whether ``value`` has the shape of a ciphertext from this vault."""
        pass


class NotificationPort(ABC):
    """
    Receives lifecycle events (``build:created``, ``job:finished``, ...).

    Delivery is best effort: the core awaits ``emit`` before returning but
    never rolls a transition back because an emit failed.
    """

    @abstractmethod
    async def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        """
        Announce a lifecycle event.

        Args:
            event_name: Event name such as "build:finished"
            payload: Event data; always contains "repository_id" and the
                id of the build or job it is about
        """
        pass


class FeatureFlags(ABC):
    """Answers whether a named feature is switched on."""

    @abstractmethod
    def enabled(self, flag_name: str) -> bool:
        pass


class StaticFeatureFlags(FeatureFlags):
    """Feature flags from a fixed set of enabled names."""

    def __init__(self, enabled_flags: set[str] | frozenset[str] | None = None):
        self._enabled = frozenset(enabled_flags or ())

    def enabled(self, flag_name: str) -> bool:
        return flag_name in self._enabled

    @classmethod
    def from_env(cls, variable: str = "CI_FEATURES") -> "StaticFeatureFlags":
        """
        Read enabled flags from a comma separated environment variable.

        Environment variables:
        - CI_FEATURES: e.g. "legacy_env_layout,other_flag"
        """
        raw = os.environ.get(variable, "")
        return cls({name.strip() for name in raw.split(",") if name.strip()})
