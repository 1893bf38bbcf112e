"""
Build configuration normalization and storage codec.

Incoming configs mix key styles (plain strings, Ruby-style ``:symbol``
strings, integers) and spell the ``env`` section in several shapes. The
normalizer turns all of them into one canonical mapping before the config
is stored, and the codec makes sure the ``env`` shape survives a round trip
through storage.
"""

import json
import logging
import warnings
from dataclasses import dataclass
from enum import Enum
from typing import Any

import yaml

from .errors import LegacyFormatWarning

logger = logging.getLogger(__name__)

# Feature flag that switches env normalization to the legacy layout
LEGACY_ENV_FLAG = "legacy_env_layout"

SOURCE_KEY = "source_key"
SECURE_KEY = "secure"


class EnvMode(Enum):
    """Which field layout the env normalization writes."""

    CURRENT = "current"  # global entries under "global_env"
    LEGACY = "legacy"  # global entries under "_global_env"

    @property
    def global_key(self) -> str:
        return "global_env" if self is EnvMode.CURRENT else "_global_env"


@dataclass(frozen=True)
class SecureValue:
    """An encrypted ``{secure: <ciphertext>}`` marker."""

    ciphertext: str

    def to_wire(self) -> dict[str, str]:
        return {SECURE_KEY: self.ciphertext}


Token = str | SecureValue


@dataclass(frozen=True)
class PlainEnv:
    """An env row given as a single string (or a single secure value)."""

    value: Token

    @property
    def tokens(self) -> tuple[Token, ...]:
        return (self.value,)

    def to_wire(self) -> Any:
        return _token_to_wire(self.value)


@dataclass(frozen=True)
class EnvList:
    """An env row given as an ordered list of strings."""

    values: tuple[Token, ...]

    @property
    def tokens(self) -> tuple[Token, ...]:
        return self.values

    def to_wire(self) -> list[Any]:
        return [_token_to_wire(value) for value in self.values]


EnvEntry = PlainEnv | EnvList


def _token_to_wire(token: Token) -> Any:
    if isinstance(token, SecureValue):
        return token.to_wire()
    return token


def canonical_key(key: Any) -> str:
    """Canonical string form of a config key (``:foo`` and ``foo`` are the same key)."""
    if isinstance(key, bool):
        return str(key).lower()
    if isinstance(key, str):
        if len(key) > 1 and key.startswith(":"):
            return key[1:]
        return key
    return str(key)


def canonicalize_keys(value: Any) -> Any:
    """Recursively coerce every mapping key to its canonical string form."""
    if isinstance(value, dict):
        return {canonical_key(key): canonicalize_keys(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [canonicalize_keys(item) for item in value]
    return value


def secure_marker(value: Any) -> SecureValue | None:
    """Return the secure value if ``value`` is a ``{secure: ...}`` marker."""
    if not isinstance(value, dict) or len(value) != 1:
        return None
    key, ciphertext = next(iter(value.items()))
    if canonical_key(key) != SECURE_KEY:
        return None
    if ciphertext is None:
        ciphertext = ""
    if not isinstance(ciphertext, str):
        return None
    return SecureValue(ciphertext)


def _scalar(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


def env_string(mapping: dict[Any, Any]) -> str:
    """Join a mapping into ``"KEY=value KEY2=value2"`` in insertion order."""
    return " ".join(
        f"{canonical_key(key)}={_scalar(value)}" for key, value in mapping.items()
    )


def _token(value: Any) -> Token | None:
    if value is None:
        return None
    marker = secure_marker(value)
    if marker is not None:
        return marker
    if isinstance(value, dict):
        return env_string(value)
    return _scalar(value)


def _flatten(value: Any) -> list[Token]:
    """Flatten a string, mapping or (nested) sequence into a list of tokens."""
    if value is None:
        return []
    if not isinstance(value, (list, tuple)):
        token = _token(value)
        return [] if token is None else [token]

    tokens: list[Token] = []
    for item in value:
        tokens.extend(_flatten(item))
    return tokens


def _entry(value: Any) -> EnvEntry | None:
    """One matrix leg: sequences stay sequences, anything else a single value."""
    if isinstance(value, (list, tuple)):
        return EnvList(tuple(_flatten(value)))
    token = _token(value)
    return None if token is None else PlainEnv(token)


def _as_sequence(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def parse_env_rows(env: Any) -> list[EnvEntry] | None:
    """Read a stored or raw ``env`` value into its rows, ``None`` when absent."""
    if env is None:
        return None
    return [
        entry for entry in (_entry(item) for item in _as_sequence(env)) if entry is not None
    ]


def env_rows_to_wire(rows: list[EnvEntry] | None) -> list[Any] | None:
    if rows is None:
        return None
    return [row.to_wire() for row in rows]


def _is_split_env(env: Any) -> bool:
    return isinstance(env, dict) and ("global" in env or "matrix" in env)


def normalize_env(env: Any, mode: EnvMode = EnvMode.CURRENT) -> dict[str, Any]:
    """
    Normalize a raw ``env`` section.

    Returns the keys to store: always ``env`` and, when a global section was
    given, the global entries under the key selected by ``mode``.
    """
    if env is None:
        return {"env": None}

    if isinstance(env, str):
        return {"env": env}

    if not _is_split_env(env):
        return {"env": env_rows_to_wire(parse_env_rows(env))}

    global_section = env.get("global")
    matrix = env.get("matrix")
    has_global = global_section is not None
    global_entries = tuple(_flatten(global_section))

    rows: list[EnvEntry] | None
    if matrix is None:
        if not has_global:
            rows = None
        elif mode is EnvMode.LEGACY:
            rows = [EnvList(global_entries)]
        else:
            rows = [PlainEnv(token) for token in global_entries]
    else:
        legs = parse_env_rows(matrix) or []
        if has_global:
            rows = [EnvList(leg.tokens + global_entries) for leg in legs]
        else:
            rows = legs

    result: dict[str, Any] = {"env": env_rows_to_wire(rows)}
    if has_global:
        result[mode.global_key] = [_token_to_wire(token) for token in global_entries]
    return result


class ConfigNormalizer:
    """
    Canonicalizes heterogeneous build configuration into the stored shape.

    The env layout is chosen per call through ``mode`` rather than read
    from global state.
    """

    def normalize(
        self, raw_config: Any, mode: EnvMode = EnvMode.CURRENT
    ) -> dict[str, Any]:
        """
        Normalize a raw build config.

        Args:
            raw_config: Mapping as read from the repository build file, or
                a serialized config string
            mode: Env field layout to produce

        Returns:
            New mapping with canonical keys, normalized ``env`` and no
            ``source_key``
        """
        if raw_config is None:
            return {}
        if isinstance(raw_config, (str, bytes)):
            raw_config = load_config(raw_config)
        if not isinstance(raw_config, dict):
            logger.warning(
                f"Ignoring build config of type {type(raw_config).__name__}"
            )
            return {}

        config = canonicalize_keys(raw_config)
        config.pop(SOURCE_KEY, None)

        if "env" not in config:
            return config

        normalized: dict[str, Any] = {}
        for key, value in config.items():
            if key == "env":
                normalized.update(normalize_env(value, mode))
            else:
                normalized[key] = value
        return normalized

    def load(self, stored: Any) -> dict[str, Any]:
        return load_config(stored)

    def dump(self, config: dict[str, Any]) -> str:
        return dump_config(config)


def dump_config(config: dict[str, Any] | None) -> str:
    """Serialize a normalized config for storage."""
    return json.dumps(canonicalize_keys(config or {}))


def load_config(stored: Any) -> dict[str, Any]:
    """
    Decode a stored config.

    Older rows hold the config as a string inside the column (double-encoded
    or YAML text). Those are deserialized once more, with a
    ``LegacyFormatWarning``, and the nested mapping is used.

    Args:
        stored: Column value read back from storage

    Returns:
        Config mapping with canonical keys, ``{}`` when nothing usable is stored
    """
    if stored is None:
        return {}
    if isinstance(stored, bytes):
        stored = stored.decode("utf-8")

    value: Any = stored
    if isinstance(stored, str):
        if not stored.strip():
            return {}
        try:
            value = json.loads(stored)
        except json.JSONDecodeError:
            value = stored

    if isinstance(value, str):
        logger.warning("Stored build config is a string, deserializing it again")
        warnings.warn(
            "build config was stored in a legacy string format",
            LegacyFormatWarning,
            stacklevel=2,
        )
        try:
            value = yaml.safe_load(value)
        except yaml.YAMLError as e:
            logger.error(f"Could not deserialize legacy build config: {e}")
            return {}

    if not isinstance(value, dict):
        logger.warning(
            f"Stored build config is a {type(value).__name__}, not a mapping"
        )
        return {}
    return canonicalize_keys(value)
