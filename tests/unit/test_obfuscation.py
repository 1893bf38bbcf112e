"""
Unit tests for the obfuscation engine.

Secure values are real Fernet ciphertexts produced by the vault, so these
tests also cover the per-repository key boundary.
"""

import copy

import pytest

from ci_controller.obfuscation import REDACTED, ObfuscationEngine

REPO = "repo-1"


@pytest.fixture
def engine(vault):
    return ObfuscationEngine(vault)


def secure(vault, plaintext, repository_id=REPO):
    return {"secure": vault.encrypt(repository_id, plaintext)}


class TestObfuscate:
    """Test suite for obfuscate()."""

    def test_secure_entry_is_redacted_and_joined(self, engine, vault):
        config = {"env": [[secure(vault, "BAR=barbaz"), "FOO=foo"]]}

        result = engine.obfuscate(config, REPO)

        assert result == {"env": ["BAR=[secure] FOO=foo"]}

    def test_flat_env_list(self, engine, vault):
        config = {"env": [secure(vault, "BAR=barbaz"), "FOO=foo"]}

        result = engine.obfuscate(config, REPO)

        assert result["env"] == ["BAR=[secure]", "FOO=foo"]

    def test_nested_rows_are_flattened(self, engine, vault):
        config = {"env": [["A=1", ["B=2", secure(vault, "TOKEN=abc")]]]}

        result = engine.obfuscate(config, REPO)

        assert result["env"] == ["A=1 B=2 TOKEN=[secure]"]

    def test_mapping_tokens_are_joined(self, engine):
        result = engine.obfuscate({"env": [{"FOO": "bar", "BAZ": "qux"}]}, REPO)

        assert result["env"] == ["FOO=bar BAZ=qux"]

    def test_source_key_is_dropped(self, engine):
        result = engine.obfuscate({"source_key": "1234", "rvm": "3.2"}, REPO)

        assert result == {"rvm": "3.2"}

    def test_nil_env_stays_nil(self, engine):
        result = engine.obfuscate({"env": None}, REPO)

        assert result == {"env": None}

    def test_string_env_stays_string(self, engine):
        result = engine.obfuscate({"env": "FOO=foo"}, REPO)

        assert result == {"env": "FOO=foo"}

    def test_other_keys_pass_through(self, engine):
        config = {
            "rvm": ["2.7", "3.2"],
            "global_env": ["G=1"],
            "notifications": {"email": False},
        }

        assert engine.obfuscate(config, REPO) == config

    def test_input_is_not_mutated(self, engine, vault):
        config = {"env": [[secure(vault, "BAR=barbaz"), "FOO=foo"]], "source_key": "k"}
        original = copy.deepcopy(config)

        engine.obfuscate(config, REPO)

        assert config == original

    def test_idempotent_without_secure_values(self, engine, vault):
        once = engine.obfuscate({"env": [[secure(vault, "BAR=barbaz"), "FOO=foo"]]}, REPO)

        assert engine.obfuscate(once, REPO) == once


class TestRedaction:
    """Failure modes of secure tokens."""

    def test_value_encrypted_for_another_repository(self, engine, vault):
        config = {"env": [secure(vault, "BAR=barbaz", repository_id="repo-2")]}

        result = engine.obfuscate(config, REPO)

        assert result["env"] == [REDACTED]

    def test_value_that_is_not_ciphertext(self, engine):
        result = engine.obfuscate({"env": [{"secure": "not-encrypted"}]}, REPO)

        assert result["env"] == [REDACTED]

    def test_plaintext_without_key(self, engine, vault):
        result = engine.obfuscate({"env": [secure(vault, "just-a-value")]}, REPO)

        assert result["env"] == [REDACTED]

    def test_empty_secure_values_render_empty(self, engine):
        result = engine.obfuscate({"env": [{"secure": ""}, {"secure": None}]}, REPO)

        assert result["env"] == ["", ""]


class TestSecureEnv:
    """Test suite for secure_env()."""

    def test_marker_decrypts_to_plaintext(self, engine, vault):
        marker = engine.secure_env(REPO, "API_KEY=s3cr3t")

        assert list(marker) == ["secure"]
        assert vault.decrypt(REPO, marker["secure"]) == "API_KEY=s3cr3t"

    def test_marker_is_obfuscated(self, engine):
        marker = engine.secure_env(REPO, "API_KEY=s3cr3t")

        assert engine.obfuscate_env([marker], REPO) == ["API_KEY=[secure]"]
