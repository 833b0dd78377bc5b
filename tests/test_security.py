"""Tests for credential handling."""

from unittest.mock import patch

import pytest

from bulwark.app.core import security
from bulwark.app.core.security import CredentialSet, generate_api_key, hash_api_key
from bulwark.app.exceptions import ConfigurationError


def test_generate_api_key_is_urlsafe_and_unique():
    keys = {generate_api_key() for _ in range(20)}

    assert len(keys) == 20
    for key in keys:
        assert len(key) >= 43
        assert all(c.isalnum() or c in "-_" for c in key)


def test_hash_api_key_is_sha256_hex():
    digest = hash_api_key("abc")

    assert digest == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"


class TestCredentialSet:
    """Tests for the accepted key set."""

    def test_matches_configured_keys_only(self):
        credentials = CredentialSet.from_secrets(["alpha", "bravo"])

        assert credentials.matches("alpha") is True
        assert credentials.matches("bravo") is True
        assert credentials.matches("charlie") is False
        assert credentials.matches("ALPHA") is False

    def test_plaintext_not_retained(self):
        credentials = CredentialSet.from_secrets(["top-secret-key"])

        assert credentials._digests == (hash_api_key("top-secret-key"),)
        assert "top-secret-key" not in repr(credentials._digests)

    def test_duplicates_collapse(self):
        assert len(CredentialSet.from_secrets(["a", "a", "b"])) == 2

    def test_empty_set_is_falsy(self):
        credentials = CredentialSet()

        assert not credentials
        assert credentials.matches("anything") is False

    @pytest.mark.parametrize("blank", ["", "   "])
    def test_blank_secret_rejected(self, blank):
        with pytest.raises(ConfigurationError):
            CredentialSet.from_secrets(["good", blank])

    def test_immutable(self):
        credentials = CredentialSet.from_secrets(["a"])

        with pytest.raises(AttributeError):
            credentials._digests = ()

    @pytest.mark.parametrize("presented", ["k0", "k4", "nope"])
    def test_every_entry_compared(self, presented):
        credentials = CredentialSet.from_secrets([f"k{i}" for i in range(5)])

        with patch.object(
            security.hmac, "compare_digest", wraps=security.hmac.compare_digest
        ) as compare:
            credentials.matches(presented)

        assert compare.call_count == 5
