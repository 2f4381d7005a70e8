"""
Tests for stored API key encryption.
"""

import pytest

from torn_sync.credentials import CredentialVault
from torn_sync.exceptions import ConfigurationError, CredentialError
from torn_sync.models import TornUser


class TestCredentialVault:
    """Test encryption, decryption and credential lookup."""

    def test_encrypt_decrypt(self, vault):
        token = vault.encrypt("abcdEFGH12345678")

        iv, tag, ciphertext = token.split(":")
        assert len(bytes.fromhex(iv)) == 16
        assert len(bytes.fromhex(tag)) == 16
        assert len(bytes.fromhex(ciphertext)) == len("abcdEFGH12345678")
        assert vault.decrypt(token) == "abcdEFGH12345678"

    def test_random_iv(self, vault):
        assert vault.encrypt("same") != vault.encrypt("same")

    def test_wrong_secret_fails(self, vault):
        token = vault.encrypt("abcdEFGH12345678")

        with pytest.raises(CredentialError):
            CredentialVault("other-secret").decrypt(token)

    def test_tampered_token_fails(self, vault):
        iv, tag, ciphertext = vault.encrypt("abcdEFGH12345678").split(":")
        tampered = f"{iv}:{tag}:{'00' * (len(ciphertext) // 2)}"

        with pytest.raises(CredentialError):
            vault.decrypt(tampered)

    @pytest.mark.parametrize("token", ["", "abc", "a:b", "zz:zz:zz"])
    def test_malformed_token(self, vault, token):
        with pytest.raises(CredentialError):
            vault.decrypt(token)

    def test_unconfigured_vault(self):
        vault = CredentialVault("")

        assert not vault.configured
        with pytest.raises(ConfigurationError):
            vault.encrypt("key")

    def test_credentials_skip_undecryptable_keys(self, vault):
        users = [
            TornUser(discord_id="1", torn_id=1, api_key=vault.encrypt("key-1"), api_key_type="full"),
            TornUser(discord_id="2", torn_id=2, api_key="garbage"),
        ]

        credentials = vault.credentials_for(users)

        assert len(credentials) == 1
        assert credentials[0].holder_id == "1"
        assert credentials[0].api_key == "key-1"
        assert credentials[0].key_type == "full"
        assert "key-1" not in repr(credentials[0])
