"""
Unit tests for the secret resolver (dumpvault/utils/crypto.py).

Tests SecretResolver for encrypting/decrypting stored credentials.
"""

import pytest
from cryptography.fernet import InvalidToken

from dumpvault.utils.crypto import SecretResolver, MIN_KEY_LENGTH


KEY_A = 'a' * MIN_KEY_LENGTH
KEY_B = 'b' * MIN_KEY_LENGTH


class TestSecretResolverInitialization:
    """Test SecretResolver initialization."""

    def test_initialize_sets_initialized(self):
        """Test initialization sets is_initialized property to True."""
        resolver = SecretResolver()

        assert resolver.is_initialized is False

        resolver.initialize(KEY_A)

        assert resolver.is_initialized is True

    def test_initialize_rejects_short_key(self):
        """Test keys shorter than 32 characters are refused."""
        resolver = SecretResolver()

        with pytest.raises(ValueError, match='at least 32 characters'):
            resolver.initialize('short-key')

        assert resolver.is_initialized is False

    def test_initialize_rejects_empty_key(self):
        resolver = SecretResolver()

        with pytest.raises(ValueError):
            resolver.initialize('')

    def test_reinitialize_with_same_key_keeps_fernet(self):
        """Test the key is not derived again when it did not change."""
        resolver = SecretResolver()
        resolver.initialize(KEY_A)
        fernet = resolver._fernet

        resolver.initialize(KEY_A)

        assert resolver._fernet is fernet


class TestSecretResolverEncryption:
    """Test encrypt() and decrypt()."""

    def test_encrypt_returns_different_string(self):
        """Test that encrypted value does not contain the plaintext."""
        resolver = SecretResolver()
        resolver.initialize(KEY_A)

        encrypted = resolver.encrypt('pg_secret')

        assert isinstance(encrypted, str)
        assert 'pg_secret' not in encrypted

    def test_decrypt_recovers_original_data(self):
        """Test that decrypt() recovers the original plaintext."""
        resolver = SecretResolver()
        resolver.initialize(KEY_A)

        for plaintext in ['pg_secret', 'AKIAEXAMPLE123456', 'p@ss:w/rd!', 'unicode_テスト', '']:
            assert resolver.decrypt(resolver.encrypt(plaintext)) == plaintext

    def test_same_key_decrypts_across_instances(self):
        """Test the derived key depends only on the master key."""
        first = SecretResolver()
        first.initialize(KEY_A)
        encrypted = first.encrypt('shared_secret')

        second = SecretResolver()
        second.initialize(KEY_A)

        assert second.decrypt(encrypted) == 'shared_secret'

    def test_decrypt_with_wrong_key_raises_error(self):
        """Test that decrypting with another key raises InvalidToken."""
        first = SecretResolver()
        first.initialize(KEY_A)
        encrypted = first.encrypt('secret_data')

        second = SecretResolver()
        second.initialize(KEY_B)

        with pytest.raises(InvalidToken):
            second.decrypt(encrypted)

    def test_encrypt_without_initialization_raises_error(self):
        """Test that encrypting without initialization raises RuntimeError."""
        with pytest.raises(RuntimeError, match='not initialized'):
            SecretResolver().encrypt('data')

    def test_decrypt_without_initialization_raises_error(self):
        with pytest.raises(RuntimeError, match='not initialized'):
            SecretResolver().decrypt('data')

    def test_global_resolver_initialized_by_app(self, app, secrets):
        """Test create_app() initializes the global resolver from ENCRYPTION_KEY."""
        assert secrets.is_initialized is True
        assert secrets.decrypt(secrets.encrypt('x')) == 'x'
