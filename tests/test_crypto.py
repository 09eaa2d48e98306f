"""Tests for imagevault.crypto."""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from imagevault.crypto import (
    DecryptionError,
    EncryptionError,
    EncryptionService,
    generate_key,
    is_encrypted,
    is_valid_key,
)

from conftest import TEST_ITERATIONS

service = EncryptionService("property-passphrase", iterations=TEST_ITERATIONS)

passphrases = st.text(min_size=1, max_size=32)
plaintexts = st.text(min_size=1, max_size=200)


class TestEncryptDecrypt:
    """Round trips and failure modes."""

    @settings(max_examples=25, deadline=None)
    @given(plaintext=plaintexts, key=passphrases)
    def test_round_trip(self, plaintext, key):
        """decrypt(encrypt(s, k), k) == s for any non-empty text."""
        assert service.decrypt(service.encrypt(plaintext, key), key) == plaintext

    def test_blob_format(self, encryption):
        """Blobs are three hex parts: 32-byte salt, 16-byte IV, ciphertext."""
        blob = encryption.encrypt("sk-123")
        salt, iv, ciphertext = blob.split(":")
        assert len(salt) == 64
        assert len(iv) == 32
        assert len(ciphertext) % 32 == 0
        assert is_encrypted(blob)

    def test_non_deterministic(self, encryption):
        """Same input encrypts differently each time but decrypts the same."""
        first = encryption.encrypt("same text")
        second = encryption.encrypt("same text")
        assert first != second
        assert encryption.decrypt(first) == encryption.decrypt(second) == "same text"

    def test_wrong_key_raises(self, encryption):
        blob = encryption.encrypt("a secret value", "key-one")
        with pytest.raises(DecryptionError):
            encryption.decrypt(blob, "key-two")

    def test_empty_plaintext_raises(self, encryption):
        with pytest.raises(EncryptionError):
            encryption.encrypt("")

    def test_empty_blob_raises(self, encryption):
        with pytest.raises(DecryptionError):
            encryption.decrypt("")

    @pytest.mark.parametrize("blob", ["abcd", "ab:cd", "ab:cd:ef:01", "zz:yy:xx"])
    def test_malformed_blob_raises(self, encryption, blob):
        with pytest.raises(DecryptionError):
            encryption.decrypt(blob)

    def test_unicode_round_trip(self, encryption):
        text = "clé secrète 🔑"
        assert encryption.decrypt(encryption.encrypt(text)) == text


class TestKeyResolution:
    """Explicit key > ENCRYPTION_KEY > generated fallback."""

    def test_explicit_key_wins(self, monkeypatch):
        monkeypatch.setenv("ENCRYPTION_KEY", "from-env")
        explicit = EncryptionService("explicit", iterations=TEST_ITERATIONS)
        blob = explicit.encrypt("value")
        assert explicit.decrypt(blob, "explicit") == "value"
        assert not explicit.using_fallback_key

    def test_env_key_used(self, monkeypatch):
        monkeypatch.setenv("ENCRYPTION_KEY", "from-env")
        env_service = EncryptionService(iterations=TEST_ITERATIONS)
        blob = env_service.encrypt("value")
        assert env_service.decrypt(blob, "from-env") == "value"
        assert not env_service.using_fallback_key

    def test_fallback_key_flagged(self, caplog):
        fallback = EncryptionService(iterations=TEST_ITERATIONS)
        assert fallback.using_fallback_key
        assert "not suitable for production" in caplog.text.lower()
        assert fallback.decrypt(fallback.encrypt("value")) == "value"

    def test_set_default_key(self):
        svc = EncryptionService(iterations=TEST_ITERATIONS)
        svc.set_default_key("replacement")
        assert not svc.using_fallback_key
        assert svc.decrypt(svc.encrypt("v"), "replacement") == "v"

    def test_set_default_key_rejects_empty(self, encryption):
        with pytest.raises(ValueError):
            encryption.set_default_key("")


class TestKeys:
    def test_generate_key_is_valid(self):
        key = generate_key()
        assert len(key) == 64
        assert is_valid_key(key)

    def test_generate_key_unique(self):
        assert generate_key() != generate_key()

    @pytest.mark.parametrize("key", [None, "", "abc", "g" * 64, "a" * 63])
    def test_invalid_keys(self, key):
        assert not is_valid_key(key)

    @pytest.mark.parametrize("value", [None, 42, "plain", "a:b", "sk-123:xx:yy"])
    def test_is_encrypted_rejects_plain_values(self, value):
        assert not is_encrypted(value)


class TestPasswords:
    @settings(max_examples=15, deadline=None)
    @given(password=st.text(min_size=1, max_size=40))
    def test_hash_verifies(self, password):
        assert service.verify_password(password, service.hash_password(password))

    def test_wrong_password_rejected(self, encryption):
        hashed = encryption.hash_password("correct horse")
        assert not encryption.verify_password("battery staple", hashed)

    def test_hash_format(self, encryption):
        salt, digest = encryption.hash_password("pw").split(":")
        assert len(salt) == 64
        assert len(digest) == 64

    def test_hashes_are_salted(self, encryption):
        assert encryption.hash_password("pw") != encryption.hash_password("pw")

    @pytest.mark.parametrize("hashed", ["", "nocolon", "zz:abcd", "a:b:c"])
    def test_malformed_hash_is_false(self, encryption, hashed):
        assert not encryption.verify_password("pw", hashed)

    def test_empty_password_rejected(self, encryption):
        with pytest.raises(EncryptionError):
            encryption.hash_password("")
