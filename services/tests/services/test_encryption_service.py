"""Tests for Fernet key provider: round trip, rotation, bad keys."""

import pytest

from sqldesk.config import Settings
from sqldesk.errors import EncryptionUnavailableError
from sqldesk.services.encryption_service import (
    FernetKeyProvider,
    build_key_provider,
    generate_key,
)


class TestFernetKeyProvider:
    def test_round_trip(self):
        provider = FernetKeyProvider(generate_key())
        ciphertext = provider.encrypt("hunter2")
        assert ciphertext != "hunter2"
        assert provider.decrypt(ciphertext) == "hunter2"

    def test_ciphertext_is_not_deterministic(self):
        provider = FernetKeyProvider(generate_key())
        assert provider.encrypt("same") != provider.encrypt("same")

    def test_wrong_key_fails_to_decrypt(self):
        ciphertext = FernetKeyProvider(generate_key()).encrypt("hunter2")
        with pytest.raises(ValueError, match="Failed to decrypt"):
            FernetKeyProvider(generate_key()).decrypt(ciphertext)

    def test_rotation_decrypts_with_old_key(self):
        old_key, new_key = generate_key(), generate_key()
        ciphertext = FernetKeyProvider(old_key).encrypt("hunter2")

        rotated = FernetKeyProvider(new_key, old_key)
        assert rotated.decrypt(ciphertext) == "hunter2"
        # New writes use the first key only
        assert FernetKeyProvider(new_key).decrypt(rotated.encrypt("x")) == "x"

    def test_invalid_key_rejected(self):
        with pytest.raises(EncryptionUnavailableError, match="Invalid encryption key"):
            FernetKeyProvider("not-a-fernet-key")

    def test_no_keys_rejected(self):
        with pytest.raises(EncryptionUnavailableError):
            FernetKeyProvider()


class TestBuildKeyProvider:
    def test_missing_key_is_unavailable(self):
        with pytest.raises(EncryptionUnavailableError, match="SQLDESK_ENCRYPTION_KEY"):
            build_key_provider(Settings(encryption_key=""))

    def test_comma_separated_keys(self):
        old_key, new_key = generate_key(), generate_key()
        ciphertext = FernetKeyProvider(old_key).encrypt("pw")

        provider = build_key_provider(Settings(encryption_key=f"{new_key}, {old_key}"))
        assert provider.decrypt(ciphertext) == "pw"
