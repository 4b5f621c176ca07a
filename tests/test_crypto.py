"""Tests for envelope encryption."""

import pytest

from chronicle.errors import DecryptionError, SyncNotConfiguredError
from chronicle.sync.crypto import AESGCMCipher, derive_key, generate_secret

AAD = b"user-1:device-a"


@pytest.fixture
def cipher(sync_secret):
    return AESGCMCipher.from_secret(sync_secret)


class TestKeyDerivation:
    """Tests for deriving the envelope key."""

    def test_generate_secret_is_hex(self):
        secret = generate_secret()
        assert len(bytes.fromhex(secret)) == 32

    def test_derivation_is_deterministic(self, sync_secret):
        assert derive_key(sync_secret) == derive_key(sync_secret)
        assert len(derive_key(sync_secret)) == 32

    def test_different_secrets_give_different_keys(self):
        assert derive_key(generate_secret()) != derive_key(generate_secret())

    @pytest.mark.parametrize("secret", ["", "not-hex", "abc"])
    def test_invalid_secret(self, secret):
        with pytest.raises(SyncNotConfiguredError):
            derive_key(secret)

    def test_key_size_enforced(self):
        with pytest.raises(ValueError):
            AESGCMCipher(b"short")


class TestAESGCMCipher:
    """Tests for AES-GCM envelopes."""

    def test_roundtrip(self, cipher):
        plaintext = "héllo 🌍".encode("utf-8")
        assert cipher.decrypt(cipher.encrypt(plaintext, AAD), AAD) == plaintext

    def test_nonce_is_random(self, cipher):
        assert cipher.encrypt(b"same", AAD) != cipher.encrypt(b"same", AAD)

    def test_ciphertext_hides_plaintext(self, cipher):
        assert b"secret message" not in cipher.encrypt(b"secret message", AAD)

    def test_other_device_aad_rejected(self, cipher):
        envelope = cipher.encrypt(b"data", AAD)
        with pytest.raises(DecryptionError):
            cipher.decrypt(envelope, b"user-1:device-b")

    def test_wrong_key_rejected(self, cipher):
        envelope = cipher.encrypt(b"data", AAD)
        other = AESGCMCipher.from_secret(generate_secret())
        with pytest.raises(DecryptionError):
            other.decrypt(envelope, AAD)

    def test_tampered_envelope_rejected(self, cipher):
        envelope = bytearray(cipher.encrypt(b"data", AAD))
        envelope[-1] ^= 0x01
        with pytest.raises(DecryptionError):
            cipher.decrypt(bytes(envelope), AAD)

    def test_short_envelope_rejected(self, cipher):
        with pytest.raises(DecryptionError):
            cipher.decrypt(b"tiny", AAD)
