"""Authenticated encryption for change envelopes."""

import os
import secrets
from typing import Protocol

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..errors import DecryptionError, SyncNotConfiguredError

NONCE_SIZE = 12
TAG_SIZE = 16
KEY_SIZE = 32
_HKDF_INFO = b"chronicle sync v1"


class Cipher(Protocol):
    """Authenticated encryption with associated data."""

    def encrypt(self, plaintext: bytes, associated_data: bytes) -> bytes: ...

    def decrypt(self, ciphertext: bytes, associated_data: bytes) -> bytes: ...


def generate_secret() -> str:
    """Create a new random sync secret, hex-encoded."""
    return secrets.token_hex(KEY_SIZE)


def derive_key(secret: str) -> bytes:
    """Derive the AES-256 key from a hex-encoded sync secret.

    Raises:
        SyncNotConfiguredError: If the secret is empty or not valid hex.
    """
    try:
        seed = bytes.fromhex(secret)
    except ValueError as e:
        raise SyncNotConfiguredError(f"invalid derived key: {e}") from e
    if not seed:
        raise SyncNotConfiguredError("derived key is empty")

    hkdf = HKDF(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=None, info=_HKDF_INFO)
    return hkdf.derive(seed)


class AESGCMCipher:
    """AES-256-GCM with a random nonce prepended to each ciphertext."""

    def __init__(self, key: bytes):
        if len(key) != KEY_SIZE:
            raise ValueError(f"key must be {KEY_SIZE} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    @classmethod
    def from_secret(cls, secret: str) -> "AESGCMCipher":
        return cls(derive_key(secret))

    def encrypt(self, plaintext: bytes, associated_data: bytes) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, plaintext, associated_data)

    def decrypt(self, ciphertext: bytes, associated_data: bytes) -> bytes:
        if len(ciphertext) < NONCE_SIZE + TAG_SIZE:
            raise DecryptionError("envelope too short")
        nonce, body = ciphertext[:NONCE_SIZE], ciphertext[NONCE_SIZE:]
        try:
            return self._aead.decrypt(nonce, body, associated_data)
        except InvalidTag as e:
            raise DecryptionError("envelope failed authentication") from e
