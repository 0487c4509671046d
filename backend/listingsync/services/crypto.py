# listingsync/services/crypto.py
from __future__ import annotations

import base64
import binascii
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from listingsync.core.config import Settings

_IV_BYTES = 12


class CryptoError(RuntimeError):
    pass


def _b64decode(value: str) -> bytes:
    # accepts standard and urlsafe alphabets, padding optional
    s = (value or "").strip().replace("-", "+").replace("_", "/")
    s += "=" * (-len(s) % 4)
    return base64.b64decode(s.encode("ascii"), validate=True)


def load_master_key(raw_b64: str) -> bytes:
    if not raw_b64:
        raise CryptoError("CRYPTO_MASTER_KEY_B64 is empty")
    try:
        key = _b64decode(raw_b64)
    except (binascii.Error, ValueError):
        raise CryptoError("Invalid CRYPTO_MASTER_KEY_B64 (Base64 decode failed)")
    if len(key) != 32:
        raise CryptoError(f"CRYPTO_MASTER_KEY_B64 must decode to 32 bytes, got {len(key)}")
    return key


class FieldCipher:
    """
    AES-256-GCM for single database fields.

    encrypt() returns (ciphertext_b64, iv_b64); a fresh 12 byte IV is drawn for
    every call, so two encryptions of the same text never share a nonce.
    The GCM tag is appended to the ciphertext.
    """

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise CryptoError("AES-256 key must be 32 bytes")
        self._aes = AESGCM(key)

    @classmethod
    def from_settings(cls, settings: Settings) -> "FieldCipher":
        return cls(load_master_key(settings.CRYPTO_MASTER_KEY_B64))

    def encrypt(self, plaintext: str) -> tuple[str, str]:
        iv = secrets.token_bytes(_IV_BYTES)
        ct = self._aes.encrypt(iv, plaintext.encode("utf-8"), None)
        return base64.b64encode(ct).decode("ascii"), base64.b64encode(iv).decode("ascii")

    def decrypt(self, ciphertext_b64: str, iv_b64: str) -> str:
        try:
            iv = _b64decode(iv_b64)
            ct = _b64decode(ciphertext_b64)
        except (binascii.Error, ValueError):
            raise CryptoError("cipher text or iv is not valid base64")
        if len(iv) != _IV_BYTES:
            raise CryptoError("iv must be 12 bytes")
        try:
            plain = self._aes.decrypt(iv, ct, None)
        except InvalidTag:
            raise CryptoError("decryption failed (wrong key or tampered data)")
        return plain.decode("utf-8")
