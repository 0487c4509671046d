from __future__ import annotations

import base64

import pytest

from listingsync.services.crypto import CryptoError, FieldCipher, load_master_key


def test_encrypt_round_trip_uses_fresh_iv(cipher):
    ct1, iv1 = cipher.encrypt("refresh-token")
    ct2, iv2 = cipher.encrypt("refresh-token")

    assert iv1 != iv2
    assert ct1 != ct2
    assert len(base64.b64decode(iv1)) == 12
    assert cipher.decrypt(ct1, iv1) == "refresh-token"
    assert cipher.decrypt(ct2, iv2) == "refresh-token"


def test_decrypt_with_wrong_iv_raises(cipher):
    ct, _ = cipher.encrypt("secret")
    _, other_iv = cipher.encrypt("other")
    with pytest.raises(CryptoError):
        cipher.decrypt(ct, other_iv)


def test_decrypt_with_other_key_raises(cipher):
    ct, iv = cipher.encrypt("secret")
    other = FieldCipher(b"x" * 32)
    with pytest.raises(CryptoError):
        other.decrypt(ct, iv)


@pytest.mark.parametrize("raw", ["", "not base64!!", base64.b64encode(b"short").decode()])
def test_load_master_key_rejects_bad_keys(raw):
    with pytest.raises(CryptoError):
        load_master_key(raw)


def test_load_master_key_accepts_urlsafe_without_padding():
    key = bytes(range(32))
    raw = base64.urlsafe_b64encode(key).decode().rstrip("=")
    assert load_master_key(raw) == key


def test_from_settings_without_key_raises(settings):
    with pytest.raises(CryptoError):
        FieldCipher.from_settings(settings.model_copy(update={"CRYPTO_MASTER_KEY_B64": ""}))
