"""
Unit tests for credential decryption.
"""

import base64
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
import pytest

from perpbot.exceptions import CredentialError
from perpbot.utils.crypto import CredentialCipher

KEY = "unit-test-encryption-key"


def openssl_style_encrypt(plaintext: str, key: str, iv: bytes) -> str:
    """base64(iv || AES-256-CBC(PKCS#7(plaintext))) with a zero-padded key."""
    raw_key = key.encode()[:32].ljust(32, b"\0")
    padder = padding.PKCS7(128).padder()
    padded = padder.update(plaintext.encode()) + padder.finalize()
    encryptor = Cipher(algorithms.AES(raw_key), modes.CBC(iv)).encryptor()
    return base64.b64encode(iv + encryptor.update(padded) + encryptor.finalize()).decode()


@pytest.mark.unit
class TestCredentialCipher:
    def test_decrypts_dashboard_format(self):
        iv = os.urandom(16)
        encrypted = openssl_style_encrypt("binance-api-key-123", KEY, iv)

        assert CredentialCipher(KEY).decrypt(encrypted) == "binance-api-key-123"

    def test_round_trip_with_encrypt_helper(self):
        cipher = CredentialCipher(KEY)
        encrypted = cipher.encrypt("secret", b"\x01" * 16)

        assert cipher.decrypt(encrypted) == "secret"

    def test_long_key_is_truncated(self):
        long_key = "k" * 64
        encrypted = openssl_style_encrypt("value", long_key, b"\x02" * 16)

        assert CredentialCipher(long_key).decrypt(encrypted) == "value"

    def test_empty_key_is_rejected(self):
        with pytest.raises(CredentialError):
            CredentialCipher("")

    def test_invalid_base64(self):
        with pytest.raises(CredentialError):
            CredentialCipher(KEY).decrypt("not base64 !!")

    def test_short_payload(self):
        with pytest.raises(CredentialError):
            CredentialCipher(KEY).decrypt(base64.b64encode(b"short").decode())

    def test_wrong_key(self):
        encrypted = openssl_style_encrypt("value-that-is-long-enough", KEY, b"\x03" * 16)

        with pytest.raises(CredentialError):
            # a wrong key yields bad padding or non UTF-8 plaintext in practice
            CredentialCipher("another-key").decrypt(encrypted)
