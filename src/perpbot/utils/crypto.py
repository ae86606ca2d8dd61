"""
Decryption of user API credentials stored by the dashboard.

Values are ``base64(iv || ciphertext)`` produced with AES-256-CBC and PKCS#7 padding.
The key is the raw ``APP_ENCRYPTION_KEY`` bytes, zero-padded or truncated to 32 bytes,
which is how the dashboard's OpenSSL call derives it.
"""

import base64
import binascii

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from perpbot.exceptions import CredentialError
from perpbot.utils.logger import get_logger

logger = get_logger(__name__)

KEY_LENGTH = 32
IV_LENGTH = 16


class CredentialCipher:
    """AES-256-CBC helper bound to one application encryption key."""

    def __init__(self, encryption_key: str):
        if not encryption_key:
            raise CredentialError("APP_ENCRYPTION_KEY is not configured")
        self._key = encryption_key.encode("utf-8")[:KEY_LENGTH].ljust(KEY_LENGTH, b"\0")

    def decrypt(self, encrypted: str) -> str:
        """Decrypt one stored value.

        Raises:
            CredentialError: On malformed base64, a short IV, bad padding or a
                non UTF-8 plaintext.
        """
        try:
            raw = base64.b64decode(encrypted, validate=True)
        except (binascii.Error, ValueError) as e:
            logger.error("credential_base64_decode_failed", preview=encrypted[:12])
            raise CredentialError("Failed to base64 decode encrypted value") from e

        iv, ciphertext = raw[:IV_LENGTH], raw[IV_LENGTH:]
        if len(iv) != IV_LENGTH or not ciphertext or len(ciphertext) % IV_LENGTH:
            logger.error("credential_format_invalid", iv_length=len(iv), payload_length=len(ciphertext))
            raise CredentialError("Invalid encrypted data format: IV or ciphertext malformed")

        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        try:
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            plaintext = unpadder.update(padded) + unpadder.finalize()
            return plaintext.decode("utf-8")
        except ValueError as e:
            # bad padding and invalid UTF-8 both mean the key or data is wrong
            logger.error("credential_decrypt_failed")
            raise CredentialError(
                "Failed to decrypt credential. Check APP_ENCRYPTION_KEY and data integrity."
            ) from e

    def encrypt(self, plaintext: str, iv: bytes) -> str:
        """Encrypt ``plaintext`` with an explicit IV (used by tooling and tests)."""
        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        return base64.b64encode(iv + encryptor.update(padded) + encryptor.finalize()).decode("ascii")
