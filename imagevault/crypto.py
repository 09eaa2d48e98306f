"""At-rest encryption for stored credentials.

Blobs are ``hex(salt):hex(iv):hex(ciphertext)``: a fresh salt and IV per call,
a 256-bit key derived with PBKDF2-HMAC-SHA256, AES-256-CBC with PKCS7 padding.
Password hashes are ``hex(salt):hex(derived_key)`` using the same KDF.
"""

import hmac
import logging
import os
import re
import secrets
from typing import Optional

from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

KEY_BYTES = 32
SALT_BYTES = 32
IV_BYTES = 16
KDF_ITERATIONS = 100_000

_HEX_RE = re.compile(r"^[0-9a-fA-F]+$")
_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")


class CryptoError(Exception):
    """Base exception for crypto errors."""

    pass


class EncryptionError(CryptoError):
    """Plaintext could not be encrypted."""

    pass


class DecryptionError(CryptoError):
    """Blob is malformed or the passphrase is wrong."""

    pass


def derive_key(passphrase: str, salt: bytes, iterations: int = KDF_ITERATIONS) -> bytes:
    """PBKDF2-HMAC-SHA256 a passphrase into a 32-byte key."""
    kdf = PBKDF2HMAC(algorithm=hashes.SHA256(), length=KEY_BYTES, salt=salt, iterations=iterations)
    return kdf.derive(passphrase.encode("utf-8"))


def generate_key() -> str:
    """Generate a random 256-bit passphrase as 64 hex characters."""
    return secrets.token_hex(KEY_BYTES)


def is_valid_key(key: Optional[str]) -> bool:
    """True for a 64-character hex key as produced by generate_key()."""
    return bool(key) and bool(_KEY_RE.match(key))


def is_encrypted(value: object) -> bool:
    """Heuristic: does this look like an encrypted blob?"""
    if not isinstance(value, str):
        return False
    parts = value.split(":")
    return len(parts) == 3 and all(p and _HEX_RE.match(p) for p in parts)


class EncryptionService:
    """Symmetric encryption and password hashing with a process-default key.

    Key resolution: explicit ``default_key`` > ``ENCRYPTION_KEY`` environment
    variable > a key generated for this process only. The generated fallback
    makes stored blobs unreadable after restart and must not be used in
    production.
    """

    def __init__(self, default_key: Optional[str] = None, iterations: int = KDF_ITERATIONS):
        self.iterations = iterations
        self.using_fallback_key = False
        key = default_key or os.environ.get("ENCRYPTION_KEY")
        if not key:
            key = generate_key()
            self.using_fallback_key = True
            logger.warning(
                "ENCRYPTION_KEY not set; using a generated key for this process. "
                "Stored credentials will not be readable after restart. "
                "Not suitable for production."
            )
        self._default_key = key

    def set_default_key(self, key: str) -> None:
        if not key:
            raise ValueError("Encryption key cannot be empty")
        self._default_key = key
        self.using_fallback_key = False

    def _resolve(self, key: Optional[str]) -> str:
        return key or self._default_key

    def encrypt(self, plaintext: str, key: Optional[str] = None) -> str:
        """Encrypt text into a ``salt:iv:ciphertext`` hex blob.

        Raises:
            EncryptionError: If the input is empty or encryption fails
        """
        if not plaintext:
            raise EncryptionError("Cannot encrypt empty text")
        try:
            salt = os.urandom(SALT_BYTES)
            iv = os.urandom(IV_BYTES)
            derived = derive_key(self._resolve(key), salt, self.iterations)

            padder = padding.PKCS7(algorithms.AES.block_size).padder()
            padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
            encryptor = Cipher(algorithms.AES(derived), modes.CBC(iv)).encryptor()
            ciphertext = encryptor.update(padded) + encryptor.finalize()
        except Exception as e:
            logger.error(f"Encryption failed: {e}")
            raise EncryptionError(f"Encryption failed: {e}") from e
        return f"{salt.hex()}:{iv.hex()}:{ciphertext.hex()}"

    def decrypt(self, blob: str, key: Optional[str] = None) -> str:
        """Decrypt a blob produced by encrypt().

        Raises:
            DecryptionError: If the blob is empty or malformed, or the key is wrong
        """
        if not blob:
            raise DecryptionError("Cannot decrypt empty data")
        parts = blob.split(":")
        if len(parts) != 3:
            raise DecryptionError("Invalid encrypted data format")
        try:
            salt, iv, ciphertext = (bytes.fromhex(p) for p in parts)
        except ValueError as e:
            raise DecryptionError("Invalid encrypted data format") from e
        if len(iv) != IV_BYTES or not ciphertext:
            raise DecryptionError("Invalid encrypted data format")

        try:
            derived = derive_key(self._resolve(key), salt, self.iterations)
            decryptor = Cipher(algorithms.AES(derived), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()
            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = (unpadder.update(padded) + unpadder.finalize()).decode("utf-8")
        except (ValueError, UnicodeDecodeError) as e:
            raise DecryptionError("Decryption failed: wrong key or corrupted data") from e

        if not plaintext:
            raise DecryptionError("Decryption failed: wrong key or corrupted data")
        return plaintext

    def generate_key(self) -> str:
        return generate_key()

    def is_valid_key(self, key: Optional[str]) -> bool:
        return is_valid_key(key)

    def is_encrypted(self, value: object) -> bool:
        return is_encrypted(value)

    def hash_password(self, password: str) -> str:
        """Hash a password as ``hex(salt):hex(hash)``."""
        if not password:
            raise EncryptionError("Cannot hash empty password")
        salt = os.urandom(SALT_BYTES)
        digest = derive_key(password, salt, self.iterations)
        return f"{salt.hex()}:{digest.hex()}"

    def verify_password(self, password: str, hashed: str) -> bool:
        """Check a password against hash_password() output. Bad input is False."""
        if not password or not hashed:
            return False
        parts = hashed.split(":")
        if len(parts) != 2:
            return False
        try:
            salt = bytes.fromhex(parts[0])
        except ValueError:
            return False
        computed = derive_key(password, salt, self.iterations).hex()
        return hmac.compare_digest(computed, parts[1].lower())
