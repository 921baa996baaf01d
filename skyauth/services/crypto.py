"""Encryption of TOTP secrets at rest."""

import logging
import secrets
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

logger = logging.getLogger(__name__)

IV_LENGTH = 12
TAG_LENGTH = 16
KEY_LENGTH = 32

# scrypt cost parameters (N=2^14, r=8, p=1)
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1


class CryptoError(Exception):
    """Base exception for cryptographic operations.

    All crypto-related exceptions inherit from this class.
    """


class InvalidKeyError(CryptoError):
    """Raised when the master key or salt is missing."""


class DecryptionError(CryptoError):
    """Raised when decryption fails.

    This can occur due to a tampered auth tag, a wrong key, or a payload that
    is not in ``iv:authTag:ciphertext`` hex form.
    """


@lru_cache(maxsize=8)
def derive_key(master_key: str, salt: str) -> bytes:
    """Derive the 256-bit AES key from the master key with scrypt.

    Cached per (key, salt) pair; scrypt is deliberately slow.
    """
    if not master_key or not salt:
        raise InvalidKeyError("TOTP encryption key and salt must both be set")
    kdf = Scrypt(salt=salt.encode("utf-8"), length=KEY_LENGTH, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(master_key.encode("utf-8"))


def encrypt_secret(secret: str, key: str, salt: str) -> str:
    """Encrypt a TOTP secret with AES-256-GCM.

    Returns: ``iv:authTag:ciphertext``, each part hex encoded.
    """
    aesgcm = AESGCM(derive_key(key, salt))
    iv = secrets.token_bytes(IV_LENGTH)
    sealed = aesgcm.encrypt(iv, secret.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt_secret(payload: str, key: str, salt: str) -> str:
    """Decrypt a value produced by encrypt_secret.

    Raises:
        DecryptionError: If the payload is malformed or authentication fails.
    """
    parts = payload.split(":")
    if len(parts) != 3:
        raise DecryptionError("Invalid encrypted payload format")

    try:
        iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
    except ValueError as e:
        raise DecryptionError("Encrypted payload is not valid hex") from e

    if len(iv) != IV_LENGTH or len(tag) != TAG_LENGTH:
        raise DecryptionError("Invalid IV or auth tag length")

    aesgcm = AESGCM(derive_key(key, salt))
    try:
        plaintext = aesgcm.decrypt(iv, ciphertext + tag, None)
    except InvalidTag as e:
        raise DecryptionError("Authentication tag mismatch") from e
    return plaintext.decode("utf-8")
