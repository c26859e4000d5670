# Crypto Module — Master Key Derivation
#
# Master password → 64 bytes of PBKDF2-HMAC-SHA256 output, split in two:
#   bytes  0..31  auth key        (hashed, then sent to the server)
#   bytes 32..63  encryption key  (never leaves the client)
#
# The server only ever sees base64(SHA-256(auth key)).

import base64
import hashlib
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple, Union

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..core.config import DEFAULT_KDF_ITERATIONS, MIN_KDF_ITERATIONS
from ..core.errors import CryptoError, ValidationError

logger = logging.getLogger(__name__)

MASTER_KEY_LENGTH = 64
KEY_LENGTH = 32  # AES-256
RANDOM_SALT_LENGTH = 16


class KdfAlgorithm(str, Enum):
    """Key derivation functions known to the wire contract."""
    PBKDF2 = "PBKDF2"
    ARGON2 = "ARGON2"  # reserved, not implemented


@dataclass
class MasterSecret:
    """Both key halves plus the parameters that produced them.

    Held in memory only.  ``repr`` hides the key bytes.
    """
    auth_key: bytes = field(repr=False)
    encryption_key: bytes = field(repr=False)
    salt: bytes
    iterations: int

    @property
    def auth_key_hash(self) -> str:
        return hash_auth_key(self.auth_key)

    @property
    def salt_b64(self) -> str:
        return base64.b64encode(self.salt).decode("ascii")


def generate_salt(email: Optional[str] = None) -> bytes:
    """Build a fresh salt: UTF-8 email bytes followed by 16 random bytes."""
    prefix = email.encode("utf-8") if email else b""
    return prefix + os.urandom(RANDOM_SALT_LENGTH)


def _coerce_salt(salt: Union[bytes, str]) -> bytes:
    if isinstance(salt, bytes):
        return salt
    try:
        return base64.b64decode(salt.encode("ascii"), validate=True)
    except (ValueError, UnicodeEncodeError) as e:
        raise ValidationError("Salt is not valid base64") from e


def split_master_key(material: bytes) -> Tuple[bytes, bytes]:
    """Split 64 bytes of KDF output into (auth_key, encryption_key)."""
    if len(material) != MASTER_KEY_LENGTH:
        raise CryptoError(
            f"Master key must be {MASTER_KEY_LENGTH} bytes, got {len(material)}"
        )
    return material[:KEY_LENGTH], material[KEY_LENGTH:]


def hash_auth_key(auth_key: bytes) -> str:
    """Return base64(SHA-256(auth_key)), the server-side credential."""
    return base64.b64encode(hashlib.sha256(auth_key).digest()).decode("ascii")


def derive_keys(
    password: str,
    salt: Optional[Union[bytes, str]] = None,
    iterations: int = DEFAULT_KDF_ITERATIONS,
    email: Optional[str] = None,
    algorithm: KdfAlgorithm = KdfAlgorithm.PBKDF2,
) -> MasterSecret:
    """
    Derive the auth key and encryption key from a master password.

    Deterministic for a given (password, salt, iterations).  When ``salt``
    is omitted a new one is generated from ``email`` plus random bytes;
    that is only correct on registration.

    Args:
        password: Master password
        salt: Existing salt, raw bytes or base64 string
        iterations: PBKDF2 iteration count (>= 100000)
        email: Used as the salt prefix when a new salt is generated
        algorithm: Only PBKDF2 is implemented

    Returns:
        MasterSecret

    Raises:
        ValidationError: unsupported algorithm or too few iterations
        CryptoError: derived material has the wrong length
    """
    try:
        algorithm = KdfAlgorithm(algorithm)
    except ValueError as e:
        raise ValidationError(f"Unknown KDF algorithm: {algorithm!r}") from e
    if algorithm is not KdfAlgorithm.PBKDF2:
        raise ValidationError(f"Unsupported KDF algorithm: {algorithm.value}")
    if iterations < MIN_KDF_ITERATIONS:
        raise ValidationError(
            f"KDF iterations must be at least {MIN_KDF_ITERATIONS}, got {iterations}"
        )

    salt_bytes = _coerce_salt(salt) if salt is not None else generate_salt(email)

    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=MASTER_KEY_LENGTH,
        salt=salt_bytes,
        iterations=iterations,
        backend=default_backend()
    )
    material = kdf.derive(password.encode("utf-8"))

    auth_key, encryption_key = split_master_key(material)
    logger.debug("Derived master keys (%d iterations)", iterations)

    return MasterSecret(
        auth_key=auth_key,
        encryption_key=encryption_key,
        salt=salt_bytes,
        iterations=iterations,
    )


def export_key(key: bytes) -> str:
    """Encode a raw key as base64 for handoff between contexts."""
    if len(key) != KEY_LENGTH:
        raise CryptoError(f"Key must be {KEY_LENGTH} bytes, got {len(key)}")
    return base64.b64encode(key).decode("ascii")


def import_key(encoded: str) -> bytes:
    """Inverse of :func:`export_key`."""
    try:
        key = base64.b64decode(encoded.encode("ascii"), validate=True)
    except (ValueError, UnicodeEncodeError, AttributeError) as e:
        raise CryptoError("Exported key is not valid base64") from e
    if len(key) != KEY_LENGTH:
        raise CryptoError(f"Key must be {KEY_LENGTH} bytes, got {len(key)}")
    return key
