# Crypto Module — Item Envelope Encryption
#
# Vault item payloads are JSON-serialized and sealed with AES-256-GCM:
#   - fresh 12-byte IV per call (16-byte IVs still decrypt, for old data)
#   - 128-bit tag, stored separately from the ciphertext on the wire
#
# Every decryption failure surfaces as the same DecryptionError.  Callers
# cannot tell a wrong key from tampered data from a corrupt field.

import base64
import binascii
import json
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..core.errors import CryptoError, DecryptionError
from .keys import KEY_LENGTH

IV_LENGTH = 12  # 96-bit nonce for GCM (recommended)
LEGACY_IV_LENGTH = 16
TAG_LENGTH = 16


@dataclass(frozen=True)
class EncryptedBlob:
    """AES-GCM output with the tag split off."""
    ciphertext: bytes
    iv: bytes
    auth_tag: bytes

    def to_wire(self) -> Dict[str, str]:
        """Base64 form used by the store and the server."""
        return {
            "encryptedData": encode_for_storage(self.ciphertext),
            "iv": encode_for_storage(self.iv),
            "authTag": encode_for_storage(self.auth_tag),
        }

    @classmethod
    def from_wire(cls, data: Mapping[str, Any]) -> "EncryptedBlob":
        """Parse the base64 form. Malformed input raises DecryptionError."""
        try:
            return cls(
                ciphertext=decode_from_storage(data["encryptedData"]),
                iv=decode_from_storage(data["iv"]),
                auth_tag=decode_from_storage(data["authTag"]),
            )
        except (KeyError, TypeError, ValueError, binascii.Error):
            raise DecryptionError() from None


def encode_for_storage(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def decode_from_storage(data: str) -> bytes:
    return base64.b64decode(data.encode("ascii"), validate=True)


def _check_key(key: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
        raise CryptoError(f"Encryption key must be {KEY_LENGTH} bytes")


def encrypt(plaintext: Any, key: bytes) -> EncryptedBlob:
    """
    Encrypt a JSON-serializable value with AES-256-GCM.

    Args:
        plaintext: Payload (dict, list, str, ...)
        key: 32-byte encryption key

    Returns:
        EncryptedBlob with a fresh random IV
    """
    _check_key(key)
    data = json.dumps(plaintext, separators=(",", ":")).encode("utf-8")

    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(bytes(key)).encrypt(iv, data, None)

    return EncryptedBlob(
        ciphertext=sealed[:-TAG_LENGTH],
        iv=iv,
        auth_tag=sealed[-TAG_LENGTH:],
    )


def decrypt(blob: Union[EncryptedBlob, Mapping[str, Any]], key: bytes) -> Any:
    """
    Decrypt and parse a payload sealed by :func:`encrypt`.

    Accepts an EncryptedBlob or its wire mapping.

    Raises:
        DecryptionError: on any failure (always "Decryption failed")
    """
    if not isinstance(blob, EncryptedBlob):
        blob = EncryptedBlob.from_wire(blob)

    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_LENGTH:
        raise DecryptionError()
    if len(blob.iv) not in (IV_LENGTH, LEGACY_IV_LENGTH) or len(blob.auth_tag) != TAG_LENGTH:
        raise DecryptionError()

    try:
        data = AESGCM(bytes(key)).decrypt(blob.iv, blob.ciphertext + blob.auth_tag, None)
        return json.loads(data.decode("utf-8"))
    except (InvalidTag, ValueError, UnicodeDecodeError):
        raise DecryptionError() from None
