# iforgotpassword - Zero-Knowledge Password Manager Client Core
#
# Client-side half of a zero-knowledge vault: key derivation and item
# encryption, the login key exchange, an offline-first local store, the
# sync engine that reconciles it with the server, and autofill matching.
# The server only ever sees ciphertext and a hash of the auth key.

__version__ = "0.1.0"
__author__ = "iForgotPassword Team"
__description__ = "Zero-knowledge password manager client core"

from .core import (
    ClientSettings,
    EventSeverity,
    EventType,
    VaultError,
    get_audit_logger,
)

__all__ = [
    "__version__",
    "ClientSettings",
    "EventType",
    "EventSeverity",
    "VaultError",
    "get_audit_logger",
]
