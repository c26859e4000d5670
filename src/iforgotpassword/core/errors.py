"""
iforgotpassword Exception Classes

Every failure the client can surface maps onto one of these.  Messages
for authentication and decryption failures are deliberately generic:
they must not tell a caller *why* a password or ciphertext was rejected.
"""

from typing import List, Optional


class VaultError(Exception):
    """Base exception for all client-side vault operations"""
    pass


class ValidationError(VaultError):
    """Raised when a request or payload is malformed"""

    def __init__(self, message: str = "Validation failed", errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors or []


class AuthenticationError(VaultError):
    """Raised on bad credentials or an invalid token.

    Never distinguishes "wrong password" from "no such user".
    """

    def __init__(self, message: str = "Invalid email or password"):
        super().__init__(message)


class AccountLockedError(AuthenticationError):
    """Raised when the server has locked the account after repeated failures"""

    def __init__(self, message: str = "Account temporarily locked", retry_after: Optional[int] = None):
        super().__init__(message)
        self.retry_after = retry_after


class SessionExpiredError(AuthenticationError):
    """Raised when the access token expired and could not be refreshed"""

    def __init__(self, message: str = "Session expired. Please login again."):
        super().__init__(message)


class ConflictError(VaultError):
    """Raised on an optimistic-lock version mismatch"""

    def __init__(self, item_id: str, local_version: int, remote_version: int):
        super().__init__(
            f"Version conflict on {item_id}: local={local_version} remote={remote_version}"
        )
        self.item_id = item_id
        self.local_version = local_version
        self.remote_version = remote_version


class CryptoError(VaultError):
    """Raised when key material has the wrong shape (length, split)"""
    pass


class DecryptionError(CryptoError):
    """Raised on any decryption failure. The message is always the same."""

    def __init__(self):
        super().__init__("Decryption failed")


class NetworkError(VaultError):
    """Raised when the server cannot be reached (offline, DNS, timeout)"""
    pass


class ApiError(VaultError):
    """Raised when the server answers with a non-auth error status"""

    def __init__(self, message: str, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class ItemNotFoundError(VaultError):
    """Raised when a vault item is missing from the local store"""
    pass


class VaultLockedError(VaultError):
    """Raised when an operation needs the encryption key but the vault is locked"""
    pass


class AutofillBlockedError(VaultError):
    """Raised when autofill is requested from an insecure or foreign context"""
    pass


class QueueExhaustedError(VaultError):
    """Describes a queue entry abandoned after the retry ceiling.

    Reported through SyncReport.dropped and the audit log; not raised by
    the sync engine.
    """

    def __init__(self, queue_id: str, retry_count: int):
        super().__init__(f"Queue item {queue_id} abandoned after {retry_count} retries")
        self.queue_id = queue_id
        self.retry_count = retry_count
