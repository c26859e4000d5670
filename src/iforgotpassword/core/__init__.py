# Core Module - Shared Utilities
#
# Core module provides shared functionality across all iforgotpassword modules:
# - Audit logging
# - Configuration
# - Exception taxonomy
# - SQLite connection helper

from .audit_log import (
    AuditLogger,
    EventSeverity,
    EventType,
    get_audit_logger,
    log_security_event,
    set_audit_logger,
)
from .config import ClientSettings
from .errors import (
    AccountLockedError,
    ApiError,
    AuthenticationError,
    AutofillBlockedError,
    ConflictError,
    CryptoError,
    DecryptionError,
    ItemNotFoundError,
    NetworkError,
    QueueExhaustedError,
    SessionExpiredError,
    ValidationError,
    VaultError,
    VaultLockedError,
)

__all__ = [
    # Audit Logging
    "AuditLogger",
    "EventType",
    "EventSeverity",
    "get_audit_logger",
    "set_audit_logger",
    "log_security_event",
    # Configuration
    "ClientSettings",
    # Errors
    "VaultError",
    "ValidationError",
    "AuthenticationError",
    "AccountLockedError",
    "SessionExpiredError",
    "ConflictError",
    "CryptoError",
    "DecryptionError",
    "NetworkError",
    "ApiError",
    "ItemNotFoundError",
    "VaultLockedError",
    "AutofillBlockedError",
    "QueueExhaustedError",
]
