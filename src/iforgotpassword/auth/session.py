# Auth Module — Session Holder
#
# The only place the encryption key and access tokens live while the vault
# is unlocked.  Lifecycle: open() on unlock, close() on lock/logout, and an
# inactivity auto-lock after auto_lock_minutes.  Expiry is checked lazily on
# every access, so no timer thread is needed.
#
# Other contexts talk to it through handle_message(), a small request/response
# interface; the key only crosses that boundary as a base64 export.

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

from ..core.audit_log import AuditLogger, EventSeverity, EventType, get_audit_logger
from ..core.config import DEFAULT_AUTO_LOCK_MINUTES
from ..core.errors import CryptoError, ValidationError, VaultLockedError
from ..crypto.keys import export_key, import_key

logger = logging.getLogger(__name__)


class SessionHolder:
    """In-memory unlocked-session state with inactivity timeout.

    Args:
        auto_lock_minutes: Idle minutes before the session clears itself;
            0 disables auto-lock.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        auto_lock_minutes: float = DEFAULT_AUTO_LOCK_MINUTES,
        clock: Callable[[], float] = time.monotonic,
        audit: Optional[AuditLogger] = None,
    ):
        self.auto_lock_seconds = auto_lock_minutes * 60
        self._clock = clock
        self._audit = audit
        self._lock = threading.RLock()

        self._encryption_key: Optional[bytes] = None
        self._access_token: Optional[str] = None
        self._refresh_token: Optional[str] = None
        self._email: Optional[str] = None
        self._last_activity = 0.0

    @property
    def audit(self) -> AuditLogger:
        return self._audit or get_audit_logger()

    # ── Lifecycle ────────────────────────────────────────────────────

    def open(
        self,
        encryption_key: bytes,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        email: Optional[str] = None,
    ) -> None:
        export_key(encryption_key)  # length check
        with self._lock:
            self._encryption_key = encryption_key
            self._access_token = access_token
            self._refresh_token = refresh_token
            self._email = email
            self._last_activity = self._clock()
        self.audit.log_vault_event(EventType.VAULT_UNLOCKED, "session opened")

    def close(self) -> None:
        with self._lock:
            was_open = self._encryption_key is not None
            self._clear()
        if was_open:
            self.audit.log_vault_event(EventType.VAULT_LOCKED, "session closed")

    def set_tokens(self, access_token: Optional[str], refresh_token: Optional[str] = None) -> None:
        """Token rotation hook (wired to ApiClient.on_tokens_changed)."""
        with self._lock:
            self._access_token = access_token
            if refresh_token is not None:
                self._refresh_token = refresh_token

    def touch(self) -> None:
        """Reset the inactivity timer."""
        with self._lock:
            if self._check_expiry():
                self._last_activity = self._clock()

    # ── Accessors ────────────────────────────────────────────────────

    @property
    def is_unlocked(self) -> bool:
        with self._lock:
            return self._check_expiry()

    @property
    def encryption_key(self) -> bytes:
        """The unlocked encryption key.

        Raises:
            VaultLockedError: session closed or timed out
        """
        with self._lock:
            if not self._check_expiry():
                raise VaultLockedError()
            return self._encryption_key

    @property
    def access_token(self) -> Optional[str]:
        with self._lock:
            return self._access_token if self._check_expiry() else None

    @property
    def refresh_token(self) -> Optional[str]:
        with self._lock:
            return self._refresh_token if self._check_expiry() else None

    @property
    def email(self) -> Optional[str]:
        return self._email

    def seconds_until_lock(self) -> Optional[float]:
        with self._lock:
            if not self._check_expiry() or not self.auto_lock_seconds:
                return None
            return max(0.0, self.auto_lock_seconds - (self._clock() - self._last_activity))

    # ── Message interface ────────────────────────────────────────────

    def handle_message(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Answer a session request from another context.

        Supported types: GET_SESSION, SET_SESSION, VAULT_LOCKED,
        RESET_LOCK_TIMER.
        """
        msg_type = message.get("type") if isinstance(message, dict) else None

        if msg_type == "GET_SESSION":
            with self._lock:
                if not self._check_expiry():
                    return {"success": True, "session": None}
                return {
                    "success": True,
                    "session": {
                        "encryptionKey": export_key(self._encryption_key),
                        "accessToken": self._access_token,
                        "refreshToken": self._refresh_token,
                    },
                }

        if msg_type == "SET_SESSION":
            session = message.get("session") or {}
            try:
                return self._apply_session(session)
            except (CryptoError, ValidationError) as exc:
                return {"success": False, "error": str(exc)}

        if msg_type == "VAULT_LOCKED":
            self.close()
            return {"success": True}

        if msg_type == "RESET_LOCK_TIMER":
            self.touch()
            return {"success": True, "unlocked": self.is_unlocked}

        logger.debug("Ignoring unknown session message %r", msg_type)
        return {"success": False, "error": f"Unknown message type: {msg_type}"}

    def _apply_session(self, session: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(session, dict):
            raise ValidationError("session must be an object")

        encoded = session.get("encryptionKey")
        if encoded:
            self.open(
                import_key(encoded),
                session.get("accessToken"),
                session.get("refreshToken"),
                session.get("email"),
            )
            return {"success": True}

        with self._lock:
            if not self._check_expiry():
                raise ValidationError("No open session to update")
            if "accessToken" in session:
                self._access_token = session["accessToken"]
            if "refreshToken" in session:
                self._refresh_token = session["refreshToken"]
            self._last_activity = self._clock()
        return {"success": True}

    # ── Internals ────────────────────────────────────────────────────

    def _check_expiry(self) -> bool:
        """True while open; clears the session once the idle window passes."""
        if self._encryption_key is None:
            return False
        if self.auto_lock_seconds and self._clock() - self._last_activity >= self.auto_lock_seconds:
            self._clear()
            logger.info("Vault auto-locked after %d minutes of inactivity", self.auto_lock_seconds // 60)
            self.audit.log_event(
                EventType.VAULT_AUTO_LOCKED,
                EventSeverity.INFO,
                "Vault auto-locked due to inactivity",
            )
            return False
        return True

    def _clear(self) -> None:
        self._encryption_key = None
        self._access_token = None
        self._refresh_token = None
        self._email = None
        self._last_activity = 0.0
