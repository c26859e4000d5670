# Auth Module — Registration, Unlock, Lock, Logout
#
# Zero-knowledge login: the master password is stretched locally into an
# auth key and an encryption key.  Only base64(SHA-256(auth key)) and the
# salt are ever sent; the encryption key goes straight into the
# SessionHolder.
#
# The salt is cached in the local store at registration.  There is no
# server endpoint for fetching it, so a device that has never registered
# or unlocked this account must be given the salt explicitly.

import logging
from typing import Any, Dict, Optional, Union

from ..core.audit_log import AuditLogger, EventSeverity, EventType, get_audit_logger
from ..core.config import ClientSettings
from ..core.errors import AccountLockedError, AuthenticationError, ValidationError
from ..crypto.keys import KdfAlgorithm, MasterSecret, derive_keys
from ..crypto.password_gen import check_master_password
from ..sync.api_client import ApiClient
from ..vault.local_store import KV_KDF_ITERATIONS, KV_SALT, KV_USER_EMAIL, LocalStore
from ..vault.validation import ensure_valid, validate_email, validate_registration
from .session import SessionHolder

logger = logging.getLogger(__name__)


class AuthService:
    """Account registration and vault unlock/lock.

    Args:
        store: Local store (salt cache, device id, vault data to wipe on logout).
        api: Backend client; receives the tokens issued on login.
        session: Holder for the unlocked encryption key.
        settings: Client settings (KDF iterations, device name).
    """

    def __init__(
        self,
        store: LocalStore,
        api: ApiClient,
        session: SessionHolder,
        settings: Optional[ClientSettings] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.store = store
        self.api = api
        self.session = session
        self.settings = settings or ClientSettings()
        self._audit = audit

    @property
    def audit(self) -> AuditLogger:
        return self._audit or get_audit_logger()

    def has_registered(self) -> bool:
        return self.store.get_value(KV_SALT) is not None

    def stored_email(self) -> Optional[str]:
        return self.store.get_value(KV_USER_EMAIL)

    async def register(self, email: str, master_password: str) -> Dict[str, Any]:
        """
        Create the account on the server and unlock the vault.

        Raises:
            ValidationError: bad email or weak master password
            AuthenticationError: registration accepted but login refused

        Returns:
            Registration response body (userId, tokens)
        """
        email = (email or "").strip()
        ensure_valid(validate_email(email), "Invalid registration")
        ok, message = check_master_password(master_password or "")
        if not ok:
            raise ValidationError(message, [message])

        secret = derive_keys(
            master_password,
            iterations=self.settings.kdf_iterations,
            email=email,
        )
        payload = {
            "email": email,
            "authKey": secret.auth_key_hash,
            "salt": secret.salt_b64,
            "kdfIterations": secret.iterations,
            "kdfAlgorithm": KdfAlgorithm.PBKDF2.value,
        }
        ensure_valid(validate_registration(payload), "Invalid registration")

        data = await self.api.register(payload)
        self._cache_credentials(email, secret)

        self.audit.log_event(
            EventType.USER_REGISTERED,
            EventSeverity.INFO,
            "Account registered",
            details={"email": email, "kdf_iterations": secret.iterations},
        )

        await self._login(email, secret)
        return data

    async def unlock(
        self,
        email: str,
        master_password: str,
        salt: Optional[Union[bytes, str]] = None,
        iterations: Optional[int] = None,
    ) -> None:
        """
        Re-derive the keys, log in, and open the session.

        Args:
            email: Account email
            master_password: Master password
            salt: Salt to use instead of the cached one (first unlock on
                a new device)
            iterations: KDF iterations matching ``salt``

        Raises:
            AccountLockedError: server lockout after repeated failures
            AuthenticationError: wrong password or unknown account
        """
        email = (email or "").strip()
        if salt is None:
            cached_email = self.store.get_value(KV_USER_EMAIL)
            salt = self.store.get_value(KV_SALT)
            if salt is None or (cached_email and cached_email != email):
                raise AuthenticationError("No stored credentials for this account on this device")
            iterations = iterations or int(
                self.store.get_value(KV_KDF_ITERATIONS) or self.settings.kdf_iterations
            )

        secret = derive_keys(
            master_password or "",
            salt=salt,
            iterations=iterations or self.settings.kdf_iterations,
        )
        await self._login(email, secret)
        self._cache_credentials(email, secret)

    def lock(self) -> None:
        """Forget the key and tokens; local ciphertext stays."""
        self.session.close()
        self.api.clear_tokens()

    def logout(self) -> None:
        """Lock, then wipe the local vault, queue, cursor and cached credentials."""
        email = self.stored_email()
        self.lock()
        self.store.clear_all()
        self.store.clear_user_data()
        self.audit.log_event(
            EventType.USER_LOGOUT,
            EventSeverity.INFO,
            "Logged out, local data cleared",
            details={"email": email},
        )

    async def _login(self, email: str, secret: MasterSecret) -> None:
        payload = {
            "email": email,
            "authKey": secret.auth_key_hash,
            "deviceId": self.store.get_device_id(),
            "deviceName": self.settings.device_name,
        }
        try:
            await self.api.login(payload)
        except AccountLockedError:
            self.audit.log_event(
                EventType.USER_LOCKED_OUT,
                EventSeverity.ALERT,
                "Login refused: account temporarily locked",
                details={"email": email},
            )
            raise
        except AuthenticationError:
            self.audit.log_event(
                EventType.USER_LOGIN_FAILED,
                EventSeverity.INVESTIGATE,
                "Login failed",
                details={"email": email},
            )
            raise

        self.session.open(
            secret.encryption_key,
            self.api.access_token,
            self.api.refresh_token,
            email,
        )
        logger.info("Vault unlocked for %s", email)
        self.audit.log_event(
            EventType.USER_LOGIN,
            EventSeverity.INFO,
            "Login successful",
            details={"email": email, "device_id": payload["deviceId"]},
        )

    def _cache_credentials(self, email: str, secret: MasterSecret) -> None:
        self.store.set_value(KV_USER_EMAIL, email)
        self.store.set_value(KV_SALT, secret.salt_b64)
        self.store.set_value(KV_KDF_ITERATIONS, str(secret.iterations))
