# Core Module — Client Configuration
#
# Settings come from IFP_* environment variables, optionally seeded from a
# .env file in the working directory.  Defaults are safe for local
# development against a backend on localhost:3000.

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_API_BASE_URL = "http://localhost:3000"
API_PREFIX = "/api/v1"

# PBKDF2 parameters
DEFAULT_KDF_ITERATIONS = 100_000
MIN_KDF_ITERATIONS = 100_000

# Session + sync timing
DEFAULT_AUTO_LOCK_MINUTES = 15
DEFAULT_SYNC_INTERVAL_MINUTES = 5
DEFAULT_REQUEST_TIMEOUT = 30.0
MAX_QUEUE_RETRIES = 3

# Server-side lockout policy the client has to cope with
MAX_LOGIN_ATTEMPTS = 5
ACCOUNT_LOCKOUT_MINUTES = 30


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r, using %s", name, raw, default)
        return default


@dataclass
class ClientSettings:
    """Runtime settings for the vault client.

    Args:
        api_base_url: Backend origin, without the /api/v1 prefix.
        data_dir: Directory holding the local store (vault.db) and audit logs.
        kdf_iterations: PBKDF2 iterations used for new registrations.
        auto_lock_minutes: Inactivity window before the session clears itself.
        sync_interval_minutes: Period of the background sync scheduler.
        request_timeout: Per-request HTTP timeout in seconds.
        max_retries: Retry ceiling for offline queue entries.
        device_name: Human label sent with logins.
    """

    api_base_url: str = DEFAULT_API_BASE_URL
    data_dir: Path = field(default_factory=lambda: Path("data"))
    kdf_iterations: int = DEFAULT_KDF_ITERATIONS
    auto_lock_minutes: int = DEFAULT_AUTO_LOCK_MINUTES
    sync_interval_minutes: int = DEFAULT_SYNC_INTERVAL_MINUTES
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    max_retries: int = MAX_QUEUE_RETRIES
    device_name: str = "Python Client"

    def __post_init__(self):
        self.api_base_url = self.api_base_url.rstrip("/")
        self.data_dir = Path(self.data_dir)
        if self.kdf_iterations < MIN_KDF_ITERATIONS:
            logger.warning(
                "kdf_iterations=%d below minimum, raising to %d",
                self.kdf_iterations, MIN_KDF_ITERATIONS,
            )
            self.kdf_iterations = MIN_KDF_ITERATIONS

    @property
    def api_url(self) -> str:
        """Base URL including the versioned API prefix."""
        return f"{self.api_base_url}{API_PREFIX}"

    @property
    def store_path(self) -> Path:
        return self.data_dir / "vault.db"

    @property
    def audit_log_dir(self) -> Path:
        return self.data_dir / "audit_logs"

    @classmethod
    def from_env(cls, env_file: Optional[str] = None) -> "ClientSettings":
        """Build settings from IFP_* environment variables.

        A .env file (or ``env_file``) is loaded first; variables already
        present in the environment win.
        """
        load_dotenv(env_file or find_dotenv(usecwd=True), override=False)
        return cls(
            api_base_url=os.environ.get("IFP_API_BASE_URL", "") or DEFAULT_API_BASE_URL,
            data_dir=Path(os.environ.get("IFP_DATA_DIR", "") or "data"),
            kdf_iterations=_env_int("IFP_KDF_ITERATIONS", DEFAULT_KDF_ITERATIONS),
            auto_lock_minutes=_env_int("IFP_AUTO_LOCK_MINUTES", DEFAULT_AUTO_LOCK_MINUTES),
            sync_interval_minutes=_env_int("IFP_SYNC_INTERVAL_MINUTES", DEFAULT_SYNC_INTERVAL_MINUTES),
            request_timeout=_env_float("IFP_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT),
            max_retries=_env_int("IFP_MAX_RETRIES", MAX_QUEUE_RETRIES),
            device_name=os.environ.get("IFP_DEVICE_NAME", "") or "Python Client",
        )
