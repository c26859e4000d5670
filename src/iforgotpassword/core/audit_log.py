# Core Module — Audit Logging
#
# Append-only, structured audit trail for security-relevant client events:
# unlock/lock, logins, sync passes, resolved conflicts, abandoned queue
# entries and blocked autofill requests.
#
# Never pass key material, passwords or decrypted payloads in `details`.
# Item ids, versions, counts and domains are fine.

import json
import logging
import os
import socket
import sys
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union
from uuid import uuid4

import structlog

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of events that can be logged."""

    # Vault Events
    VAULT_UNLOCKED = "vault.unlocked"
    VAULT_LOCKED = "vault.locked"
    VAULT_AUTO_LOCKED = "vault.auto_locked"
    VAULT_ITEM_CREATED = "vault.item.created"
    VAULT_ITEM_UPDATED = "vault.item.updated"
    VAULT_ITEM_DELETED = "vault.item.deleted"
    VAULT_DECRYPT_FAILED = "vault.decrypt.failed"
    VAULT_ERROR = "vault.error"

    # Auth Events
    USER_REGISTERED = "user.registered"
    USER_LOGIN = "user.login"
    USER_LOGIN_FAILED = "user.login.failed"
    USER_LOCKED_OUT = "user.locked_out"
    USER_LOGOUT = "user.logout"

    # Sync Events
    SYNC_STARTED = "sync.started"
    SYNC_COMPLETED = "sync.completed"
    SYNC_FAILED = "sync.failed"
    SYNC_OFFLINE = "sync.offline"
    SYNC_CONFLICT_RESOLVED = "sync.conflict.resolved"
    SYNC_QUEUE_ABANDONED = "sync.queue.abandoned"
    SYNC_ID_REMAPPED = "sync.id.remapped"

    # Autofill Events
    AUTOFILL_MATCHED = "autofill.matched"
    AUTOFILL_BLOCKED = "autofill.blocked"


class EventSeverity(str, Enum):
    """
    Severity levels for audit events.

    - INFO: Normal activity
    - INVESTIGATE: Something unusual worth a look (conflicts, decrypt skips)
    - ALERT: A safety mechanism fired (lockout, blocked autofill, dropped data)
    - CRITICAL: Data may be lost or corrupted
    """
    INFO = "info"
    INVESTIGATE = "investigate"
    ALERT = "alert"
    CRITICAL = "critical"


class AuditLogger:
    """
    Append-only audit logger for vault and sync events.

    Features:
    - Structured JSON logging (structlog)
    - Automatic timestamp and event ID
    - Device context capture
    - One log file per day under ``log_dir``
    """

    def __init__(self, log_dir: Optional[Path] = None):
        """
        Initialize audit logger.

        Args:
            log_dir: Directory for audit logs (default: ./data/audit_logs)
        """
        self.log_dir = Path(log_dir) if log_dir else Path("./data/audit_logs")
        self.log_dir.mkdir(parents=True, exist_ok=True)

        structlog.configure(
            processors=[
                structlog.stdlib.add_log_level,
                structlog.stdlib.add_logger_name,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer()
            ],
            wrapper_class=structlog.stdlib.BoundLogger,
            context_class=dict,
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )

        self._setup_file_handler()

        self.logger = structlog.get_logger("iforgotpassword.audit")

    def _setup_file_handler(self):
        """Attach a daily file handler to the audit logger."""
        today = datetime.now().strftime("%Y-%m-%d")
        log_file = self.log_dir / f"audit_{today}.log"

        file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter('%(message)s'))  # structlog handles formatting

        audit_logger = logging.getLogger("iforgotpassword.audit")
        audit_logger.addHandler(file_handler)
        audit_logger.setLevel(logging.INFO)
        self._file_handler = file_handler

    def close(self) -> None:
        """Detach and close the file handler."""
        logging.getLogger("iforgotpassword.audit").removeHandler(self._file_handler)
        self._file_handler.close()

    def log_event(
        self,
        event_type: EventType,
        severity: EventSeverity,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        device_context: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Log an audit event (append-only).

        Args:
            event_type: Type of event (from EventType enum)
            severity: Severity level (from EventSeverity enum)
            message: Human-readable event description
            details: Additional event details (no secrets)
            device_context: Device context (device_id, hostname, ...)

        Returns:
            str: Event ID (UUID) for reference
        """
        event_id = str(uuid4())

        event_data = {
            "event_id": event_id,
            "event_type": event_type.value,
            "severity": severity.value,
            "message": message,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "details": details or {},
            "device_context": device_context or self._get_default_device_context(),
        }

        self.logger.info("audit_event", **event_data)

        return event_id

    def log_sync_event(
        self,
        event_type: EventType,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        severity: EventSeverity = EventSeverity.INFO,
    ) -> str:
        """Log a sync engine event."""
        return self.log_event(
            event_type=event_type,
            severity=severity,
            message=f"Sync: {message}",
            details=details
        )

    def log_vault_event(
        self,
        event_type: EventType,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Log a Vault event.

        Args:
            event_type: Type of Vault event
            message: Event description
            details: Additional details (never log actual passwords!)

        Returns:
            str: Event ID
        """
        return self.log_event(
            event_type=event_type,
            severity=EventSeverity.INFO,
            message=f"Vault: {message}",
            details=details
        )

    def query_events(
        self,
        event_types: Optional[Iterable[Union[EventType, str]]] = None,
        severity: Optional[EventSeverity] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        limit: Optional[int] = 100
    ) -> List[Dict[str, Any]]:
        """
        Read events back from the daily log files, oldest first.

        Args:
            event_types: Keep only these event types
            severity: Keep only this severity
            start_time: Keep events at or after this time (naive means UTC)
            end_time: Keep events at or before this time (naive means UTC)
            limit: Return at most this many of the newest matches (None: all)

        Returns:
            list: Event records as written by log_event()
        """
        wanted = {getattr(t, "value", t) for t in event_types} if event_types else None
        start = _as_utc(start_time)
        end = _as_utc(end_time)

        events: List[Dict[str, Any]] = []
        for log_file in sorted(self.log_dir.glob("audit_*.log")):
            with open(log_file, encoding="utf-8") as fh:
                for line_no, line in enumerate(fh, 1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        record = json.loads(line)
                    except json.JSONDecodeError:
                        logger.debug("Unreadable audit line %s:%d", log_file.name, line_no)
                        continue
                    if "event_id" not in record:
                        continue
                    if wanted is not None and record.get("event_type") not in wanted:
                        continue
                    if severity is not None and record.get("severity") != severity.value:
                        continue
                    if start or end:
                        stamp = _parse_stamp(record.get("timestamp"))
                        if stamp is None:
                            continue
                        if (start and stamp < start) or (end and stamp > end):
                            continue
                    events.append(record)

        if limit is not None:
            events = events[-limit:] if limit > 0 else []
        return events

    def _get_default_device_context(self) -> Dict[str, Any]:
        """Get default device context (OS user, hostname, platform)."""
        return {
            "os_user": os.getenv("USERNAME") or os.getenv("USER"),
            "hostname": socket.gethostname(),
            "platform": sys.platform,
        }


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_stamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        return _as_utc(datetime.fromisoformat(value))
    except ValueError:
        return None


# Global logger instance
_audit_logger: Optional[AuditLogger] = None


def get_audit_logger() -> AuditLogger:
    """Get global audit logger (singleton pattern)."""
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = AuditLogger()
    return _audit_logger


def set_audit_logger(instance: Optional[AuditLogger]) -> None:
    """Replace the global audit logger (for testing or custom log dirs)."""
    global _audit_logger
    _audit_logger = instance


def log_security_event(
    event_type: EventType,
    severity: EventSeverity,
    message: str,
    **kwargs
) -> str:
    """
    Convenience function for logging audit events.

    Usage:
        log_security_event(
            EventType.AUTOFILL_BLOCKED,
            EventSeverity.ALERT,
            "Autofill refused on non-HTTPS page",
            details={"domain": "example.com"}
        )
    """
    return get_audit_logger().log_event(event_type, severity, message, **kwargs)
