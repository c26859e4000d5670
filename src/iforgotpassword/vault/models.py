# Vault Module — Data Models
#
# Stored/wire records (VaultItem, SyncQueueItem, SyncMetadata, SyncConflict)
# and the decrypted payload types, one dataclass per item type.
#
# Wire dicts use the server's camelCase field names; Python attributes are
# snake_case.  Timestamps are timezone-aware UTC datetimes in memory and
# ISO-8601 strings ("...Z", millisecond precision) on disk and on the wire.

import secrets
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from ..core.errors import ValidationError


class ItemType(str, Enum):
    LOGIN = "login"
    CARD = "card"
    NOTE = "note"
    IDENTITY = "identity"


class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class ConflictType(str, Enum):
    VERSION = "version"
    DELETED = "deleted"


TEMP_ID_PREFIX = "temp_"


# ----------------------------------------------------------------------
# Timestamp helpers
# ----------------------------------------------------------------------

def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_ms() -> int:
    return int(time.time() * 1000)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: Union[str, datetime, int, float, None]) -> Optional[datetime]:
    """Parse ISO-8601 (with or without "Z") or epoch milliseconds."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as e:
        raise ValidationError(f"Invalid timestamp: {value!r}") from e
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def is_temp_id(item_id: str) -> bool:
    return item_id.startswith(TEMP_ID_PREFIX)


def make_temp_id() -> str:
    # ms timestamp plus a short random tail; two creates can share a millisecond
    return f"{TEMP_ID_PREFIX}{now_ms()}-{secrets.token_hex(2)}"


# ----------------------------------------------------------------------
# Stored records
# ----------------------------------------------------------------------

@dataclass
class VaultItem:
    """One encrypted vault entry as held by the server and the local store.

    ``version`` is assigned by the server; the only version a client ever
    writes on its own is 1, for a brand-new local item.
    """

    id: str
    encrypted_data: str
    iv: str
    auth_tag: str
    item_type: ItemType = ItemType.LOGIN
    user_id: str = ""
    encrypted_key: str = ""
    url_domain: Optional[str] = None
    folder_id: Optional[str] = None
    version: int = 1
    last_modified_at: datetime = field(default_factory=utcnow)
    last_modified_by: str = ""
    deleted_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        self.item_type = ItemType(self.item_type)
        if self.version < 1:
            raise ValidationError(f"Item version must be >= 1, got {self.version}")

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def blob(self) -> Dict[str, str]:
        """Ciphertext fields in the form crypto.envelope.decrypt() accepts."""
        return {
            "encryptedData": self.encrypted_data,
            "iv": self.iv,
            "authTag": self.auth_tag,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "encryptedData": self.encrypted_data,
            "encryptedKey": self.encrypted_key,
            "iv": self.iv,
            "authTag": self.auth_tag,
            "itemType": self.item_type.value,
            "urlDomain": self.url_domain,
            "folderId": self.folder_id,
            "version": self.version,
            "lastModifiedAt": format_timestamp(self.last_modified_at),
            "lastModifiedBy": self.last_modified_by,
            "deletedAt": format_timestamp(self.deleted_at),
            "createdAt": format_timestamp(self.created_at),
            "updatedAt": format_timestamp(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VaultItem":
        """Build from a wire dict. Missing timestamps default to now."""
        try:
            now = utcnow()
            return cls(
                id=str(data["id"]),
                user_id=data.get("userId") or "",
                encrypted_data=data["encryptedData"],
                encrypted_key=data.get("encryptedKey") or "",
                iv=data["iv"],
                auth_tag=data["authTag"],
                item_type=ItemType(data.get("itemType") or ItemType.LOGIN),
                url_domain=data.get("urlDomain"),
                folder_id=data.get("folderId"),
                version=int(data.get("version") or 1),
                last_modified_at=parse_timestamp(data.get("lastModifiedAt")) or now,
                last_modified_by=data.get("lastModifiedBy") or "",
                deleted_at=parse_timestamp(data.get("deletedAt")),
                created_at=parse_timestamp(data.get("createdAt")) or now,
                updated_at=parse_timestamp(data.get("updatedAt")) or now,
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ValidationError(f"Malformed vault item: {e}") from e


@dataclass
class SyncQueueItem:
    """A pending local change waiting to be pushed."""

    action: SyncAction
    item_id: str
    item_data: Optional[Dict[str, Any]] = None
    timestamp: int = field(default_factory=now_ms)
    retry_count: int = 0
    id: str = ""

    def __post_init__(self):
        self.action = SyncAction(self.action)
        if not self.id:
            self.id = f"{self.action.value}_{self.item_id}_{self.timestamp}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action.value,
            "itemId": self.item_id,
            "itemData": self.item_data,
            "timestamp": self.timestamp,
            "retryCount": self.retry_count,
        }


@dataclass
class SyncMetadata:
    device_id: str
    last_sync_version: int = 0
    last_sync_timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "lastSyncVersion": self.last_sync_version,
            "lastSyncTimestamp": format_timestamp(self.last_sync_timestamp),
        }


@dataclass
class SyncConflict:
    """Transient record of a divergence between the local and remote copy."""

    item_id: str
    local_version: int
    remote_version: int
    remote_item: Optional[VaultItem] = None
    local_item: Optional[VaultItem] = None
    conflict_type: ConflictType = ConflictType.VERSION

    def to_dict(self) -> Dict[str, Any]:
        # ciphertext stays out of the audit trail
        return {
            "itemId": self.item_id,
            "localVersion": self.local_version,
            "remoteVersion": self.remote_version,
            "conflictType": ConflictType(self.conflict_type).value,
        }


# ----------------------------------------------------------------------
# Decrypted payloads
# ----------------------------------------------------------------------

def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _snake(name: str) -> str:
    return "".join("_" + c.lower() if c.isupper() else c for c in name)


class _Payload:
    """Shared (de)serialization for the payload dataclasses."""

    item_type: ItemType

    def to_dict(self) -> Dict[str, Any]:
        return {
            _camel(k): v for k, v in asdict(self).items()
            if v is not None and v != []
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        known = set(cls.__dataclass_fields__)
        kwargs = {}
        for key, value in data.items():
            name = _snake(key)
            if name in known:
                kwargs[name] = value
        try:
            return cls(**kwargs)
        except TypeError as e:
            raise ValidationError(f"Malformed {cls.item_type.value} payload: {e}") from e


@dataclass
class CustomField:
    name: str
    value: str
    type: str = "text"  # text | password | email | url
    hidden: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class LoginPayload(_Payload):
    title: str
    username: str
    password: str
    url: Optional[str] = None
    notes: Optional[str] = None
    custom_fields: List[CustomField] = field(default_factory=list)
    folder_id: Optional[str] = None

    item_type = ItemType.LOGIN

    def __post_init__(self):
        self.custom_fields = [
            f if isinstance(f, CustomField) else CustomField(**f)
            for f in self.custom_fields or []
        ]


@dataclass
class CardPayload(_Payload):
    title: str
    cardholder_name: str
    card_number: str
    expiry_month: str
    expiry_year: str
    cvv: str
    notes: Optional[str] = None
    folder_id: Optional[str] = None

    item_type = ItemType.CARD


@dataclass
class NotePayload(_Payload):
    title: str
    content: str
    folder_id: Optional[str] = None

    item_type = ItemType.NOTE


@dataclass
class IdentityPayload(_Payload):
    title: str
    first_name: str
    last_name: str
    middle_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    notes: Optional[str] = None
    folder_id: Optional[str] = None

    item_type = ItemType.IDENTITY


Payload = Union[LoginPayload, CardPayload, NotePayload, IdentityPayload]

_PAYLOAD_TYPES = {
    ItemType.LOGIN: LoginPayload,
    ItemType.CARD: CardPayload,
    ItemType.NOTE: NotePayload,
    ItemType.IDENTITY: IdentityPayload,
}


def payload_from_dict(item_type: Union[ItemType, str], data: Dict[str, Any]) -> Payload:
    """Rebuild the typed payload for ``item_type`` from decrypted JSON."""
    try:
        kind = ItemType(item_type)
    except ValueError as e:
        raise ValidationError(f"Unknown item type: {item_type!r}") from e
    if not isinstance(data, dict):
        raise ValidationError(f"{kind.value} payload must be an object")
    return _PAYLOAD_TYPES[kind].from_dict(data)


@dataclass
class DecryptedItem:
    """A vault item together with its decrypted payload."""
    id: str
    item_type: ItemType
    data: Payload
    version: int
    created_at: datetime
    updated_at: datetime
