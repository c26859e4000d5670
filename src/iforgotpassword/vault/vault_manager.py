# Vault Module — Vault Item Service
#
# Encrypt + store + sync for individual vault items.
#
# Every mutation lands in the local store first; the server is told
# afterwards through the /vault/items endpoints, and the version it assigns
# is stored back on the item.
# If the server can't be reached the change is queued and the next
# full_sync delivers it.  Items created offline get a temp_ id that is
# remapped once the server assigns the real one.

import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Any, List, Optional

from ..autofill.domains import extract_domain
from ..core import EventSeverity, EventType, get_audit_logger
from ..core.audit_log import AuditLogger
from ..core.errors import (
    ApiError,
    ConflictError,
    DecryptionError,
    ItemNotFoundError,
    ValidationError,
    VaultError,
)
from ..crypto.envelope import decrypt, encrypt
from .local_store import LocalStore
from .models import (
    DecryptedItem,
    LoginPayload,
    Payload,
    SyncAction,
    VaultItem,
    format_timestamp,
    is_temp_id,
    make_temp_id,
    payload_from_dict,
    utcnow,
)
from .validation import ensure_valid, validate_payload

if TYPE_CHECKING:
    from ..sync.api_client import ApiClient
    from ..sync.engine import SyncEngine

logger = logging.getLogger(__name__)


class VaultService:
    """
    Client-side CRUD over encrypted vault items.

    Security:
    - Payloads are encrypted before they touch the store or the network
    - The encryption key is passed per call, never kept on the service
    - Audit logging records ids and types only, never payload fields
    """

    def __init__(
        self,
        store: LocalStore,
        api: "ApiClient",
        engine: "SyncEngine",
        *,
        audit: Optional[AuditLogger] = None,
    ):
        self.store = store
        self.api = api
        self.engine = engine
        self.device_id = engine.device_id
        self._audit = audit

    @property
    def audit(self) -> AuditLogger:
        return self._audit or get_audit_logger()

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    def get_all_items(self, encryption_key: bytes) -> List[DecryptedItem]:
        """Decrypt every live item. Items that fail to decrypt are skipped."""
        items = []
        for item in self.store.get_all():
            try:
                items.append(self._decrypt_item(item, encryption_key))
            except (DecryptionError, ValidationError) as exc:
                logger.warning("Skipping item %s: %s", item.id, exc)
                self.audit.log_event(
                    EventType.VAULT_DECRYPT_FAILED,
                    EventSeverity.INVESTIGATE,
                    "Vault: item skipped, decryption failed",
                    details={"item_id": item.id, "item_type": item.item_type.value},
                )
        return items

    def get_item(self, item_id: str, encryption_key: bytes) -> DecryptedItem:
        """Decrypt one live item.

        Raises:
            ItemNotFoundError: unknown or deleted id
            DecryptionError: wrong key or corrupted ciphertext
        """
        item = self.store.get(item_id)
        if item is None or item.is_deleted:
            raise ItemNotFoundError(f"Vault item {item_id} not found")
        return self._decrypt_item(item, encryption_key)

    # ------------------------------------------------------------------
    # Write
    # ------------------------------------------------------------------

    async def create_item(self, payload: Payload, encryption_key: bytes) -> DecryptedItem:
        """Encrypt and store a new item, creating it on the server if possible.

        When the server is unreachable the item is kept under a temporary
        id and a create is queued.
        """
        ensure_valid(validate_payload(payload), "Invalid vault item")

        blob = encrypt(payload.to_dict(), encryption_key).to_wire()
        item_type = payload.item_type
        url_domain = self._url_domain(payload)
        folder_id = getattr(payload, "folder_id", None)
        now = utcnow()

        request = {
            **blob,
            "encryptedKey": "",
            "itemType": item_type.value,
            "urlDomain": url_domain,
            "folderId": folder_id,
            "lastModifiedAt": format_timestamp(now),
        }

        item_id = None
        version = 1
        if self.engine.is_online():
            try:
                response = await self.api.create_item(request)
                item_id = str(response["id"])
                version = int(response.get("version") or 1)
            except ValidationError:
                raise
            except (VaultError, KeyError, TypeError, ValueError) as exc:
                logger.info("Server create failed (%s), saving offline", exc)

        item = VaultItem(
            id=item_id or make_temp_id(),
            encrypted_data=blob["encryptedData"],
            iv=blob["iv"],
            auth_tag=blob["authTag"],
            item_type=item_type,
            url_domain=url_domain,
            folder_id=folder_id,
            version=version,
            last_modified_at=now,
            last_modified_by=self.device_id,
            created_at=now,
            updated_at=now,
        )
        self.store.upsert(item)

        if item_id is None:
            self.engine.queue_change(SyncAction.CREATE, item.id)

        self.audit.log_vault_event(
            EventType.VAULT_ITEM_CREATED,
            "item created" + (" offline" if item_id is None else ""),
            details={"item_id": item.id, "item_type": item_type.value},
        )
        return DecryptedItem(
            id=item.id,
            item_type=item_type,
            data=payload,
            version=item.version,
            created_at=item.created_at,
            updated_at=item.updated_at,
        )

    async def update_item(
        self,
        item_id: str,
        payload: Payload,
        encryption_key: bytes,
        expected_version: Optional[int] = None,
    ) -> DecryptedItem:
        """Re-encrypt an existing item and push the change.

        Args:
            expected_version: Version the caller last saw; a mismatch with
                the local copy raises ConflictError instead of overwriting.
        """
        ensure_valid(validate_payload(payload), "Invalid vault item")

        local = self.store.get(item_id)
        if local is None or local.is_deleted:
            raise ItemNotFoundError(f"Vault item {item_id} not found")
        if expected_version is not None and expected_version != local.version:
            raise ConflictError(item_id, expected_version, local.version)
        if payload.item_type != local.item_type:
            raise ValidationError(
                f"Cannot change item type from {local.item_type.value} to {payload.item_type.value}"
            )

        blob = encrypt(payload.to_dict(), encryption_key).to_wire()
        now = utcnow()
        updated = replace(
            local,
            encrypted_data=blob["encryptedData"],
            iv=blob["iv"],
            auth_tag=blob["authTag"],
            url_domain=self._url_domain(payload),
            folder_id=getattr(payload, "folder_id", None),
            last_modified_at=now,
            last_modified_by=self.device_id,
            updated_at=now,
        )
        self.store.upsert(updated)

        if self._can_send_direct(item_id):
            request = {
                **blob,
                "encryptedKey": updated.encrypted_key,
                "itemType": updated.item_type.value,
                "urlDomain": updated.url_domain,
                "folderId": updated.folder_id,
                "lastModifiedAt": format_timestamp(now),
                "lastModifiedBy": self.device_id,
                "version": local.version,
            }
            try:
                response = await self.api.update_item(item_id, request)
                self._store_server_version(item_id, response)
            except (VaultError, KeyError, TypeError, ValueError) as exc:
                logger.info("Server update of %s failed (%s), queuing", item_id, exc)
                self.engine.queue_change(SyncAction.UPDATE, item_id)
        else:
            # offline, or riding on a queued create/update that sends this body
            self.engine.queue_change(SyncAction.UPDATE, item_id)

        current = self.store.get(item_id) or updated
        self.audit.log_vault_event(
            EventType.VAULT_ITEM_UPDATED,
            "item updated",
            details={"item_id": item_id, "version": current.version},
        )
        return DecryptedItem(
            id=current.id,
            item_type=current.item_type,
            data=payload,
            version=current.version,
            created_at=current.created_at,
            updated_at=current.updated_at,
        )

    async def delete_item(self, item_id: str) -> None:
        """Tombstone an item locally and propagate the delete."""
        local = self.store.get(item_id)
        if local is None or local.is_deleted:
            raise ItemNotFoundError(f"Vault item {item_id} not found")

        direct = self._can_send_direct(item_id)
        self.store.soft_delete(item_id)
        if direct:
            try:
                response = await self.api.delete_item(item_id)
                self._store_server_version(item_id, response)
            except ApiError as exc:
                if exc.status_code != 404:
                    logger.info("Server delete of %s failed (%s), queuing", item_id, exc)
                    self.engine.queue_change(SyncAction.DELETE, item_id)
            except (VaultError, KeyError, TypeError, ValueError) as exc:
                logger.info("Server delete of %s failed (%s), queuing", item_id, exc)
                self.engine.queue_change(SyncAction.DELETE, item_id)
        else:
            self.engine.queue_change(SyncAction.DELETE, item_id)

        self.audit.log_vault_event(
            EventType.VAULT_ITEM_DELETED,
            "item deleted",
            details={"item_id": item_id},
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _can_send_direct(self, item_id: str) -> bool:
        """A server-known item with nothing queued ahead of it, while online."""
        return (
            not is_temp_id(item_id)
            and self.engine.is_online()
            and not self.engine.has_pending_changes(item_id)
        )

    def _store_server_version(self, item_id: str, response: Any) -> None:
        """Adopt the version the server assigned to our write."""
        version = response["version"]
        if isinstance(version, bool) or not isinstance(version, int):
            raise ValueError(f"bad version {version!r}")
        current = self.store.get(item_id)
        if current is not None:
            self.store.upsert(replace(current, version=version))

    @staticmethod
    def _url_domain(payload: Payload) -> Optional[str]:
        if isinstance(payload, LoginPayload) and payload.url:
            return extract_domain(payload.url)
        return None

    @staticmethod
    def _decrypt_item(item: VaultItem, encryption_key: bytes) -> DecryptedItem:
        data = decrypt(item.blob, encryption_key)
        return DecryptedItem(
            id=item.id,
            item_type=item.item_type,
            data=payload_from_dict(item.item_type, data),
            version=item.version,
            created_at=item.created_at,
            updated_at=item.updated_at,
        )
