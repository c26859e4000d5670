# Vault Module - encrypted item storage
#
# - models: wire/storage records and typed decrypted payloads
# - local_store: SQLite cache of ciphertext, offline queue, sync cursor
# - validation: payload and request validators
# - vault_manager: encrypt + store + sync service for items

from .local_store import LocalStore
from .models import (
    CardPayload,
    CustomField,
    DecryptedItem,
    IdentityPayload,
    ItemType,
    LoginPayload,
    NotePayload,
    SyncAction,
    SyncConflict,
    SyncMetadata,
    SyncQueueItem,
    VaultItem,
)
from .vault_manager import VaultService

__all__ = [
    "LocalStore",
    "VaultService",
    "VaultItem",
    "ItemType",
    "SyncAction",
    "SyncQueueItem",
    "SyncMetadata",
    "SyncConflict",
    "DecryptedItem",
    "LoginPayload",
    "CardPayload",
    "NotePayload",
    "IdentityPayload",
    "CustomField",
]
