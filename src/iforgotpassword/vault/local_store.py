# Vault Module — Local Encrypted Store
#
# SQLite-backed, device-local copy of the vault plus the offline change
# queue and sync cursor.  Only ciphertext is ever written here.
#
# Tables:
#   vault_items    encrypted items, tombstones included (deleted_at set)
#   sync_queue     pending local changes, oldest first
#   sync_metadata  one row per device: last pulled sync version
#   kv             cached user data (email, salt, KDF iterations, device id)
#   schema_version applied migration level
#
# Design:
#   - WAL + @contextmanager connections + threading.RLock
#   - Every public write is one transaction

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from ..core.db import apply_migrations, connect as db_connect
from ..core.db import schema_version as read_schema_version
from ..core.errors import ItemNotFoundError
from .models import (
    ItemType,
    SyncAction,
    SyncMetadata,
    SyncQueueItem,
    TEMP_ID_PREFIX,
    VaultItem,
    format_timestamp,
    parse_timestamp,
    utcnow,
)

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path("data/vault.db")

# Keys in the kv table
KV_DEVICE_ID = "device_id"
KV_USER_EMAIL = "user_email"
KV_SALT = "salt"
KV_KDF_ITERATIONS = "kdf_iterations"

_USER_DATA_KEYS = (KV_USER_EMAIL, KV_SALT, KV_KDF_ITERATIONS)

# Additive migrations, applied in order.  Never edit a released entry.
_MIGRATIONS = [
    (1, [
        """
        CREATE TABLE IF NOT EXISTS vault_items (
            id               TEXT PRIMARY KEY,
            user_id          TEXT NOT NULL DEFAULT '',
            encrypted_data   TEXT NOT NULL,
            encrypted_key    TEXT NOT NULL DEFAULT '',
            iv               TEXT NOT NULL,
            auth_tag         TEXT NOT NULL,
            item_type        TEXT NOT NULL,
            url_domain       TEXT DEFAULT NULL,
            folder_id        TEXT DEFAULT NULL,
            version          INTEGER NOT NULL DEFAULT 1,
            last_modified_at TEXT NOT NULL,
            last_modified_by TEXT NOT NULL DEFAULT '',
            deleted_at       TEXT DEFAULT NULL,
            created_at       TEXT NOT NULL,
            updated_at       TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS sync_queue (
            id          TEXT PRIMARY KEY,
            action      TEXT NOT NULL,
            item_id     TEXT NOT NULL,
            item_data   TEXT DEFAULT NULL,
            timestamp   INTEGER NOT NULL,
            retry_count INTEGER NOT NULL DEFAULT 0
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS sync_metadata (
            device_id           TEXT PRIMARY KEY,
            last_sync_version   INTEGER NOT NULL DEFAULT 0,
            last_sync_timestamp TEXT DEFAULT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_items_domain ON vault_items(url_domain)",
        "CREATE INDEX IF NOT EXISTS idx_items_deleted ON vault_items(deleted_at)",
        "CREATE INDEX IF NOT EXISTS idx_queue_ts ON sync_queue(timestamp)",
    ]),
    (2, [
        """
        CREATE TABLE IF NOT EXISTS kv (
            key   TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_queue_item ON sync_queue(item_id)",
    ]),
]

SCHEMA_VERSION = _MIGRATIONS[-1][0]


class LocalStore:
    """Thread-safe SQLite store for encrypted vault items and sync state.

    Args:
        db_path: Path to the SQLite database file.
    """

    def __init__(self, db_path: Union[str, Path, None] = None):
        self.db_path = Path(db_path) if db_path else _DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._init_database()

    @contextmanager
    def _connect(self):
        """Open a WAL-mode connection; commit on success, roll back on error."""
        conn = db_connect(self.db_path, row_factory=True)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_database(self):
        with self._lock, self._connect() as conn:
            apply_migrations(conn, _MIGRATIONS)

    def schema_version(self) -> int:
        with self._connect() as conn:
            return read_schema_version(conn)

    # ------------------------------------------------------------------
    # Vault items
    # ------------------------------------------------------------------

    def get_all(self) -> List[VaultItem]:
        """All live (non-tombstoned) items, most recently updated first."""
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM vault_items WHERE deleted_at IS NULL "
                "ORDER BY updated_at DESC"
            ).fetchall()
        return [self._row_to_item(r) for r in rows]

    def get_by_domain(self, domain: str) -> List[VaultItem]:
        """Live login items stored for ``domain`` or any of its subdomains.

        Newest first.  `_` in a host acts as a LIKE wildcard, so callers
        still check each result with domains_match().
        """
        if not domain:
            return []
        domain = domain.lower()
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM vault_items WHERE deleted_at IS NULL "
                "AND item_type = ? AND (url_domain = ? OR url_domain LIKE ?) "
                "ORDER BY updated_at DESC",
                (ItemType.LOGIN.value, domain, "%." + domain),
            ).fetchall()
        return [self._row_to_item(r) for r in rows]

    def get(self, item_id: str) -> Optional[VaultItem]:
        """Fetch one item by id, tombstones included."""
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM vault_items WHERE id = ?", (item_id,)
            ).fetchone()
        return self._row_to_item(row) if row else None

    def find_temp_item(self, iv: str, auth_tag: str) -> Optional[VaultItem]:
        """Locate a temp-id item by its ciphertext (IV + tag are unique per write)."""
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM vault_items WHERE substr(id, 1, ?) = ? "
                "AND iv = ? AND auth_tag = ?",
                (len(TEMP_ID_PREFIX), TEMP_ID_PREFIX, iv, auth_tag),
            ).fetchone()
        return self._row_to_item(row) if row else None

    def upsert(self, item: VaultItem) -> None:
        """Insert or replace an item."""
        with self._lock, self._connect() as conn:
            self._upsert(conn, item)

    def soft_delete(self, item_id: str) -> Optional[VaultItem]:
        """Tombstone an item.

        Sets deleted_at (kept if already set) and bumps updated_at.
        Returns the updated item, or None if the id is unknown.
        """
        now = format_timestamp(utcnow())
        with self._lock, self._connect() as conn:
            cur = conn.execute(
                "UPDATE vault_items SET deleted_at = COALESCE(deleted_at, ?), "
                "updated_at = ? WHERE id = ?",
                (now, now, item_id),
            )
            if cur.rowcount == 0:
                return None
            row = conn.execute(
                "SELECT * FROM vault_items WHERE id = ?", (item_id,)
            ).fetchone()
        return self._row_to_item(row)

    def purge(self, item_id: str) -> bool:
        """Remove an item row entirely."""
        with self._lock, self._connect() as conn:
            cur = conn.execute("DELETE FROM vault_items WHERE id = ?", (item_id,))
        return cur.rowcount > 0

    def clear_all(self) -> None:
        """Drop every item, queued change and sync cursor."""
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM vault_items")
            conn.execute("DELETE FROM sync_queue")
            conn.execute("DELETE FROM sync_metadata")
        logger.info("Local store cleared")

    def count(self, include_deleted: bool = False) -> int:
        sql = "SELECT COUNT(*) FROM vault_items"
        if not include_deleted:
            sql += " WHERE deleted_at IS NULL"
        with self._lock, self._connect() as conn:
            row = conn.execute(sql).fetchone()
        return row[0] if row else 0

    def remap_item_id(self, old_id: str, new_id: str, version: Optional[int] = None) -> None:
        """Move an item from a temporary id to its server id.

        Rewrites the item row and every queue entry referencing ``old_id``
        in one transaction.  ``version`` optionally stamps the
        server-confirmed version onto the item.
        """
        if old_id == new_id:
            return
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM vault_items WHERE id = ?", (old_id,)
            ).fetchone()
            if row is None:
                raise ItemNotFoundError(f"No local item {old_id}")
            item = self._row_to_item(row)
            item.id = new_id
            if version is not None:
                item.version = version
            conn.execute("DELETE FROM vault_items WHERE id = ?", (old_id,))
            self._upsert(conn, item)
            conn.execute(
                "UPDATE sync_queue SET item_id = ? WHERE item_id = ?",
                (new_id, old_id),
            )
        logger.debug("Remapped item %s -> %s", old_id, new_id)

    # ------------------------------------------------------------------
    # Sync queue
    # ------------------------------------------------------------------

    def enqueue(
        self,
        action: Union[SyncAction, str],
        item_id: str,
        item_data: Optional[Dict[str, Any]] = None,
    ) -> SyncQueueItem:
        """Append a pending change. Returns the stored queue entry."""
        entry = SyncQueueItem(action=SyncAction(action), item_id=item_id, item_data=item_data)
        with self._lock, self._connect() as conn:
            conn.execute(
                """INSERT INTO sync_queue
                   (id, action, item_id, item_data, timestamp, retry_count)
                   VALUES (?, ?, ?, ?, ?, 0)
                   ON CONFLICT(id) DO UPDATE SET
                       item_data = excluded.item_data""",
                (
                    entry.id,
                    entry.action.value,
                    entry.item_id,
                    json.dumps(item_data) if item_data is not None else None,
                    entry.timestamp,
                ),
            )
        return entry

    def dequeue(self, queue_id: str) -> bool:
        with self._lock, self._connect() as conn:
            cur = conn.execute("DELETE FROM sync_queue WHERE id = ?", (queue_id,))
        return cur.rowcount > 0

    def dequeue_many(self, queue_ids: List[str]) -> int:
        if not queue_ids:
            return 0
        with self._lock, self._connect() as conn:
            cur = conn.executemany(
                "DELETE FROM sync_queue WHERE id = ?", [(qid,) for qid in queue_ids]
            )
        return cur.rowcount

    def dequeue_item(self, item_id: str) -> int:
        """Drop every pending change for ``item_id``."""
        with self._lock, self._connect() as conn:
            cur = conn.execute("DELETE FROM sync_queue WHERE item_id = ?", (item_id,))
        return cur.rowcount

    def list_queue(self) -> List[SyncQueueItem]:
        """Pending changes, oldest first."""
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM sync_queue ORDER BY timestamp ASC, rowid ASC"
            ).fetchall()
        return [self._row_to_queue_item(r) for r in rows]

    def increment_retry(self, queue_id: str) -> int:
        """Bump retry_count; returns the new count (0 if the entry is gone)."""
        with self._lock, self._connect() as conn:
            conn.execute(
                "UPDATE sync_queue SET retry_count = retry_count + 1 WHERE id = ?",
                (queue_id,),
            )
            row = conn.execute(
                "SELECT retry_count FROM sync_queue WHERE id = ?", (queue_id,)
            ).fetchone()
        return row[0] if row else 0

    def queue_length(self) -> int:
        with self._lock, self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) FROM sync_queue").fetchone()
        return row[0] if row else 0

    def clear_queue(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM sync_queue")

    # ------------------------------------------------------------------
    # Sync metadata
    # ------------------------------------------------------------------

    def get_sync_metadata(self, device_id: str) -> Optional[SyncMetadata]:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sync_metadata WHERE device_id = ?", (device_id,)
            ).fetchone()
        if row is None:
            return None
        return SyncMetadata(
            device_id=row["device_id"],
            last_sync_version=row["last_sync_version"],
            last_sync_timestamp=parse_timestamp(row["last_sync_timestamp"]),
        )

    def save_sync_metadata(self, meta: SyncMetadata) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """INSERT INTO sync_metadata (device_id, last_sync_version, last_sync_timestamp)
                   VALUES (?, ?, ?)
                   ON CONFLICT(device_id) DO UPDATE SET
                       last_sync_version = excluded.last_sync_version,
                       last_sync_timestamp = excluded.last_sync_timestamp""",
                (
                    meta.device_id,
                    meta.last_sync_version,
                    format_timestamp(meta.last_sync_timestamp),
                ),
            )

    # ------------------------------------------------------------------
    # Cached user data
    # ------------------------------------------------------------------

    def get_value(self, key: str, default: Optional[str] = None) -> Optional[str]:
        with self._lock, self._connect() as conn:
            row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
        return row["value"] if row else default

    def set_value(self, key: str, value: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """INSERT INTO kv (key, value) VALUES (?, ?)
                   ON CONFLICT(key) DO UPDATE SET value = excluded.value""",
                (key, str(value)),
            )

    def delete_value(self, key: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))

    def get_device_id(self) -> str:
        """Stable per-installation device id, created on first use."""
        with self._lock:
            device_id = self.get_value(KV_DEVICE_ID)
            if not device_id:
                device_id = str(uuid4())
                self.set_value(KV_DEVICE_ID, device_id)
                logger.info("Generated new device id %s", device_id)
            return device_id

    def clear_user_data(self) -> None:
        """Forget the cached email, salt and KDF parameters (device id stays)."""
        with self._lock, self._connect() as conn:
            conn.executemany(
                "DELETE FROM kv WHERE key = ?", [(k,) for k in _USER_DATA_KEYS]
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _upsert(conn: sqlite3.Connection, item: VaultItem) -> None:
        conn.execute(
            """INSERT INTO vault_items
               (id, user_id, encrypted_data, encrypted_key, iv, auth_tag, item_type,
                url_domain, folder_id, version, last_modified_at, last_modified_by,
                deleted_at, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   user_id = excluded.user_id,
                   encrypted_data = excluded.encrypted_data,
                   encrypted_key = excluded.encrypted_key,
                   iv = excluded.iv,
                   auth_tag = excluded.auth_tag,
                   item_type = excluded.item_type,
                   url_domain = excluded.url_domain,
                   folder_id = excluded.folder_id,
                   version = excluded.version,
                   last_modified_at = excluded.last_modified_at,
                   last_modified_by = excluded.last_modified_by,
                   deleted_at = excluded.deleted_at,
                   created_at = excluded.created_at,
                   updated_at = excluded.updated_at""",
            (
                item.id,
                item.user_id,
                item.encrypted_data,
                item.encrypted_key,
                item.iv,
                item.auth_tag,
                item.item_type.value,
                item.url_domain,
                item.folder_id,
                item.version,
                format_timestamp(item.last_modified_at),
                item.last_modified_by,
                format_timestamp(item.deleted_at),
                format_timestamp(item.created_at),
                format_timestamp(item.updated_at),
            ),
        )

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> VaultItem:
        return VaultItem(
            id=row["id"],
            user_id=row["user_id"],
            encrypted_data=row["encrypted_data"],
            encrypted_key=row["encrypted_key"],
            iv=row["iv"],
            auth_tag=row["auth_tag"],
            item_type=ItemType(row["item_type"]),
            url_domain=row["url_domain"],
            folder_id=row["folder_id"],
            version=row["version"],
            last_modified_at=parse_timestamp(row["last_modified_at"]),
            last_modified_by=row["last_modified_by"],
            deleted_at=parse_timestamp(row["deleted_at"]),
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    @staticmethod
    def _row_to_queue_item(row: sqlite3.Row) -> SyncQueueItem:
        item_data = None
        if row["item_data"]:
            try:
                item_data = json.loads(row["item_data"])
            except (json.JSONDecodeError, TypeError):
                logger.warning("Unreadable item_data on queue entry %s", row["id"])
        return SyncQueueItem(
            id=row["id"],
            action=SyncAction(row["action"]),
            item_id=row["item_id"],
            item_data=item_data,
            timestamp=row["timestamp"],
            retry_count=row["retry_count"],
        )
