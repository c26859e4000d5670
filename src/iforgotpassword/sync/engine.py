# Sync Module — Offline-First Sync Engine
#
# One pass of full_sync():
#   1. drop queue entries that hit the retry ceiling
#   2. pull: apply server tombstones, then remote items (last-write-wins)
#   3. push: one batch built from the queue, server conflicts resolved
#   4. save the pull cursor, report the outstanding queue length
#
# States: idle -> syncing -> {idle, error, offline}.  A busy flag keeps at
# most one pass in flight per device.  Pull/push failures become state
# (status=error, message kept); the queue survives them untouched.
#
# The cursor is the numeric lastSyncVersion returned by /sync/pull.  It is
# only ever advanced by a pull, never by a push, so changes other devices
# land between our pull and push are not skipped.

import logging
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from ..core.audit_log import AuditLogger, EventSeverity, EventType, get_audit_logger
from ..core.config import MAX_QUEUE_RETRIES
from ..core.errors import (
    ApiError,
    ItemNotFoundError,
    QueueExhaustedError,
    ValidationError,
    VaultError,
)
from ..vault.local_store import LocalStore
from ..vault.models import (
    SyncAction,
    SyncConflict,
    SyncMetadata,
    SyncQueueItem,
    VaultItem,
    is_temp_id,
    utcnow,
)
from .api_client import ApiClient
from .conflicts import build_conflict, detect_conflict, rebase, resolve_last_write_wins

logger = logging.getLogger(__name__)


class SyncStatus(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"
    OFFLINE = "offline"


@dataclass
class SyncState:
    """Snapshot handed to subscribers and returned by get_state()."""
    status: SyncStatus = SyncStatus.IDLE
    last_sync_time: Optional[datetime] = None
    is_syncing: bool = False
    error: Optional[str] = None
    queued_changes: int = 0


@dataclass
class SyncReport:
    """What one full_sync() pass did."""
    status: SyncStatus = SyncStatus.IDLE
    skipped: bool = False
    pulled: int = 0
    deleted: int = 0
    pushed: int = 0
    failed: int = 0
    dropped: int = 0
    current_version: int = 0
    conflicts: List[SyncConflict] = field(default_factory=list)
    remapped: Dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == SyncStatus.IDLE and not self.skipped


Listener = Callable[[SyncState], None]


class _PushGroup:
    """Queue entries for one item, collapsed into a single change."""

    def __init__(self, item_id: str):
        self.item_id = item_id
        self.entries: List[SyncQueueItem] = []

    @property
    def action(self) -> Optional[SyncAction]:
        actions = [e.action for e in self.entries]
        if actions[-1] == SyncAction.DELETE:
            # created and deleted before the server ever saw it
            if SyncAction.CREATE in actions and is_temp_id(self.item_id):
                return None
            return SyncAction.DELETE
        if SyncAction.CREATE in actions:
            return SyncAction.CREATE
        return SyncAction.UPDATE


class SyncEngine:
    """Pull/push synchronization between the local store and the server.

    Args:
        store: Local encrypted store (items, queue, cursor).
        api: Backend client; must already hold an access token.
        device_id: This device's id (defaults to the store's).
        max_retries: Queue entries at or above this retry count are dropped.
        connectivity: Returns False when the device is known to be offline.
        audit: Audit logger (defaults to the global one).
    """

    def __init__(
        self,
        store: LocalStore,
        api: ApiClient,
        *,
        device_id: Optional[str] = None,
        max_retries: int = MAX_QUEUE_RETRIES,
        connectivity: Optional[Callable[[], bool]] = None,
        audit: Optional[AuditLogger] = None,
    ):
        self.store = store
        self.api = api
        self.device_id = device_id or store.get_device_id()
        self.max_retries = max_retries
        self._connectivity = connectivity or (lambda: True)
        self._audit = audit
        self._busy = False
        self._listeners: List[Listener] = []
        self._state = SyncState(queued_changes=store.queue_length())

    @property
    def audit(self) -> AuditLogger:
        return self._audit or get_audit_logger()

    @property
    def is_syncing(self) -> bool:
        return self._busy

    def is_online(self) -> bool:
        return bool(self._connectivity())

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a state listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def get_state(self) -> SyncState:
        return replace(self._state)

    def _update_state(self, **changes) -> None:
        self._state = replace(self._state, **changes)
        snapshot = self.get_state()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Sync state listener failed")

    # ------------------------------------------------------------------
    # Full sync
    # ------------------------------------------------------------------

    async def full_sync(self) -> SyncReport:
        """Run one pull/push pass. Never raises for network or server errors."""
        if self._busy:
            logger.info("Sync already in progress, skipping")
            return SyncReport(status=SyncStatus.SYNCING, skipped=True)

        if not self.is_online():
            self._update_state(status=SyncStatus.OFFLINE, error="No internet connection")
            self.audit.log_sync_event(EventType.SYNC_OFFLINE, "skipped, device offline")
            return SyncReport(status=SyncStatus.OFFLINE, skipped=True)

        report = SyncReport()
        self._busy = True
        try:
            self._update_state(status=SyncStatus.SYNCING, is_syncing=True, error=None)
            self.audit.log_sync_event(EventType.SYNC_STARTED, "pass started", {"device_id": self.device_id})
            self._drop_exhausted(report)
            await self._pull(report)
            await self._push(report)
            queued = self.store.queue_length()
        except VaultError as exc:
            self._fail(report, exc, self.store.queue_length())
            return report
        except Exception as exc:
            # store I/O errors propagate, with the state already out of SYNCING
            logger.exception("Sync pass aborted")
            self._fail(report, exc, self._state.queued_changes)
            raise
        finally:
            self._busy = False

        report.status = SyncStatus.IDLE
        self._update_state(
            status=SyncStatus.IDLE,
            is_syncing=False,
            last_sync_time=utcnow(),
            error=None,
            queued_changes=queued,
        )
        self.audit.log_sync_event(
            EventType.SYNC_COMPLETED,
            "pass completed",
            {
                "pulled": report.pulled,
                "deleted": report.deleted,
                "pushed": report.pushed,
                "conflicts": len(report.conflicts),
                "dropped": report.dropped,
                "failed": report.failed,
                "current_version": report.current_version,
            },
        )
        return report

    def _fail(self, report: SyncReport, exc: Exception, queued_changes: int) -> None:
        report.status = SyncStatus.ERROR
        report.error = str(exc) or type(exc).__name__
        logger.warning("Sync failed: %s", report.error)
        self._update_state(
            status=report.status,
            is_syncing=False,
            error=report.error,
            queued_changes=queued_changes,
        )
        self.audit.log_sync_event(
            EventType.SYNC_FAILED,
            "pass failed",
            {"error": report.error, "error_type": type(exc).__name__},
            severity=EventSeverity.INVESTIGATE,
        )

    def _drop_exhausted(self, report: SyncReport) -> None:
        for entry in self.store.list_queue():
            if entry.retry_count < self.max_retries:
                continue
            self.store.dequeue(entry.id)
            report.dropped += 1
            exhausted = QueueExhaustedError(entry.id, entry.retry_count)
            logger.warning("%s", exhausted)
            self.audit.log_sync_event(
                EventType.SYNC_QUEUE_ABANDONED,
                str(exhausted),
                {"queue_id": entry.id, "item_id": entry.item_id, "action": entry.action.value},
                severity=EventSeverity.ALERT,
            )

    # ------------------------------------------------------------------
    # Pull
    # ------------------------------------------------------------------

    async def _pull(self, report: SyncReport) -> None:
        meta = self.store.get_sync_metadata(self.device_id) or SyncMetadata(self.device_id)
        data = await self.api.sync_pull(self.device_id, meta.last_sync_version)
        if not isinstance(data, dict):
            raise ApiError("Malformed sync response: pull body is not an object")
        current = _int_field(data, "currentVersion")
        deleted_ids = _list_field(data, "deletedIds")
        items = _list_field(data, "items")

        for deleted_id in deleted_ids:
            if self.store.soft_delete(str(deleted_id)) is not None:
                report.deleted += 1

        for raw in items:
            try:
                remote = VaultItem.from_dict(raw)
            except ValidationError as exc:
                logger.warning("Skipping malformed remote item: %s", exc)
                continue
            self._apply_remote(remote, report)
            report.pulled += 1

        meta.last_sync_version = max(meta.last_sync_version, current)
        meta.last_sync_timestamp = utcnow()
        self.store.save_sync_metadata(meta)
        report.current_version = max(report.current_version, meta.last_sync_version)

        logger.info(
            "Pulled %d items, %d deletions (version %d)",
            report.pulled, report.deleted, meta.last_sync_version,
        )

    def _apply_remote(self, remote: VaultItem, report: SyncReport) -> None:
        local = self.store.get(remote.id)

        if local is None:
            # Our own offline create coming back under its server id
            temp = self.store.find_temp_item(remote.iv, remote.auth_tag)
            if temp is not None:
                self._remap(temp.id, remote.id, remote.version, report)
            self.store.upsert(remote)
            return

        if local.is_deleted:
            # a queued delete outranks the live copy it was made against
            if not self.has_pending_changes(local.id):
                self.store.upsert(remote)
            return

        if not detect_conflict(local, remote):
            # same write on both sides; a queued edit on top of it is newer
            if not self.has_pending_changes(local.id):
                self.store.upsert(remote)
            return

        if local.iv == remote.iv and local.auth_tag == remote.auth_tag:
            # Same ciphertext: our own push echoed back with its server version
            self.store.upsert(remote)
            return

        conflict = build_conflict(local, remote)
        winner = resolve_last_write_wins(local, remote)
        if winner is local:
            self.store.upsert(rebase(local, remote))
            if not self.has_pending_changes(local.id):
                self.queue_change(SyncAction.UPDATE, local.id)
        else:
            self.store.upsert(remote)
            # the pending local edit lost; pushing it would clobber the winner
            self.store.dequeue_item(local.id)
        self._record_conflict(conflict, kept="local" if winner is local else "remote", report=report)

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def _group_queue(self, queue: List[SyncQueueItem]) -> List[_PushGroup]:
        groups: "OrderedDict[str, _PushGroup]" = OrderedDict()
        for entry in queue:
            groups.setdefault(entry.item_id, _PushGroup(entry.item_id)).entries.append(entry)
        return list(groups.values())

    def _build_change(self, action: SyncAction, item_id: str) -> Optional[Dict[str, Any]]:
        """Wire change for one item; None when there is nothing to send.

        Raises:
            ItemNotFoundError: create/update for an item missing locally
        """
        if action == SyncAction.DELETE:
            return {"action": action.value, "itemId": item_id}

        item = self.store.get(item_id)
        if item is None:
            raise ItemNotFoundError(f"Queued {action.value} for missing item {item_id}")
        if item.is_deleted:
            return None
        return {
            "action": action.value,
            "itemId": item_id,
            "item": item.to_dict(),
            "version": item.version,
        }

    async def _push(self, report: SyncReport) -> None:
        queue = self.store.list_queue()
        if not queue:
            return

        changes: List[Dict[str, Any]] = []
        batched: List[str] = []
        settled: List[str] = []

        for group in self._group_queue(queue):
            ids = [e.id for e in group.entries]
            action = group.action
            if action is None:
                # never reached the server; drop the local tombstone too
                settled.extend(ids)
                self.store.purge(group.item_id)
                continue
            try:
                change = self._build_change(action, group.item_id)
            except (ItemNotFoundError, ValidationError) as exc:
                report.failed += 1
                logger.warning("Cannot build %s for %s: %s", action.value, group.item_id, exc)
                for queue_id in ids:
                    self.store.increment_retry(queue_id)
                continue
            if change is None:
                settled.extend(ids)
                continue
            changes.append(change)
            batched.extend(ids)

        if settled:
            self.store.dequeue_many(settled)
        if not changes:
            return

        response = await self.api.sync_push(self.device_id, changes)
        requeue = self._apply_push_response(response, report)

        self.store.dequeue_many(batched)
        for item_id in requeue:
            self.queue_change(SyncAction.UPDATE, item_id)

        report.pushed += len(changes)
        logger.info("Pushed %d changes (%d conflicts)", len(changes), len(report.conflicts))

    def _apply_push_response(self, response: Dict[str, Any], report: SyncReport) -> List[str]:
        """Apply acknowledgements and conflicts. Returns item ids to re-queue.

        Raises:
            ApiError: the response is not an object, or a list field is not a list
        """
        if not isinstance(response, dict):
            raise ApiError("Malformed sync response: push body is not an object")
        acknowledged = _list_field(response, "acknowledged")
        conflicts = _list_field(response, "conflicts")

        for ack in acknowledged:
            if not isinstance(ack, dict) or not ack.get("itemId"):
                logger.warning("Ignoring malformed acknowledgement: %r", ack)
                continue
            item_id = str(ack["itemId"])
            new_id = str(ack.get("id") or item_id)
            version = _as_int(ack.get("version"))
            if new_id != item_id:
                if self.store.get(item_id) is not None:
                    self._remap(item_id, new_id, version, report)
            elif version is not None:
                local = self.store.get(item_id)
                if local is not None and not local.is_deleted:
                    self.store.upsert(replace(local, version=version))

        requeue = []
        for raw in conflicts:
            if not isinstance(raw, dict):
                logger.warning("Ignoring malformed conflict entry: %r", raw)
                continue
            if self._resolve_push_conflict(raw, report):
                requeue.append(raw["itemId"])
        return requeue

    def _resolve_push_conflict(self, raw: Dict[str, Any], report: SyncReport) -> bool:
        """Settle one server-reported conflict. True if the local edit won."""
        item_id = raw.get("itemId")
        remote_raw = raw.get("remoteItem")
        if not item_id or not remote_raw:
            logger.warning("Server conflict without remote item: %r", raw)
            return False

        try:
            remote = VaultItem.from_dict(remote_raw)
        except ValidationError as exc:
            logger.warning("Unusable remote item in conflict on %s: %s", item_id, exc)
            return False
        local = self.store.get(item_id)
        if local is None:
            self.store.upsert(remote)
            return False

        conflict = build_conflict(local, remote)
        winner = resolve_last_write_wins(local, remote)
        local_won = winner is local
        self.store.upsert(rebase(local, remote) if local_won else remote)
        self._record_conflict(conflict, kept="local" if local_won else "remote", report=report)
        return local_won

    def _record_conflict(self, conflict: SyncConflict, kept: str, report: SyncReport) -> None:
        report.conflicts.append(conflict)
        details = conflict.to_dict()
        details["kept"] = kept
        self.audit.log_sync_event(
            EventType.SYNC_CONFLICT_RESOLVED,
            f"conflict on {conflict.item_id} resolved, kept {kept}",
            details,
            severity=EventSeverity.INVESTIGATE,
        )

    def _remap(self, old_id: str, new_id: str, version: Optional[int], report: SyncReport) -> None:
        self.store.remap_item_id(old_id, new_id, int(version) if version is not None else None)
        report.remapped[old_id] = new_id
        self.audit.log_sync_event(
            EventType.SYNC_ID_REMAPPED,
            f"{old_id} -> {new_id}",
            {"old_id": old_id, "new_id": new_id},
        )

    # ------------------------------------------------------------------
    # Single-change fast path and queue
    # ------------------------------------------------------------------

    async def sync_item(self, item_id: str, action: Union[SyncAction, str]) -> bool:
        """Push one change right away; on any failure queue it instead.

        Returns True if the server accepted the change.
        """
        action = SyncAction(action)
        if self._busy or not self.is_online():
            self.queue_change(action, item_id)
            return False

        try:
            change = self._build_change(action, item_id)
            if change is None:
                return True
            response = await self.api.sync_push(self.device_id, [change])
            requeue = self._apply_push_response(response, SyncReport())
        except VaultError as exc:
            logger.info("Immediate sync of %s failed (%s), queuing", item_id, exc)
            self.queue_change(action, item_id)
            return False

        if requeue:
            self.queue_change(SyncAction.UPDATE, item_id)
        return True

    def has_pending_changes(self, item_id: str) -> bool:
        """True while a queued change for ``item_id`` awaits a push."""
        return any(e.item_id == item_id for e in self.store.list_queue())

    def queue_change(
        self,
        action: Union[SyncAction, str],
        item_id: str,
        item_data: Optional[Dict[str, Any]] = None,
    ) -> SyncQueueItem:
        entry = self.store.enqueue(action, item_id, item_data)
        self._update_state(queued_changes=self.store.queue_length())
        return entry

    def get_queued_changes_count(self) -> int:
        return self.store.queue_length()

    def clear_sync_data(self) -> None:
        """Forget queued changes and the pull cursor (logout / reset)."""
        self.store.clear_queue()
        self.store.save_sync_metadata(SyncMetadata(device_id=self.device_id))
        self._state = SyncState()
        self._update_state()


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    return None


def _int_field(data: Dict[str, Any], key: str) -> int:
    value = data.get(key)
    if value is None:
        return 0
    number = _as_int(value)
    if number is None:
        raise ApiError(f"Malformed sync response: {key} must be an integer")
    return number


def _list_field(data: Dict[str, Any], key: str) -> List[Any]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ApiError(f"Malformed sync response: {key} must be a list")
    return value
