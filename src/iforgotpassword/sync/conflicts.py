# Sync Module — Conflict Detection and Resolution
#
# Vault items are opaque ciphertext to the sync engine, so there is no
# field-level merge: a conflict is settled by keeping one whole record.
#
# Policy: last-write-wins on lastModifiedAt (falling back to updatedAt).
# Ties go to the remote copy, the server being the source of truth.

import logging
from dataclasses import replace
from datetime import datetime, timedelta

from ..vault.models import ConflictType, SyncConflict, VaultItem

logger = logging.getLogger(__name__)

# Equal versions modified within this window are the same write seen
# through two clocks, not a conflict.
CLOCK_SKEW_TOLERANCE = timedelta(seconds=1)


def modified_at(item: VaultItem) -> datetime:
    return item.last_modified_at or item.updated_at


def detect_conflict(local: VaultItem, remote: VaultItem) -> bool:
    """True if ``local`` and ``remote`` diverged.

    Different versions always conflict.  Equal versions conflict only
    when their modification times are at least a second apart.
    """
    if local.version != remote.version:
        return True
    return abs(modified_at(local) - modified_at(remote)) >= CLOCK_SKEW_TOLERANCE


def resolve_last_write_wins(local: VaultItem, remote: VaultItem) -> VaultItem:
    """Return whichever record was modified last (remote on a tie)."""
    if modified_at(local) > modified_at(remote):
        logger.info("Conflict resolved: keeping local version of %s", local.id)
        return local
    logger.info("Conflict resolved: keeping remote version of %s", remote.id)
    return remote


def rebase(local: VaultItem, remote: VaultItem) -> VaultItem:
    """Carry a winning local edit onto the server's current version.

    The result keeps the local ciphertext and timestamps but takes the
    remote version number, so the next push passes the optimistic lock.
    """
    return replace(local, version=remote.version)


def build_conflict(local: VaultItem, remote: VaultItem) -> SyncConflict:
    return SyncConflict(
        item_id=remote.id,
        local_version=local.version,
        remote_version=remote.version,
        local_item=local,
        remote_item=remote,
        conflict_type=ConflictType.DELETED if remote.is_deleted else ConflictType.VERSION,
    )
