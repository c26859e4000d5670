# Sync Module - offline-first synchronization with the vault backend

from .api_client import ApiClient
from .conflicts import detect_conflict, resolve_last_write_wins
from .engine import SyncEngine, SyncReport, SyncState, SyncStatus
from .scheduler import SyncScheduler

__all__ = [
    "ApiClient",
    "SyncEngine",
    "SyncReport",
    "SyncState",
    "SyncStatus",
    "SyncScheduler",
    "detect_conflict",
    "resolve_last_write_wins",
]
