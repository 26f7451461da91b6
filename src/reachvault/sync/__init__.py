"""
Vault sync — replicate envelopes through an untrusted remote store.

Each shared vault is backed by exactly one remote database. Only
envelope rows travel: ciphertext, wrapped keys, sealed names and
non-secret metadata. Concurrent edits resolve last-writer-wins per
entry and the losing write stays on the device as an orphan entry.
"""

from .engine import SyncEngine, database_name
from .models import SyncReport, SyncStatus, VaultSyncState
from .remote import LocalRemoteStore, MemoryRemoteStore, RemoteStore

__all__ = [
    "LocalRemoteStore",
    "MemoryRemoteStore",
    "RemoteStore",
    "SyncEngine",
    "SyncReport",
    "SyncStatus",
    "VaultSyncState",
    "database_name",
]
