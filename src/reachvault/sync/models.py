"""
Sync data models -- per-vault connection state and sync reports.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class SyncStatus(str, Enum):
    """Per-vault connection state."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SYNCED = "synced"
    CONFLICT = "conflict"


class VaultSyncState(BaseModel):
    """Tracks sync history for one shared vault."""

    status: SyncStatus = SyncStatus.DISCONNECTED
    last_sync: Optional[datetime] = None
    last_error: Optional[str] = None
    sync_count: int = 0
    conflict_count: int = 0


class SyncStateFile(BaseModel):
    """Everything persisted in ``<home>/sync/state.json``."""

    vaults: dict[str, VaultSyncState] = Field(default_factory=dict)


class SyncReport(BaseModel):
    """Outcome of one sync round for one vault."""

    vault_id: str
    pushed: int = 0
    pulled: int = 0
    deleted_remote: int = 0
    deleted_local: int = 0
    conflicts: int = 0
    orphans: list[str] = Field(default_factory=list, description="Ids of preserved losing writes")
