"""
Sync engine -- reconciles local vault documents with their remote database.

One sync round for a shared vault:

    1. Fetch the member table. If this identity is no longer listed, the
       vault is revoked locally and the round fails with PermissionDenied.
    2. Fetch every entry row and reconcile against the local entries:
       clean local rows follow the remote, dirty local rows are pushed,
       and rows changed on both sides resolve last-writer-wins on
       (modified_at, payload). The losing write is kept as a local-only
       orphan entry.
    3. Push upserts and deletes one row at a time, then mark what landed.

Rounds for the same vault are serialized by a per-vault asyncio.Lock;
different vaults sync concurrently. Remote calls run in worker threads
with a timeout and are retried with capped exponential backoff. Crypto
and permission failures are never retried.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional

from ..audit import safe_audit
from ..config import ConnectionStrategy, VaultConfig
from ..envelope import b64d, b64e, open_sealed, seal
from ..errors import PermissionDenied, SyncUnavailable, VaultError, VaultNotFound
from ..models import (
    Category,
    Envelope,
    EntryRecord,
    MemberRecord,
    Permission,
    Role,
    VaultDocument,
    VaultRecord,
    VaultType,
)
from ..store import VaultStore, write_atomic
from .models import SyncReport, SyncStateFile, SyncStatus, VaultSyncState
from .remote import TABLE_ENTRIES, TABLE_HEADER, TABLE_MEMBERS, RemoteStore

logger = logging.getLogger("reachvault.sync.engine")

HEADER_ROW = "vault"


def database_name(record: VaultRecord) -> str:
    """Deterministic remote database name for a vault.

    Built from vault id, owner and creation time, so two vaults can
    never collide even when they share a name or an owner.
    """
    vault_part = record.id.replace("-", "")[:12]
    owner_part = record.owner_uuid.replace("-", "")[:8]
    return f"rv-{vault_part}-{owner_part}-{record.created_at}".lower()


def seal_name(name: str, vault_key: bytes, row_id: str) -> str:
    """Encrypt a display name for the remote side."""
    return b64e(seal(name.encode("utf-8"), vault_key, aad=f"name:{row_id}".encode()))


def open_name(sealed: str, vault_key: bytes, row_id: str) -> str:
    """Inverse of :func:`seal_name`."""
    return open_sealed(b64d(sealed), vault_key, aad=f"name:{row_id}".encode()).decode("utf-8")


def header_row(record: VaultRecord, owner_public_key: str, vault_key: bytes) -> dict[str, Any]:
    return {
        "vault_id": record.id,
        "owner_uuid": record.owner_uuid,
        "owner_public_key": owner_public_key,
        "created_at": record.created_at,
        "sealed_name": seal_name(record.name, vault_key, record.id),
    }


def entry_row(entry: EntryRecord, vault_key: bytes) -> dict[str, Any]:
    """Remote form of an entry: envelope plus non-secret metadata."""
    return {
        "id": entry.id,
        "category": entry.category.value,
        "sealed_name": seal_name(entry.name, vault_key, entry.id),
        "payload": entry.envelope.payload,
        "wrapped_dek": entry.envelope.wrapped_dek,
        "owner_uuid": entry.owner_uuid,
        "created_at": entry.created_at,
        "modified_at": entry.modified_at,
    }


def entry_from_row(vault_id: str, row: dict[str, Any], vault_key: bytes) -> EntryRecord:
    """Local form of a remote entry row, marked as in sync."""
    return EntryRecord(
        id=row["id"],
        vault_id=vault_id,
        name=open_name(row["sealed_name"], vault_key, row["id"]),
        category=Category(row["category"]),
        envelope=Envelope(payload=row["payload"], wrapped_dek=row["wrapped_dek"]),
        owner_uuid=row["owner_uuid"],
        created_at=row["created_at"],
        modified_at=row["modified_at"],
        synced_modified=row["modified_at"],
    )


def _local_wins(local: EntryRecord, remote: dict[str, Any]) -> bool:
    # payload breaks timestamp ties the same way on every device
    return (local.modified_at, local.envelope.payload) > (remote["modified_at"], remote["payload"])


class SyncEngine:
    """Drives sync for every shared vault in a home.

    Args:
        home: Vault home directory.
        store: Local vault store.
        remote: Remote store hosting the shared vault databases.
        config: Retry, timeout and connection strategy settings.
    """

    def __init__(
        self,
        home: Path,
        store: VaultStore,
        remote: RemoteStore,
        config: Optional[VaultConfig] = None,
    ) -> None:
        self._home = home
        self._store = store
        self._remote = remote
        self._config = config or VaultConfig()
        self._state_file = home / "sync" / "state.json"
        self._state = self._load_state()
        self._locks: dict[str, asyncio.Lock] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def remote(self) -> RemoteStore:
        return self._remote

    @property
    def strategy(self) -> ConnectionStrategy:
        """Connection strategy for this platform."""
        return self._config.resolved_strategy()

    # ---------------------------------------------------------------------
    # State
    # ---------------------------------------------------------------------

    def _load_state(self) -> SyncStateFile:
        if self._state_file.exists():
            return SyncStateFile.model_validate_json(self._state_file.read_text(encoding="utf-8"))
        return SyncStateFile()

    def _save_state(self) -> None:
        write_atomic(self._state_file, self._state.model_dump_json(indent=2))

    def status(self, vault_id: str) -> VaultSyncState:
        """Current sync state of one vault."""
        return self._state.vaults.get(vault_id, VaultSyncState())

    def _set_status(self, vault_id: str, status: SyncStatus, error: Optional[str] = None) -> None:
        state = self._state.vaults.setdefault(vault_id, VaultSyncState())
        state.status = status
        if error is not None:
            state.last_error = error
        self._save_state()

    def _record_success(self, vault_id: str, report: SyncReport) -> None:
        state = self._state.vaults.setdefault(vault_id, VaultSyncState())
        state.status = SyncStatus.CONFLICT if report.conflicts else SyncStatus.SYNCED
        state.last_sync = datetime.now(timezone.utc)
        state.last_error = None
        state.sync_count += 1
        state.conflict_count += report.conflicts
        self._save_state()

    # ---------------------------------------------------------------------
    # Remote calls
    # ---------------------------------------------------------------------

    async def call_remote(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a blocking remote call with timeout and capped backoff.

        Raises:
            SyncUnavailable: The retry budget is exhausted.
        """
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(fn, *args), timeout=self._config.sync_timeout
                )
            except (SyncUnavailable, asyncio.TimeoutError, OSError) as exc:
                attempt += 1
                if attempt > self._config.sync_max_retries:
                    raise SyncUnavailable(
                        f"remote store unavailable after {attempt} attempts: {exc}"
                    ) from exc
                delay = min(
                    self._config.sync_base_delay * (2 ** (attempt - 1)),
                    self._config.sync_max_delay,
                )
                logger.warning(
                    "Remote call %s failed (%s), retry %d in %.1fs",
                    getattr(fn, "__name__", fn), exc, attempt, delay,
                )
                await asyncio.sleep(delay)

    def _lock_for(self, vault_id: str) -> asyncio.Lock:
        lock = self._locks.get(vault_id)
        if lock is None:
            lock = self._locks[vault_id] = asyncio.Lock()
        return lock

    # ---------------------------------------------------------------------
    # Provisioning and deletion
    # ---------------------------------------------------------------------

    async def provision(self, vault_id: str) -> VaultRecord:
        """Create the remote database for a shared vault and seed it."""
        async with self._lock_for(vault_id):
            return await self._provision(self._store.get_vault(vault_id))

    async def _provision(self, record: VaultRecord) -> VaultRecord:
        if record.vault_type != VaultType.SHARED:
            raise ValueError(f"vault {record.id} is private")
        if record.credential is None:
            record.credential = await self.call_remote(
                self._remote.create_database, database_name(record), record.owner_uuid
            )
            self._store.update_vault(record)

        identity = self._store.identity
        vault_key = self._store.vault_key(record.id)
        owner = self._store.load(record.id).members[record.owner_uuid]
        await self.call_remote(
            self._remote.put_row, record.credential, TABLE_HEADER, HEADER_ROW,
            header_row(record, identity.record.public_key, vault_key),
        )
        await self.call_remote(
            self._remote.put_row, record.credential, TABLE_MEMBERS, owner.user_uuid,
            owner.model_dump(mode="json"),
        )
        logger.info("Vault %s provisioned as %s", record.id, record.credential.database)
        safe_audit(
            self._home, "SYNC_PROVISION",
            f"Remote database {record.credential.database} provisioned for vault {record.id}",
            user_uuid=identity.user_uuid,
        )
        return record

    async def delete_vault(self, vault_id: str) -> bool:
        """Finish deleting a tombstoned shared vault.

        Returns:
            True once the remote database is gone and the vault purged.
        """
        await self.cancel(vault_id)
        async with self._lock_for(vault_id):
            record = self._store.get_vault(vault_id)
            if not record.deleted:
                raise ValueError(f"vault {vault_id} is not marked for deletion")
            await self._delete_remote(record)
        return True

    async def _delete_remote(self, record: VaultRecord) -> None:
        if record.credential is not None:
            try:
                await self.call_remote(self._remote.delete_database, record.credential)
            except VaultNotFound:
                logger.debug("Remote database for %s already gone", record.id)
        self._store.purge_vault(record.id)
        self._state.vaults.pop(record.id, None)
        self._save_state()

    # ---------------------------------------------------------------------
    # Sync
    # ---------------------------------------------------------------------

    async def sync_vault(self, vault_id: str) -> SyncReport:
        """Run one sync round for a shared vault.

        Raises:
            PermissionDenied: Membership was withdrawn or the vault deleted.
            SyncUnavailable: The remote could not be reached in budget.
            DecryptionFailed: A remote row does not open under the vault key.
        """
        async with self._lock_for(vault_id):
            record = self._store.get_vault(vault_id)
            if record.vault_type != VaultType.SHARED:
                raise ValueError(f"vault {vault_id} is private; nothing to sync")
            if record.revoked:
                raise PermissionDenied(f"access to vault {vault_id} has been revoked")
            if record.deleted:
                await self._delete_remote(record)
                return SyncReport(vault_id=vault_id)

            self._set_status(vault_id, SyncStatus.CONNECTING)
            try:
                report = await self._sync_round(record)
            except asyncio.CancelledError:
                self._set_status(vault_id, SyncStatus.DISCONNECTED, "cancelled")
                raise
            except VaultError as exc:
                self._set_status(vault_id, SyncStatus.DISCONNECTED, str(exc))
                logger.warning("Sync of vault %s failed: %s", vault_id, exc)
                safe_audit(self._home, "SYNC_FAILED", f"Sync of vault {vault_id} failed: {exc}")
                raise

            self._record_success(vault_id, report)
            logger.info(
                "Vault %s synced: %d pushed, %d pulled, %d conflicts",
                vault_id, report.pushed, report.pulled, report.conflicts,
            )
            safe_audit(
                self._home, "SYNC",
                f"Vault {vault_id} synced",
                metadata=report.model_dump(exclude={"orphans"}),
            )
            return report

    async def _sync_round(self, record: VaultRecord) -> SyncReport:
        if record.credential is None:
            record = await self._provision(record)
        credential = record.credential

        try:
            members = await self.call_remote(self._remote.get_rows, credential, TABLE_MEMBERS)
            self._apply_members(record.id, members)
        except (PermissionDenied, VaultNotFound) as exc:
            self._store.revoke_vault(record.id)
            raise PermissionDenied(f"access to vault {record.id} was withdrawn") from exc

        remote_rows = await self.call_remote(self._remote.get_rows, credential, TABLE_ENTRIES)
        report, upserts, deletes = self._reconcile(record.id, remote_rows)

        for entry_id, row, _ in upserts:
            await self.call_remote(self._remote.put_row, credential, TABLE_ENTRIES, entry_id, row)
            report.pushed += 1
        for entry_id, _ in deletes:
            await self.call_remote(self._remote.delete_row, credential, TABLE_ENTRIES, entry_id)
            report.deleted_remote += 1

        self._mark_pushed(record.id, upserts, deletes)
        return report

    def _apply_members(self, vault_id: str, rows: dict[str, dict[str, Any]]) -> None:
        me = self._store.identity.user_uuid
        mine = rows.get(me)
        if mine is None:
            raise PermissionDenied("this identity is no longer a member")

        members = {uid: MemberRecord.model_validate(row) for uid, row in rows.items()}
        with self._store.edit(vault_id) as doc:
            previous = doc.members.get(me)
            doc.members = members
            role = members[me].role
            if role != doc.vault.role:
                logger.info("Role in vault %s is now %s", vault_id, role.value)
                doc.vault.role = role
        if previous is None or previous.wrapped_key != members[me].wrapped_key:
            self._store.forget_keys(vault_id)

    def _reconcile(
        self, vault_id: str, remote_rows: dict[str, dict[str, Any]]
    ) -> tuple[SyncReport, list[tuple[str, dict[str, Any], int]], list[tuple[str, int]]]:
        report = SyncReport(vault_id=vault_id)
        upserts: list[tuple[str, dict[str, Any], int]] = []
        deletes: list[tuple[str, int]] = []
        vault_key = self._store.vault_key(vault_id)

        with self._store.edit(vault_id) as doc:
            can_write = doc.vault.role.allows(Permission.WRITE)

            for entry_id, local in list(doc.entries.items()):
                if local.local_only:
                    continue
                remote = remote_rows.get(entry_id)

                if not local.dirty:
                    if remote is None:
                        if local.synced_modified is not None:
                            del doc.entries[entry_id]
                            report.deleted_local += 1
                    elif remote["modified_at"] != local.synced_modified:
                        doc.entries[entry_id] = entry_from_row(vault_id, remote, vault_key)
                        report.pulled += 1
                    continue

                if remote is not None and remote["modified_at"] == local.modified_at \
                        and remote["payload"] == local.envelope.payload:
                    # pushed by an earlier round that failed before marking
                    local.dirty = False
                    local.synced_modified = local.modified_at
                    continue

                if local.synced_modified is None and remote is not None \
                        and remote["payload"] == local.envelope.payload:
                    # our unconfirmed push, edited or tombstoned since
                    local.synced_modified = remote["modified_at"]

                if not can_write:
                    self._keep_orphan(doc, local, report)
                    self._take_remote(doc, vault_id, entry_id, remote, vault_key, report)
                    continue

                if remote is None:
                    if local.synced_modified is not None:
                        # removed remotely while changed here
                        if not local.deleted:
                            report.conflicts += 1
                            self._keep_orphan(doc, local, report)
                        del doc.entries[entry_id]
                        continue
                elif remote["modified_at"] != local.synced_modified:
                    report.conflicts += 1
                    if _local_wins(local, remote):
                        self._keep_orphan(doc, entry_from_row(vault_id, remote, vault_key), report)
                    else:
                        self._keep_orphan(doc, local, report)
                        self._take_remote(doc, vault_id, entry_id, remote, vault_key, report)
                        continue

                if local.deleted:
                    deletes.append((entry_id, local.modified_at))
                else:
                    upserts.append((entry_id, entry_row(local, vault_key), local.modified_at))

            for entry_id, remote in remote_rows.items():
                if entry_id not in doc.entries:
                    doc.entries[entry_id] = entry_from_row(vault_id, remote, vault_key)
                    report.pulled += 1

        return report, upserts, deletes

    @staticmethod
    def _keep_orphan(doc: VaultDocument, entry: EntryRecord, report: SyncReport) -> None:
        if entry.deleted:
            return
        orphan = entry.model_copy(deep=True, update={
            "id": str(uuid.uuid4()),
            "name": f"{entry.name} (conflict)",
            "orphan_of": entry.id,
            "dirty": False,
            "deleted": False,
            "synced_modified": None,
        })
        doc.entries[orphan.id] = orphan
        report.orphans.append(orphan.id)
        logger.info("Preserved losing write of entry %s as %s", entry.id, orphan.id)

    @staticmethod
    def _take_remote(
        doc: VaultDocument,
        vault_id: str,
        entry_id: str,
        remote: Optional[dict[str, Any]],
        vault_key: bytes,
        report: SyncReport,
    ) -> None:
        if remote is None:
            doc.entries.pop(entry_id, None)
            report.deleted_local += 1
        else:
            doc.entries[entry_id] = entry_from_row(vault_id, remote, vault_key)
            report.pulled += 1

    def _mark_pushed(
        self,
        vault_id: str,
        upserts: list[tuple[str, dict[str, Any], int]],
        deletes: list[tuple[str, int]],
    ) -> None:
        if not upserts and not deletes:
            return
        with self._store.edit(vault_id) as doc:
            for entry_id, _, modified in upserts:
                entry = doc.entries.get(entry_id)
                # an edit made while pushing stays dirty for the next round
                if entry is not None and entry.modified_at == modified:
                    entry.dirty = False
                    entry.synced_modified = modified
            for entry_id, modified in deletes:
                entry = doc.entries.get(entry_id)
                if entry is not None and entry.deleted and entry.modified_at == modified:
                    del doc.entries[entry_id]

    async def sync_all(self) -> dict[str, Any]:
        """Sync every shared vault concurrently, finishing pending deletes too.

        Returns:
            Mapping of vault id to SyncReport or the exception it raised.
        """
        vault_ids = []
        for vault_id in self._store.vault_ids():
            record = self._store.get_vault(vault_id)
            if record.vault_type == VaultType.SHARED and not record.revoked:
                vault_ids.append(vault_id)
        results = await asyncio.gather(
            *(self.sync_vault(v) for v in vault_ids), return_exceptions=True
        )
        return dict(zip(vault_ids, results))

    # ---------------------------------------------------------------------
    # Connection strategies
    # ---------------------------------------------------------------------

    async def before_read(self, vault_id: str) -> None:
        """Remote-only reads go to the remote before every read."""
        record = self._store.get_vault(vault_id)
        if record.vault_type == VaultType.SHARED and self.strategy == ConnectionStrategy.REMOTE_ONLY:
            await self.sync_vault(vault_id)

    async def after_write(self, vault_id: str) -> None:
        """Push a local write: inline when remote-only, in the background otherwise."""
        record = self._store.get_vault(vault_id)
        if record.vault_type != VaultType.SHARED:
            return
        if self.strategy == ConnectionStrategy.REMOTE_ONLY:
            await self.sync_vault(vault_id)
        else:
            self.schedule(vault_id)

    # ---------------------------------------------------------------------
    # Background tasks
    # ---------------------------------------------------------------------

    def schedule(self, vault_id: str) -> asyncio.Task:
        """Start a background sync of ``vault_id`` unless one is already running."""
        existing = self._tasks.get(vault_id)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.create_task(self._background_sync(vault_id), name=f"sync-{vault_id}")
        self._tasks[vault_id] = task
        task.add_done_callback(lambda t: self._forget_task(vault_id, t))
        return task

    def _forget_task(self, vault_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(vault_id) is task:
            del self._tasks[vault_id]

    async def _background_sync(self, vault_id: str) -> Optional[SyncReport]:
        try:
            return await self.sync_vault(vault_id)
        except VaultError as exc:
            logger.warning("Background sync of %s failed: %s", vault_id, exc)
            return None

    async def cancel(self, vault_id: str) -> None:
        """Cancel the in-flight background sync of one vault, if any."""
        task = self._tasks.pop(vault_id, None)
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def drain(self) -> None:
        """Wait for every background sync to finish on its own."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel every background sync."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
