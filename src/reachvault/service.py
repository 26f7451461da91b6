"""
VaultService — wires the components together for one vault home.

This is the consumer boundary: terminal, SFTP, tunnel and playbook
code call ``get_secret`` / ``put_secret`` and never see envelopes or
keys. Shared-vault reads and writes go through the Sync Engine's
connection strategy (read-through replica or remote-only).

Usage:
    service = VaultService(home)
    service.open()
    vault = await service.create_vault("Home")
    entry_id = await service.put_secret(vault.id, Category.PASSWORD, "router", "s3cr3t")
    value = await service.get_secret(vault.id, entry_id)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Optional

from .backup import BackupManager
from .config import VaultConfig, load_config, save_config
from .errors import ConfirmationRequired, SyncUnavailable
from .identity import IdentityManager, IdentityRecord
from .keychain import Keychain, OSKeychain
from .models import Category, EntryRecord, VaultRecord, VaultType
from .sharing import SharingCoordinator
from .store import VaultStore
from .sync.engine import SyncEngine
from .sync.remote import LocalRemoteStore, RemoteStore

logger = logging.getLogger("reachvault.service")


class VaultService:
    """All vault components for one home directory.

    Args:
        home: Vault home directory.
        keychain: Keychain backend. Defaults to the OS keychain.
        remote: Remote store for shared vaults. Defaults to a directory
            store at ``config.remote_root`` (or ``<home>/remote``).
        config: Settings. Loaded from config.yaml when omitted.
        clock: Millisecond clock for entry timestamps.
    """

    def __init__(
        self,
        home: Path,
        keychain: Optional[Keychain] = None,
        remote: Optional[RemoteStore] = None,
        config: Optional[VaultConfig] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.home = home.expanduser()
        self.config = config or load_config(self.home)
        self.identity = IdentityManager(self.home, keychain or OSKeychain(), self.config.kdf)
        self.store = VaultStore(self.home, self.identity, clock=clock)
        self.remote = remote or LocalRemoteStore(self.config.remote_root or self.home / "remote")
        self.sync = SyncEngine(self.home, self.store, self.remote, self.config)
        self.sharing = SharingCoordinator(self.home, self.identity, self.store, self.sync)
        self.backup = BackupManager(self.home, self.identity, self.store, self.config)

    def open(self) -> IdentityRecord:
        """Initialize the identity on first use, otherwise unlock it."""
        if not self.identity.exists():
            return self.identity.initialize()
        return self.identity.unlock()

    # ---------------------------------------------------------------------
    # Vaults
    # ---------------------------------------------------------------------

    async def create_vault(self, name: str, shared: bool = False) -> VaultRecord:
        """Create a vault; shared vaults also get their remote database.

        A shared vault created while the remote is unreachable is kept
        locally and provisioned by its first successful sync.
        """
        vault_type = VaultType.SHARED if shared else VaultType.PRIVATE
        record = self.store.create_vault(name, vault_type)
        if shared:
            try:
                record = await self.sync.provision(record.id)
            except SyncUnavailable as exc:
                logger.warning("Vault %s created offline, provisioning deferred: %s", record.id, exc)
        return record

    async def delete_vault(self, vault_id: str, confirm: bool = False) -> bool:
        """Delete a vault and, for shared vaults, its remote database.

        Returns:
            True once fully deleted; False if the remote delete is still
            pending (it is retried on the next sync).

        Raises:
            ConfirmationRequired: ``confirm`` not set.
        """
        if not confirm:
            raise ConfirmationRequired(f"deleting vault {vault_id} needs confirmation")
        if self.store.delete_vault(vault_id):
            return True
        try:
            return await self.sync.delete_vault(vault_id)
        except SyncUnavailable as exc:
            logger.warning("Remote delete of %s deferred: %s", vault_id, exc)
            return False

    # ---------------------------------------------------------------------
    # Consumer boundary
    # ---------------------------------------------------------------------

    async def get_secret(self, vault_id: str, entry_id: str) -> str:
        """Plaintext of one entry."""
        await self.sync.before_read(vault_id)
        return self.store.read_entry(vault_id, entry_id).decode("utf-8")

    async def put_secret(
        self,
        vault_id: str,
        category: Category,
        name: str,
        plaintext: str,
    ) -> str:
        """Store a new secret and return its entry id.

        The role check happens before any remote call.
        """
        entry = self.store.create_entry(vault_id, Category(category), name, plaintext.encode("utf-8"))
        await self.sync.after_write(vault_id)
        return entry.id

    async def update_secret(
        self,
        vault_id: str,
        entry_id: str,
        plaintext: str,
        name: Optional[str] = None,
    ) -> EntryRecord:
        entry = self.store.update_entry(vault_id, entry_id, plaintext.encode("utf-8"), name=name)
        await self.sync.after_write(vault_id)
        return entry

    async def delete_secret(self, vault_id: str, entry_id: str) -> None:
        self.store.delete_entry(vault_id, entry_id)
        await self.sync.after_write(vault_id)

    # ---------------------------------------------------------------------
    # Settings
    # ---------------------------------------------------------------------

    def update_settings(self, **changes: Any) -> VaultConfig:
        """Apply and persist setting changes (e.g. theme, connection_strategy)."""
        data = self.config.model_dump()
        data.update(changes)
        validated = VaultConfig.model_validate(data)
        # components share this config object, so update it in place
        for field in changes:
            setattr(self.config, field, getattr(validated, field))
        save_config(self.home, self.config)
        return self.config

    async def close(self) -> None:
        """Stop background syncs and forget keys."""
        await self.sync.shutdown()
        self.store.forget_keys()
        self.identity.lock()
