"""
Backup Manager — password-protected export and import of the whole home.

Archive layout (little-endian):

    magic       8 bytes   b"REACHBAK"
    version     u16       FORMAT_VERSION
    memory_kib  u32       Argon2id memory cost
    time_cost   u32       Argon2id iterations
    parallelism u32       Argon2id lanes
    salt        32 bytes
    nonce       24 bytes  \\
    ciphertext  ...        } XChaCha20-Poly1305 over the JSON bundle
    tag         16 bytes  /

Everything before the nonce is bound as associated data, so the tag
covers the whole file. Entry envelopes are carried as they are; only
the key tier above them (identity secret key, vault KEKs) is re-wrapped
under the backup key. Plaintext payloads are never produced during
export.

Import verifies the tag before touching anything, shows a preview, and
swaps the new state in with directory renames.
"""

from __future__ import annotations

import json
import logging
import secrets
import shutil
import struct
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError

from .audit import safe_audit
from .config import VaultConfig, load_config
from .envelope import (
    b64d,
    b64e,
    derive_password_key,
    hkdf,
    open_sealed,
    seal,
    wrap_dek,
)
from .errors import (
    BackupAuthFailed,
    DecryptionFailed,
    InvalidBackupFormat,
    UnsupportedBackupVersion,
)
from .identity import IdentityManager, IdentityRecord, kek_from_secret
from .models import KdfParams, VaultDocument
from .store import VaultStore, write_atomic

logger = logging.getLogger("reachvault.backup")

MAGIC = b"REACHBAK"
FORMAT_VERSION = 1
HEADER = struct.Struct("<8sHIII32s")
SALT_SIZE = 32
MIN_PASSWORD_LENGTH = 8
BACKUP_CONTEXT = b"reachvault:backup-kek:v1"

STATE_DIRS = ("identity", "vaults", "config")


class BackupVault(BaseModel):
    """One vault as archived. ``sealed_key`` is its KEK under the backup key."""

    document: VaultDocument
    sealed_key: Optional[str] = None


class BackupBundle(BaseModel):
    """Decrypted contents of a backup archive."""

    version: int = FORMAT_VERSION
    exported_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    identity: IdentityRecord
    sealed_secret_key: str
    vaults: list[BackupVault] = Field(default_factory=list)
    settings: dict[str, Any] = Field(default_factory=dict)


class BackupPreview(BaseModel):
    """What an archive holds, shown before anything is replaced."""

    version: int
    exported_at: datetime
    user_uuid: str
    vault_count: int
    entry_count: int
    member_count: int
    has_sync_config: bool
    applied: bool = False


def _preview(bundle: BackupBundle) -> BackupPreview:
    docs = [v.document for v in bundle.vaults]
    return BackupPreview(
        version=bundle.version,
        exported_at=bundle.exported_at,
        user_uuid=bundle.identity.user_uuid,
        vault_count=len(docs),
        entry_count=sum(sum(1 for e in d.entries.values() if not e.deleted) for d in docs),
        member_count=sum(len(d.members) for d in docs),
        has_sync_config=any(d.vault.credential is not None for d in docs),
    )


class BackupManager:
    """Exports and imports the full local state.

    Args:
        home: Vault home directory.
        identity: Identity Manager; must be unlocked to export.
        store: Local vault store.
        config: Current settings (also supplies Argon2id cost for export).
    """

    def __init__(
        self,
        home: Path,
        identity: IdentityManager,
        store: VaultStore,
        config: Optional[VaultConfig] = None,
    ) -> None:
        self._home = home
        self._identity = identity
        self._store = store
        self._config = config or load_config(home)

    # ---------------------------------------------------------------------
    # Export
    # ---------------------------------------------------------------------

    def export_backup(self, password: str) -> bytes:
        """Serialize everything into one sealed archive.

        Raises:
            ValueError: Password shorter than MIN_PASSWORD_LENGTH.
            IdentityLocked: The identity is not unlocked.
        """
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"backup password must be at least {MIN_PASSWORD_LENGTH} characters")

        secret_key = b64d(self._identity.export_secret_key())
        params = self._config.kdf
        salt = secrets.token_bytes(SALT_SIZE)
        backup_key = _derive(password, salt, params)

        vaults = []
        for vault_id in self._store.vault_ids():
            doc = self._store.load(vault_id)
            if doc.vault.deleted:
                continue
            sealed_key = None
            if not doc.vault.revoked:
                vault_key = self._store.vault_key(vault_id)
                sealed_key = b64e(seal(vault_key, backup_key, aad=vault_id.encode()))
            vaults.append(BackupVault(document=doc, sealed_key=sealed_key))

        bundle = BackupBundle(
            identity=self._identity.record,
            sealed_secret_key=b64e(seal(secret_key, backup_key, aad=b"identity")),
            vaults=vaults,
            settings=self._config.model_dump(mode="json"),
        )
        del secret_key

        header = HEADER.pack(
            MAGIC, FORMAT_VERSION, params.memory_kib, params.time_cost, params.parallelism, salt
        )
        body = seal(bundle.model_dump_json().encode("utf-8"), backup_key, aad=header)

        logger.info("Backup exported: %d vaults", len(vaults))
        safe_audit(
            self._home, "BACKUP_EXPORT", f"Backup exported ({len(vaults)} vaults)",
            user_uuid=self._identity.user_uuid,
        )
        return header + body

    def write_backup(self, password: str, output: Path) -> dict:
        """Export to a file (a timestamped name when ``output`` is a directory).

        Returns:
            dict with filepath, archive_size and vault_count.
        """
        data = self.export_backup(password)
        output = output.expanduser()
        if output.is_dir():
            stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
            output = output / f"reachvault-{stamp}.reachbak"
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_bytes(data)
        return {
            "filepath": str(output),
            "archive_size": len(data),
            "vault_count": len(self._store.vault_ids()),
        }

    # ---------------------------------------------------------------------
    # Import
    # ---------------------------------------------------------------------

    def preview_backup(self, data: bytes, password: str) -> BackupPreview:
        """Authenticate and summarize an archive without applying it."""
        _, bundle = _open(data, password)
        return _preview(bundle)

    def import_backup(
        self,
        data: bytes,
        password: str,
        confirm: Union[bool, Callable[[BackupPreview], bool]] = False,
    ) -> BackupPreview:
        """Replace the local state with an archive's contents.

        Args:
            data: Archive bytes.
            password: Backup password.
            confirm: True, or a callback that sees the preview and
                decides. Nothing is replaced unless it says yes.

        Returns:
            The preview, with ``applied`` set when the state was replaced.

        Raises:
            InvalidBackupFormat: Not an archive.
            UnsupportedBackupVersion: Unknown format version.
            BackupAuthFailed: Wrong password or tampered file. No side effects.
        """
        backup_key, bundle = _open(data, password)
        preview = _preview(bundle)
        approved = confirm(preview) if callable(confirm) else confirm
        if not approved:
            logger.info("Backup import not confirmed; nothing changed")
            return preview

        try:
            secret_key = open_sealed(b64d(bundle.sealed_secret_key), backup_key, aad=b"identity")
            vault_keys = {
                v.document.vault.id: open_sealed(
                    b64d(v.sealed_key), backup_key, aad=v.document.vault.id.encode()
                )
                for v in bundle.vaults
                if v.sealed_key is not None
            }
        except DecryptionFailed:
            raise BackupAuthFailed() from None

        self._apply(bundle, secret_key, vault_keys)
        preview.applied = True

        logger.info("Backup imported: %d vaults, %d entries", preview.vault_count, preview.entry_count)
        safe_audit(
            self._home, "BACKUP_IMPORT",
            f"Backup imported ({preview.vault_count} vaults, {preview.entry_count} entries)",
            user_uuid=bundle.identity.user_uuid,
        )
        return preview

    def _apply(self, bundle: BackupBundle, secret_key: bytes, vault_keys: dict[str, bytes]) -> None:
        """Stage the archived state next to the live one, then swap it in."""
        kek = kek_from_secret(secret_key)
        staging = self._home / ".import-staging"
        shutil.rmtree(staging, ignore_errors=True)
        (staging / "vaults").mkdir(parents=True)

        self._identity.write_record(bundle.identity, staging / "identity" / "identity.json")
        for archived in bundle.vaults:
            doc = archived.document
            vault_key = vault_keys.get(doc.vault.id)
            if vault_key is not None and doc.vault.owner_uuid == bundle.identity.user_uuid:
                doc.vault.wrapped_key = b64e(wrap_dek(vault_key, kek))
                owner = doc.members.get(doc.vault.owner_uuid)
                if owner is not None:
                    owner.wrapped_key = doc.vault.wrapped_key
            write_atomic(staging / "vaults" / f"{doc.vault.id}.json", doc.model_dump_json(indent=2))
        settings = VaultConfig.model_validate(bundle.settings)
        write_atomic(
            staging / "config" / "config.yaml",
            yaml.dump(settings.model_dump(mode="json"), default_flow_style=False),
        )

        # keychain first: a refusal aborts before any live file moves
        self._identity.stash_secret(bundle.identity.user_uuid, secret_key)
        self._swap(staging)

        self._store.forget_keys()
        self._identity.reload()
        self._identity.adopt(secret_key)
        shutil.rmtree(self._home / "sync", ignore_errors=True)

    def _swap(self, staging: Path) -> None:
        old = self._home / ".import-old"
        shutil.rmtree(old, ignore_errors=True)
        old.mkdir(parents=True)
        swapped: list[str] = []
        try:
            for name in STATE_DIRS:
                current = self._home / name
                if current.exists():
                    current.rename(old / name)
                (staging / name).rename(current)
                swapped.append(name)
        except OSError:
            for name in STATE_DIRS:
                current = self._home / name
                if name in swapped:
                    current.rename(staging / name)
                if (old / name).exists() and not current.exists():
                    (old / name).rename(current)
            raise
        shutil.rmtree(old, ignore_errors=True)
        shutil.rmtree(staging, ignore_errors=True)


def _derive(password: str, salt: bytes, params: KdfParams) -> bytes:
    return hkdf(derive_password_key(password, salt, params), BACKUP_CONTEXT)


def _open(data: bytes, password: str) -> tuple[bytes, BackupBundle]:
    """Check the header, derive the key and authenticate the body."""
    if len(data) < HEADER.size:
        raise InvalidBackupFormat("file is too short to be a backup archive")
    magic, version, memory_kib, time_cost, parallelism, salt = HEADER.unpack_from(data)
    if magic != MAGIC:
        raise InvalidBackupFormat("not a reachvault backup archive")
    if version != FORMAT_VERSION:
        raise UnsupportedBackupVersion(version)
    # checked before any Argon2 work; the header is not authenticated yet
    try:
        params = KdfParams(memory_kib=memory_kib, time_cost=time_cost, parallelism=parallelism)
    except ValidationError:
        raise InvalidBackupFormat("archive header has out-of-range KDF parameters") from None
    if memory_kib < 8 * parallelism:
        raise InvalidBackupFormat("archive header has out-of-range KDF parameters")

    backup_key = _derive(password, salt, params)
    try:
        plaintext = open_sealed(data[HEADER.size:], backup_key, aad=data[:HEADER.size])
    except DecryptionFailed:
        raise BackupAuthFailed() from None
    try:
        bundle = BackupBundle.model_validate(json.loads(plaintext))
    except (ValueError, ValidationError) as exc:
        raise InvalidBackupFormat("archive contents are malformed") from exc
    return backup_key, bundle
