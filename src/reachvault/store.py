"""
Vault Store — local persistence of vaults, entries and memberships.

Envelopes are opaque here: the store asks the Envelope Cipher to seal
and open them and never keeps plaintext or raw DEKs around after a call
returns.

Storage layout:
    <home>/vaults/<vault_id>.json   # VaultDocument, written atomically

Deletes in shared vaults are tombstones until the Sync Engine confirms
the remote side; private vaults purge immediately.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from .audit import safe_audit
from .envelope import (
    b64d,
    b64e,
    decrypt_payload,
    encrypt_payload,
    generate_key,
    member_context,
    unwrap_dek,
    wrap_dek,
)
from .errors import EntryNotFound, PermissionDenied, VaultNotFound
from .identity import IdentityManager
from .models import (
    Category,
    Envelope,
    EntryRecord,
    MemberRecord,
    Permission,
    Role,
    ShareGrant,
    VaultDocument,
    VaultRecord,
    VaultSummary,
    VaultType,
    require_permission,
)

logger = logging.getLogger("reachvault.store")


def now_ms() -> int:
    """Current time in Unix epoch milliseconds."""
    return time.time_ns() // 1_000_000


def write_atomic(path: Path, text: str) -> None:
    """Replace ``path`` with ``text`` via a temp file in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(text)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class VaultStore:
    """CRUD over vaults and their entries.

    Args:
        home: Vault home directory.
        identity: Supplies the identity KEK and ECDH for vault key access.
        clock: Millisecond clock; replaceable for deterministic ordering.
    """

    def __init__(
        self,
        home: Path,
        identity: IdentityManager,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self._home = home
        self._vaults_dir = home / "vaults"
        self._identity = identity
        self._clock = clock or now_ms
        self._lock = threading.RLock()
        self._keys: dict[str, bytes] = {}

    @property
    def identity(self) -> IdentityManager:
        return self._identity

    def now(self) -> int:
        return self._clock()

    # ---------------------------------------------------------------------
    # Documents
    # ---------------------------------------------------------------------

    def _path(self, vault_id: str) -> Path:
        return self._vaults_dir / f"{vault_id}.json"

    def load(self, vault_id: str) -> VaultDocument:
        """Read one vault document from disk."""
        path = self._path(vault_id)
        if not path.exists():
            raise VaultNotFound(f"vault {vault_id} not found")
        return VaultDocument.model_validate_json(path.read_text(encoding="utf-8"))

    def save(self, doc: VaultDocument) -> None:
        """Persist one vault document atomically."""
        with self._lock:
            write_atomic(self._path(doc.vault.id), doc.model_dump_json(indent=2))

    @contextmanager
    def edit(self, vault_id: str) -> Iterator[VaultDocument]:
        """Load, mutate and save a vault document under the store lock.

        Nothing is saved if the block raises.
        """
        with self._lock:
            doc = self.load(vault_id)
            yield doc
            self.save(doc)

    def vault_ids(self) -> list[str]:
        if not self._vaults_dir.exists():
            return []
        return sorted(p.stem for p in self._vaults_dir.glob("*.json"))

    # ---------------------------------------------------------------------
    # Vaults
    # ---------------------------------------------------------------------

    def create_vault(self, name: str, vault_type: VaultType = VaultType.PRIVATE) -> VaultRecord:
        """Create a vault owned by this identity with a fresh vault KEK.

        Shared vaults get an owner member row up front; provisioning the
        remote database is the Sync Engine's job.

        Args:
            name: Display name.
            vault_type: Private (local only) or Shared (remote backed).

        Returns:
            The new VaultRecord.
        """
        if not name.strip():
            raise ValueError("vault name must not be empty")
        identity = self._identity
        vault_key = generate_key()
        wrapped = b64e(wrap_dek(vault_key, identity.derive_kek()))

        record = VaultRecord(
            id=str(uuid.uuid4()),
            name=name,
            vault_type=vault_type,
            owner_uuid=identity.user_uuid,
            created_at=self._clock(),
            role=Role.OWNER,
            wrapped_key=wrapped,
        )
        doc = VaultDocument(vault=record)
        if vault_type == VaultType.SHARED:
            doc.members[identity.user_uuid] = MemberRecord(
                user_uuid=identity.user_uuid,
                public_key=identity.record.public_key,
                role=Role.OWNER,
                wrapped_key=wrapped,
            )
        self.save(doc)
        self._keys[record.id] = vault_key

        logger.info("Created %s vault %s", vault_type.value, record.id)
        safe_audit(
            self._home, "VAULT_CREATE", f"Created {vault_type.value} vault {record.id}",
            user_uuid=identity.user_uuid,
        )
        return record

    def adopt_vault(self, record: VaultRecord, members: dict[str, MemberRecord]) -> VaultRecord:
        """Register a vault that already exists remotely (invite or second device)."""
        with self._lock:
            path = self._path(record.id)
            if path.exists():
                with self.edit(record.id) as doc:
                    doc.vault = record
                    doc.members = members
            else:
                self.save(VaultDocument(vault=record, members=members))
        self._keys.pop(record.id, None)
        return record

    def get_vault(self, vault_id: str) -> VaultRecord:
        return self.load(vault_id).vault

    def update_vault(self, record: VaultRecord) -> None:
        with self.edit(record.id) as doc:
            doc.vault = record

    def list_vaults(self, include_internal: bool = False) -> list[VaultSummary]:
        """All live vaults with their visible entry counts."""
        summaries = []
        for vault_id in self.vault_ids():
            doc = self.load(vault_id)
            if doc.vault.deleted or (doc.vault.internal and not include_internal):
                continue
            count = sum(1 for e in doc.entries.values() if not e.deleted)
            summaries.append(VaultSummary(vault=doc.vault, entry_count=count))
        return sorted(summaries, key=lambda s: s.vault.created_at)

    def find_vault(self, name: str) -> Optional[VaultRecord]:
        """First live vault with this exact name."""
        for summary in self.list_vaults(include_internal=True):
            if summary.vault.name == name:
                return summary.vault
        return None

    def delete_vault(self, vault_id: str) -> bool:
        """Delete a vault locally.

        Returns:
            True if the vault was purged, False if it is a shared vault now
            tombstoned until the remote database is gone.
        """
        record = self.get_vault(vault_id)
        if record.vault_type == VaultType.SHARED and not record.revoked:
            if record.role != Role.OWNER:
                raise PermissionDenied("only the owner can delete a shared vault")
            with self.edit(vault_id) as doc:
                doc.vault.deleted = True
            self._keys.pop(vault_id, None)
            logger.info("Vault %s tombstoned pending remote delete", vault_id)
            return False
        self.purge_vault(vault_id)
        return True

    def purge_vault(self, vault_id: str) -> None:
        """Physically remove a vault document."""
        with self._lock:
            self._path(vault_id).unlink(missing_ok=True)
        self._keys.pop(vault_id, None)
        logger.info("Vault %s purged", vault_id)
        safe_audit(self._home, "VAULT_DELETE", f"Purged vault {vault_id}")

    def revoke_vault(self, vault_id: str) -> None:
        """Access was withdrawn: drop the key, the entries and the members."""
        with self.edit(vault_id) as doc:
            doc.vault.revoked = True
            doc.vault.wrapped_key = None
            doc.entries.clear()
            doc.members.clear()
        self._keys.pop(vault_id, None)
        logger.warning("Access to vault %s revoked", vault_id)
        safe_audit(self._home, "VAULT_REVOKED", f"Access to vault {vault_id} revoked")

    # ---------------------------------------------------------------------
    # Vault keys
    # ---------------------------------------------------------------------

    def vault_key(self, vault_id: str) -> bytes:
        """The effective vault KEK, cached for the session.

        Raises:
            PermissionDenied: Access was revoked or no member copy exists.
            DecryptionFailed: The wrapped copy does not open.
        """
        cached = self._keys.get(vault_id)
        if cached is not None:
            return cached

        doc = self.load(vault_id)
        record = doc.vault
        if record.revoked:
            raise PermissionDenied(f"access to vault {vault_id} has been revoked")

        if record.wrapped_key is not None and record.owner_uuid == self._identity.user_uuid:
            key = unwrap_dek(b64d(record.wrapped_key), self._identity.derive_kek())
        else:
            member = doc.members.get(self._identity.user_uuid)
            if member is None or member.inviter_public_key is None:
                raise PermissionDenied(f"no key copy for this identity in vault {vault_id}")
            wrapping = self._identity.derive_shared_key(
                b64d(member.inviter_public_key), member_context(vault_id)
            )
            key = unwrap_dek(b64d(member.wrapped_key), wrapping)

        self._keys[vault_id] = key
        return key

    def forget_keys(self, vault_id: Optional[str] = None) -> None:
        """Drop cached vault keys (all of them by default)."""
        if vault_id is None:
            self._keys.clear()
        else:
            self._keys.pop(vault_id, None)

    # ---------------------------------------------------------------------
    # Entries
    # ---------------------------------------------------------------------

    def create_entry(
        self,
        vault_id: str,
        category: Category,
        name: str,
        plaintext: bytes,
        share_id: Optional[str] = None,
        shared_by: Optional[str] = None,
    ) -> EntryRecord:
        """Encrypt and store a new secret.

        Raises:
            PermissionDenied: The caller's role cannot write to this vault.
        """
        record = self._writable(vault_id, "add entries")
        envelope = self._encrypt(vault_id, plaintext)
        now = self._clock()
        entry = EntryRecord(
            id=str(uuid.uuid4()),
            vault_id=vault_id,
            name=name,
            category=Category(category),
            envelope=envelope,
            owner_uuid=self._identity.user_uuid,
            created_at=now,
            modified_at=now,
            dirty=record.vault_type == VaultType.SHARED,
            share_id=share_id,
            shared_by=shared_by,
        )
        with self.edit(vault_id) as doc:
            doc.entries[entry.id] = entry
        logger.debug("Created entry %s in vault %s", entry.id, vault_id)
        return entry

    def read_entry(self, vault_id: str, entry_id: str) -> bytes:
        """Decrypt an entry. The result is never cached."""
        doc = self.load(vault_id)
        require_permission(doc.vault.role, Permission.READ, "read entries")
        entry = self._live_entry(doc, entry_id)
        dek = unwrap_dek(b64d(entry.envelope.wrapped_dek), self.vault_key(vault_id))
        return decrypt_payload(b64d(entry.envelope.payload), dek)

    def update_entry(
        self,
        vault_id: str,
        entry_id: str,
        plaintext: bytes,
        name: Optional[str] = None,
        category: Optional[Category] = None,
    ) -> EntryRecord:
        """Re-encrypt an entry under a brand new DEK."""
        self._writable(vault_id, "update entries")
        envelope = self._encrypt(vault_id, plaintext)
        with self.edit(vault_id) as doc:
            entry = self._live_entry(doc, entry_id)
            entry.envelope = envelope
            if name is not None:
                entry.name = name
            if category is not None:
                entry.category = Category(category)
            entry.modified_at = max(self._clock(), entry.modified_at + 1)
            entry.dirty = doc.vault.vault_type == VaultType.SHARED and not entry.local_only
        return entry

    def delete_entry(self, vault_id: str, entry_id: str) -> None:
        """Remove an entry, or tombstone it until sync confirms.

        Shared entries are always tombstoned, even if never confirmed as
        pushed: an interrupted round may already have written the row.
        """
        self._writable(vault_id, "delete entries")
        with self.edit(vault_id) as doc:
            entry = self._live_entry(doc, entry_id)
            if doc.vault.vault_type == VaultType.PRIVATE or entry.local_only:
                del doc.entries[entry_id]
                return
            entry.deleted = True
            entry.dirty = True
            entry.modified_at = max(self._clock(), entry.modified_at + 1)

    def get_entry(self, vault_id: str, entry_id: str) -> EntryRecord:
        """Entry metadata and envelope, no decryption."""
        return self._live_entry(self.load(vault_id), entry_id)

    def list_entries(self, vault_id: str, category: Optional[Category] = None) -> list[EntryRecord]:
        """Visible entries of a vault, oldest first."""
        doc = self.load(vault_id)
        require_permission(doc.vault.role, Permission.READ, "list entries")
        entries = [
            e for e in doc.entries.values()
            if not e.deleted and (category is None or e.category == category)
        ]
        return sorted(entries, key=lambda e: (e.created_at, e.id))

    def find_shared_import(self, vault_id: str, share_id: str) -> Optional[EntryRecord]:
        """Entry previously imported from ``share_id``, if any."""
        for entry in self.load(vault_id).entries.values():
            if entry.share_id == share_id and not entry.deleted:
                return entry
        return None

    # ---------------------------------------------------------------------
    # Members and outgoing shares
    # ---------------------------------------------------------------------

    def put_member(self, vault_id: str, member: MemberRecord) -> None:
        with self.edit(vault_id) as doc:
            doc.members[member.user_uuid] = member

    def remove_member(self, vault_id: str, user_uuid: str) -> None:
        with self.edit(vault_id) as doc:
            doc.members.pop(user_uuid, None)

    def list_members(self, vault_id: str) -> list[MemberRecord]:
        doc = self.load(vault_id)
        return sorted(doc.members.values(), key=lambda m: (-m.role.rank, m.added_at))

    def record_share(self, vault_id: str, grant: ShareGrant) -> None:
        with self.edit(vault_id) as doc:
            doc.outgoing_shares[grant.share_id] = grant

    # ---------------------------------------------------------------------
    # Internals
    # ---------------------------------------------------------------------

    def _writable(self, vault_id: str, action: str) -> VaultRecord:
        record = self.get_vault(vault_id)
        if record.revoked or record.deleted:
            raise PermissionDenied(f"vault {vault_id} is no longer accessible")
        require_permission(record.role, Permission.WRITE, action)
        return record

    def _encrypt(self, vault_id: str, plaintext: bytes) -> Envelope:
        dek, payload = encrypt_payload(plaintext)
        wrapped = wrap_dek(dek, self.vault_key(vault_id))
        del dek
        return Envelope(payload=b64e(payload), wrapped_dek=b64e(wrapped))

    @staticmethod
    def _live_entry(doc: VaultDocument, entry_id: str) -> EntryRecord:
        entry = doc.entries.get(entry_id)
        if entry is None or entry.deleted:
            raise EntryNotFound(f"entry {entry_id} not found in vault {doc.vault.id}")
        return entry
