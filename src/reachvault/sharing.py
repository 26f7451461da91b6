"""
Sharing Coordinator — vault membership and one-off secret shares.

Vault membership:
    The vault KEK is wrapped once per member under
    HKDF(ECDH(inviter secret, member public), vault context). The member
    recomputes the same wrapping key with ECDH(member secret, inviter
    public). Invites carry only a sync credential scoped to the vault's
    database, never key material.

One-off shares:
    The entry's DEK is re-wrapped under HKDF(ECDH(sender, recipient),
    share context) and travels with the untouched sealed payload.
    Accepting copies the secret into a vault of the recipient's choice
    under a fresh DEK; there is no live link back to the source.

Removing a member deletes their wrapped-KEK row and revokes their
credential. Entries are not re-keyed, so a removed member who kept a
copy of the vault KEK can still open envelopes they already fetched.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from .audit import safe_audit
from .envelope import (
    b64d,
    b64e,
    decrypt_payload,
    member_context,
    parse_public_key,
    share_context,
    unwrap_dek,
    wrap_dek,
)
from .errors import (
    ConfirmationRequired,
    MemberNotFound,
    PermissionDenied,
    ShareExpired,
    VaultNotFound,
)
from .identity import IdentityManager
from .models import (
    EntryRecord,
    Invite,
    MemberRecord,
    Permission,
    Role,
    ShareGrant,
    VaultRecord,
    VaultType,
    require_permission,
)
from .store import VaultStore
from .sync.engine import HEADER_ROW, SyncEngine, open_name
from .sync.remote import TABLE_HEADER, TABLE_MEMBERS

logger = logging.getLogger("reachvault.sharing")


class SharingCoordinator:
    """Invites, membership changes and one-off shares.

    Args:
        home: Vault home directory.
        identity: This device's identity; must be unlocked.
        store: Local vault store.
        engine: Sync engine, used for every remote call.
    """

    def __init__(
        self,
        home: Path,
        identity: IdentityManager,
        store: VaultStore,
        engine: SyncEngine,
    ) -> None:
        self._home = home
        self._identity = identity
        self._store = store
        self._engine = engine

    # ---------------------------------------------------------------------
    # Vault membership
    # ---------------------------------------------------------------------

    async def invite_member(
        self,
        vault_id: str,
        user_uuid: str,
        public_key: str,
        role: Role = Role.MEMBER,
    ) -> Invite:
        """Grant a candidate access to a shared vault.

        Args:
            vault_id: Shared vault to invite into.
            user_uuid: Candidate's identity UUID, obtained out of band.
            public_key: Candidate's base64 X25519 public key.
            role: Role to grant. Never Owner.

        Returns:
            Invite to hand to the candidate.

        Raises:
            PermissionDenied: Caller cannot manage members or grant ``role``.
            InvalidKeyFormat: ``public_key`` is malformed.
        """
        role = Role(role)
        record = self._manageable(vault_id, "invite members")
        if role == Role.OWNER:
            raise PermissionDenied("a shared vault has exactly one owner")
        if role.rank >= record.role.rank and record.role != Role.OWNER:
            raise PermissionDenied(f"role '{record.role.value}' cannot grant '{role.value}'")
        if user_uuid == self._identity.user_uuid:
            raise ValueError("cannot invite yourself")
        member_key = parse_public_key(public_key)

        wrapping = self._identity.derive_shared_key(member_key, member_context(vault_id))
        member = MemberRecord(
            user_uuid=user_uuid,
            public_key=public_key,
            role=role,
            wrapped_key=b64e(wrap_dek(self._store.vault_key(vault_id), wrapping)),
            inviter_public_key=self._identity.record.public_key,
        )

        credential = record.credential
        token = await self._engine.call_remote(
            self._engine.remote.grant, credential, user_uuid, role
        )
        await self._engine.call_remote(
            self._engine.remote.put_row, credential, TABLE_MEMBERS, user_uuid,
            member.model_dump(mode="json"),
        )
        self._store.put_member(vault_id, member)

        logger.info("Invited %s to vault %s as %s", user_uuid, vault_id, role.value)
        self._audit(
            "MEMBER_ADD", f"Invited {user_uuid} to vault {vault_id} as {role.value}",
            {"vault_id": vault_id, "member": user_uuid, "role": role.value},
        )
        return Invite(
            vault_id=vault_id,
            inviter_uuid=self._identity.user_uuid,
            role=role,
            credential=credential.model_copy(update={"token": token}),
        )

    async def join_vault(self, invite: Invite) -> VaultRecord:
        """Accept an invite, or attach an owned vault on another device.

        Proves membership by unwrapping this identity's copy of the vault
        KEK, then runs a first sync to pull the entries.

        Raises:
            PermissionDenied: This identity is not a member of the vault.
            DecryptionFailed: The wrapped KEK does not open for this identity.
        """
        credential = invite.credential
        members = await self._engine.call_remote(
            self._engine.remote.get_rows, credential, TABLE_MEMBERS
        )
        header = (await self._engine.call_remote(
            self._engine.remote.get_rows, credential, TABLE_HEADER
        )).get(HEADER_ROW)
        if header is None:
            raise VaultNotFound(f"remote database {credential.database} has no vault header")

        me = self._identity.user_uuid
        row = members.get(me)
        if row is None:
            raise PermissionDenied("this identity is not a member of the vault")
        mine = MemberRecord.model_validate(row)
        owned = header["owner_uuid"] == me

        if owned:
            vault_key = unwrap_dek(b64d(mine.wrapped_key), self._identity.derive_kek())
        else:
            if mine.inviter_public_key is None:
                raise PermissionDenied("member record has no inviter key")
            wrapping = self._identity.derive_shared_key(
                b64d(mine.inviter_public_key), member_context(header["vault_id"])
            )
            vault_key = unwrap_dek(b64d(mine.wrapped_key), wrapping)

        record = VaultRecord(
            id=header["vault_id"],
            name=open_name(header["sealed_name"], vault_key, header["vault_id"]),
            vault_type=VaultType.SHARED,
            owner_uuid=header["owner_uuid"],
            created_at=header["created_at"],
            role=Role.OWNER if owned else mine.role,
            wrapped_key=mine.wrapped_key if owned else None,
            credential=credential,
        )
        self._store.adopt_vault(
            record, {uid: MemberRecord.model_validate(r) for uid, r in members.items()}
        )
        await self._engine.sync_vault(record.id)

        logger.info("Joined vault %s as %s", record.id, record.role.value)
        self._audit(
            "VAULT_JOIN", f"Joined vault {record.id} as {record.role.value}",
            {"vault_id": record.id, "inviter": invite.inviter_uuid},
        )
        return self._store.get_vault(record.id)

    def device_invite(self, vault_id: str) -> Invite:
        """Invite for attaching this vault on another device of the same identity.

        The other device must hold the same secret key (see
        ``identity import``); ``join_vault`` then unwraps the vault KEK
        from this identity's own member row.

        Raises:
            PermissionDenied: The vault was revoked or deleted.
            ValueError: The vault is private or not provisioned yet.
        """
        record = self._store.get_vault(vault_id)
        if record.vault_type != VaultType.SHARED:
            raise ValueError(f"vault {vault_id} is private; only shared vaults sync between devices")
        if record.revoked or record.deleted:
            raise PermissionDenied(f"vault {vault_id} is no longer accessible")
        if record.credential is None:
            raise ValueError(f"vault {vault_id} has not been provisioned yet; sync it first")

        self._audit("DEVICE_INVITE", f"Device invite issued for vault {vault_id}", {"vault_id": vault_id})
        return Invite(
            vault_id=vault_id,
            inviter_uuid=self._identity.user_uuid,
            role=record.role,
            credential=record.credential,
        )

    async def remove_member(self, vault_id: str, user_uuid: str, confirm: bool = False) -> None:
        """Delete a member's wrapped-KEK row and revoke their credential.

        Existing entries are not re-keyed.

        Raises:
            ConfirmationRequired: ``confirm`` not set.
            PermissionDenied: Caller cannot manage members or outranks.
            MemberNotFound: No such member.
        """
        if not confirm:
            raise ConfirmationRequired(f"removing {user_uuid} from vault {vault_id} needs confirmation")
        record = self._manageable(vault_id, "remove members")
        member = self._member(vault_id, user_uuid)
        if member.role == Role.OWNER:
            raise PermissionDenied("the owner cannot be removed")
        if member.role.rank >= record.role.rank and record.role != Role.OWNER:
            raise PermissionDenied(f"role '{record.role.value}' cannot remove '{member.role.value}'")

        credential = record.credential
        await self._engine.call_remote(
            self._engine.remote.delete_row, credential, TABLE_MEMBERS, user_uuid
        )
        await self._engine.call_remote(self._engine.remote.revoke, credential, user_uuid)
        self._store.remove_member(vault_id, user_uuid)

        logger.info("Removed %s from vault %s", user_uuid, vault_id)
        self._audit(
            "MEMBER_REMOVE", f"Removed {user_uuid} from vault {vault_id}",
            {"vault_id": vault_id, "member": user_uuid},
        )

    async def change_role(self, vault_id: str, user_uuid: str, role: Role) -> MemberRecord:
        """Move a member to another role; takes effect on their next sync."""
        role = Role(role)
        record = self._manageable(vault_id, "change roles")
        member = self._member(vault_id, user_uuid)
        if Role.OWNER in (role, member.role):
            raise PermissionDenied("ownership cannot be granted or taken away")
        if record.role != Role.OWNER and max(role.rank, member.role.rank) >= record.role.rank:
            raise PermissionDenied(f"role '{record.role.value}' cannot assign '{role.value}'")

        updated = member.model_copy(update={"role": role})
        credential = record.credential
        await self._engine.call_remote(self._engine.remote.grant, credential, user_uuid, role)
        await self._engine.call_remote(
            self._engine.remote.put_row, credential, TABLE_MEMBERS, user_uuid,
            updated.model_dump(mode="json"),
        )
        self._store.put_member(vault_id, updated)

        self._audit(
            "MEMBER_ROLE", f"{user_uuid} is now {role.value} in vault {vault_id}",
            {"vault_id": vault_id, "member": user_uuid, "role": role.value},
        )
        return updated

    def list_members(self, vault_id: str) -> list[MemberRecord]:
        record = self._store.get_vault(vault_id)
        require_permission(record.role, Permission.READ, "list members")
        return self._store.list_members(vault_id)

    def leave_vault(self, vault_id: str, confirm: bool = False) -> None:
        """Drop a shared vault this identity does not own from this device."""
        if not confirm:
            raise ConfirmationRequired(f"leaving vault {vault_id} needs confirmation")
        record = self._store.get_vault(vault_id)
        if record.owner_uuid == self._identity.user_uuid and not record.revoked:
            raise PermissionDenied("the owner deletes the vault instead of leaving it")
        self._store.purge_vault(vault_id)
        self._audit("VAULT_LEAVE", f"Left vault {vault_id}", {"vault_id": vault_id})

    # ---------------------------------------------------------------------
    # One-off shares
    # ---------------------------------------------------------------------

    def share_entry(
        self,
        vault_id: str,
        entry_id: str,
        recipient_uuid: str,
        recipient_public_key: str,
        expires_in: Optional[timedelta] = None,
    ) -> ShareGrant:
        """Re-wrap one entry's DEK for a recipient.

        Args:
            vault_id: Vault holding the entry.
            entry_id: Entry to share.
            recipient_uuid: Recipient identity UUID.
            recipient_public_key: Recipient base64 X25519 public key.
            expires_in: Optional lifetime of the grant.

        Returns:
            ShareGrant, to be delivered out of band (see ``to_token``).
        """
        record = self._store.get_vault(vault_id)
        require_permission(record.role, Permission.READ, "share entries")
        recipient_key = parse_public_key(recipient_public_key)
        entry = self._store.get_entry(vault_id, entry_id)

        share_id = str(uuid.uuid4())
        dek = unwrap_dek(b64d(entry.envelope.wrapped_dek), self._store.vault_key(vault_id))
        wrapping = self._identity.derive_shared_key(recipient_key, share_context(share_id))
        wrapped = wrap_dek(dek, wrapping)
        del dek

        now = datetime.now(timezone.utc)
        grant = ShareGrant(
            share_id=share_id,
            sender_uuid=self._identity.user_uuid,
            sender_public_key=self._identity.record.public_key,
            recipient_uuid=recipient_uuid,
            source_entry_id=entry_id,
            name=entry.name,
            category=entry.category,
            payload=entry.envelope.payload,
            wrapped_dek=b64e(wrapped),
            created_at=now,
            expires_at=now + expires_in if expires_in is not None else None,
        )
        self._store.record_share(vault_id, grant)

        logger.info("Shared entry %s with %s (%s)", entry_id, recipient_uuid, share_id)
        self._audit(
            "SHARE_CREATE", f"Shared entry {entry_id} with {recipient_uuid}",
            {"vault_id": vault_id, "share_id": share_id, "recipient": recipient_uuid},
        )
        return grant

    def accept_share(
        self,
        grant: ShareGrant,
        vault_id: str,
        now: Optional[datetime] = None,
    ) -> EntryRecord:
        """Copy a shared secret into ``vault_id``.

        Accepting the same grant twice returns the entry created the
        first time.

        Raises:
            ShareExpired: The grant is past its expiry.
            PermissionDenied: The grant is for someone else, or the
                target vault is not writable.
            DecryptionFailed: The grant was tampered with.
        """
        if grant.recipient_uuid != self._identity.user_uuid:
            raise PermissionDenied("share is addressed to another identity")
        if grant.expired(now):
            raise ShareExpired(f"share {grant.share_id} expired at {grant.expires_at.isoformat()}")

        existing = self._store.find_shared_import(vault_id, grant.share_id)
        if existing is not None:
            return existing

        wrapping = self._identity.derive_shared_key(
            parse_public_key(grant.sender_public_key), share_context(grant.share_id)
        )
        dek = unwrap_dek(b64d(grant.wrapped_dek), wrapping)
        plaintext = decrypt_payload(b64d(grant.payload), dek)
        del dek
        entry = self._store.create_entry(
            vault_id, grant.category, grant.name, plaintext,
            share_id=grant.share_id, shared_by=grant.sender_uuid,
        )

        logger.info("Accepted share %s into vault %s", grant.share_id, vault_id)
        self._audit(
            "SHARE_ACCEPT", f"Accepted share {grant.share_id} from {grant.sender_uuid}",
            {"vault_id": vault_id, "share_id": grant.share_id, "entry_id": entry.id},
        )
        return entry

    def list_outgoing_shares(self, vault_id: Optional[str] = None) -> list[ShareGrant]:
        """Grants sent from this device, newest first."""
        vault_ids = [vault_id] if vault_id else self._store.vault_ids()
        grants = []
        for vid in vault_ids:
            grants.extend(self._store.load(vid).outgoing_shares.values())
        return sorted(grants, key=lambda g: g.created_at, reverse=True)

    def list_received_shares(self, vault_id: Optional[str] = None) -> list[EntryRecord]:
        """Entries accepted from one-off shares on this device, newest first."""
        vault_ids = [vault_id] if vault_id else self._store.vault_ids()
        received = []
        for vid in vault_ids:
            received.extend(
                e for e in self._store.load(vid).entries.values()
                if e.share_id is not None and not e.deleted
            )
        return sorted(received, key=lambda e: e.created_at, reverse=True)

    # ---------------------------------------------------------------------
    # Internals
    # ---------------------------------------------------------------------

    def _manageable(self, vault_id: str, action: str) -> VaultRecord:
        record = self._store.get_vault(vault_id)
        if record.vault_type != VaultType.SHARED:
            raise ValueError(f"vault {vault_id} is private")
        if record.revoked or record.deleted:
            raise PermissionDenied(f"vault {vault_id} is no longer accessible")
        require_permission(record.role, Permission.MANAGE_MEMBERS, action)
        if record.credential is None:
            raise ValueError(f"vault {vault_id} has not been provisioned yet; sync it first")
        return record

    def _member(self, vault_id: str, user_uuid: str) -> MemberRecord:
        member = self._store.load(vault_id).members.get(user_uuid)
        if member is None:
            raise MemberNotFound(f"{user_uuid} is not a member of vault {vault_id}")
        return member

    def _audit(self, event_type: str, detail: str, metadata: Optional[dict] = None) -> None:
        safe_audit(
            self._home, event_type, detail,
            user_uuid=self._identity.user_uuid, metadata=metadata,
        )
