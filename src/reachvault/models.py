"""
Core data models for reachvault.

Pydantic models for vaults, entries, memberships, share grants and
the permission matrix. Binary values (ciphertext, wrapped keys,
public keys) are carried as standard base64 strings so every model
round-trips through JSON unchanged.
"""

from __future__ import annotations

import base64
import binascii
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from .errors import PermissionDenied


class VaultType(str, Enum):
    """Where a vault lives."""

    PRIVATE = "private"
    SHARED = "shared"


class Category(str, Enum):
    """Kinds of secret an entry can hold."""

    PASSWORD = "password"
    SSH_KEY = "ssh_key"
    API_TOKEN = "api_token"
    CERTIFICATE = "certificate"
    NOTE = "note"
    CUSTOM = "custom"


class Permission(str, Enum):
    """Capabilities checked before any mutating call."""

    READ = "read"
    WRITE = "write"
    MANAGE_MEMBERS = "manage_members"


class Role(str, Enum):
    """Membership roles, most privileged first."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    READONLY = "readonly"

    @property
    def rank(self) -> int:
        """Privilege rank; higher outranks lower."""
        return _ROLE_RANK[self]

    def allows(self, permission: Permission) -> bool:
        """Check the permission matrix for this role."""
        return permission in ROLE_PERMISSIONS[self]


_ROLE_RANK = {
    Role.OWNER: 3,
    Role.ADMIN: 2,
    Role.MEMBER: 1,
    Role.READONLY: 0,
}

ROLE_PERMISSIONS: dict[Role, frozenset[Permission]] = {
    Role.OWNER: frozenset({Permission.READ, Permission.WRITE, Permission.MANAGE_MEMBERS}),
    Role.ADMIN: frozenset({Permission.READ, Permission.WRITE, Permission.MANAGE_MEMBERS}),
    Role.MEMBER: frozenset({Permission.READ, Permission.WRITE}),
    Role.READONLY: frozenset({Permission.READ}),
}


def require_permission(role: Role, permission: Permission, action: str) -> None:
    """Raise PermissionDenied unless ``role`` grants ``permission``.

    Args:
        role: The caller's role in the vault.
        permission: Capability the action needs.
        action: Short description used in the error message.

    Raises:
        PermissionDenied: If the role lacks the permission.
    """
    if not role.allows(permission):
        raise PermissionDenied(
            f"role '{role.value}' may not {action} ({permission.value} required)"
        )


# upper bounds also apply to parameters read from untrusted backup headers
MAX_KDF_MEMORY_KIB = 1024 * 1024
MAX_KDF_TIME_COST = 16
MAX_KDF_PARALLELISM = 16


class KdfParams(BaseModel):
    """Argon2id cost parameters."""

    memory_kib: int = Field(
        default=262144, ge=8, le=MAX_KDF_MEMORY_KIB, description="Memory cost in KiB (256 MiB)"
    )
    time_cost: int = Field(default=4, ge=1, le=MAX_KDF_TIME_COST)
    parallelism: int = Field(default=4, ge=1, le=MAX_KDF_PARALLELISM)


class Envelope(BaseModel):
    """A persisted secret: payload sealed under a DEK, DEK wrapped under a KEK.

    ``payload`` is nonce || ciphertext || tag, ``wrapped_dek`` the same
    layout for the DEK. Both are base64.
    """

    payload: str
    wrapped_dek: str


class EntryRecord(BaseModel):
    """One secret inside a vault. Never carries plaintext."""

    id: str
    vault_id: str
    name: str
    category: Category
    envelope: Envelope
    owner_uuid: str
    created_at: int = Field(description="Unix epoch milliseconds")
    modified_at: int = Field(description="Unix epoch milliseconds")
    dirty: bool = Field(default=False, description="Local change not yet pushed")
    deleted: bool = Field(default=False, description="Tombstone awaiting remote delete")
    synced_modified: Optional[int] = Field(
        default=None, description="Remote modified_at this entry was last reconciled with"
    )
    orphan_of: Optional[str] = Field(
        default=None, description="Entry whose losing concurrent write this preserves"
    )
    share_id: Optional[str] = Field(default=None, description="One-off share it was imported from")
    shared_by: Optional[str] = Field(default=None, description="Sender of that one-off share")

    @property
    def local_only(self) -> bool:
        """Orphans never leave the device."""
        return self.orphan_of is not None


class MemberRecord(BaseModel):
    """Membership tuple with the member's copy of the vault KEK.

    ``wrapped_key`` is wrapped under ECDH(inviter, member) for invited
    members, or under the owner's identity KEK for the owner row
    (``inviter_public_key`` is None there).
    """

    user_uuid: str
    public_key: str
    role: Role
    wrapped_key: str
    inviter_public_key: Optional[str] = None
    added_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SyncCredential(BaseModel):
    """URL + token scoped to one vault's remote database."""

    url: str
    database: str
    token: str


class VaultRecord(BaseModel):
    """Vault header as seen from this device."""

    id: str
    name: str
    vault_type: VaultType = VaultType.PRIVATE
    owner_uuid: str
    created_at: int = Field(description="Unix epoch milliseconds")
    role: Role = Role.OWNER
    wrapped_key: Optional[str] = Field(
        default=None, description="Vault KEK wrapped under the owner's identity KEK"
    )
    credential: Optional[SyncCredential] = None
    deleted: bool = Field(default=False, description="Deletion pending remote confirmation")
    revoked: bool = Field(default=False, description="Access withdrawn by the owner")

    @property
    def internal(self) -> bool:
        """Internal vaults (``__settings__`` and friends) are hidden by default."""
        return self.name.startswith("__") and self.name.endswith("__")


class VaultSummary(BaseModel):
    """A vault plus its visible entry count, for listings."""

    vault: VaultRecord
    entry_count: int = 0


class ShareGrant(BaseModel):
    """A one-off copy of a secret, re-wrapped for one recipient.

    ``payload`` is the source entry's sealed payload, untouched.
    ``wrapped_dek`` is its DEK wrapped under a key only the sender and
    recipient can derive.
    """

    share_id: str
    sender_uuid: str
    sender_public_key: str
    recipient_uuid: str
    source_entry_id: str
    name: str
    category: Category
    payload: str
    wrapped_dek: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: Optional[datetime] = None

    def expired(self, now: Optional[datetime] = None) -> bool:
        """True once the expiry has passed."""
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expires_at

    def to_token(self) -> str:
        """Serialize to a single copy-pasteable string."""
        return _encode_token(self)

    @classmethod
    def from_token(cls, token: str) -> "ShareGrant":
        """Parse a token produced by :meth:`to_token`."""
        return _decode_token(cls, token)


class Invite(BaseModel):
    """Vault invitation. Carries a sync credential, never secret material."""

    vault_id: str
    inviter_uuid: str
    role: Role
    credential: SyncCredential

    def to_token(self) -> str:
        """Serialize to a single copy-pasteable string."""
        return _encode_token(self)

    @classmethod
    def from_token(cls, token: str) -> "Invite":
        """Parse a token produced by :meth:`to_token`."""
        return _decode_token(cls, token)


class VaultDocument(BaseModel):
    """Everything the local store keeps for one vault."""

    vault: VaultRecord
    entries: dict[str, EntryRecord] = Field(default_factory=dict)
    members: dict[str, MemberRecord] = Field(default_factory=dict)
    outgoing_shares: dict[str, ShareGrant] = Field(default_factory=dict)


def _encode_token(model: BaseModel) -> str:
    return base64.urlsafe_b64encode(model.model_dump_json().encode()).decode()


def _decode_token(cls, token: str):
    try:
        raw = base64.urlsafe_b64decode(token.strip().encode())
        return cls.model_validate(json.loads(raw))
    except (binascii.Error, ValueError, ValidationError) as exc:
        raise ValueError(f"malformed {cls.__name__.lower()} token") from exc
