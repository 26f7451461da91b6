"""
Identity Manager — the device's long-term X25519 keypair.

The secret key lives in the OS keychain and is fetched once per
session at unlock. Only the public half, the UUID and (optionally) a
password-wrapped copy of the secret key are written to disk.

Key hierarchy:
    X25519 secret key (keychain, or password-wrapped in identity.json)
    └── Identity KEK (HKDF-SHA256, versioned context)
        └── Vault KEKs (one per vault, owner copy)
            └── Entry DEKs (one per write)

Storage layout:
    <home>/identity/identity.json   # IdentityRecord

The UUID is derived from the public key, so importing the same secret
key on another device reproduces the same UUID and every existing
membership keeps working.
"""

from __future__ import annotations

import binascii
import logging
import secrets
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

from .audit import safe_audit
from .envelope import (
    b64d,
    b64e,
    derive_password_key,
    generate_keypair,
    hkdf,
    open_sealed,
    public_key_for,
    seal,
    x25519_agree,
)
from .errors import (
    ConfirmationRequired,
    IdentityExists,
    IdentityLocked,
    IdentityNotInitialized,
    InvalidKeyFormat,
    KeystoreError,
)
from .keychain import Keychain
from .models import KdfParams

logger = logging.getLogger("reachvault.identity")

KEK_CONTEXT = b"reachvault:identity-kek:v1"
UUID_NAMESPACE = uuid.UUID("5f1c2b0e-8a57-4c38-9d0f-2e6a4b7c9d13")
SALT_SIZE = 32


class IdentityRecord(BaseModel):
    """Public identity metadata persisted on disk."""

    user_uuid: str
    public_key: str = Field(description="Base64 X25519 public key")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    password_salt: Optional[str] = None
    password_kdf: Optional[KdfParams] = None
    wrapped_secret_key: Optional[str] = Field(
        default=None, description="Secret key sealed under the Argon2id password KEK"
    )


def uuid_for(public_key: bytes) -> str:
    """Stable identity UUID for a public key."""
    return str(uuid.uuid5(UUID_NAMESPACE, public_key.hex()))


def kek_from_secret(secret_key: bytes) -> bytes:
    """Identity KEK for a raw secret key."""
    return hkdf(secret_key, KEK_CONTEXT)


class IdentityManager:
    """Owns the keypair and bridges to the keychain.

    Args:
        home: Vault home directory.
        keychain: Where the secret key is kept.
        kdf_params: Argon2id cost for the master password path.
    """

    def __init__(
        self,
        home: Path,
        keychain: Keychain,
        kdf_params: Optional[KdfParams] = None,
    ) -> None:
        self._home = home
        self._identity_file = home / "identity" / "identity.json"
        self._keychain = keychain
        self._kdf_params = kdf_params or KdfParams()
        self._record: Optional[IdentityRecord] = None
        self._secret_key: Optional[bytes] = None

    # -- state -------------------------------------------------------------

    def exists(self) -> bool:
        """True if this device has an identity."""
        return self._identity_file.exists()

    @property
    def record(self) -> IdentityRecord:
        """The persisted identity metadata."""
        if self._record is None:
            if not self.exists():
                raise IdentityNotInitialized("no identity on this device; run initialize first")
            self._record = IdentityRecord.model_validate_json(
                self._identity_file.read_text(encoding="utf-8")
            )
        return self._record

    @property
    def user_uuid(self) -> str:
        return self.record.user_uuid

    @property
    def public_key(self) -> bytes:
        return b64d(self.record.public_key)

    @property
    def is_unlocked(self) -> bool:
        return self._secret_key is not None

    @property
    def has_master_password(self) -> bool:
        return self.exists() and self.record.wrapped_secret_key is not None

    # -- lifecycle ---------------------------------------------------------

    def initialize(self) -> IdentityRecord:
        """Create the identity, or return the existing one unchanged.

        Returns:
            IdentityRecord for this device.

        Raises:
            KeystoreError: If the keychain refuses the new secret key.
        """
        if self.exists():
            return self.record

        secret_key, public_key = generate_keypair()
        record = IdentityRecord(user_uuid=uuid_for(public_key), public_key=b64e(public_key))
        self._keychain.store(record.user_uuid, secret_key)
        self._save(record)
        self._secret_key = secret_key

        logger.info("Identity initialized: %s", record.user_uuid)
        self._audit("IDENTITY_INIT", f"Identity {record.user_uuid} created")
        return record

    def unlock(self) -> IdentityRecord:
        """Load the secret key from the keychain for this session.

        The keychain is hit at most once; later calls are no-ops.

        Raises:
            IdentityNotInitialized: No identity on this device.
            KeystoreError: Missing, inaccessible or corrupted keychain entry.
        """
        record = self.record
        if self._secret_key is not None:
            return record

        secret_key = self._keychain.retrieve(record.user_uuid)
        try:
            public_key = public_key_for(secret_key)
        except InvalidKeyFormat as exc:
            raise KeystoreError(KeystoreError.CORRUPTED, "stored key is malformed") from exc
        if b64e(public_key) != record.public_key:
            raise KeystoreError(KeystoreError.CORRUPTED, "stored key does not match identity")

        self._secret_key = secret_key
        logger.debug("Identity %s unlocked from keychain", record.user_uuid)
        return record

    def lock(self) -> None:
        """Forget the in-memory secret key."""
        self._secret_key = None

    def reset(self, confirm: bool = False) -> None:
        """Start fresh: destroy the identity and every local vault.

        Anything encrypted under this identity becomes unrecoverable
        unless the secret key or a backup was exported beforehand.

        Args:
            confirm: Must be True; the caller has warned the user.

        Raises:
            ConfirmationRequired: If ``confirm`` is not set.
        """
        if not confirm:
            raise ConfirmationRequired(
                "start fresh destroys the identity and all local vaults; "
                "export the secret key or a backup first, then confirm"
            )
        old_uuid = self.record.user_uuid if self.exists() else None
        if old_uuid:
            try:
                self._keychain.delete(old_uuid)
            except KeystoreError as exc:
                if exc.kind != KeystoreError.NOT_FOUND:
                    raise
        for sub in ("identity", "vaults", "sync"):
            shutil.rmtree(self._home / sub, ignore_errors=True)
        self._record = None
        self._secret_key = None

        logger.warning("Identity %s destroyed (start fresh)", old_uuid)
        self._audit("IDENTITY_RESET", f"Identity {old_uuid} destroyed", user_uuid=old_uuid)

    # -- key derivation ----------------------------------------------------

    def derive_kek(self) -> bytes:
        """The identity KEK. Deterministic for a given secret key."""
        return kek_from_secret(self._require_secret())

    def derive_shared_key(self, peer_public_key: bytes, context: bytes) -> bytes:
        """ECDH with a peer followed by HKDF under ``context``.

        Both sides of a key agreement get the same result, so this is
        used to wrap and unwrap keys between two identities.
        """
        shared = x25519_agree(self._require_secret(), peer_public_key)
        return hkdf(shared, context)

    # -- master password ---------------------------------------------------

    def set_master_password(self, password: str) -> IdentityRecord:
        """Keep a password-wrapped copy of the secret key on disk.

        Args:
            password: Master password. Argon2id with a fresh random salt.

        Returns:
            The updated IdentityRecord.
        """
        if not password:
            raise ValueError("master password must not be empty")
        secret_key = self._require_secret()
        record = self.record
        salt = secrets.token_bytes(SALT_SIZE)
        password_kek = derive_password_key(password, salt, self._kdf_params)

        record.password_salt = b64e(salt)
        record.password_kdf = self._kdf_params.model_copy()
        record.wrapped_secret_key = b64e(seal(secret_key, password_kek, aad=record.user_uuid.encode()))
        self._save(record)

        self._audit("IDENTITY_PASSWORD_SET", f"Master password set for {record.user_uuid}")
        return record

    def unlock_with_password(self, password: str) -> IdentityRecord:
        """Unlock without the keychain.

        Repairs the keychain entry on the way if the keychain accepts it.

        Raises:
            IdentityLocked: No master password was ever set.
            DecryptionFailed: Wrong password.
        """
        record = self.record
        if record.wrapped_secret_key is None or record.password_salt is None:
            raise IdentityLocked("no master password has been set for this identity")

        params = record.password_kdf or self._kdf_params
        password_kek = derive_password_key(password, b64d(record.password_salt), params)
        secret_key = open_sealed(
            b64d(record.wrapped_secret_key), password_kek, aad=record.user_uuid.encode()
        )
        if b64e(public_key_for(secret_key)) != record.public_key:
            raise KeystoreError(KeystoreError.CORRUPTED, "password copy does not match identity")

        self._secret_key = secret_key
        try:
            self._keychain.store(record.user_uuid, secret_key)
        except KeystoreError as exc:
            logger.warning("Could not repair keychain entry: %s", exc)
        return record

    # -- export / import ---------------------------------------------------

    def export_secret_key(self) -> str:
        """Base64 of the raw 32-byte secret key, no framing."""
        return b64e(self._require_secret())

    def import_secret_key(self, encoded: str) -> IdentityRecord:
        """Adopt an exported secret key on this device.

        Raises:
            InvalidKeyFormat: Not base64, wrong length, or not a usable key.
            IdentityExists: A different identity is already present.
        """
        try:
            secret_key = b64d(encoded.strip())
        except (binascii.Error, ValueError) as exc:
            raise InvalidKeyFormat("secret key is not valid base64") from exc
        public_key = public_key_for(secret_key)

        if self.exists():
            if self.record.public_key == b64e(public_key):
                self._keychain.store(self.record.user_uuid, secret_key)
                self._secret_key = secret_key
                return self.record
            raise IdentityExists(
                f"identity {self.record.user_uuid} already exists; start fresh before importing"
            )

        record = self.restore(secret_key)
        self._audit("IDENTITY_IMPORT", f"Identity {record.user_uuid} imported")
        return record

    def restore(self, secret_key: bytes, record: Optional[IdentityRecord] = None) -> IdentityRecord:
        """Install ``secret_key`` as this device's identity.

        Overwrites local identity metadata. Used by import and by backup
        restore, which passes the archived record along.
        """
        public_key = public_key_for(secret_key)
        if record is None:
            record = IdentityRecord(user_uuid=uuid_for(public_key), public_key=b64e(public_key))
        elif record.public_key != b64e(public_key):
            raise InvalidKeyFormat("secret key does not match the identity record")
        self._keychain.store(record.user_uuid, secret_key)
        self._save(record)
        self._secret_key = secret_key
        logger.info("Identity %s restored", record.user_uuid)
        return record

    def stash_secret(self, user_uuid: str, secret_key: bytes) -> None:
        """Put a secret key in the keychain without touching local metadata."""
        public_key_for(secret_key)
        self._keychain.store(user_uuid, secret_key)

    def adopt(self, secret_key: bytes) -> IdentityRecord:
        """Use ``secret_key`` for this session against the on-disk record."""
        record = self.record
        if b64e(public_key_for(secret_key)) != record.public_key:
            raise InvalidKeyFormat("secret key does not match the identity record")
        self._secret_key = secret_key
        return record

    def write_record(self, record: IdentityRecord, path: Path) -> None:
        """Serialize an identity record to an arbitrary path."""
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(record.model_dump_json(indent=2), encoding="utf-8")

    def reload(self) -> None:
        """Drop cached metadata so the next access re-reads disk."""
        self._record = None

    # -- internals ---------------------------------------------------------

    def _require_secret(self) -> bytes:
        if self._secret_key is None:
            if not self.exists():
                raise IdentityNotInitialized("no identity on this device; run initialize first")
            raise IdentityLocked("identity is locked; unlock it first")
        return self._secret_key

    def _save(self, record: IdentityRecord) -> None:
        self.write_record(record, self._identity_file)
        self._record = record

    def _audit(self, event_type: str, detail: str, user_uuid: Optional[str] = None) -> None:
        if user_uuid is None and self._record is not None:
            user_uuid = self._record.user_uuid
        safe_audit(self._home, event_type, detail, user_uuid=user_uuid)
