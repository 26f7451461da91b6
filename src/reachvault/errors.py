"""
Error taxonomy for the vault.

Cryptographic failures are final and never retried. Network failures
surface as SyncUnavailable only after the retry budget is spent.
"""

from __future__ import annotations


class VaultError(Exception):
    """Base class for every error raised by reachvault."""


class KeystoreError(VaultError):
    """The OS keychain refused, lost, or mangled the root secret."""

    NOT_FOUND = "not_found"
    ACCESS_DENIED = "access_denied"
    CORRUPTED = "corrupted"
    UNAVAILABLE = "unavailable"

    def __init__(self, kind: str, detail: str = "") -> None:
        self.kind = kind
        message = f"keychain {kind.replace('_', ' ')}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class DecryptionFailed(VaultError):
    """Authentication failed. Wrong key, tampering and corruption look the same."""

    def __init__(self) -> None:
        super().__init__("decryption failed")


class InvalidKeyFormat(VaultError):
    """Imported key material is not a valid X25519 secret key."""


class IdentityNotInitialized(VaultError):
    """No identity exists on this device yet."""


class IdentityLocked(VaultError):
    """The identity exists but its secret key is not loaded."""


class IdentityExists(VaultError):
    """A different identity already lives on this device."""


class ConfirmationRequired(VaultError):
    """A destructive operation was called without explicit confirmation."""


class PermissionDenied(VaultError):
    """The caller's role does not allow the operation."""


class VaultNotFound(VaultError):
    """No vault with the given id."""


class EntryNotFound(VaultError):
    """No entry with the given id in the vault."""


class MemberNotFound(VaultError):
    """No member with the given UUID in the vault."""


class ShareExpired(VaultError):
    """The one-off share is past its expiry."""


class SyncUnavailable(VaultError):
    """The remote store could not be reached. Transient."""


class RemoteCorrupted(VaultError):
    """A remote row could not be parsed. Not retried; local state is left alone."""


class BackupAuthFailed(VaultError):
    """Wrong backup password or a tampered archive."""

    def __init__(self) -> None:
        super().__init__("backup authentication failed")


class InvalidBackupFormat(VaultError):
    """The file is not a backup archive."""


class UnsupportedBackupVersion(VaultError):
    """The archive was written by an unknown format version."""

    def __init__(self, version: int) -> None:
        self.version = version
        super().__init__(f"unsupported backup version: {version}")
