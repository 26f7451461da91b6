"""
Keychain boundary — where the root secret key lives.

The Identity Manager only sees the abstract ``Keychain`` interface, so
the OS credential store can be swapped for an in-memory one in tests or
headless environments without touching any crypto code.

Failure modes are mapped onto ``KeystoreError`` kinds: not found,
access denied, corrupted, unavailable.
"""

from __future__ import annotations

import base64
import binascii
import logging
import threading
from abc import ABC, abstractmethod

import keyring
from keyring.errors import (
    KeyringError,
    KeyringLocked,
    NoKeyringError,
    PasswordDeleteError,
)

from .errors import KeystoreError

logger = logging.getLogger("reachvault.keychain")

KEYCHAIN_SERVICE = "reach-vault"


class Keychain(ABC):
    """Abstract secret store keyed by an opaque key id."""

    @abstractmethod
    def store(self, key_id: str, secret: bytes) -> None:
        """Persist ``secret`` under ``key_id``, replacing any previous value."""

    @abstractmethod
    def retrieve(self, key_id: str) -> bytes:
        """Fetch the secret stored under ``key_id``."""

    @abstractmethod
    def delete(self, key_id: str) -> None:
        """Remove ``key_id``. Raises KeystoreError(not_found) if absent."""


class MemoryKeychain(Keychain):
    """Process-local keychain."""

    def __init__(self) -> None:
        self._secrets: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def store(self, key_id: str, secret: bytes) -> None:
        with self._lock:
            self._secrets[key_id] = bytes(secret)

    def retrieve(self, key_id: str) -> bytes:
        with self._lock:
            try:
                return self._secrets[key_id]
            except KeyError:
                raise KeystoreError(KeystoreError.NOT_FOUND, key_id) from None

    def delete(self, key_id: str) -> None:
        with self._lock:
            if self._secrets.pop(key_id, None) is None:
                raise KeystoreError(KeystoreError.NOT_FOUND, key_id)


class OSKeychain(Keychain):
    """Platform credential store via the ``keyring`` library.

    Secrets are stored base64-encoded since most backends only hold text.

    Args:
        service: Service name the entries are filed under.
    """

    def __init__(self, service: str = KEYCHAIN_SERVICE) -> None:
        self._service = service

    def store(self, key_id: str, secret: bytes) -> None:
        encoded = base64.b64encode(secret).decode("ascii")
        try:
            keyring.set_password(self._service, key_id, encoded)
        except KeyringError as exc:
            raise _map_error(exc) from exc
        logger.debug("Stored keychain entry %s/%s", self._service, key_id)

    def retrieve(self, key_id: str) -> bytes:
        try:
            encoded = keyring.get_password(self._service, key_id)
        except KeyringError as exc:
            raise _map_error(exc) from exc
        if encoded is None:
            raise KeystoreError(KeystoreError.NOT_FOUND, key_id)
        try:
            return base64.b64decode(encoded.encode("ascii"), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise KeystoreError(KeystoreError.CORRUPTED, key_id) from exc

    def delete(self, key_id: str) -> None:
        try:
            keyring.delete_password(self._service, key_id)
        except PasswordDeleteError as exc:
            raise KeystoreError(KeystoreError.NOT_FOUND, key_id) from exc
        except KeyringError as exc:
            raise _map_error(exc) from exc


def _map_error(exc: KeyringError) -> KeystoreError:
    if isinstance(exc, KeyringLocked):
        return KeystoreError(KeystoreError.ACCESS_DENIED, str(exc))
    if isinstance(exc, NoKeyringError):
        return KeystoreError(KeystoreError.UNAVAILABLE, str(exc))
    return KeystoreError(KeystoreError.ACCESS_DENIED, str(exc))
