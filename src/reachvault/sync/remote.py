"""
Remote stores -- where shared vault rows live.

A remote store hosts one database per shared vault. Each database has
three tables (``header``, ``members``, ``entries``) of JSON rows keyed
by row id, plus a token table mapping sync credentials to a role. Every
request is re-validated against the caller's token scope, so a
read-only credential cannot write even if the client skips its own
checks.

The store never receives plaintext or raw keys: rows hold ciphertext,
wrapped keys, sealed names and non-secret metadata only.

Memory: in-process, for embedding and tests.
Local: a directory tree. For NAS, USB, or any shared mount.
"""

from __future__ import annotations

import json
import logging
import re
import secrets
import shutil
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from ..errors import PermissionDenied, RemoteCorrupted, SyncUnavailable, VaultNotFound
from ..models import Permission, Role, SyncCredential, require_permission
from ..store import write_atomic

logger = logging.getLogger("reachvault.sync.remote")

TABLE_HEADER = "header"
TABLE_MEMBERS = "members"
TABLE_ENTRIES = "entries"

TABLE_WRITE_PERMISSION = {
    TABLE_HEADER: Permission.MANAGE_MEMBERS,
    TABLE_MEMBERS: Permission.MANAGE_MEMBERS,
    TABLE_ENTRIES: Permission.WRITE,
}

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")

Row = dict[str, Any]


def _check_id(kind: str, value: str) -> None:
    if not _SAFE_ID.match(value):
        raise ValueError(f"invalid {kind}: {value!r}")


class RemoteStore(ABC):
    """Row-oriented remote store with per-database credentials.

    Subclasses provide raw storage; this class owns authorization.
    Every public call first checks the store is reachable and raises
    SyncUnavailable when it is not.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable store name."""

    @abstractmethod
    def available(self) -> bool:
        """Check if this store is currently reachable."""

    # -- storage primitives ------------------------------------------------

    @abstractmethod
    def _url(self, database: str) -> str: ...

    @abstractmethod
    def _exists(self, database: str) -> bool: ...

    @abstractmethod
    def _create(self, database: str) -> None: ...

    @abstractmethod
    def _drop(self, database: str) -> None: ...

    @abstractmethod
    def _load_tokens(self, database: str) -> dict[str, Row]: ...

    @abstractmethod
    def _save_tokens(self, database: str, tokens: dict[str, Row]) -> None: ...

    @abstractmethod
    def _rows(self, database: str, table: str) -> dict[str, Row]: ...

    @abstractmethod
    def _write_row(self, database: str, table: str, row_id: str, value: Row) -> None: ...

    @abstractmethod
    def _remove_row(self, database: str, table: str, row_id: str) -> None: ...

    # -- databases ---------------------------------------------------------

    def create_database(self, database: str, owner_uuid: str) -> SyncCredential:
        """Provision a database and return the owner's credential.

        Creating a database that already exists for the same owner is
        idempotent, so a retried provisioning call does not fail.
        """
        _check_id("database name", database)
        with self._lock:
            self._ensure_online()
            if self._exists(database):
                tokens = self._load_tokens(database)
                for token, grant in tokens.items():
                    if grant["subject"] == owner_uuid and grant["scope"] == Role.OWNER.value:
                        return SyncCredential(url=self._url(database), database=database, token=token)
                raise PermissionDenied(f"database {database} already exists")
            self._create(database)
            token = secrets.token_urlsafe(32)
            self._save_tokens(database, {token: {"subject": owner_uuid, "scope": Role.OWNER.value}})
        logger.info("Provisioned remote database %s on %s", database, self.name)
        return SyncCredential(url=self._url(database), database=database, token=token)

    def delete_database(self, credential: SyncCredential) -> None:
        """Drop the database and every credential scoped to it. Owner only."""
        with self._lock:
            role = self._authorize(credential)
            if role != Role.OWNER:
                raise PermissionDenied("only the owner can delete the remote database")
            self._drop(credential.database)
        logger.info("Deleted remote database %s", credential.database)

    # -- credentials -------------------------------------------------------

    def grant(self, credential: SyncCredential, subject: str, scope: Role) -> str:
        """Issue (or re-scope) the credential for ``subject``.

        Returns:
            The subject's token. Re-granting keeps the token and updates
            its scope.
        """
        if scope == Role.OWNER:
            raise PermissionDenied("the owner credential cannot be granted")
        with self._lock:
            self._authorize(credential, Permission.MANAGE_MEMBERS)
            tokens = self._load_tokens(credential.database)
            token = next((t for t, g in tokens.items() if g["subject"] == subject), None)
            if token is None:
                token = secrets.token_urlsafe(32)
            tokens[token] = {"subject": subject, "scope": Role(scope).value}
            self._save_tokens(credential.database, tokens)
        return token

    def revoke(self, credential: SyncCredential, subject: str) -> bool:
        """Invalidate every credential held by ``subject``."""
        with self._lock:
            self._authorize(credential, Permission.MANAGE_MEMBERS)
            tokens = self._load_tokens(credential.database)
            kept = {t: g for t, g in tokens.items() if g["subject"] != subject}
            if len(kept) == len(tokens):
                return False
            self._save_tokens(credential.database, kept)
        return True

    # -- rows --------------------------------------------------------------

    def get_rows(self, credential: SyncCredential, table: str) -> dict[str, Row]:
        """All rows of ``table`` keyed by row id."""
        self._check_table(table)
        with self._lock:
            self._authorize(credential, Permission.READ)
            return self._rows(credential.database, table)

    def put_row(self, credential: SyncCredential, table: str, row_id: str, value: Row) -> None:
        """Upsert a single row. Atomic at row granularity."""
        self._check_table(table)
        _check_id("row id", row_id)
        with self._lock:
            self._authorize(credential, TABLE_WRITE_PERMISSION[table])
            self._write_row(credential.database, table, row_id, value)

    def delete_row(self, credential: SyncCredential, table: str, row_id: str) -> None:
        """Delete a single row; deleting a missing row is a no-op."""
        self._check_table(table)
        _check_id("row id", row_id)
        with self._lock:
            self._authorize(credential, TABLE_WRITE_PERMISSION[table])
            self._remove_row(credential.database, table, row_id)

    # -- internals ---------------------------------------------------------

    def _ensure_online(self) -> None:
        if not self.available():
            raise SyncUnavailable(f"remote store {self.name} is unreachable")

    def _authorize(self, credential: SyncCredential, permission: Optional[Permission] = None) -> Role:
        self._ensure_online()
        if not self._exists(credential.database):
            raise VaultNotFound(f"remote database {credential.database} does not exist")
        grant = self._load_tokens(credential.database).get(credential.token)
        if grant is None:
            raise PermissionDenied("sync credential rejected")
        role = Role(grant["scope"])
        if permission is not None:
            require_permission(role, permission, "perform this remote operation")
        return role

    @staticmethod
    def _check_table(table: str) -> None:
        if table not in TABLE_WRITE_PERMISSION:
            raise ValueError(f"unknown table: {table}")


class MemoryRemoteStore(RemoteStore):
    """In-process remote store.

    ``online`` can be flipped to simulate connectivity loss; ``calls``
    counts every request that reached the store.
    """

    def __init__(self) -> None:
        super().__init__()
        self._databases: dict[str, dict[str, Any]] = {}
        self.online = True
        self.calls = 0

    @property
    def name(self) -> str:
        return "memory"

    def available(self) -> bool:
        return self.online

    def _ensure_online(self) -> None:
        self.calls += 1
        super()._ensure_online()

    def _url(self, database: str) -> str:
        return f"memory://{database}"

    def _exists(self, database: str) -> bool:
        return database in self._databases

    def _create(self, database: str) -> None:
        self._databases[database] = {
            "tokens": {},
            "tables": {table: {} for table in TABLE_WRITE_PERMISSION},
        }

    def _drop(self, database: str) -> None:
        self._databases.pop(database, None)

    def _load_tokens(self, database: str) -> dict[str, Row]:
        return {t: dict(g) for t, g in self._databases[database]["tokens"].items()}

    def _save_tokens(self, database: str, tokens: dict[str, Row]) -> None:
        self._databases[database]["tokens"] = tokens

    def _rows(self, database: str, table: str) -> dict[str, Row]:
        rows = self._databases[database]["tables"][table]
        return json.loads(json.dumps(rows))

    def _write_row(self, database: str, table: str, row_id: str, value: Row) -> None:
        self._databases[database]["tables"][table][row_id] = json.loads(json.dumps(value))

    def _remove_row(self, database: str, table: str, row_id: str) -> None:
        self._databases[database]["tables"][table].pop(row_id, None)


class LocalRemoteStore(RemoteStore):
    """Remote store on a shared directory (NAS, USB, network mount).

    Layout:
        <root>/<database>/tokens.json
        <root>/<database>/<table>/<row_id>.json

    One file per row, each written atomically, so concurrent devices
    never observe a half-written row.
    """

    def __init__(self, root: Path) -> None:
        super().__init__()
        self.root = root.expanduser()
        self.root.mkdir(parents=True, exist_ok=True)

    @property
    def name(self) -> str:
        return "local"

    def available(self) -> bool:
        return self.root.is_dir()

    def _url(self, database: str) -> str:
        return (self.root / database).resolve().as_uri()

    def _exists(self, database: str) -> bool:
        return (self.root / database / "tokens.json").exists()

    def _create(self, database: str) -> None:
        for table in TABLE_WRITE_PERMISSION:
            (self.root / database / table).mkdir(parents=True, exist_ok=True)

    def _drop(self, database: str) -> None:
        # tokens first, so a half-finished drop already reads as gone
        (self.root / database / "tokens.json").unlink(missing_ok=True)
        shutil.rmtree(self.root / database, ignore_errors=True)

    def _load_tokens(self, database: str) -> dict[str, Row]:
        path = self.root / database / "tokens.json"
        return json.loads(path.read_text(encoding="utf-8"))

    def _save_tokens(self, database: str, tokens: dict[str, Row]) -> None:
        write_atomic(self.root / database / "tokens.json", json.dumps(tokens, indent=2))

    def _rows(self, database: str, table: str) -> dict[str, Row]:
        rows: dict[str, Row] = {}
        for path in sorted((self.root / database / table).glob("*.json")):
            try:
                text = path.read_text(encoding="utf-8")
            except OSError as exc:
                raise SyncUnavailable(f"cannot read row {path.name}: {exc}") from exc
            try:
                rows[path.stem] = json.loads(text)
            except json.JSONDecodeError as exc:
                # a missing row reads as a remote delete, so never skip one
                raise RemoteCorrupted(f"row {table}/{path.name} is not valid JSON") from exc
        return rows

    def _write_row(self, database: str, table: str, row_id: str, value: Row) -> None:
        write_atomic(self.root / database / table / f"{row_id}.json", json.dumps(value))

    def _remove_row(self, database: str, table: str, row_id: str) -> None:
        (self.root / database / table / f"{row_id}.json").unlink(missing_ok=True)
