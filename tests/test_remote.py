"""Tests for the remote stores and their credential scopes."""

from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from reachvault.errors import PermissionDenied, RemoteCorrupted, SyncUnavailable, VaultNotFound
from reachvault.models import Role, SyncCredential
from reachvault.sync.remote import (
    TABLE_ENTRIES,
    TABLE_HEADER,
    TABLE_MEMBERS,
    LocalRemoteStore,
    MemoryRemoteStore,
    RemoteStore,
)

DB = "rv-test-db"
OWNER = "owner-uuid"


@pytest.fixture(params=["memory", "local"])
def store(request: pytest.FixtureRequest, tmp_path: Path) -> RemoteStore:
    """Run every test against both store implementations."""
    if request.param == "memory":
        return MemoryRemoteStore()
    return LocalRemoteStore(tmp_path / "remote")


@pytest.fixture
def owner(store: RemoteStore) -> SyncCredential:
    return store.create_database(DB, OWNER)


def _as(owner: SyncCredential, token: str) -> SyncCredential:
    return owner.model_copy(update={"token": token})


class TestDatabases:
    """Provisioning and deletion."""

    def test_create_returns_owner_credential(self, store: RemoteStore, owner: SyncCredential) -> None:
        assert owner.database == DB
        assert owner.token
        assert store.get_rows(owner, TABLE_ENTRIES) == {}

    def test_create_is_idempotent_for_owner(self, store: RemoteStore, owner: SyncCredential) -> None:
        again = store.create_database(DB, OWNER)
        assert again.token == owner.token

    def test_create_taken_name(self, store: RemoteStore, owner: SyncCredential) -> None:
        with pytest.raises(PermissionDenied):
            store.create_database(DB, "someone-else")

    def test_invalid_database_name(self, store: RemoteStore) -> None:
        with pytest.raises(ValueError):
            store.create_database("../escape", OWNER)

    def test_delete_owner_only(self, store: RemoteStore, owner: SyncCredential) -> None:
        admin = _as(owner, store.grant(owner, "admin-uuid", Role.ADMIN))
        with pytest.raises(PermissionDenied):
            store.delete_database(admin)

        store.delete_database(owner)
        with pytest.raises(VaultNotFound):
            store.get_rows(owner, TABLE_ENTRIES)


class TestScopes:
    """Every request is checked against the credential's scope."""

    def test_readonly_reads_but_cannot_write(self, store: RemoteStore, owner: SyncCredential) -> None:
        store.put_row(owner, TABLE_ENTRIES, "e1", {"v": 1})
        reader = _as(owner, store.grant(owner, "reader", Role.READONLY))

        assert store.get_rows(reader, TABLE_ENTRIES) == {"e1": {"v": 1}}
        with pytest.raises(PermissionDenied):
            store.put_row(reader, TABLE_ENTRIES, "e2", {"v": 2})
        with pytest.raises(PermissionDenied):
            store.delete_row(reader, TABLE_ENTRIES, "e1")

    def test_member_writes_entries_not_members(self, store: RemoteStore, owner: SyncCredential) -> None:
        member = _as(owner, store.grant(owner, "member", Role.MEMBER))
        store.put_row(member, TABLE_ENTRIES, "e1", {"v": 1})
        with pytest.raises(PermissionDenied):
            store.put_row(member, TABLE_MEMBERS, "x", {})
        with pytest.raises(PermissionDenied):
            store.put_row(member, TABLE_HEADER, "vault", {})
        with pytest.raises(PermissionDenied):
            store.grant(member, "friend", Role.READONLY)

    def test_admin_manages_members(self, store: RemoteStore, owner: SyncCredential) -> None:
        admin = _as(owner, store.grant(owner, "admin", Role.ADMIN))
        store.put_row(admin, TABLE_MEMBERS, "friend", {"role": "member"})
        assert store.grant(admin, "friend", Role.MEMBER)

    def test_owner_scope_never_granted(self, store: RemoteStore, owner: SyncCredential) -> None:
        with pytest.raises(PermissionDenied):
            store.grant(owner, "usurper", Role.OWNER)

    def test_regrant_rescopes_same_token(self, store: RemoteStore, owner: SyncCredential) -> None:
        token = store.grant(owner, "bob", Role.MEMBER)
        assert store.grant(owner, "bob", Role.READONLY) == token
        with pytest.raises(PermissionDenied):
            store.put_row(_as(owner, token), TABLE_ENTRIES, "e1", {})

    def test_revoke(self, store: RemoteStore, owner: SyncCredential) -> None:
        bob = _as(owner, store.grant(owner, "bob", Role.MEMBER))
        assert store.revoke(owner, "bob") is True
        assert store.revoke(owner, "bob") is False
        with pytest.raises(PermissionDenied):
            store.get_rows(bob, TABLE_ENTRIES)

    def test_unknown_token(self, store: RemoteStore, owner: SyncCredential) -> None:
        with pytest.raises(PermissionDenied):
            store.get_rows(_as(owner, "forged"), TABLE_ENTRIES)


class TestRows:
    """Row-level operations."""

    def test_upsert_and_delete(self, store: RemoteStore, owner: SyncCredential) -> None:
        store.put_row(owner, TABLE_ENTRIES, "e1", {"v": 1})
        store.put_row(owner, TABLE_ENTRIES, "e1", {"v": 2})
        assert store.get_rows(owner, TABLE_ENTRIES) == {"e1": {"v": 2}}
        store.delete_row(owner, TABLE_ENTRIES, "e1")
        store.delete_row(owner, TABLE_ENTRIES, "e1")
        assert store.get_rows(owner, TABLE_ENTRIES) == {}

    def test_rows_are_copies(self, store: RemoteStore, owner: SyncCredential) -> None:
        row = {"v": [1]}
        store.put_row(owner, TABLE_ENTRIES, "e1", row)
        row["v"].append(2)
        fetched = store.get_rows(owner, TABLE_ENTRIES)
        fetched["e1"]["v"].append(3)
        assert store.get_rows(owner, TABLE_ENTRIES) == {"e1": {"v": [1]}}

    def test_unknown_table(self, store: RemoteStore, owner: SyncCredential) -> None:
        with pytest.raises(ValueError):
            store.get_rows(owner, "secrets")

    def test_invalid_row_id(self, store: RemoteStore, owner: SyncCredential) -> None:
        with pytest.raises(ValueError):
            store.put_row(owner, TABLE_ENTRIES, "../../etc", {})


class TestAvailability:
    """Unreachable stores raise SyncUnavailable."""

    def test_memory_offline(self) -> None:
        store = MemoryRemoteStore()
        owner = store.create_database(DB, OWNER)
        store.online = False
        with pytest.raises(SyncUnavailable):
            store.get_rows(owner, TABLE_ENTRIES)
        with pytest.raises(SyncUnavailable):
            store.create_database("rv-other", OWNER)

    def test_memory_counts_calls(self) -> None:
        store = MemoryRemoteStore()
        owner = store.create_database(DB, OWNER)
        store.get_rows(owner, TABLE_ENTRIES)
        assert store.calls == 2

    def test_local_root_gone(self, tmp_path: Path) -> None:
        root = tmp_path / "mount"
        store = LocalRemoteStore(root)
        owner = store.create_database(DB, OWNER)
        shutil.rmtree(root)
        assert not store.available()
        with pytest.raises(SyncUnavailable):
            store.get_rows(owner, TABLE_ENTRIES)


class TestLocalLayout:
    """On-disk layout of the directory store."""

    def test_layout(self, tmp_path: Path) -> None:
        root = tmp_path / "remote"
        store = LocalRemoteStore(root)
        owner = store.create_database(DB, OWNER)
        store.put_row(owner, TABLE_ENTRIES, "e1", {"v": 1})

        assert (root / DB / "tokens.json").exists()
        assert (root / DB / TABLE_ENTRIES / "e1.json").exists()
        assert owner.url.startswith("file://")

    def test_second_instance_sees_rows(self, tmp_path: Path) -> None:
        root = tmp_path / "remote"
        owner = LocalRemoteStore(root).create_database(DB, OWNER)
        LocalRemoteStore(root).put_row(owner, TABLE_ENTRIES, "e1", {"v": 1})
        assert LocalRemoteStore(root).get_rows(owner, TABLE_ENTRIES) == {"e1": {"v": 1}}

    def test_corrupt_row_raises(self, tmp_path: Path) -> None:
        root = tmp_path / "remote"
        store = LocalRemoteStore(root)
        owner = store.create_database(DB, OWNER)
        store.put_row(owner, TABLE_ENTRIES, "e1", {"v": 1})
        (root / DB / TABLE_ENTRIES / "e1.json").write_text("{truncated", encoding="utf-8")

        with pytest.raises(RemoteCorrupted):
            store.get_rows(owner, TABLE_ENTRIES)

    def test_unreadable_row_is_transient(self, tmp_path: Path) -> None:
        root = tmp_path / "remote"
        store = LocalRemoteStore(root)
        owner = store.create_database(DB, OWNER)
        (root / DB / TABLE_ENTRIES / "e1.json").mkdir()

        with pytest.raises(SyncUnavailable):
            store.get_rows(owner, TABLE_ENTRIES)
