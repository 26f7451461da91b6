"""Tests for the local Vault Store."""

from __future__ import annotations

import pytest

from reachvault.errors import EntryNotFound, PermissionDenied, VaultNotFound
from reachvault.models import Category, Role, VaultType
from reachvault.service import VaultService
from reachvault.store import VaultStore


@pytest.fixture
def store(alice: VaultService) -> VaultStore:
    return alice.store


@pytest.fixture
def home_vault(store: VaultStore) -> str:
    return store.create_vault("Home").id


# ---------------------------------------------------------------------------
# Vaults
# ---------------------------------------------------------------------------


class TestVaults:
    """Vault lifecycle."""

    def test_create_private(self, store: VaultStore, alice: VaultService) -> None:
        record = store.create_vault("Home")
        assert record.vault_type == VaultType.PRIVATE
        assert record.owner_uuid == alice.identity.user_uuid
        assert record.role == Role.OWNER
        assert record.wrapped_key is not None
        assert store.get_vault(record.id).name == "Home"

    def test_create_shared_adds_owner_member(self, store: VaultStore, alice: VaultService) -> None:
        record = store.create_vault("Team", VaultType.SHARED)
        members = store.list_members(record.id)
        assert [m.user_uuid for m in members] == [alice.identity.user_uuid]
        assert members[0].role == Role.OWNER
        assert members[0].inviter_public_key is None

    def test_empty_name_rejected(self, store: VaultStore) -> None:
        with pytest.raises(ValueError):
            store.create_vault("   ")

    def test_list_counts_entries(self, store: VaultStore, home_vault: str) -> None:
        store.create_entry(home_vault, Category.PASSWORD, "router", b"s3cr3t")
        store.create_entry(home_vault, Category.NOTE, "wifi", b"guest")
        other = store.create_vault("Work").id

        counts = {s.vault.id: s.entry_count for s in store.list_vaults()}
        assert counts == {home_vault: 2, other: 0}

    def test_internal_vaults_hidden(self, store: VaultStore, home_vault: str) -> None:
        internal = store.create_vault("__settings__")
        assert internal.internal
        visible = [s.vault.id for s in store.list_vaults()]
        assert internal.id not in visible
        assert internal.id in [s.vault.id for s in store.list_vaults(include_internal=True)]

    def test_find_vault_by_name(self, store: VaultStore, home_vault: str) -> None:
        assert store.find_vault("Home").id == home_vault
        assert store.find_vault("Nope") is None

    def test_delete_private_purges(self, store: VaultStore, home_vault: str) -> None:
        assert store.delete_vault(home_vault) is True
        with pytest.raises(VaultNotFound):
            store.get_vault(home_vault)

    def test_delete_shared_tombstones(self, store: VaultStore) -> None:
        vault_id = store.create_vault("Team", VaultType.SHARED).id
        assert store.delete_vault(vault_id) is False
        assert store.get_vault(vault_id).deleted
        assert store.find_vault("Team") is None

    def test_delete_shared_requires_owner(self, store: VaultStore) -> None:
        record = store.create_vault("Team", VaultType.SHARED)
        record.role = Role.ADMIN
        store.update_vault(record)
        with pytest.raises(PermissionDenied):
            store.delete_vault(record.id)

    def test_unknown_vault(self, store: VaultStore) -> None:
        with pytest.raises(VaultNotFound):
            store.load("missing")


# ---------------------------------------------------------------------------
# Entries
# ---------------------------------------------------------------------------


class TestEntries:
    """Entry CRUD through the envelope cipher."""

    def test_round_trip(self, store: VaultStore, home_vault: str) -> None:
        entry = store.create_entry(home_vault, Category.PASSWORD, "router", b"s3cr3t")
        assert store.read_entry(home_vault, entry.id) == b"s3cr3t"
        assert entry.name == "router"
        assert entry.category == Category.PASSWORD
        assert not entry.dirty

    def test_plaintext_never_on_disk(self, store: VaultStore, home_vault: str, alice: VaultService) -> None:
        store.create_entry(home_vault, Category.PASSWORD, "router", b"s3cr3t-value")
        raw = (alice.home / "vaults" / f"{home_vault}.json").read_text()
        assert "s3cr3t-value" not in raw

    def test_update_rotates_envelope(self, store: VaultStore, home_vault: str) -> None:
        entry = store.create_entry(home_vault, Category.PASSWORD, "router", b"s3cr3t")
        updated = store.update_entry(home_vault, entry.id, b"s3cr3t")

        assert updated.envelope.payload != entry.envelope.payload
        assert updated.envelope.wrapped_dek != entry.envelope.wrapped_dek
        assert updated.modified_at > entry.modified_at
        assert store.read_entry(home_vault, entry.id) == b"s3cr3t"

    def test_update_rename_and_recategorize(self, store: VaultStore, home_vault: str) -> None:
        entry = store.create_entry(home_vault, Category.PASSWORD, "router", b"a")
        store.update_entry(home_vault, entry.id, b"b", name="gateway", category=Category.NOTE)
        stored = store.get_entry(home_vault, entry.id)
        assert stored.name == "gateway"
        assert stored.category == Category.NOTE

    def test_delete_private_purges(self, store: VaultStore, home_vault: str) -> None:
        entry = store.create_entry(home_vault, Category.PASSWORD, "router", b"s3cr3t")
        store.delete_entry(home_vault, entry.id)
        assert entry.id not in store.load(home_vault).entries
        with pytest.raises(EntryNotFound):
            store.read_entry(home_vault, entry.id)

    def test_delete_synced_shared_entry_tombstones(self, store: VaultStore) -> None:
        vault_id = store.create_vault("Team", VaultType.SHARED).id
        entry = store.create_entry(vault_id, Category.PASSWORD, "db", b"pw")
        assert entry.dirty
        with store.edit(vault_id) as doc:
            doc.entries[entry.id].dirty = False
            doc.entries[entry.id].synced_modified = entry.modified_at

        store.delete_entry(vault_id, entry.id)

        stored = store.load(vault_id).entries[entry.id]
        assert stored.deleted and stored.dirty
        assert store.list_entries(vault_id) == []
        with pytest.raises(EntryNotFound):
            store.get_entry(vault_id, entry.id)

    def test_delete_unconfirmed_shared_entry_tombstones(self, store: VaultStore) -> None:
        vault_id = store.create_vault("Team", VaultType.SHARED).id
        entry = store.create_entry(vault_id, Category.PASSWORD, "db", b"pw")
        store.delete_entry(vault_id, entry.id)

        stored = store.load(vault_id).entries[entry.id]
        assert stored.deleted and stored.dirty
        assert stored.synced_modified is None
        assert store.list_entries(vault_id) == []

    def test_list_filters_by_category(self, store: VaultStore, home_vault: str) -> None:
        store.create_entry(home_vault, Category.PASSWORD, "router", b"a")
        store.create_entry(home_vault, Category.SSH_KEY, "deploy", b"b")
        names = [e.name for e in store.list_entries(home_vault, Category.SSH_KEY)]
        assert names == ["deploy"]

    def test_readonly_cannot_write(self, store: VaultStore, home_vault: str) -> None:
        entry = store.create_entry(home_vault, Category.PASSWORD, "router", b"a")
        record = store.get_vault(home_vault)
        record.role = Role.READONLY
        store.update_vault(record)

        with pytest.raises(PermissionDenied):
            store.create_entry(home_vault, Category.PASSWORD, "other", b"b")
        with pytest.raises(PermissionDenied):
            store.update_entry(home_vault, entry.id, b"c")
        with pytest.raises(PermissionDenied):
            store.delete_entry(home_vault, entry.id)
        assert store.read_entry(home_vault, entry.id) == b"a"

    def test_other_identity_cannot_open(self, store: VaultStore, home_vault: str, bob: VaultService) -> None:
        entry = store.create_entry(home_vault, Category.PASSWORD, "router", b"a")
        # copy alice's document onto bob's device
        doc = store.load(home_vault)
        bob.store.save(doc)
        with pytest.raises(PermissionDenied):
            bob.store.read_entry(home_vault, entry.id)


class TestVaultKeys:
    """Vault KEK cache."""

    def test_key_survives_cache_flush(self, store: VaultStore, home_vault: str) -> None:
        key = store.vault_key(home_vault)
        store.forget_keys()
        assert store.vault_key(home_vault) == key

    def test_revoked_vault_has_no_key(self, store: VaultStore) -> None:
        vault_id = store.create_vault("Team", VaultType.SHARED).id
        store.create_entry(vault_id, Category.PASSWORD, "db", b"pw")
        store.revoke_vault(vault_id)
        with pytest.raises(PermissionDenied):
            store.vault_key(vault_id)
        assert store.load(vault_id).entries == {}
