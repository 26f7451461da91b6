"""Shared test fixtures for reachvault."""

from __future__ import annotations

from pathlib import Path
from typing import Awaitable, Callable, Optional

import pytest

from reachvault.config import ConnectionStrategy, VaultConfig
from reachvault.keychain import Keychain, MemoryKeychain
from reachvault.models import Invite, KdfParams, Role
from reachvault.service import VaultService
from reachvault.sync.remote import MemoryRemoteStore


class ManualClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int = 1) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def fast_kdf() -> KdfParams:
    """Argon2id parameters cheap enough for unit tests."""
    return KdfParams(memory_kib=64, time_cost=1, parallelism=1)


@pytest.fixture
def config(fast_kdf: KdfParams) -> VaultConfig:
    """Config with instant retries and the replica strategy."""
    return VaultConfig(
        connection_strategy=ConnectionStrategy.REPLICA,
        sync_max_retries=2,
        sync_base_delay=0,
        sync_max_delay=0,
        sync_timeout=5,
        kdf=fast_kdf,
    )


@pytest.fixture
def vault_home(tmp_path: Path) -> Path:
    """Provide a temporary vault home directory."""
    home = tmp_path / ".reachvault"
    home.mkdir()
    return home


@pytest.fixture
def keychain() -> MemoryKeychain:
    return MemoryKeychain()


@pytest.fixture
def remote() -> MemoryRemoteStore:
    """One in-memory remote shared by every device in a test."""
    return MemoryRemoteStore()


@pytest.fixture
def make_service(
    tmp_path: Path, remote: MemoryRemoteStore, config: VaultConfig
) -> Callable[..., VaultService]:
    """Factory for independent devices that share the remote store."""

    def _make(
        name: str = "device",
        keychain: Optional[Keychain] = None,
        clock: Optional[Callable[[], int]] = None,
        initialize: bool = True,
    ) -> VaultService:
        service = VaultService(
            tmp_path / name,
            keychain=keychain or MemoryKeychain(),
            remote=remote,
            config=config.model_copy(deep=True),
            clock=clock,
        )
        if initialize:
            service.open()
        return service

    return _make


@pytest.fixture
def alice(make_service: Callable[..., VaultService]) -> VaultService:
    return make_service("alice")


@pytest.fixture
def bob(make_service: Callable[..., VaultService]) -> VaultService:
    return make_service("bob")


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def share_vault() -> Callable[..., Awaitable[Invite]]:
    """Invite ``member`` into ``owner``'s vault and join it on their device."""

    async def _share(
        owner: VaultService, member: VaultService, vault_id: str, role: Role = Role.MEMBER
    ) -> Invite:
        invite = await owner.sharing.invite_member(
            vault_id, member.identity.user_uuid, member.identity.record.public_key, role
        )
        await member.sharing.join_vault(invite)
        return invite

    return _share
