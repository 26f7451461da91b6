"""Tests for the permission matrix and serializable models."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from reachvault.errors import PermissionDenied
from reachvault.models import (
    Category,
    Invite,
    Permission,
    Role,
    ShareGrant,
    SyncCredential,
    VaultRecord,
    require_permission,
)


class TestRoles:
    """Role ranks and the permission matrix."""

    def test_rank_order(self) -> None:
        assert Role.OWNER.rank > Role.ADMIN.rank > Role.MEMBER.rank > Role.READONLY.rank

    @pytest.mark.parametrize(
        ("role", "read", "write", "manage"),
        [
            (Role.OWNER, True, True, True),
            (Role.ADMIN, True, True, True),
            (Role.MEMBER, True, True, False),
            (Role.READONLY, True, False, False),
        ],
    )
    def test_matrix(self, role: Role, read: bool, write: bool, manage: bool) -> None:
        assert role.allows(Permission.READ) is read
        assert role.allows(Permission.WRITE) is write
        assert role.allows(Permission.MANAGE_MEMBERS) is manage

    def test_require_permission(self) -> None:
        require_permission(Role.MEMBER, Permission.WRITE, "add entries")
        with pytest.raises(PermissionDenied, match="readonly"):
            require_permission(Role.READONLY, Permission.WRITE, "add entries")


class TestTokens:
    """Copy-pasteable invite and share tokens."""

    def _grant(self, **overrides: object) -> ShareGrant:
        fields = dict(
            share_id="s1",
            sender_uuid="a",
            sender_public_key="cGs=",
            recipient_uuid="b",
            source_entry_id="e1",
            name="router",
            category=Category.PASSWORD,
            payload="cGF5bG9hZA==",
            wrapped_dek="ZGVr",
        )
        fields.update(overrides)
        return ShareGrant(**fields)

    def test_share_token(self) -> None:
        grant = self._grant()
        assert ShareGrant.from_token(grant.to_token()) == grant

    def test_invite_token(self) -> None:
        invite = Invite(
            vault_id="v1",
            inviter_uuid="a",
            role=Role.READONLY,
            credential=SyncCredential(url="memory://db", database="db", token="t"),
        )
        assert Invite.from_token(invite.to_token()) == invite

    @pytest.mark.parametrize("token", ["", "!!!", "e30="])
    def test_malformed(self, token: str) -> None:
        with pytest.raises(ValueError):
            ShareGrant.from_token(token)

    def test_expiry(self) -> None:
        now = datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert not self._grant().expired(now)
        grant = self._grant(created_at=now, expires_at=now + timedelta(hours=1))
        assert not grant.expired(now)
        assert grant.expired(now + timedelta(hours=1))


def test_internal_vault_names() -> None:
    base = dict(id="v", owner_uuid="u", created_at=0)
    assert VaultRecord(name="__settings__", **base).internal
    assert not VaultRecord(name="Home", **base).internal
