"""Membership and sharing commands: invite, join, list, remove, role, leave, share."""

from __future__ import annotations

from datetime import timedelta

import click
from rich.panel import Panel
from rich.table import Table

from ..errors import VaultError
from ..models import Invite, Role, ShareGrant
from ._common import HOME_OPTION, console, fail, open_service, resolve_vault, run

ROLE_CHOICES = click.Choice([r.value for r in Role if r != Role.OWNER])


def register_member_commands(main: click.Group) -> None:
    """Register the member and share command groups."""

    @main.group()
    def member():
        """Shared vault membership — invites, roles, removal."""

    @member.command("invite")
    @click.argument("vault_ref")
    @click.argument("user_uuid")
    @click.argument("public_key")
    @click.option("--role", default=Role.MEMBER.value, type=ROLE_CHOICES, help="Role to grant.")
    @HOME_OPTION
    def member_invite(vault_ref: str, user_uuid: str, public_key: str, role: str, home: str):
        """Invite an identity (UUID + public key) into a shared vault."""
        service = open_service(home)
        record = resolve_vault(service, vault_ref)
        try:
            invite = run(service, service.sharing.invite_member(record.id, user_uuid, public_key, Role(role)))
        except (VaultError, ValueError) as exc:
            fail(exc)
        console.print(Panel(
            f"Send this invite token to the new member:\n\n[cyan]{invite.to_token()}[/]",
            title=f"Invite to {record.name} ({role})",
            border_style="green",
        ))

    @member.command("join")
    @click.argument("token")
    @HOME_OPTION
    def member_join(token: str, home: str):
        """Join a shared vault from an invite token."""
        service = open_service(home)
        try:
            invite = Invite.from_token(token)
            record = run(service, service.sharing.join_vault(invite))
        except (VaultError, ValueError) as exc:
            fail(exc)
        console.print(f"[green]Joined[/] {record.name} as {record.role.value}")

    @member.command("device-invite")
    @click.argument("vault_ref")
    @HOME_OPTION
    def member_device_invite(vault_ref: str, home: str):
        """Invite token for opening a shared vault on another of your devices."""
        service = open_service(home)
        record = resolve_vault(service, vault_ref)
        try:
            invite = service.sharing.device_invite(record.id)
        except (VaultError, ValueError) as exc:
            fail(exc)
        console.print(Panel(
            "Import your identity on the other device, then run\n"
            f"[bold]reachvault member join[/] with this token:\n\n[cyan]{invite.to_token()}[/]",
            title=f"Device invite for {record.name}",
            border_style="green",
        ))

    @member.command("list")
    @click.argument("vault_ref")
    @HOME_OPTION
    def member_list(vault_ref: str, home: str):
        """List members of a shared vault."""
        service = open_service(home)
        record = resolve_vault(service, vault_ref)
        try:
            members = service.sharing.list_members(record.id)
        except VaultError as exc:
            fail(exc)
        table = Table(title=f"Members of {record.name}")
        table.add_column("UUID", style="cyan")
        table.add_column("Role")
        table.add_column("Added")
        for m in members:
            table.add_row(m.user_uuid, m.role.value, f"{m.added_at:%Y-%m-%d}")
        console.print(table)

    @member.command("remove")
    @click.argument("vault_ref")
    @click.argument("user_uuid")
    @click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
    @HOME_OPTION
    def member_remove(vault_ref: str, user_uuid: str, yes: bool, home: str):
        """Remove a member. Entries they already fetched are not re-keyed."""
        service = open_service(home)
        record = resolve_vault(service, vault_ref)
        if not yes and not click.confirm(f"Remove {user_uuid} from {record.name}?", default=False):
            console.print("[dim]Aborted.[/]")
            return
        try:
            run(service, service.sharing.remove_member(record.id, user_uuid, confirm=True))
        except VaultError as exc:
            fail(exc)
        console.print(f"[green]Removed[/] {user_uuid}")
        console.print("[yellow]Rotate sensitive secrets: existing entries were not re-keyed.[/]")

    @member.command("role")
    @click.argument("vault_ref")
    @click.argument("user_uuid")
    @click.argument("role", type=ROLE_CHOICES)
    @HOME_OPTION
    def member_role(vault_ref: str, user_uuid: str, role: str, home: str):
        """Change a member's role."""
        service = open_service(home)
        record = resolve_vault(service, vault_ref)
        try:
            run(service, service.sharing.change_role(record.id, user_uuid, Role(role)))
        except VaultError as exc:
            fail(exc)
        console.print(f"[green]{user_uuid} is now {role}[/]")

    @member.command("leave")
    @click.argument("vault_ref")
    @click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
    @HOME_OPTION
    def member_leave(vault_ref: str, yes: bool, home: str):
        """Remove a shared vault you do not own from this device."""
        service = open_service(home)
        record = resolve_vault(service, vault_ref)
        if not yes and not click.confirm(f"Leave {record.name}?", default=False):
            console.print("[dim]Aborted.[/]")
            return
        try:
            service.sharing.leave_vault(record.id, confirm=True)
        except VaultError as exc:
            fail(exc)
        console.print(f"[green]Left[/] {record.name}")

    @main.group()
    def share():
        """One-off shares — send a copy of a single secret."""

    @share.command("send")
    @click.argument("vault_ref")
    @click.argument("entry_id")
    @click.argument("recipient_uuid")
    @click.argument("recipient_public_key")
    @click.option("--expires-hours", type=float, default=None, help="Expire the share after N hours.")
    @HOME_OPTION
    def share_send(vault_ref, entry_id, recipient_uuid, recipient_public_key, expires_hours, home):
        """Share one entry with another identity."""
        service = open_service(home)
        record = resolve_vault(service, vault_ref)
        expires = timedelta(hours=expires_hours) if expires_hours else None
        try:
            grant = service.sharing.share_entry(
                record.id, entry_id, recipient_uuid, recipient_public_key, expires_in=expires
            )
        except VaultError as exc:
            fail(exc)
        console.print(Panel(
            f"Send this share token to the recipient:\n\n[cyan]{grant.to_token()}[/]",
            title=f"Share of {grant.name}",
            border_style="green",
        ))

    @share.command("accept")
    @click.argument("token")
    @click.argument("vault_ref")
    @HOME_OPTION
    def share_accept(token: str, vault_ref: str, home: str):
        """Copy a shared secret into one of your vaults."""
        service = open_service(home)
        record = resolve_vault(service, vault_ref)
        try:
            grant = ShareGrant.from_token(token)
            entry = service.sharing.accept_share(grant, record.id)
            run(service, service.sync.after_write(record.id))
        except (VaultError, ValueError) as exc:
            fail(exc)
        console.print(f"[green]Imported[/] {entry.name} into {record.name} ([dim]{entry.id}[/])")

    @share.command("list")
    @HOME_OPTION
    def share_list(home: str):
        """List shares sent from this device."""
        service = open_service(home)
        table = Table(title="Outgoing shares")
        table.add_column("Entry", style="cyan")
        table.add_column("Recipient")
        table.add_column("Expires")
        table.add_column("Share ID", style="dim")
        for grant in service.sharing.list_outgoing_shares():
            expires = f"{grant.expires_at:%Y-%m-%d %H:%M}" if grant.expires_at else "never"
            if grant.expired():
                expires = f"[red]{expires}[/]"
            table.add_row(grant.name, grant.recipient_uuid, expires, grant.share_id)
        console.print(table)

    @share.command("received")
    @HOME_OPTION
    def share_received(home: str):
        """List secrets accepted from one-off shares."""
        service = open_service(home)
        table = Table(title="Received shares")
        table.add_column("Entry", style="cyan")
        table.add_column("From")
        table.add_column("Vault")
        table.add_column("Entry ID", style="dim")
        for entry in service.sharing.list_received_shares():
            vault = service.store.get_vault(entry.vault_id)
            table.add_row(entry.name, entry.shared_by or "unknown", vault.name, entry.id)
        console.print(table)
