"""Vault and secret commands: create, list, delete, put, get, update, rm."""

from __future__ import annotations

from datetime import datetime, timezone

import click
from rich.table import Table

from ..errors import VaultError
from ..models import Category
from ._common import HOME_OPTION, console, fail, open_service, resolve_vault, run


def _ms(value: int) -> str:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def register_vault_commands(main: click.Group) -> None:
    """Register the vault and secret command groups."""

    @main.group()
    def vault():
        """Vaults — private to this device, or shared through a remote store."""

    @vault.command("create")
    @click.argument("name")
    @click.option("--shared", is_flag=True, help="Back the vault with a remote database.")
    @HOME_OPTION
    def vault_create(name: str, shared: bool, home: str):
        """Create a vault."""
        service = open_service(home)
        try:
            record = run(service, service.create_vault(name, shared=shared))
        except VaultError as exc:
            fail(exc)
        console.print(f"[green]Created {record.vault_type.value} vault[/] {record.name} ([dim]{record.id}[/])")

    @vault.command("list")
    @click.option("--all", "show_all", is_flag=True, help="Include internal vaults.")
    @HOME_OPTION
    def vault_list(show_all: bool, home: str):
        """List vaults."""
        service = open_service(home)
        table = Table(title="Vaults")
        table.add_column("Name", style="cyan")
        table.add_column("Type")
        table.add_column("Role")
        table.add_column("Entries", justify="right")
        table.add_column("ID", style="dim")
        for summary in service.store.list_vaults(include_internal=show_all):
            record = summary.vault
            role = "[red]revoked[/]" if record.revoked else record.role.value
            table.add_row(record.name, record.vault_type.value, role, str(summary.entry_count), record.id)
        console.print(table)

    @vault.command("delete")
    @click.argument("vault_ref")
    @click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
    @HOME_OPTION
    def vault_delete(vault_ref: str, yes: bool, home: str):
        """Delete a vault (and its remote database when shared)."""
        service = open_service(home)
        record = resolve_vault(service, vault_ref)
        if not yes and not click.confirm(f"Delete vault '{record.name}' and all its entries?", default=False):
            console.print("[dim]Aborted.[/]")
            return
        try:
            done = run(service, service.delete_vault(record.id, confirm=True))
        except VaultError as exc:
            fail(exc)
        if done:
            console.print(f"[green]Deleted vault[/] {record.name}")
        else:
            console.print(f"[yellow]Vault {record.name} deleted locally; remote delete pending.[/]")

    @main.group()
    def secret():
        """Secrets — entries inside a vault."""

    @secret.command("put")
    @click.argument("vault_ref")
    @click.argument("name")
    @click.option(
        "--category", "-c", default=Category.PASSWORD.value,
        type=click.Choice([c.value for c in Category]), help="Entry category.",
    )
    @click.option("--value", prompt=True, hide_input=True, help="Secret value.")
    @HOME_OPTION
    def secret_put(vault_ref: str, name: str, category: str, value: str, home: str):
        """Store a new secret."""
        service = open_service(home)
        record = resolve_vault(service, vault_ref)
        try:
            entry_id = run(service, service.put_secret(record.id, Category(category), name, value))
        except VaultError as exc:
            fail(exc)
        console.print(f"[green]Stored[/] {name} ([dim]{entry_id}[/])")

    @secret.command("get")
    @click.argument("vault_ref")
    @click.argument("entry_id")
    @HOME_OPTION
    def secret_get(vault_ref: str, entry_id: str, home: str):
        """Print a secret's value."""
        service = open_service(home)
        record = resolve_vault(service, vault_ref)
        try:
            value = run(service, service.get_secret(record.id, entry_id))
        except VaultError as exc:
            fail(exc)
        click.echo(value)

    @secret.command("list")
    @click.argument("vault_ref")
    @HOME_OPTION
    def secret_list(vault_ref: str, home: str):
        """List entries (metadata only)."""
        service = open_service(home)
        record = resolve_vault(service, vault_ref)
        try:
            entries = service.store.list_entries(record.id)
        except VaultError as exc:
            fail(exc)
        table = Table(title=f"Entries in {record.name}")
        table.add_column("Name", style="cyan")
        table.add_column("Category")
        table.add_column("Modified")
        table.add_column("State")
        table.add_column("ID", style="dim")
        for entry in entries:
            if entry.local_only:
                state = "[yellow]conflict copy[/]"
            elif entry.dirty:
                state = "pending"
            else:
                state = ""
            table.add_row(entry.name, entry.category.value, _ms(entry.modified_at), state, entry.id)
        console.print(table)

    @secret.command("update")
    @click.argument("vault_ref")
    @click.argument("entry_id")
    @click.option("--value", prompt=True, hide_input=True, help="New secret value.")
    @click.option("--name", default=None, help="Rename the entry.")
    @HOME_OPTION
    def secret_update(vault_ref: str, entry_id: str, value: str, name: str, home: str):
        """Replace a secret's value (re-encrypted under a new key)."""
        service = open_service(home)
        record = resolve_vault(service, vault_ref)
        try:
            run(service, service.update_secret(record.id, entry_id, value, name=name))
        except VaultError as exc:
            fail(exc)
        console.print("[green]Updated.[/]")

    @secret.command("rm")
    @click.argument("vault_ref")
    @click.argument("entry_id")
    @click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
    @HOME_OPTION
    def secret_rm(vault_ref: str, entry_id: str, yes: bool, home: str):
        """Delete a secret."""
        service = open_service(home)
        record = resolve_vault(service, vault_ref)
        if not yes and not click.confirm("Delete this entry?", default=False):
            console.print("[dim]Aborted.[/]")
            return
        try:
            run(service, service.delete_secret(record.id, entry_id))
        except VaultError as exc:
            fail(exc)
        console.print("[green]Deleted.[/]")
