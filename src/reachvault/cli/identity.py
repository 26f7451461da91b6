"""Identity commands: init, show, export, import, password, reset."""

from __future__ import annotations

import click
from rich.panel import Panel

from ..errors import VaultError
from ._common import HOME_OPTION, console, fail, load_service, open_service


def register_identity_commands(main: click.Group) -> None:
    """Register the identity command group."""

    @main.group()
    def identity():
        """Device identity — the X25519 keypair behind every vault.

        The secret key lives in the OS keychain. Export it (or a backup)
        somewhere safe: it is the only way back if the keychain is lost.
        """

    @identity.command("init")
    @HOME_OPTION
    def identity_init(home: str):
        """Create this device's identity (no-op if one exists)."""
        service = load_service(home)
        try:
            record = service.identity.initialize()
        except VaultError as exc:
            fail(exc)
        console.print(Panel(
            f"UUID: [cyan]{record.user_uuid}[/]\n"
            f"Public key: [cyan]{record.public_key}[/]",
            title="Identity Ready",
            border_style="green",
        ))

    @identity.command("show")
    @HOME_OPTION
    def identity_show(home: str):
        """Show the UUID and public key to hand to vault owners."""
        service = load_service(home)
        try:
            record = service.identity.record
        except VaultError as exc:
            fail(exc)
        console.print(f"UUID:       [cyan]{record.user_uuid}[/]")
        console.print(f"Public key: [cyan]{record.public_key}[/]")
        console.print(f"Created:    {record.created_at:%Y-%m-%d %H:%M}")
        console.print(
            f"Password:   {'[green]set[/]' if record.wrapped_secret_key else '[dim]not set[/]'}"
        )

    @identity.command("export")
    @HOME_OPTION
    def identity_export(home: str):
        """Print the raw secret key (base64). Keep it offline."""
        service = open_service(home)
        console.print("[yellow]Anyone holding this key can open every vault you can.[/]")
        click.echo(service.identity.export_secret_key())

    @identity.command("import")
    @click.argument("secret_key")
    @HOME_OPTION
    def identity_import(secret_key: str, home: str):
        """Adopt an exported secret key on this device."""
        service = load_service(home)
        try:
            record = service.identity.import_secret_key(secret_key)
        except VaultError as exc:
            fail(exc)
        console.print(f"[green]Identity imported:[/] {record.user_uuid}")

    @identity.command("password")
    @HOME_OPTION
    @click.password_option("--password", prompt="New master password")
    def identity_password(home: str, password: str):
        """Set a master password as a keychain-independent unlock path."""
        service = open_service(home)
        try:
            service.identity.set_master_password(password)
        except (VaultError, ValueError) as exc:
            fail(exc)
        console.print("[green]Master password set.[/]")

    @identity.command("reset")
    @HOME_OPTION
    @click.option("--yes", is_flag=True, help="Skip the confirmation prompt.")
    def identity_reset(home: str, yes: bool):
        """Start fresh: destroy the identity and every local vault."""
        service = load_service(home)
        console.print(Panel(
            "This permanently destroys your identity and all local vaults.\n"
            "Data encrypted under it can only be recovered with a previously\n"
            "exported secret key or backup archive.",
            title="Start Fresh",
            border_style="red",
        ))
        if not yes and not click.confirm("Destroy this identity?", default=False):
            console.print("[dim]Aborted.[/]")
            return
        try:
            service.identity.reset(confirm=True)
        except VaultError as exc:
            fail(exc)
        console.print("[green]Identity destroyed.[/]")
