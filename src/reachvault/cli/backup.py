"""Backup commands: export, preview, import."""

from __future__ import annotations

from pathlib import Path

import click
from rich.panel import Panel

from ..backup import BackupPreview
from ..errors import VaultError
from ._common import HOME_OPTION, console, fail, load_service, open_service


def _preview_panel(preview: BackupPreview) -> Panel:
    return Panel(
        f"Exported: {preview.exported_at:%Y-%m-%d %H:%M} UTC\n"
        f"Identity: {preview.user_uuid}\n"
        f"Vaults: {preview.vault_count}\n"
        f"Entries: {preview.entry_count}\n"
        f"Members: {preview.member_count}\n"
        f"Sync config: {'yes' if preview.has_sync_config else 'no'}",
        title=f"Backup (format v{preview.version})",
        border_style="cyan",
    )


def register_backup_commands(main: click.Group) -> None:
    """Register the backup command group."""

    @main.group()
    def backup():
        """Backup and restore — the whole vault home in one sealed file.

        Protected by a password you choose (Argon2id). Without it the
        archive is unreadable, so store the password separately.
        """

    @backup.command("export")
    @click.argument("output", type=click.Path())
    @click.password_option("--password", prompt="Backup password")
    @HOME_OPTION
    def backup_export(output: str, password: str, home: str):
        """Write a password-protected backup archive."""
        service = open_service(home)
        try:
            console.print("\n[cyan]Deriving backup key and sealing archive...[/]")
            result = service.backup.write_backup(password, Path(output))
        except (VaultError, ValueError) as exc:
            fail(exc)
        console.print(Panel(
            f"[bold green]Backup written[/]\n"
            f"Vaults: {result['vault_count']}\n"
            f"Size: {result['archive_size'] / 1024:.1f} KiB\n"
            f"Path: [cyan]{result['filepath']}[/]",
            title="Backup Complete",
            border_style="green",
        ))

    @backup.command("preview")
    @click.argument("archive", type=click.Path(exists=True))
    @click.option("--password", prompt="Backup password", hide_input=True)
    @HOME_OPTION
    def backup_preview(archive: str, password: str, home: str):
        """Authenticate an archive and show what it holds."""
        service = load_service(home)
        try:
            preview = service.backup.preview_backup(Path(archive).read_bytes(), password)
        except VaultError as exc:
            fail(exc)
        console.print(_preview_panel(preview))

    @backup.command("import")
    @click.argument("archive", type=click.Path(exists=True))
    @click.option("--password", prompt="Backup password", hide_input=True)
    @click.option("--yes", is_flag=True, help="Replace local state without asking.")
    @HOME_OPTION
    def backup_import(archive: str, password: str, yes: bool, home: str):
        """Replace ALL local state with an archive's contents."""
        service = load_service(home)

        def _confirm(preview: BackupPreview) -> bool:
            console.print(_preview_panel(preview))
            if yes:
                return True
            return click.confirm("Replace all local vaults and identity with this backup?", default=False)

        try:
            preview = service.backup.import_backup(Path(archive).read_bytes(), password, confirm=_confirm)
        except VaultError as exc:
            fail(exc)
        if preview.applied:
            console.print("[bold green]Backup restored.[/]")
        else:
            console.print("[dim]Nothing changed.[/]")
