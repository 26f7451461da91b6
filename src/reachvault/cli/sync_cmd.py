"""Sync commands: run, status."""

from __future__ import annotations

from typing import Optional

import click
from rich.table import Table

from ..errors import VaultError
from ..models import VaultType
from ..sync.models import SyncReport, SyncStatus
from ._common import HOME_OPTION, console, fail, load_service, open_service, resolve_vault, run

STATUS_STYLE = {
    SyncStatus.SYNCED: "[bold green]SYNCED[/]",
    SyncStatus.CONFLICT: "[bold yellow]CONFLICT[/]",
    SyncStatus.CONNECTING: "[cyan]CONNECTING[/]",
    SyncStatus.DISCONNECTED: "[dim]DISCONNECTED[/]",
}


def _print_report(name: str, report: SyncReport) -> None:
    console.print(
        f"  [cyan]{name}[/]: {report.pushed} pushed, {report.pulled} pulled, "
        f"{report.deleted_remote + report.deleted_local} deleted"
    )
    if report.conflicts:
        console.print(
            f"    [yellow]{report.conflicts} conflict(s); losing writes kept as "
            f"'(conflict)' entries[/]"
        )


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Shared vault sync — envelopes only, never plaintext."""

    @sync.command("run")
    @click.argument("vault_ref", required=False)
    @HOME_OPTION
    def sync_run(vault_ref: Optional[str], home: str):
        """Sync one shared vault, or all of them."""
        service = open_service(home)
        if vault_ref:
            record = resolve_vault(service, vault_ref)
            try:
                report = run(service, service.sync.sync_vault(record.id))
            except VaultError as exc:
                fail(exc)
            _print_report(record.name, report)
            return

        results = run(service, service.sync.sync_all())
        if not results:
            console.print("[dim]No shared vaults.[/]")
        failed = False
        for vault_id, result in results.items():
            if isinstance(result, SyncReport):
                name = service.store.get_vault(vault_id).name if vault_id in service.store.vault_ids() else vault_id
                _print_report(name, result)
            else:
                failed = True
                console.print(f"  [red]{vault_id}: {result}[/]")
        if failed:
            raise SystemExit(1)

    @sync.command("status")
    @HOME_OPTION
    def sync_status(home: str):
        """Show sync state of every shared vault."""
        service = load_service(home)
        console.print(f"Strategy: [cyan]{service.sync.strategy.value}[/]")
        table = Table(title="Shared vaults")
        table.add_column("Vault", style="cyan")
        table.add_column("Status")
        table.add_column("Last sync")
        table.add_column("Syncs", justify="right")
        table.add_column("Last error", style="red")
        for vault_id in service.store.vault_ids():
            record = service.store.get_vault(vault_id)
            if record.vault_type != VaultType.SHARED:
                continue
            state = service.sync.status(vault_id)
            last = f"{state.last_sync:%Y-%m-%d %H:%M}" if state.last_sync else "never"
            table.add_row(
                record.name, STATUS_STYLE[state.status], last, str(state.sync_count),
                state.last_error or "",
            )
        console.print(table)
