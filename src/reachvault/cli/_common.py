"""Shared utilities for all CLI command modules.

Provides the Rich console, service construction with identity unlock,
and error reporting used across every command group.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Awaitable

import click
from rich.console import Console

from .. import VAULT_HOME
from ..errors import KeystoreError, VaultError, VaultNotFound
from ..keychain import Keychain, OSKeychain
from ..models import VaultRecord
from ..service import VaultService

logger = logging.getLogger("reachvault.cli")

console = Console()

HOME_OPTION = click.option(
    "--home", default=VAULT_HOME, type=click.Path(), help="Vault home directory."
)


def make_keychain() -> Keychain:
    """Keychain backend for CLI sessions."""
    return OSKeychain()


def load_service(home: str) -> VaultService:
    """Service for ``home`` without unlocking anything."""
    return VaultService(Path(home).expanduser(), keychain=make_keychain())


def open_service(home: str) -> VaultService:
    """Service for ``home`` with the identity unlocked.

    Falls back to the master password when the keychain entry is
    missing or unreadable and a password copy exists.
    """
    service = load_service(home)
    if not service.identity.exists():
        console.print("[bold red]No identity found.[/] Run [cyan]reachvault identity init[/] first.")
        raise SystemExit(1)
    try:
        service.identity.unlock()
    except KeystoreError as exc:
        if not service.identity.has_master_password:
            fail(exc)
        console.print(f"[yellow]Keychain unavailable ({exc}); using master password.[/]")
        password = click.prompt("Master password", hide_input=True)
        try:
            service.identity.unlock_with_password(password)
        except VaultError as inner:
            fail(inner)
    return service


def run(service: VaultService, coro: Awaitable[Any]) -> Any:
    """Run a coroutine and let background syncs finish before exiting."""

    async def _main() -> Any:
        try:
            return await coro
        finally:
            await service.sync.drain()

    return asyncio.run(_main())


def resolve_vault(service: VaultService, ref: str) -> VaultRecord:
    """Look a vault up by id, then by name."""
    try:
        return service.store.get_vault(ref)
    except VaultNotFound:
        record = service.store.find_vault(ref)
        if record is None:
            fail(VaultNotFound(f"no vault with id or name '{ref}'"))
        return record


def fail(exc: Exception) -> None:
    """Print an error and exit non-zero."""
    console.print(f"[red]{exc}[/]")
    raise SystemExit(1)
