"""
Reach Vault CLI — encrypted secrets from the command line.

The main Click group is defined here and every command group is
registered from its own module.

Entry point: reachvault.cli:main
"""

from __future__ import annotations

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="reachvault")
def main():
    """Reach Vault — encrypted secrets, synced and shared.

    Plaintext never leaves this device.
    """


# ---------------------------------------------------------------------------
# Register all command groups from modular files
# ---------------------------------------------------------------------------

from .identity import register_identity_commands
from .vault import register_vault_commands
from .members import register_member_commands
from .sync_cmd import register_sync_commands
from .backup import register_backup_commands

register_identity_commands(main)
register_vault_commands(main)
register_member_commands(main)
register_sync_commands(main)
register_backup_commands(main)
