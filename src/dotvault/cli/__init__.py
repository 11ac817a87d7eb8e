"""
dotvault CLI -- keep local secrets and the vault in step.

The main Click group is defined here and every command group is
registered from its own module.

Entry point: dotvault.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="dotvault")
@click.option("--debug", is_flag=True, help="Enable debug logging.")
def main(debug):
    """dotvault -- vault-backed secrets for your dotfiles.

    Sync SSH keys, cloud credentials, git config and environment
    secrets with a password manager.
    """
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(name)s: %(message)s",
    )


from .sync_cmd import register_sync_commands
from .vault_cmd import register_vault_commands

register_sync_commands(main)
register_vault_commands(main)
