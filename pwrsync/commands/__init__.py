"""CLI command implementations for pwrsync.

This module contains all command-line interface implementations:
- versions: List available versions and latest instance status
- mirror: Inspect the secondary mirror
- instances: List, rename, delete and migrate local instances
- update: Install or update an instance and launch the client
"""

from pwrsync.commands.instances import instances_group
from pwrsync.commands.update import update
from pwrsync.commands.versions import mirror_group, versions_group

__all__ = ["instances_group", "mirror_group", "update", "versions_group"]
