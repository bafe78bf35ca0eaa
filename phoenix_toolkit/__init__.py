"""Server cloning helpers: scan, back up, transfer and restore a Linux host."""

from .backup import BackupError, assemble_backup
from .inventory import Inventory, load_inventory, scan, write_inventory
from .migrate import HostConfig, MigrationConfig, MigrationError, load_migration_config
from .restore import RestoreError, restore_backup

__all__ = [
    "BackupError",
    "HostConfig",
    "Inventory",
    "MigrationConfig",
    "MigrationError",
    "RestoreError",
    "assemble_backup",
    "load_inventory",
    "load_migration_config",
    "restore_backup",
    "scan",
    "write_inventory",
]
