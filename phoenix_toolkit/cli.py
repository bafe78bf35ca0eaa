"""Entry points for the phoenix CLI."""

from __future__ import annotations

import argparse
import getpass
import sys
from pathlib import Path
from typing import Sequence

from . import backup, inventory, migrate, restore
from .config import DEFAULT_BACKUP, DEFAULT_INVENTORY, Settings, load_settings
from .context import ExecutionContext, build_context


def _common_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the commands without executing them.",
    )
    common.add_argument(
        "--report",
        type=Path,
        help="Write a JSON report of every step outcome to this path.",
    )
    common.add_argument(
        "--log-file",
        type=Path,
        help="Append timestamped progress lines to this file.",
    )
    return common


def build_parser() -> argparse.ArgumentParser:
    common = _common_options()
    parser = argparse.ArgumentParser(
        prog="phoenix",
        description="Clone a Linux server: scan, back up, transfer and restore.",
    )
    parser.set_defaults(handler=None)
    subparsers = parser.add_subparsers(dest="command")

    scan_parser = subparsers.add_parser(
        "scan", parents=[common], help="Inventory services, apps and databases on this host."
    )
    scan_parser.add_argument(
        "output",
        nargs="?",
        type=Path,
        default=DEFAULT_INVENTORY,
        help=f"Inventory JSON destination (default: {DEFAULT_INVENTORY}).",
    )
    scan_parser.set_defaults(handler=_handle_scan, usage=scan_parser.format_usage())

    backup_parser = subparsers.add_parser(
        "backup", parents=[common], help="Archive everything the inventory lists."
    )
    backup_parser.add_argument(
        "inventory",
        nargs="?",
        type=Path,
        default=DEFAULT_INVENTORY,
        help=f"Inventory produced by 'phoenix scan' (default: {DEFAULT_INVENTORY}).",
    )
    backup_parser.add_argument(
        "username",
        nargs="?",
        help="User whose PM2 state is saved (default: current user).",
    )
    backup_parser.add_argument(
        "--output",
        type=Path,
        default=DEFAULT_BACKUP,
        help=f"Backup archive destination (default: {DEFAULT_BACKUP}).",
    )
    backup_parser.set_defaults(handler=_handle_backup, usage=backup_parser.format_usage())

    restore_parser = subparsers.add_parser(
        "restore", parents=[common], help="Rebuild this host from a backup archive."
    )
    restore_parser.add_argument("backup_file", nargs="?", type=Path, help="Backup archive to restore.")
    restore_parser.add_argument(
        "username",
        nargs="?",
        help="User that owns restored PM2 state (default: current user).",
    )
    restore_parser.set_defaults(handler=_handle_restore, usage=restore_parser.format_usage())

    migrate_parser = subparsers.add_parser(
        "migrate", parents=[common], help="Clone a source server onto a destination over SSH."
    )
    migrate_parser.add_argument(
        "hosts",
        nargs="*",
        metavar="HOST_ARG",
        help="SRC_HOST SRC_USER SRC_PASS DST_HOST DST_USER DST_PASS",
    )
    migrate_parser.add_argument(
        "--config",
        type=Path,
        help="TOML file with [source] and [destination] tables.",
    )
    migrate_parser.add_argument(
        "--bootstrap",
        help="pip requirement installed on both hosts before migrating.",
    )
    migrate_parser.add_argument(
        "--remote-command",
        help="Command that runs phoenix on the remote hosts (default: phoenix).",
    )
    migrate_parser.set_defaults(handler=_handle_migrate, usage=migrate_parser.format_usage())

    return parser


def _settings(args: argparse.Namespace) -> Settings:
    settings = load_settings(dry_run=args.dry_run)
    if args.log_file is not None:
        settings.log_file = args.log_file
    return settings


def _usage_error(args: argparse.Namespace, message: str) -> int:
    print(message, file=sys.stderr)
    print(args.usage, file=sys.stderr, end="")
    return 1


def _finish(ctx: ExecutionContext, args: argparse.Namespace) -> int:
    lines = ctx.report.summary_lines()
    ctx.console.step(lines[0])
    for line in lines[1:]:
        ctx.console.info(line)
    if args.report is not None:
        ctx.report.write_json(args.report)
        ctx.console.info(f"Report written to {args.report}")
    return 0


def _handle_scan(args: argparse.Namespace) -> int:
    ctx = build_context(_settings(args), "scan")
    result = inventory.scan(ctx)
    inventory.write_inventory(result, args.output)
    ctx.console.step(f"Inventory saved to: {args.output}")
    for line in inventory.summary_lines(result):
        ctx.console.info(line)
    return _finish(ctx, args)


def _handle_backup(args: argparse.Namespace) -> int:
    if not args.inventory.is_file():
        return _usage_error(
            args, f"Inventory file not found: {args.inventory}. Run 'phoenix scan' first."
        )
    try:
        loaded = inventory.load_inventory(args.inventory)
    except (OSError, ValueError) as exc:
        return _usage_error(args, f"Unable to read inventory {args.inventory}: {exc}")

    settings = _settings(args)
    username = args.username or getpass.getuser()
    ctx = build_context(settings, "backup", user=username)
    try:
        backup.assemble_backup(
            ctx,
            loaded,
            username=username,
            output=args.output,
            work_dir=settings.work_dir,
        )
    except backup.BackupError as exc:
        print(exc, file=sys.stderr)
        return 1
    return _finish(ctx, args)


def _handle_restore(args: argparse.Namespace) -> int:
    if args.backup_file is None:
        return _usage_error(args, "A backup archive is required.")
    if not args.backup_file.is_file():
        return _usage_error(args, f"Backup file not found: {args.backup_file}")

    settings = _settings(args)
    username = args.username or getpass.getuser()
    ctx = build_context(settings, "restore", user=username)
    ctx.console.step(f"Restoring {args.backup_file} for user {username}")
    try:
        restore.restore_backup(
            ctx, args.backup_file, work_dir=settings.work_dir, username=username
        )
    except restore.RestoreError as exc:
        print(exc, file=sys.stderr)
        return 1
    return _finish(ctx, args)


def _handle_migrate(args: argparse.Namespace) -> int:
    try:
        if args.config is not None:
            if args.hosts:
                return _usage_error(args, "Pass either --config or six host arguments, not both.")
            config = migrate.load_migration_config(args.config)
        elif len(args.hosts) == 6:
            config = migrate.config_from_args(args.hosts)
        else:
            return _usage_error(
                args,
                "Expected SRC_HOST SRC_USER SRC_PASS DST_HOST DST_USER DST_PASS or --config.",
            )
    except migrate.MigrationError as exc:
        return _usage_error(args, str(exc))

    if args.bootstrap:
        config.bootstrap = args.bootstrap
    if args.remote_command:
        config.remote_command = args.remote_command

    settings = _settings(args)
    ctx = build_context(settings, "migrate")
    try:
        migrate.migrate(
            config, console=ctx.console, dry_run=settings.dry_run, work_dir=settings.work_dir
        )
    except migrate.MigrationError as exc:
        ctx.report.failed("migrate", config.destination.host, str(exc))
        ctx.console.error(str(exc))
        _finish(ctx, args)
        return 1
    ctx.report.ok("migrate", config.destination.host)
    return _finish(ctx, args)


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 1
    return handler(args)

