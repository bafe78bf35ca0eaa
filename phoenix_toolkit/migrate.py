"""Clone one server onto another over SSH.

The source host scans and backs itself up with the ``phoenix`` console
script, the archive travels through this machine with ``scp`` and the
destination restores it under ``sudo``.
"""

from __future__ import annotations

import os
import shlex
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

try:  # pragma: no cover - exercised implicitly when tomllib is available
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError as exc:  # pragma: no cover - Python < 3.11 guard
    raise SystemExit("python 3.11+ is required to load TOML migration configs") from exc

from . import runner
from .config import DEFAULT_BACKUP, DEFAULT_INVENTORY, DEFAULT_WORK_DIR
from .console import Console
from .runner import CommandError, format_command

DEFAULT_SSH_PORT = 22
DEFAULT_REMOTE_COMMAND = "phoenix"
SSH_OPTIONS = (
    "-o",
    "StrictHostKeyChecking=no",
    "-o",
    "UserKnownHostsFile=/dev/null",
    "-o",
    "LogLevel=ERROR",
)
VERIFY_COMMAND = (
    "echo '=== Running Services ===' && "
    "systemctl list-units --type=service --state=running --no-pager | head -20 && "
    "echo '' && echo '=== Listening Ports ===' && ss -tlnp | head -15"
)
TOTAL_STEPS = 7


class MigrationError(RuntimeError):
    """Raised when a migration step cannot complete."""


@dataclass(slots=True)
class HostConfig:
    """Connection details for one end of a migration."""

    host: str
    user: str = "root"
    password: str | None = None
    identity: Path | None = None
    port: int = DEFAULT_SSH_PORT

    @property
    def login(self) -> str:
        return f"{self.user}@{self.host}"

    def remote(self, path: str | os.PathLike[str]) -> str:
        return f"{self.login}:{path}"

    def env(self) -> dict[str, str] | None:
        # sshpass -e reads the password from the environment, never argv.
        if self.password is None:
            return None
        return {"SSHPASS": self.password}


@dataclass(slots=True)
class MigrationConfig:
    source: HostConfig
    destination: HostConfig
    remote_command: str = DEFAULT_REMOTE_COMMAND
    bootstrap: str | None = None
    remote_inventory: str = str(DEFAULT_INVENTORY)
    remote_backup: str = str(DEFAULT_BACKUP)


def _transport(host: HostConfig, tool: str, port_flag: str) -> list[str]:
    command: list[str] = ["sshpass", "-e"] if host.password is not None else []
    command.extend([tool, *SSH_OPTIONS, port_flag, str(host.port)])
    if host.identity is not None:
        command.extend(["-i", str(host.identity)])
    return command


def build_ssh_command(host: HostConfig, remote_command: str) -> list[str]:
    return [*_transport(host, "ssh", "-p"), host.login, remote_command]


def build_scp_command(host: HostConfig, source: str, target: str) -> list[str]:
    return [*_transport(host, "scp", "-P"), source, target]


def _expand_path(value: str, *, base: Path) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = (base / path).resolve()
    return path


def _load_host(data: Mapping[str, Any], section: str, base_dir: Path) -> HostConfig:
    raw = data.get(section)
    if not isinstance(raw, Mapping):
        raise MigrationError(f"[{section}] table is required in the migration config")
    host = str(raw.get("host") or "").strip()
    if not host:
        raise MigrationError(f"[{section}] host is required")
    user = str(raw.get("user") or "root").strip()

    password_value = raw.get("password")
    password_env = raw.get("password_env")
    if password_value is None and password_env:
        password_value = os.environ.get(str(password_env))
        if password_value is None:
            raise MigrationError(f"[{section}] password_env {password_env} is not set")
    identity_value = raw.get("identity")
    identity = _expand_path(str(identity_value), base=base_dir) if identity_value else None

    port_value = raw.get("port", DEFAULT_SSH_PORT)
    try:
        port = int(port_value)
    except (TypeError, ValueError) as exc:
        raise MigrationError(f"[{section}] port must be an integer") from exc
    return HostConfig(
        host=host,
        user=user,
        password=str(password_value) if password_value is not None else None,
        identity=identity,
        port=port,
    )


def load_migration_config(path: Path) -> MigrationConfig:
    if not path.exists():
        raise MigrationError(f"Migration configuration not found: {path}")
    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise MigrationError(f"Invalid migration configuration {path}: {exc}") from exc
    base_dir = path.parent
    bootstrap = data.get("bootstrap")
    return MigrationConfig(
        source=_load_host(data, "source", base_dir),
        destination=_load_host(data, "destination", base_dir),
        remote_command=str(data.get("remote_command") or DEFAULT_REMOTE_COMMAND),
        bootstrap=str(bootstrap) if bootstrap else None,
    )


def config_from_args(values: Sequence[str]) -> MigrationConfig:
    """Build a config from ``SRC_HOST SRC_USER SRC_PASS DST_HOST DST_USER DST_PASS``."""

    if len(values) != 6:
        raise MigrationError("expected SRC_HOST SRC_USER SRC_PASS DST_HOST DST_USER DST_PASS")
    src_host, src_user, src_pass, dst_host, dst_user, dst_pass = values
    return MigrationConfig(
        source=HostConfig(host=src_host, user=src_user, password=src_pass),
        destination=HostConfig(host=dst_host, user=dst_user, password=dst_pass),
    )


def remote_steps(config: MigrationConfig) -> dict[str, str]:
    """Shell commands run on the remote hosts, keyed by step."""

    phoenix = shlex.split(config.remote_command)
    restore = [*phoenix, "restore", config.remote_backup, config.destination.user]
    if config.destination.user != "root":
        restore = ["sudo", *restore]
    return {
        "scan": shlex.join([*phoenix, "scan", config.remote_inventory]),
        "backup": shlex.join(
            [
                *phoenix,
                "backup",
                config.remote_inventory,
                config.source.user,
                "--output",
                config.remote_backup,
            ]
        ),
        "restore": shlex.join(restore),
        "cleanup-source": shlex.join(["rm", "-f", config.remote_backup, config.remote_inventory]),
        "cleanup-destination": shlex.join(["rm", "-f", config.remote_backup]),
    }


def _run(
    console: Console,
    index: int,
    label: str,
    host: HostConfig,
    command: list[str],
    *,
    dry_run: bool,
) -> None:
    console.step(f"[{index}/{TOTAL_STEPS}] {label}")
    try:
        runner.run_commands([command], dry_run=dry_run, env=host.env())
    except (CommandError, FileNotFoundError) as exc:
        raise MigrationError(f"{label} failed: {exc}") from exc


def _best_effort(console: Console, host: HostConfig, command: list[str], *, dry_run: bool) -> None:
    try:
        runner.run_commands([command], dry_run=dry_run, env=host.env())
    except (CommandError, FileNotFoundError) as exc:
        console.warn(f"{host.host}: {format_command(command[-1:])} failed: {exc}")


def migrate(
    config: MigrationConfig,
    *,
    console: Console,
    dry_run: bool = False,
    work_dir: Path = DEFAULT_WORK_DIR,
) -> Path:
    """Run the seven migration steps; returns the local copy's path, which is always removed."""

    source, destination = config.source, config.destination
    steps = remote_steps(config)
    local_backup = work_dir / f"migration-backup-{int(time.time())}.tar.gz"
    console.info(f"Source:      {source.login}")
    console.info(f"Destination: {destination.login}")

    if config.bootstrap:
        install = shlex.join(["python3", "-m", "pip", "install", "--quiet", config.bootstrap])
        for host in (source, destination):
            console.step(f"Installing {config.bootstrap} on {host.host}")
            try:
                runner.run_commands([build_ssh_command(host, install)], dry_run=dry_run, env=host.env())
            except (CommandError, FileNotFoundError) as exc:
                raise MigrationError(f"bootstrap on {host.host} failed: {exc}") from exc

    # The local copy holds database dumps and env files; it goes even when a step fails.
    try:
        _run(console, 1, "Scanning source server...", source,
             build_ssh_command(source, steps["scan"]), dry_run=dry_run)
        _run(console, 2, "Creating backup on source server...", source,
             build_ssh_command(source, steps["backup"]), dry_run=dry_run)
        _run(console, 3, "Downloading backup from source...", source,
             build_scp_command(source, source.remote(config.remote_backup), str(local_backup)),
             dry_run=dry_run)
        if local_backup.exists():
            console.info(f"Downloaded: {local_backup} ({local_backup.stat().st_size} bytes)")
        _run(console, 4, "Uploading backup to destination...", destination,
             build_scp_command(destination, str(local_backup), destination.remote(config.remote_backup)),
             dry_run=dry_run)
        _run(console, 5, "Restoring on destination server...", destination,
             build_ssh_command(destination, steps["restore"]), dry_run=dry_run)

        console.step(f"[6/{TOTAL_STEPS}] Verifying services on destination...")
        _best_effort(console, destination, build_ssh_command(destination, VERIFY_COMMAND), dry_run=dry_run)
    finally:
        console.step(f"[7/{TOTAL_STEPS}] Cleaning up temporary files...")
        if not dry_run:
            local_backup.unlink(missing_ok=True)
        _best_effort(console, source, build_ssh_command(source, steps["cleanup-source"]), dry_run=dry_run)
        _best_effort(
            console, destination, build_ssh_command(destination, steps["cleanup-destination"]), dry_run=dry_run
        )

    console.step("Migration complete")
    console.info(f"1. Update DNS records to point to {destination.host}")
    console.info("2. Get TLS certificates, for example: sudo certbot --nginx")
    console.info("3. Test your applications")
    return local_backup
