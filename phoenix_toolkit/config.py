"""Environment-driven settings and the filesystem layout they imply."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

ENV_ROOT = "PHOENIX_ROOT"
ENV_WORK_DIR = "PHOENIX_WORK_DIR"
ENV_COMMAND_TIMEOUT = "PHOENIX_COMMAND_TIMEOUT"
ENV_USE_SUDO = "PHOENIX_USE_SUDO"
ENV_LOG_FILE = "PHOENIX_LOG_FILE"

DEFAULT_ROOT = Path("/")
DEFAULT_WORK_DIR = Path("/tmp")
DEFAULT_INVENTORY = Path("/tmp/server-inventory.json")
DEFAULT_BACKUP = Path("/tmp/full-server-backup.tar.gz")


@dataclass(slots=True)
class SystemPaths:
    """Well-known locations, all relative to ``root`` so tests can relocate them."""

    root: Path = DEFAULT_ROOT

    def resolve(self, absolute: str | os.PathLike[str]) -> Path:
        """Map an absolute path on the managed host to the local filesystem."""

        relative = str(absolute).lstrip("/")
        return self.root / relative if relative else self.root

    def relative(self, local: Path) -> str:
        """Inverse of :meth:`resolve`: the absolute path as seen on the host."""

        return "/" + local.relative_to(self.root).as_posix()

    @property
    def home(self) -> Path:
        return self.resolve("/home")

    @property
    def systemd(self) -> Path:
        return self.resolve("/etc/systemd/system")

    @property
    def nginx(self) -> Path:
        return self.resolve("/etc/nginx")

    @property
    def apache(self) -> Path:
        return self.resolve("/etc/apache2")

    @property
    def os_release(self) -> Path:
        return self.resolve("/etc/os-release")

    @property
    def system_crontab(self) -> Path:
        return self.resolve("/etc/crontab")

    @property
    def redis_lib(self) -> Path:
        return self.resolve("/var/lib/redis")

    def user_home(self, user: str) -> Path:
        return self.home / user


@dataclass(slots=True)
class Settings:
    root: Path = DEFAULT_ROOT
    work_dir: Path = DEFAULT_WORK_DIR
    command_timeout: float | None = None
    use_sudo: bool = True
    log_file: Path | None = None
    dry_run: bool = False
    warnings: list[str] = field(default_factory=list)

    @property
    def paths(self) -> SystemPaths:
        return SystemPaths(self.root)


def load_settings(environ: Mapping[str, str] | None = None, *, dry_run: bool = False) -> Settings:
    env = os.environ if environ is None else environ
    settings = Settings(dry_run=dry_run)

    root_value = env.get(ENV_ROOT, "").strip()
    if root_value:
        settings.root = Path(root_value).expanduser()

    work_value = env.get(ENV_WORK_DIR, "").strip()
    if work_value:
        settings.work_dir = Path(work_value).expanduser()

    timeout_value = env.get(ENV_COMMAND_TIMEOUT, "").strip()
    if timeout_value:
        try:
            settings.command_timeout = float(timeout_value)
        except ValueError:
            settings.warnings.append(
                f"invalid {ENV_COMMAND_TIMEOUT} value; falling back to no timeout"
            )
        else:
            if settings.command_timeout <= 0:
                settings.command_timeout = None

    settings.use_sudo = env.get(ENV_USE_SUDO, "1").strip() != "0"

    log_value = env.get(ENV_LOG_FILE, "").strip()
    if log_value:
        settings.log_file = Path(log_value).expanduser()

    return settings
