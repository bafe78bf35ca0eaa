"""Assemble a full-server backup archive from an inventory.

Each subsystem is archived independently: a failing dump or an unreadable
directory is recorded in the run report and the remaining subsystems still
make it into the final tarball.
"""

from __future__ import annotations

import json
import re
import shutil
import tarfile
import time
from collections.abc import Callable, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Mapping

from .archive import (
    APP_EXCLUDES,
    HOME_EXCLUDES,
    SYSTEMD_APP_EXCLUDES,
    archive_tree,
    bundle_directory,
    create_archive,
    list_members,
    path_owner,
)
from .context import ExecutionContext
from .inventory import Inventory, read_os_release
from .naming import ArtifactKind, Manifest, NamingError, encode, member_path
from .units import is_system_unit, parse_unit

BACKUP_LAYOUT = (
    "apps",
    "configs/nginx",
    "configs/apache",
    "configs/env",
    "databases",
    "docker",
    "processes",
    "system/systemd",
)
DEFAULT_DOCUMENT_ROOT = "/var/www/html"
NGINX_CONFIG_ITEMS = ("sites-available", "sites-enabled", "nginx.conf", "conf.d")
APACHE_CONFIG_ITEMS = ("sites-available", "sites-enabled", "apache2.conf")
NGINX_ROOT = re.compile(r"^\s*root\s+([^;]+);", re.MULTILINE)
APACHE_ROOT = re.compile(r"^\s*DocumentRoot\s+(\S+)", re.MULTILINE | re.IGNORECASE)
PYTHON_SERVER = re.compile(r"gunicorn|uvicorn")
REDIS_SAVE_WAIT = 2
CONTENTS_PREVIEW = 30


class BackupError(RuntimeError):
    """Raised when a backup cannot start at all."""


@dataclass(slots=True)
class BackupMetadata:
    backup_date: str
    source_hostname: str
    source_user: str
    os: str = "Unknown"
    os_version: str = "Unknown"

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "BackupMetadata":
        return cls(
            backup_date=str(data.get("backup_date", "unknown")),
            source_hostname=str(data.get("source_hostname", "unknown")),
            source_user=str(data.get("source_user", "unknown")),
            os=str(data.get("os", "Unknown")),
            os_version=str(data.get("os_version", "Unknown")),
        )


@dataclass
class BackupJob:
    ctx: ExecutionContext
    inventory: Inventory
    workdir: Path
    username: str
    manifest: Manifest = field(default_factory=Manifest)

    def dir(self, name: str) -> Path:
        return self.workdir / name


def format_size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024 or unit == "TB":
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def _archive(
    job: BackupJob,
    phase: str,
    kind: ArtifactKind,
    identity: str,
    source: Path,
    arcname: str,
    *,
    original_path: str,
    excludes: Sequence[str] = (),
    owner: str | None = None,
) -> bool:
    try:
        member = member_path(kind, identity)
    except NamingError as exc:
        job.ctx.console.warn(f"skipping {original_path}: {exc}")
        job.ctx.report.skipped(phase, original_path, str(exc))
        return False
    output = job.workdir / member
    name = output.name
    if job.ctx.dry_run:
        job.ctx.console.echo(f"DRY-RUN: archive {original_path} -> {member}")
        job.manifest.add(kind, identity, original_path, owner)
        return True
    try:
        archive_tree(output, source, arcname, excludes)
    except (OSError, tarfile.TarError) as exc:
        output.unlink(missing_ok=True)
        job.ctx.console.warn(f"could not archive {original_path}: {exc}")
        job.ctx.report.failed(phase, name, str(exc))
        return False
    job.manifest.add(kind, identity, original_path, owner)
    job.ctx.report.ok(phase, name, format_size(output.stat().st_size))
    return True


def _copy(job: BackupJob, phase: str, source: Path, target: Path) -> bool:
    if job.ctx.dry_run:
        job.ctx.console.echo(f"DRY-RUN: copy {source} -> {target.relative_to(job.workdir)}")
        return True
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, target)
    except OSError as exc:
        job.ctx.console.warn(f"could not copy {source}: {exc}")
        job.ctx.report.failed(phase, str(source), str(exc))
        return False
    job.ctx.report.ok(phase, target.name)
    return True


def _dump(job: BackupJob, phase: str, command: Sequence[str], target: Path) -> bool:
    if job.ctx.attempt(phase, target.name, command, stdout_path=target):
        return True
    target.unlink(missing_ok=True)
    return False


def backup_docker(job: BackupJob) -> None:
    ctx, docker = job.ctx, job.inventory.docker
    if not docker.installed:
        ctx.console.info("Docker not installed")
        return
    docker_dir = job.dir("docker")
    ctx.console.info("Backing up container info...")
    _dump(
        job,
        "docker",
        ["docker", "ps", "-a", "--format", "{{.Names}} {{.Image}} {{.Ports}} {{.Status}}"],
        docker_dir / "containers.txt",
    )
    for volume in docker.volume_names():
        ctx.console.info(f"Volume: {volume}")
        name = encode(ArtifactKind.VOLUME, volume)
        command = [
            "docker", "run", "--rm",
            "-v", f"{volume}:/data",
            "-v", f"{docker_dir}:/backup",
            "alpine", "tar", "czf", f"/backup/{name}", "-C", "/data", ".",
        ]
        if ctx.attempt("docker", name, command):
            job.manifest.add(ArtifactKind.VOLUME, volume, volume)
    for compose_file in docker.compose_files:
        local = ctx.paths.resolve(compose_file)
        if not local.is_file():
            continue
        ctx.console.info(f"Compose: {compose_file}")
        target = docker_dir / encode(ArtifactKind.COMPOSE_FILE, compose_file)
        if _copy(job, "docker", local, target):
            job.manifest.add(ArtifactKind.COMPOSE_FILE, compose_file, compose_file, path_owner(local))


def _user_home(job: BackupJob, user: str) -> Path:
    if user == "root":
        return job.ctx.paths.resolve("/root")
    return job.ctx.paths.user_home(user)


def backup_pm2(job: BackupJob) -> None:
    ctx, pm2 = job.ctx, job.inventory.pm2
    if not pm2.installed:
        ctx.console.info("PM2 not installed")
        return
    apps_dir = job.dir("apps")
    ctx.console.info("Saving PM2 process list...")
    ctx.attempt("pm2", "pm2 save", ["pm2", "save"])
    dump = _user_home(job, job.username) / ".pm2" / "dump.pm2"
    if dump.is_file():
        _copy(job, "pm2", dump, apps_dir / "dump.pm2")
    (apps_dir / "pm2-processes.json").write_text(
        json.dumps(pm2.processes, indent=2) + "\n", encoding="utf-8"
    )
    for app_path in pm2.app_dirs():
        local = ctx.paths.resolve(app_path)
        if not local.is_dir():
            continue
        ctx.console.info(f"App: {local.name} ({app_path})")
        _archive(
            job,
            "pm2",
            ArtifactKind.PM2_APP,
            app_path,
            local,
            local.name,
            original_path=app_path,
            excludes=APP_EXCLUDES,
            owner=path_owner(local),
        )


def _document_roots(config_dir: Path, pattern: re.Pattern[str]) -> list[str]:
    roots: list[str] = []
    enabled = config_dir / "sites-enabled"
    if not enabled.is_dir():
        return roots
    for site in sorted(enabled.iterdir()):
        try:
            text = site.read_text(encoding="utf-8", errors="replace")
        except OSError:
            continue
        for match in pattern.finditer(text):
            root = match.group(1).strip().strip("\"'").rstrip("/")
            if root and root != DEFAULT_DOCUMENT_ROOT and root not in roots:
                roots.append(root)
    return roots


def backup_proxy(
    job: BackupJob,
    subsystem: str,
    config_dir: Path,
    items: Sequence[str],
    pattern: re.Pattern[str],
    kind: ArtifactKind,
) -> None:
    ctx = job.ctx
    if not config_dir.is_dir():
        ctx.console.info(f"{subsystem.capitalize()} not found")
        return
    ctx.console.info(f"Backing up {subsystem} configs...")
    sources = [
        (config_dir / item, ctx.paths.relative(config_dir / item).lstrip("/"))
        for item in items
        if (config_dir / item).exists()
    ]
    output = job.dir("configs") / f"{subsystem}.tar.gz"
    if ctx.dry_run:
        ctx.console.echo(f"DRY-RUN: archive {config_dir} -> configs/{output.name}")
    else:
        try:
            create_archive(output, sources)
        except (OSError, tarfile.TarError) as exc:
            output.unlink(missing_ok=True)
            ctx.console.warn(f"could not archive {subsystem} configs: {exc}")
            ctx.report.failed(subsystem, output.name, str(exc))
        else:
            ctx.report.ok(subsystem, output.name)

    for root in _document_roots(config_dir, pattern):
        local = ctx.paths.resolve(root)
        if not local.is_dir():
            continue
        ctx.console.info(f"Document root: {root}")
        _archive(
            job,
            subsystem,
            kind,
            root,
            local,
            root.lstrip("/"),
            original_path=root,
            owner=path_owner(local),
        )


def backup_systemd(job: BackupJob) -> None:
    ctx = job.ctx
    systemd_dir = ctx.paths.systemd
    if not systemd_dir.is_dir():
        return
    claimed: dict[str, str] = {}
    for unit_path in sorted(systemd_dir.glob("*.service")):
        if not unit_path.is_file() or is_system_unit(unit_path.name):
            continue
        ctx.console.info(f"Service: {unit_path.name}")
        if not _copy(job, "systemd", unit_path, job.dir("system/systemd") / unit_path.name):
            continue
        descriptor = parse_unit(unit_path)
        work_dir = descriptor.working_directory
        if not work_dir:
            continue
        local = ctx.paths.resolve(work_dir)
        if not local.is_dir():
            continue
        try:
            name = encode(ArtifactKind.SYSTEMD_APP, work_dir)
        except NamingError as exc:
            ctx.console.warn(f"{unit_path.name}: {exc}")
            ctx.report.skipped("systemd", work_dir, f"{unit_path.name} runs from a directory without a name")
            continue
        if claimed.get(name, work_dir) != work_dir:
            ctx.console.warn(f"{work_dir} shares the archive name {name} with {claimed[name]}")
            ctx.report.skipped("systemd", name, f"name collision with {claimed[name]}")
            continue
        claimed[name] = work_dir
        ctx.console.echo(f"Working dir: {work_dir}")
        _archive(
            job,
            "systemd",
            ArtifactKind.SYSTEMD_APP,
            work_dir,
            local,
            work_dir.lstrip("/"),
            original_path=work_dir,
            excludes=SYSTEMD_APP_EXCLUDES,
            owner=descriptor.user or path_owner(local),
        )


def backup_databases(job: BackupJob) -> None:
    ctx, databases = job.ctx, job.inventory.databases
    db_dir = job.dir("databases")

    if databases.mysql.running:
        ctx.console.info("MySQL/MariaDB databases...")
        for name in databases.mysql.databases:
            ctx.console.echo(name)
            command = ["mysqldump", "--single-transaction", "--quick", "--routines", "--triggers", name]
            if _dump(job, "mysql", command, db_dir / encode(ArtifactKind.MYSQL_DB, name)):
                job.manifest.add(ArtifactKind.MYSQL_DB, name, name)

    if databases.postgres.running:
        ctx.console.info("PostgreSQL databases...")
        for name in databases.postgres.databases:
            ctx.console.echo(name)
            command = ctx.as_user("postgres", ["pg_dump", "--clean", "--if-exists", name])
            if _dump(job, "postgres", command, db_dir / encode(ArtifactKind.POSTGRES_DB, name)):
                job.manifest.add(ArtifactKind.POSTGRES_DB, name, name)

    if databases.mongodb.running:
        ctx.console.info("MongoDB databases...")
        ctx.attempt("mongodb", "mongodump", ["mongodump", "--out", str(db_dir / "mongodb")])

    if databases.redis.running:
        ctx.console.info("Redis...")
        ctx.attempt("redis", "redis-cli BGSAVE", ["redis-cli", "BGSAVE"])
        if not ctx.dry_run:
            time.sleep(REDIS_SAVE_WAIT)
        ctx.attempt(
            "redis",
            "dump.rdb",
            ctx.privileged(["cp", str(ctx.paths.redis_lib / "dump.rdb"), str(db_dir / "dump.rdb")]),
        )


def backup_homes(job: BackupJob) -> None:
    ctx = job.ctx
    for user in job.inventory.users:
        local = ctx.paths.user_home(user)
        if not local.is_dir():
            continue
        ctx.console.info(f"User: {user}")
        _archive(
            job,
            "homes",
            ArtifactKind.HOME,
            user,
            local,
            ctx.paths.relative(local).lstrip("/"),
            original_path=ctx.paths.relative(local),
            excludes=HOME_EXCLUDES,
            owner=user,
        )


def backup_crontabs(job: BackupJob) -> None:
    ctx = job.ctx
    system_dir = job.dir("system")
    for user in job.inventory.users:
        crontab = ctx.probe(["crontab", "-u", user, "-l"])
        if not crontab:
            continue
        ctx.console.info(f"User: {user} (has cron jobs)")
        (system_dir / f"crontab-{user}").write_text(crontab + "\n", encoding="utf-8")
        ctx.report.ok("crontab", f"crontab-{user}")
    if ctx.paths.system_crontab.is_file():
        _copy(job, "crontab", ctx.paths.system_crontab, system_dir / "crontab-system")


def backup_env_files(job: BackupJob) -> None:
    ctx = job.ctx
    for env_file in job.inventory.env_files:
        local = ctx.paths.resolve(env_file)
        if not local.is_file():
            continue
        ctx.console.info(env_file)
        target = job.dir("configs/env") / encode(ArtifactKind.ENV_FILE, env_file)
        if _copy(job, "env", local, target):
            job.manifest.add(ArtifactKind.ENV_FILE, env_file, env_file, path_owner(local))


def _capture_listing(job: BackupJob, tool: str, command: Sequence[str], target: Path) -> None:
    if not job.ctx.runner.which(tool):
        job.ctx.report.skipped("system", target.name, f"{tool} not installed")
        return
    _dump(job, "system", command, target)


def backup_system_info(job: BackupJob) -> None:
    ctx = job.ctx
    system_dir = job.dir("system")
    if ctx.paths.os_release.is_file():
        _copy(job, "system", ctx.paths.os_release, system_dir / "os-release")
    _capture_listing(job, "dpkg", ["dpkg", "--get-selections"], system_dir / "packages-dpkg.txt")
    _capture_listing(job, "pip3", ["pip3", "freeze"], system_dir / "packages-pip.txt")
    _capture_listing(
        job, "npm", ["npm", "list", "-g", "--depth=0"], system_dir / "packages-npm-global.txt"
    )
    processes = ctx.probe(["ps", "-eo", "args"])
    servers = [line for line in (processes or "").splitlines() if PYTHON_SERVER.search(line)]
    if servers:
        (job.dir("processes") / "python-servers.txt").write_text(
            "\n".join(servers) + "\n", encoding="utf-8"
        )
        ctx.report.ok("system", "python-servers.txt")


BACKUP_STEPS: tuple[tuple[str, Callable[[BackupJob], None]], ...] = (
    ("Docker", backup_docker),
    ("PM2", backup_pm2),
    (
        "Nginx",
        lambda job: backup_proxy(
            job, "nginx", job.ctx.paths.nginx, NGINX_CONFIG_ITEMS, NGINX_ROOT, ArtifactKind.NGINX_ROOT
        ),
    ),
    (
        "Apache",
        lambda job: backup_proxy(
            job,
            "apache",
            job.ctx.paths.apache,
            APACHE_CONFIG_ITEMS,
            APACHE_ROOT,
            ArtifactKind.APACHE_ROOT,
        ),
    ),
    ("Systemd custom services", backup_systemd),
    ("Databases", backup_databases),
    ("Home directories", backup_homes),
    ("Crontabs", backup_crontabs),
    ("Environment files", backup_env_files),
    ("System information", backup_system_info),
)


def build_metadata(job: BackupJob) -> BackupMetadata:
    release = read_os_release(job.ctx.paths.os_release)
    return BackupMetadata(
        backup_date=datetime.now().astimezone().isoformat(timespec="seconds"),
        source_hostname=job.inventory.system.hostname or "unknown",
        source_user=job.username,
        os=release.get("NAME", job.inventory.system.os),
        os_version=release.get("VERSION_ID", job.inventory.system.version),
    )


def assemble_backup(
    ctx: ExecutionContext,
    inventory: Inventory,
    *,
    username: str,
    output: Path,
    work_dir: Path,
) -> Path:
    """Back up every detected subsystem into ``output`` and return its path."""

    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    workdir = work_dir / f"phoenix-backup-{stamp}"
    if workdir.exists():
        raise BackupError(f"Backup work directory already exists: {workdir}")
    for name in BACKUP_LAYOUT:
        (workdir / name).mkdir(parents=True, exist_ok=True)

    job = BackupJob(ctx=ctx, inventory=inventory, workdir=workdir, username=username)
    try:
        total = len(BACKUP_STEPS)
        for index, (label, step) in enumerate(BACKUP_STEPS, start=1):
            ctx.console.step(f"[{index}/{total}] {label}...")
            try:
                step(job)
            except (OSError, tarfile.TarError, NamingError) as exc:
                ctx.console.warn(f"{label} backup incomplete: {exc}")
                ctx.report.failed(label.lower(), label, str(exc))

        (workdir / "inventory.json").write_text(
            json.dumps(inventory.to_dict(), indent=2) + "\n", encoding="utf-8"
        )
        (workdir / "metadata.json").write_text(
            json.dumps(build_metadata(job).to_dict(), indent=2) + "\n", encoding="utf-8"
        )
        job.manifest.write(workdir)

        ctx.console.step("Creating final backup archive...")
        bundle_directory(output, workdir)
    finally:
        shutil.rmtree(workdir, ignore_errors=True)

    ctx.console.info(f"Backup file: {output}")
    ctx.console.info(f"Size: {format_size(output.stat().st_size)}")
    members = list_members(output)
    ctx.console.info("Contents:")
    for member in members[:CONTENTS_PREVIEW]:
        ctx.console.echo(member)
    if len(members) > CONTENTS_PREVIEW:
        ctx.console.echo("...")
    return output
