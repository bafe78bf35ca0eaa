"""Rebuild a server from a backup archive.

Phases run in a fixed order and each one is gated on the artifacts it needs.
Every side-effecting command goes through :meth:`ExecutionContext.attempt`
so a failed install or service start is recorded and the restore carries on.
Running a restore twice is safe: users are only created when ``id`` fails
and databases are created with ``IF NOT EXISTS`` semantics.
"""

from __future__ import annotations

import json
import os
import re
import shlex
import shutil
import tarfile
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .archive import extract_archive, list_members, path_owner
from .backup import BackupMetadata
from .context import ExecutionContext
from .detectors import DjangoDetector, host_files, required_runtimes
from .inventory import listening_port
from .naming import ARTIFACT_DIRS, ArtifactKind, Manifest, decode, matches, pm2_cwd_for
from .proxy import neutralise_apache, neutralise_nginx
from .units import CLOUD_AGENT_UNITS, is_startable_unit, parse_unit, render_unit, unit_name

BASE_PACKAGES = ("curl", "wget", "git", "jq", "ca-certificates", "gnupg", "lsb-release")
PYTHON_PACKAGES = ("python3", "python3-pip", "python3-venv", "python3-dev", "build-essential")
NODESOURCE_SETUP = "curl -fsSL https://deb.nodesource.com/setup_20.x | bash -"
MONGODB_KEY_URL = "https://pgp.mongodb.com/server-7.0.asc"
MONGODB_KEYRING = "/usr/share/keyrings/mongodb-server-7.0.gpg"
MONGODB_SOURCES = "/etc/apt/sources.list.d/mongodb-org-7.0.list"
DEFAULT_CODENAME = "jammy"
DEFAULT_PYTHON_PORT = 8000
GUNICORN_WORKERS = 3
PM2_SEARCH_DEPTH = 4
PM2_SKIP_MARKERS = ("node_modules", "Frontend")
VERIFY_SETTLE_SECONDS = 3
STATUS_TAIL = 5

NGINX_ON_PORT_80 = re.compile(r":80\s.*nginx")
BIND_PORT = re.compile(r"\b(?:0\.0\.0\.0|127\.0\.0\.1|localhost):(\d+)\b")
UVICORN_PORT = re.compile(r"--port[ =](\d+)\b")
ENV_PORT = re.compile(r"^PORT=(\d+)\s*$", re.MULTILINE)
SS_PROCESS = re.compile(r'users:\(\("([^"]+)"')


class RestoreError(RuntimeError):
    """Raised when the backup archive cannot be used at all."""


@dataclass
class RestoreJob:
    ctx: ExecutionContext
    workdir: Path
    username: str
    manifest: Manifest = field(default_factory=Manifest)
    metadata: BackupMetadata | None = None
    processes: list[dict[str, Any]] = field(default_factory=list)

    def artifacts(self, kind: ArtifactKind) -> list[Path]:
        directory = self.workdir / ARTIFACT_DIRS[kind]
        if not directory.is_dir():
            return []
        return sorted(
            path for path in directory.iterdir() if path.is_file() and matches(kind, path.name)
        )

    def unit_files(self) -> list[Path]:
        directory = self.workdir / "system" / "systemd"
        if not directory.is_dir():
            return []
        return sorted(path for path in directory.glob("*.service") if path.is_file())


def _extract(ctx: ExecutionContext, phase: str, archive: Path, destination: Path) -> bool:
    """Unpack an artifact onto the host; member names are host-relative."""

    if ctx.dry_run:
        ctx.console.echo(f"DRY-RUN: extract {archive.name} -> {ctx.paths.relative(destination)}")
        return True
    try:
        extract_archive(archive, destination)
    except (OSError, tarfile.TarError) as exc:
        ctx.console.warn(f"could not extract {archive.name}: {exc}")
        ctx.report.failed(phase, archive.name, str(exc))
        return False
    ctx.report.ok(phase, archive.name)
    return True


def _install_file(ctx: ExecutionContext, phase: str, source: Path, target: Path) -> bool:
    if ctx.dry_run:
        ctx.console.echo(f"DRY-RUN: install {source.name} -> {ctx.paths.relative(target)}")
        return True
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, target)
    except OSError as exc:
        ctx.console.warn(f"could not install {target}: {exc}")
        ctx.report.failed(phase, str(target), str(exc))
        return False
    ctx.report.ok(phase, ctx.paths.relative(target))
    return True


def _runtime_ready(ctx: ExecutionContext, runtime: str, tool: str) -> bool:
    return ctx.has(runtime) or ctx.runner.which(tool) is not None


def _home_dirs(ctx: ExecutionContext) -> list[Path]:
    home = ctx.paths.home
    if not home.is_dir():
        return []
    return sorted(path for path in home.iterdir() if path.is_dir())


def install_dependencies(ctx: ExecutionContext, phase: str, app_dir: str, user: str) -> None:
    """Install ``package.json`` / ``requirements.txt`` dependencies of one directory."""

    local = ctx.paths.resolve(app_dir)
    if (local / "package.json").is_file() and _runtime_ready(ctx, "node", "npm"):
        ctx.console.echo(f"npm install: {app_dir}")
        ctx.attempt(
            phase,
            f"npm install {app_dir}",
            ctx.as_user(user, ["npm", "install", "--production"]),
            cwd=local,
        )
    if (local / "requirements.txt").is_file() and _runtime_ready(ctx, "python", "python3"):
        ctx.console.echo(f"virtualenv: {app_dir}")
        venv_ready = (local / "venv").is_dir() or ctx.attempt(
            phase,
            f"venv {app_dir}",
            ctx.as_user(user, ["python3", "-m", "venv", f"{app_dir}/venv"]),
        )
        if venv_ready:
            ctx.attempt(
                phase,
                f"pip install {app_dir}",
                ctx.as_user(user, [f"{app_dir}/venv/bin/pip", "install", "-r", "requirements.txt"]),
                cwd=local,
            )


def extract_backup(job: RestoreJob, backup_file: Path) -> None:
    ctx = job.ctx
    try:
        extract_archive(backup_file, job.workdir)
    except (OSError, tarfile.TarError) as exc:
        raise RestoreError(f"Unable to extract {backup_file}: {exc}") from exc
    ctx.report.ok("extract", backup_file.name)

    metadata_path = job.workdir / "metadata.json"
    if metadata_path.is_file():
        try:
            job.metadata = BackupMetadata.from_dict(json.loads(metadata_path.read_text(encoding="utf-8")))
        except (OSError, ValueError, AttributeError):
            ctx.console.warn("metadata.json is unreadable")
    if job.metadata is not None:
        ctx.console.info(f"Source: {job.metadata.source_hostname}")
        ctx.console.info(f"Date: {job.metadata.backup_date}")

    job.manifest = Manifest.read(job.workdir)
    processes_path = job.workdir / "apps" / "pm2-processes.json"
    if processes_path.is_file():
        try:
            data = json.loads(processes_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            data = []
        job.processes = [item for item in data if isinstance(item, dict)] if isinstance(data, list) else []


def install_base_packages(job: RestoreJob) -> None:
    job.ctx.apt_install("packages", BASE_PACKAGES)


def install_runtimes(job: RestoreJob) -> None:
    ctx = job.ctx
    listing: list[str] = []
    for kind in (ArtifactKind.HOME, ArtifactKind.PM2_APP, ArtifactKind.SYSTEMD_APP):
        for archive in job.artifacts(kind):
            try:
                listing.extend(list_members(archive))
            except (OSError, tarfile.TarError) as exc:
                ctx.console.warn(f"could not read {archive.name}: {exc}")
    unit_texts = [path.read_text(encoding="utf-8", errors="replace") for path in job.unit_files()]
    runtimes = required_runtimes(listing, unit_texts)

    if "node" in runtimes:
        ctx.console.info("Node.js applications detected, installing Node.js 20.x...")
        if ctx.runner.which("node") is None:
            ctx.attempt("runtimes", "nodesource", ctx.privileged(["bash", "-c", NODESOURCE_SETUP]))
            ctx.apt_install("runtimes", ("nodejs",))
        ctx.attempt("runtimes", "pm2", ctx.privileged(["npm", "install", "-g", "pm2"]))
        ctx.provide("node")
    else:
        ctx.report.skipped("runtimes", "node", "no Node.js application found")

    if "python" in runtimes:
        ctx.console.info("Python applications detected, installing Python...")
        ctx.apt_install("runtimes", PYTHON_PACKAGES)
        ctx.provide("python")
    else:
        ctx.report.skipped("runtimes", "python", "no Python application found")


def restore_homes(job: RestoreJob) -> None:
    ctx = job.ctx
    for archive in job.artifacts(ArtifactKind.HOME):
        user = decode(ArtifactKind.HOME, archive.name)
        entry = job.manifest.lookup(ArtifactKind.HOME, archive.name)
        home = entry.original_path if entry is not None else f"/home/{user}"
        ctx.console.info(f"User: {user}")
        if not ctx.runner.succeeds(["id", user]):
            ctx.console.echo(f"Creating user {user}...")
            ctx.attempt("homes", f"useradd {user}", ctx.privileged(["useradd", "-m", "-s", "/bin/bash", user]))
        if _extract(ctx, "homes", archive, ctx.paths.root):
            ctx.attempt("homes", f"chown {home}", ctx.privileged(["chown", "-R", f"{user}:{user}", home]))

    for archive in job.artifacts(ArtifactKind.PM2_APP):
        app = decode(ArtifactKind.PM2_APP, archive.name)
        entry = job.manifest.lookup(ArtifactKind.PM2_APP, archive.name)
        cwd = entry.original_path if entry is not None else pm2_cwd_for(app, job.processes)
        if cwd is None:
            cwd = f"{ctx.paths.relative(ctx.paths.user_home(job.username))}/{app}"
            ctx.console.warn(f"no recorded location for PM2 app {app}; using {cwd}")
        parent = ctx.paths.resolve(cwd).parent
        ctx.console.info(f"PM2 app: {app} ({cwd})")
        if not ctx.dry_run:
            parent.mkdir(parents=True, exist_ok=True)
        owner = entry.owner if entry is not None and entry.owner else None
        if _extract(ctx, "homes", archive, parent) and owner:
            ctx.attempt("homes", f"chown {cwd}", ctx.privileged(["chown", "-R", f"{owner}:{owner}", cwd]))


def restore_dependencies(job: RestoreJob) -> None:
    ctx = job.ctx
    for home in _home_dirs(ctx):
        user = home.name
        app_dirs = sorted(
            {
                str(Path(path).parent)
                for path in host_files(ctx.paths, home)
                if Path(path).name in ("package.json", "requirements.txt")
            }
        )
        for app_dir in app_dirs:
            ctx.console.info(f"Dependencies: {Path(app_dir).name} ({app_dir})")
            install_dependencies(ctx, "dependencies", app_dir, user)


def _proxy_gate(
    ctx: ExecutionContext, subsystem: str, unit: str, check: Sequence[str]
) -> None:
    if ctx.attempt(subsystem, f"{subsystem} configtest", ctx.privileged(check)):
        ctx.attempt(subsystem, f"enable {unit}", ctx.privileged(["systemctl", "enable", unit]))
        ctx.attempt(subsystem, f"restart {unit}", ctx.privileged(["systemctl", "restart", unit]))
        ctx.console.info(f"{subsystem.capitalize()} configured and running")
    else:
        ctx.console.warn(f"{subsystem.capitalize()} config test failed; leaving it stopped")


def _neutralise(ctx: ExecutionContext, subsystem: str, neutralise: Callable[..., list[Path]]) -> None:
    if ctx.dry_run:
        ctx.console.echo(f"DRY-RUN: neutralise TLS directives in {subsystem} configs")
        return
    for path in neutralise(ctx.paths):
        ctx.console.echo(f"TLS disabled: {ctx.paths.relative(path)}")
        ctx.report.ok(subsystem, f"tls {ctx.paths.relative(path)}")


def restore_nginx(job: RestoreJob) -> None:
    ctx = job.ctx
    config = job.workdir / "configs" / "nginx.tar.gz"
    if not config.is_file():
        ctx.console.info("No Nginx config to restore")
        return
    ctx.apt_install("nginx", ("nginx",))
    _extract(ctx, "nginx", config, ctx.paths.root)
    for archive in job.artifacts(ArtifactKind.NGINX_ROOT):
        ctx.console.info(f"Document root: {job.manifest.original_path(ArtifactKind.NGINX_ROOT, archive.name)}")
        _extract(ctx, "nginx", archive, ctx.paths.root)
    _neutralise(ctx, "nginx", neutralise_nginx)
    _proxy_gate(ctx, "nginx", "nginx", ["nginx", "-t"])


def nginx_on_port_80(ss_output: str | None) -> bool:
    return any(NGINX_ON_PORT_80.search(line) for line in (ss_output or "").splitlines())


def restore_apache(job: RestoreJob) -> None:
    ctx = job.ctx
    config = job.workdir / "configs" / "apache.tar.gz"
    if not config.is_file():
        ctx.console.info("No Apache config to restore")
        return
    if nginx_on_port_80(ctx.probe(["ss", "-tlnp"])):
        ctx.console.warn("Nginx already on port 80, skipping Apache")
        ctx.report.skipped("apache", "apache2", "nginx already listens on port 80")
        return
    ctx.apt_install("apache", ("apache2",))
    _extract(ctx, "apache", config, ctx.paths.root)
    for archive in job.artifacts(ArtifactKind.APACHE_ROOT):
        ctx.console.info(f"Document root: {job.manifest.original_path(ArtifactKind.APACHE_ROOT, archive.name)}")
        _extract(ctx, "apache", archive, ctx.paths.root)
    _neutralise(ctx, "apache", neutralise_apache)
    _proxy_gate(ctx, "apache", "apache2", ["apache2ctl", "configtest"])


def restore_mysql(job: RestoreJob) -> None:
    ctx = job.ctx
    dumps = job.artifacts(ArtifactKind.MYSQL_DB)
    if not dumps:
        return
    ctx.console.info("Installing MySQL...")
    ctx.apt_install("mysql", ("mysql-server",))
    ctx.attempt("mysql", "start mysql", ctx.privileged(["systemctl", "start", "mysql"]))
    for dump in dumps:
        database = job.manifest.original_path(ArtifactKind.MYSQL_DB, dump.name)
        ctx.console.info(f"Restoring MySQL database: {database}")
        ctx.attempt(
            "mysql",
            f"create {database}",
            ctx.privileged(["mysql", "-e", f"CREATE DATABASE IF NOT EXISTS `{database}`"]),
        )
        ctx.attempt("mysql", f"load {database}", ctx.privileged(["mysql", database]), stdin_path=dump)


def restore_postgres(job: RestoreJob) -> None:
    ctx = job.ctx
    dumps = job.artifacts(ArtifactKind.POSTGRES_DB)
    if not dumps:
        return
    ctx.console.info("Installing PostgreSQL...")
    ctx.apt_install("postgres", ("postgresql",))
    ctx.attempt("postgres", "start postgresql", ctx.privileged(["systemctl", "start", "postgresql"]))
    for dump in dumps:
        database = job.manifest.original_path(ArtifactKind.POSTGRES_DB, dump.name)
        ctx.console.info(f"Restoring PostgreSQL database: {database}")
        created = ctx.runner.run(ctx.as_user("postgres", ["createdb", database]), check=False)
        if not created.ok:
            ctx.report.skipped("postgres", f"create {database}", "createdb failed; database may already exist")
        ctx.attempt(
            "postgres",
            f"load {database}",
            ctx.as_user("postgres", ["psql", database]),
            stdin_path=dump,
        )


def restore_mongodb(job: RestoreJob) -> None:
    ctx = job.ctx
    dump_dir = job.workdir / "databases" / "mongodb"
    if not dump_dir.is_dir():
        return
    ctx.console.info("Installing MongoDB...")
    ctx.attempt(
        "mongodb",
        "mongodb key",
        ctx.privileged(
            ["bash", "-c", f"curl -fsSL {MONGODB_KEY_URL} | gpg --yes -o {MONGODB_KEYRING} --dearmor"]
        ),
    )
    codename = ctx.probe(["lsb_release", "-cs"]) or DEFAULT_CODENAME
    source = (
        f"deb [ arch=amd64,arm64 signed-by={MONGODB_KEYRING} ] "
        f"https://repo.mongodb.org/apt/ubuntu {codename}/mongodb-org/7.0 multiverse\n"
    )
    sources_path = ctx.paths.resolve(MONGODB_SOURCES)
    if ctx.dry_run:
        ctx.console.echo(f"DRY-RUN: write {MONGODB_SOURCES}")
    else:
        try:
            sources_path.parent.mkdir(parents=True, exist_ok=True)
            sources_path.write_text(source, encoding="utf-8")
        except OSError as exc:
            ctx.report.failed("mongodb", MONGODB_SOURCES, str(exc))
    ctx.apt_updated = False
    if not ctx.apt_install("mongodb", ("mongodb-org",)):
        ctx.apt_install("mongodb", ("mongodb",))
    ctx.attempt("mongodb", "start mongod", ctx.privileged(["systemctl", "start", "mongod"]))
    ctx.attempt("mongodb", "mongorestore", ["mongorestore", str(dump_dir)])


def restore_redis(job: RestoreJob) -> None:
    ctx = job.ctx
    dump = job.workdir / "databases" / "dump.rdb"
    if not dump.is_file():
        return
    ctx.console.info("Installing Redis...")
    ctx.apt_install("redis", ("redis-server",))
    target = f"{ctx.paths.relative(ctx.paths.redis_lib)}/dump.rdb"
    ctx.attempt("redis", "stop redis-server", ctx.privileged(["systemctl", "stop", "redis-server"]))
    ctx.attempt("redis", "dump.rdb", ctx.privileged(["cp", str(dump), target]))
    ctx.attempt("redis", "chown dump.rdb", ctx.privileged(["chown", "redis:redis", target]))
    ctx.attempt("redis", "start redis-server", ctx.privileged(["systemctl", "start", "redis-server"]))


def restore_databases(job: RestoreJob) -> None:
    restore_mysql(job)
    restore_postgres(job)
    restore_mongodb(job)
    restore_redis(job)


def _ensure_service_user(ctx: ExecutionContext, user: str) -> None:
    if ctx.runner.succeeds(["id", user]):
        return
    ctx.console.echo(f"Creating service user {user}...")
    ctx.attempt("systemd", f"useradd {user}", ctx.privileged(["useradd", "-s", "/bin/bash", user]))


def restore_systemd_units(job: RestoreJob) -> None:
    ctx = job.ctx
    units = job.unit_files()
    if not units:
        ctx.console.info("No custom services to restore")
        return
    for archive in job.artifacts(ArtifactKind.SYSTEMD_APP):
        ctx.console.info(f"Restoring app: {archive.name}")
        _extract(ctx, "systemd", archive, ctx.paths.root)
    recorded_owners = {
        entry.original_path.rstrip("/"): entry.owner
        for entry in job.manifest.of_kind(ArtifactKind.SYSTEMD_APP)
        if entry.owner
    }

    for unit_path in units:
        descriptor = parse_unit(unit_path)
        if descriptor.unit in CLOUD_AGENT_UNITS:
            ctx.report.skipped("systemd", descriptor.name, "provider agent")
            continue
        ctx.console.info(f"Service: {descriptor.unit}")
        work_dir = descriptor.working_directory
        local = ctx.paths.resolve(work_dir) if work_dir else None
        if work_dir and local is not None and local.is_dir():
            ctx.console.echo(f"WorkingDirectory: {work_dir}")
            owner = recorded_owners.get(work_dir.rstrip("/")) or descriptor.user
            if owner and owner != "root":
                _ensure_service_user(ctx, owner)
                ctx.attempt(
                    "systemd", f"chown {work_dir}", ctx.privileged(["chown", "-R", f"{owner}:{owner}", work_dir])
                )
            owner = owner or path_owner(local) or job.username
            descriptor.infer_runtimes({path.name for path in local.iterdir()})
            missing = {runtime for runtime in descriptor.runtimes if not ctx.has(runtime)}
            if missing:
                ctx.console.warn(f"{descriptor.name} expects {', '.join(sorted(missing))}")
            install_dependencies(ctx, "systemd", work_dir, owner)
        _install_file(ctx, "systemd", unit_path, ctx.paths.systemd / unit_path.name)
    ctx.attempt("systemd", "daemon-reload", ctx.privileged(["systemctl", "daemon-reload"]))


def resolve_python_port(app_dir: Path, module: str, servers: str | None) -> int:
    """8000, overridden by the recorded server command line, then by ``.env``."""

    port = DEFAULT_PYTHON_PORT
    lines = [line for line in (servers or "").splitlines() if line.strip()]
    preferred = [line for line in lines if f"{module}.wsgi" in line or f"{module}.asgi" in line]
    for line in preferred or lines[:1]:
        match = BIND_PORT.search(line) or UVICORN_PORT.search(line)
        if match:
            port = int(match.group(1))
            break
    env_file = app_dir / ".env"
    if env_file.is_file():
        match = ENV_PORT.search(env_file.read_text(encoding="utf-8", errors="replace"))
        if match:
            port = int(match.group(1))
    return port


def _installed_working_directories(ctx: ExecutionContext) -> set[str]:
    if not ctx.paths.systemd.is_dir():
        return set()
    directories: set[str] = set()
    for unit_path in ctx.paths.systemd.glob("*.service"):
        if unit_path.is_file():
            work_dir = parse_unit(unit_path).working_directory
            if work_dir:
                directories.add(work_dir.rstrip("/"))
    return directories


def synthesize_python_units(job: RestoreJob) -> None:
    ctx = job.ctx
    if not _runtime_ready(ctx, "python", "python3"):
        ctx.console.info("Python not installed, skipping")
        return
    servers_path = job.workdir / "processes" / "python-servers.txt"
    servers = servers_path.read_text(encoding="utf-8", errors="replace") if servers_path.is_file() else None
    existing = _installed_working_directories(ctx)
    detector = DjangoDetector()

    for home in _home_dirs(ctx):
        user = home.name
        for capability in detector.detect(host_files(ctx.paths, home)):
            app_dir = capability.app_dir
            app = Path(app_dir).name
            name = f"gunicorn-{app}.service"
            unit_path = ctx.paths.systemd / name
            if app_dir in existing or unit_path.exists():
                ctx.report.skipped("gunicorn", name, "a unit already serves this directory")
                continue
            local = ctx.paths.resolve(app_dir)
            module = (capability.entry_point or "").split(".wsgi", 1)[0]
            ctx.console.info(f"Django app: {app} (wsgi: {module})")

            if not (local / "venv").is_dir():
                ctx.attempt("gunicorn", f"venv {app}", ctx.as_user(user, ["python3", "-m", "venv", f"{app_dir}/venv"]))
            ctx.attempt(
                "gunicorn",
                f"gunicorn {app}",
                ctx.as_user(user, [f"{app_dir}/venv/bin/pip", "install", "gunicorn"]),
                cwd=local,
            )
            ctx.attempt("gunicorn", f"logs {app}", ctx.as_user(user, ["mkdir", "-p", f"{app_dir}/logs"]))

            port = resolve_python_port(local, module, servers)
            gunicorn = (
                f"{app_dir}/venv/bin/gunicorn --workers {GUNICORN_WORKERS} "
                f"--bind 0.0.0.0:{port} {capability.entry_point}"
            )
            start_script = local / "start.sh"
            if start_script.is_file():
                ctx.console.echo("Found start.sh, using it...")
                if not ctx.dry_run:
                    start_script.chmod(start_script.stat().st_mode | 0o111)
                exec_start = f"/bin/bash {app_dir}/start.sh"
            else:
                exec_start = gunicorn
            text = render_unit(
                description=f"Gunicorn for {app}",
                user=user,
                working_directory=app_dir,
                exec_start=exec_start,
            )
            if ctx.dry_run:
                ctx.console.echo(f"DRY-RUN: write {ctx.paths.relative(unit_path)}")
            else:
                unit_path.parent.mkdir(parents=True, exist_ok=True)
                unit_path.write_text(text, encoding="utf-8")
            existing.add(app_dir)

            ctx.console.echo(f"Starting on port {port}...")
            ctx.attempt("gunicorn", "daemon-reload", ctx.privileged(["systemctl", "daemon-reload"]))
            ctx.attempt("gunicorn", f"enable {name}", ctx.privileged(["systemctl", "enable", unit_name(name)]))
            if ctx.attempt("gunicorn", f"start {name}", ctx.privileged(["systemctl", "start", unit_name(name)])):
                ctx.console.echo(f"Started {unit_name(name)} on port {port}")
                continue
            ctx.console.warn("Systemd failed, trying direct start...")
            quoted = shlex.quote(app_dir)
            ctx.attempt(
                "gunicorn",
                f"nohup {app}",
                ctx.as_user(
                    user,
                    ["bash", "-c", f"cd {quoted} && nohup {gunicorn} > logs/gunicorn.log 2>&1 &"],
                ),
            )


def _has_start_script(package_json: Path) -> bool:
    try:
        data = json.loads(package_json.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return False
    scripts = data.get("scripts") if isinstance(data, dict) else None
    return isinstance(scripts, dict) and bool(scripts.get("start"))


def start_pm2_apps(job: RestoreJob) -> None:
    ctx = job.ctx
    if not _runtime_ready(ctx, "node", "pm2"):
        ctx.console.info("PM2 not installed, skipping")
        return
    for home in _home_dirs(ctx):
        user = home.name
        for path in host_files(ctx.paths, home, max_depth=PM2_SEARCH_DEPTH):
            if Path(path).name != "package.json" or any(marker in path for marker in PM2_SKIP_MARKERS):
                continue
            local = ctx.paths.resolve(path)
            if not local.is_file() or not _has_start_script(local):
                continue
            app_dir = local.parent
            app = app_dir.name
            ctx.console.info(f"Node app: {app}")
            if not (app_dir / "node_modules").is_dir():
                ctx.attempt("pm2", f"npm install {app}", ctx.as_user(user, ["npm", "install"]), cwd=app_dir)
            ctx.runner.run(ctx.as_user(user, ["pm2", "delete", app]), check=False, quiet=True, cwd=app_dir)
            ctx.attempt(
                "pm2",
                f"start {app}",
                ctx.as_user(user, ["pm2", "start", "npm", "--name", app, "--", "start"]),
                cwd=app_dir,
            )

    ctx.attempt("pm2", "pm2 save", ctx.as_user(job.username, ["pm2", "save"]))
    home = ctx.paths.relative(ctx.paths.user_home(job.username))
    output = ctx.probe(["pm2", "startup", "systemd", "-u", job.username, "--hp", home])
    startup = next(
        (line.strip() for line in (output or "").splitlines() if line.strip().startswith("sudo")),
        None,
    )
    if startup:
        ctx.attempt("pm2", "pm2 startup", shlex.split(startup))


def start_services(job: RestoreJob) -> None:
    ctx = job.ctx
    if not ctx.paths.systemd.is_dir():
        return
    for unit_path in sorted(ctx.paths.systemd.glob("*.service")):
        if not unit_path.is_file() or not is_startable_unit(unit_path.name):
            continue
        name = unit_name(unit_path.name)
        ctx.console.info(f"Starting: {name}")
        ctx.attempt("services", f"enable {name}", ctx.privileged(["systemctl", "enable", name]))
        if ctx.attempt("services", f"start {name}", ctx.privileged(["systemctl", "start", name])):
            continue
        status = ctx.runner.run(["systemctl", "status", name, "--no-pager"], check=False, quiet=True)
        for line in (status.stdout or "").splitlines()[-STATUS_TAIL:]:
            ctx.console.echo(line)


def restore_env_files(job: RestoreJob) -> None:
    ctx = job.ctx
    for env_file in job.artifacts(ArtifactKind.ENV_FILE):
        original = job.manifest.original_path(ArtifactKind.ENV_FILE, env_file.name)
        target = ctx.paths.resolve(original)
        if not target.parent.is_dir():
            ctx.report.skipped("env", original, "parent directory missing")
            continue
        ctx.console.info(f"Restoring: {original}")
        if not _install_file(ctx, "env", env_file, target):
            continue
        entry = job.manifest.lookup(ArtifactKind.ENV_FILE, env_file.name)
        if entry is not None and entry.owner:
            ctx.attempt("env", f"chown {original}", ctx.privileged(["chown", f"{entry.owner}:{entry.owner}", original]))


def restore_crontabs(job: RestoreJob) -> None:
    ctx = job.ctx
    system_dir = job.workdir / "system"
    if not system_dir.is_dir():
        return
    for crontab in sorted(system_dir.glob("crontab-*")):
        user = crontab.name[len("crontab-") :]
        if user == "system":
            ctx.report.skipped("crontab", "/etc/crontab", "system crontab kept in the archive for review")
            continue
        if not ctx.runner.succeeds(["id", user]):
            ctx.report.skipped("crontab", user, "user does not exist")
            continue
        ctx.console.info(f"Crontab: {user}")
        ctx.attempt("crontab", user, ctx.privileged(["crontab", "-u", user, str(crontab)]))


def restore_configs(job: RestoreJob) -> None:
    restore_env_files(job)
    restore_crontabs(job)


def listening_processes(ss_output: str | None) -> list[tuple[int, str]]:
    found: list[tuple[int, str]] = []
    for line in (ss_output or "").splitlines():
        if "LISTEN" not in line:
            continue
        port = listening_port(line)
        if port is None:
            continue
        match = SS_PROCESS.search(line)
        found.append((port, match.group(1) if match else ""))
    return found


def verify(job: RestoreJob) -> None:
    ctx = job.ctx
    if not ctx.dry_run:
        time.sleep(VERIFY_SETTLE_SECONDS)
    ctx.console.info("Listening ports:")
    for port, process in listening_processes(ctx.probe(["ss", "-tlnp"])):
        ctx.console.echo(f"Port {port}: {process}")
    ctx.console.info("Running services:")
    running = ctx.probe(["systemctl", "list-units", "--type=service", "--state=running", "--no-pager", "--no-legend"])
    for line in (running or "").splitlines():
        ctx.console.echo(line.strip())
    if ctx.runner.which("pm2"):
        ctx.console.info("PM2 processes:")
        for line in (ctx.probe(["pm2", "list"]) or "").splitlines():
            ctx.console.echo(line)


RESTORE_PHASES: tuple[tuple[str, Callable[[RestoreJob], None]], ...] = (
    ("Installing base packages", install_base_packages),
    ("Detecting runtimes", install_runtimes),
    ("Restoring users and home directories", restore_homes),
    ("Installing application dependencies", restore_dependencies),
    ("Restoring Nginx", restore_nginx),
    ("Restoring Apache", restore_apache),
    ("Restoring databases", restore_databases),
    ("Restoring systemd services", restore_systemd_units),
    ("Starting Python applications", synthesize_python_units),
    ("Starting Node.js applications", start_pm2_apps),
    ("Starting systemd services", start_services),
    ("Restoring environment files and crontabs", restore_configs),
    ("Final verification", verify),
)


def restore_backup(
    ctx: ExecutionContext,
    backup_file: Path,
    *,
    work_dir: Path,
    username: str | None = None,
) -> RestoreJob:
    """Restore ``backup_file`` onto this host, recording every outcome in ``ctx.report``."""

    if not backup_file.is_file():
        raise RestoreError(f"Backup file not found: {backup_file}")
    job = RestoreJob(
        ctx=ctx,
        workdir=work_dir / f"phoenix-restore-{os.getpid()}",
        username=username or ctx.user,
    )
    total = len(RESTORE_PHASES) + 2
    try:
        ctx.console.step(f"[1/{total}] Extracting backup...")
        extract_backup(job, backup_file)
        for index, (label, phase) in enumerate(RESTORE_PHASES, start=2):
            ctx.console.step(f"[{index}/{total}] {label}...")
            try:
                phase(job)
            except (OSError, tarfile.TarError) as exc:
                ctx.console.warn(f"{label} incomplete: {exc}")
                ctx.report.failed(label.lower(), label, str(exc))
    finally:
        ctx.console.step(f"[{total}/{total}] Cleaning up...")
        shutil.rmtree(job.workdir, ignore_errors=True)
    return job
