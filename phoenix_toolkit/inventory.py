"""Inventory of a source host and the probes that produce it.

Every probe degrades to an empty or false value when its command is missing,
fails or prints something unparsable, so a scan always yields a complete,
serialisable document.
"""

from __future__ import annotations

import json
import os
import socket
from dataclasses import asdict, dataclass, field
from datetime import datetime
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, Mapping

from .config import SystemPaths
from .context import ExecutionContext
from .units import is_system_unit

MYSQL_SYSTEM_DATABASES = frozenset({"information_schema", "performance_schema", "mysql", "sys"})
POSTGRES_LIST_QUERY = (
    "SELECT datname FROM pg_database WHERE datistemplate = false AND datname != 'postgres'"
)
MONGO_LIST_SCRIPT = "JSON.stringify(db.adminCommand('listDatabases').databases.map(d=>d.name))"
COMPOSE_SEARCH_ROOTS = ("/home", "/opt", "/srv")
COMPOSE_PATTERNS = ("docker-compose*.yml", "compose.yml")
ENV_FILE_LIMIT = 100
PRUNED_DIRS = frozenset({"node_modules", ".git"})


@dataclass(slots=True)
class DockerInventory:
    installed: bool = False
    containers: list[dict[str, Any]] = field(default_factory=list)
    volumes: list[dict[str, Any]] = field(default_factory=list)
    compose_files: list[str] = field(default_factory=list)

    def volume_names(self) -> list[str]:
        return [str(volume["Name"]) for volume in self.volumes if volume.get("Name")]


@dataclass(slots=True)
class Pm2Inventory:
    installed: bool = False
    processes: list[dict[str, Any]] = field(default_factory=list)

    def app_dirs(self) -> list[str]:
        """Working directories of every PM2 process, first occurrence wins."""

        seen: list[str] = []
        for process in self.processes:
            env = process.get("pm2_env") or {}
            cwd = env.get("pm_cwd") if isinstance(env, dict) else None
            if cwd and cwd not in seen:
                seen.append(str(cwd))
        return seen


@dataclass(slots=True)
class ProxyInventory:
    running: bool = False
    sites: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DatabaseInventory:
    running: bool = False
    databases: list[str] = field(default_factory=list)


@dataclass(slots=True)
class Databases:
    mysql: DatabaseInventory = field(default_factory=DatabaseInventory)
    postgres: DatabaseInventory = field(default_factory=DatabaseInventory)
    mongodb: DatabaseInventory = field(default_factory=DatabaseInventory)
    redis: DatabaseInventory = field(default_factory=DatabaseInventory)


@dataclass(slots=True)
class SystemInfo:
    os: str = "Unknown"
    version: str = "Unknown"
    hostname: str = ""
    scan_date: str = ""


@dataclass(slots=True)
class Inventory:
    docker: DockerInventory = field(default_factory=DockerInventory)
    pm2: Pm2Inventory = field(default_factory=Pm2Inventory)
    nginx: ProxyInventory = field(default_factory=ProxyInventory)
    apache: ProxyInventory = field(default_factory=ProxyInventory)
    databases: Databases = field(default_factory=Databases)
    systemd_services: list[str] = field(default_factory=list)
    ports: list[int] = field(default_factory=list)
    users: list[str] = field(default_factory=list)
    env_files: list[str] = field(default_factory=list)
    crontabs: dict[str, list[str]] = field(default_factory=dict)
    system: SystemInfo = field(default_factory=SystemInfo)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Inventory":
        docker = _section(data, "docker")
        pm2 = _section(data, "pm2")
        databases = _section(data, "databases")
        system = _section(data, "system")
        return cls(
            docker=DockerInventory(
                installed=bool(docker.get("installed", False)),
                containers=_dict_list(docker.get("containers")),
                volumes=_dict_list(docker.get("volumes")),
                compose_files=_str_list(docker.get("compose_files")),
            ),
            pm2=Pm2Inventory(
                installed=bool(pm2.get("installed", False)),
                processes=_dict_list(pm2.get("processes")),
            ),
            nginx=_load_proxy(_section(data, "nginx")),
            apache=_load_proxy(_section(data, "apache")),
            databases=Databases(
                mysql=_load_database(databases.get("mysql")),
                postgres=_load_database(databases.get("postgres", databases.get("postgresql"))),
                mongodb=_load_database(databases.get("mongodb")),
                redis=_load_database(databases.get("redis")),
            ),
            systemd_services=_str_list(data.get("systemd_services")),
            ports=[int(port) for port in data.get("ports") or [] if str(port).isdigit()],
            users=_str_list(data.get("users")),
            env_files=_str_list(data.get("env_files")),
            crontabs={
                str(user): _str_list(lines)
                for user, lines in _section(data, "crontabs").items()
            },
            system=SystemInfo(
                os=str(system.get("os", "Unknown")),
                version=str(system.get("version", "Unknown")),
                hostname=str(system.get("hostname", "")),
                scan_date=str(system.get("scan_date", "")),
            ),
        )


def _section(data: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = data.get(key)
    return value if isinstance(value, Mapping) else {}


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if str(item)]


def _dict_list(value: Any) -> list[dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [dict(item) for item in value if isinstance(item, Mapping)]


def _load_proxy(raw: Mapping[str, Any]) -> ProxyInventory:
    return ProxyInventory(running=bool(raw.get("running", False)), sites=_str_list(raw.get("sites")))


def _load_database(raw: Any) -> DatabaseInventory:
    if not isinstance(raw, Mapping):
        return DatabaseInventory()
    return DatabaseInventory(
        running=bool(raw.get("running", False)), databases=_str_list(raw.get("databases"))
    )


def load_inventory(path: Path) -> Inventory:
    data = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(data, Mapping):
        raise ValueError(f"{path} does not hold an inventory object")
    return Inventory.from_dict(data)


def write_inventory(inventory: Inventory, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(inventory.to_dict(), indent=2) + "\n", encoding="utf-8")


def _lines(output: str | None) -> list[str]:
    if not output:
        return []
    return [line.strip() for line in output.splitlines() if line.strip()]


def _json_lines(output: str | None) -> list[dict[str, Any]]:
    records: list[dict[str, Any]] = []
    for line in _lines(output):
        try:
            value = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            records.append(value)
    return records


def _entries(directory: Path) -> list[Path]:
    try:
        return sorted(directory.iterdir())
    except OSError:
        return []


def _walk(root: Path):
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(name for name in dirnames if name not in PRUNED_DIRS)
        yield Path(dirpath), sorted(filenames)


def probe_docker(ctx: ExecutionContext) -> DockerInventory:
    if not ctx.runner.which("docker"):
        return DockerInventory()
    compose_files: list[str] = []
    for search_root in COMPOSE_SEARCH_ROOTS:
        local_root = ctx.paths.resolve(search_root)
        if not local_root.is_dir():
            continue
        for directory, filenames in _walk(local_root):
            for filename in filenames:
                if any(fnmatch(filename, pattern) for pattern in COMPOSE_PATTERNS):
                    compose_files.append(ctx.paths.relative(directory / filename))
    return DockerInventory(
        installed=True,
        containers=_json_lines(ctx.probe(["docker", "ps", "-a", "--format", "{{json .}}"])),
        volumes=_json_lines(ctx.probe(["docker", "volume", "ls", "--format", "{{json .}}"])),
        compose_files=compose_files,
    )


def probe_pm2(ctx: ExecutionContext) -> Pm2Inventory:
    if not ctx.runner.which("pm2"):
        return Pm2Inventory()
    processes = ctx.probe_json(["pm2", "jlist"])
    return Pm2Inventory(installed=True, processes=_dict_list(processes))


def probe_proxy(ctx: ExecutionContext, unit: str, config_dir: Path) -> ProxyInventory:
    if not ctx.service_active(unit):
        return ProxyInventory()
    sites = [entry.name for entry in _entries(config_dir / "sites-enabled")]
    return ProxyInventory(running=True, sites=sites)


def probe_mysql(ctx: ExecutionContext) -> DatabaseInventory:
    if not ctx.service_active("mysql", "mariadb"):
        return DatabaseInventory()
    names = _lines(ctx.probe(["mysql", "-N", "-e", "SHOW DATABASES"]))
    return DatabaseInventory(
        running=True, databases=[name for name in names if name not in MYSQL_SYSTEM_DATABASES]
    )


def probe_postgres(ctx: ExecutionContext) -> DatabaseInventory:
    if not ctx.service_active("postgresql"):
        return DatabaseInventory()
    output = ctx.probe(ctx.as_user("postgres", ["psql", "-t", "-c", POSTGRES_LIST_QUERY]))
    return DatabaseInventory(running=True, databases=_lines(output))


def probe_mongodb(ctx: ExecutionContext) -> DatabaseInventory:
    if not ctx.service_active("mongod"):
        return DatabaseInventory()
    names = ctx.probe_json(["mongosh", "--quiet", "--eval", MONGO_LIST_SCRIPT])
    return DatabaseInventory(running=True, databases=_str_list(names))


def probe_redis(ctx: ExecutionContext) -> DatabaseInventory:
    return DatabaseInventory(running=ctx.service_active("redis-server", "redis"))


def list_systemd_services(paths: SystemPaths) -> list[str]:
    return [
        entry.name
        for entry in _entries(paths.systemd)
        if entry.name.endswith(".service")
        and entry.is_file()
        and not is_system_unit(entry.name)
    ]


def listening_port(line: str) -> int | None:
    """Port of the local-address column of one ``ss -tlnp`` row."""

    columns = line.split()
    if len(columns) < 4:
        return None
    _, _, port = columns[3].rpartition(":")
    return int(port) if port.isdigit() else None


def parse_listening_ports(output: str | None) -> list[int]:
    ports = {listening_port(line) for line in _lines(output)[1:]}
    return sorted(port for port in ports if port is not None)


def list_users(paths: SystemPaths) -> list[str]:
    return [entry.name for entry in _entries(paths.home) if entry.is_dir()]


def find_env_files(paths: SystemPaths, limit: int = ENV_FILE_LIMIT) -> list[str]:
    found: list[str] = []
    if not paths.home.is_dir():
        return found
    for directory, filenames in _walk(paths.home):
        for filename in filenames:
            if filename == ".env" or filename.startswith(".env."):
                found.append(paths.relative(directory / filename))
                if len(found) >= limit:
                    return found
    return found


def probe_crontabs(ctx: ExecutionContext, users: list[str]) -> dict[str, list[str]]:
    crontabs: dict[str, list[str]] = {}
    for user in users:
        lines = [
            line
            for line in _lines(ctx.probe(["crontab", "-u", user, "-l"]))
            if not line.startswith("#")
        ]
        if lines:
            crontabs[user] = lines
    return crontabs


def read_os_release(path: Path) -> dict[str, str]:
    values: dict[str, str] = {}
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return values
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            values[key.strip()] = value.strip().strip('"')
    return values


def probe_system(paths: SystemPaths) -> SystemInfo:
    release = read_os_release(paths.os_release)
    return SystemInfo(
        os=release.get("NAME", "Unknown"),
        version=release.get("VERSION_ID", "Unknown"),
        hostname=socket.gethostname(),
        scan_date=datetime.now().astimezone().isoformat(timespec="seconds"),
    )


def scan(ctx: ExecutionContext) -> Inventory:
    """Probe every subsystem of the host described by ``ctx``."""

    console = ctx.console
    console.step("Detecting services and applications...")
    inventory = Inventory()

    inventory.docker = probe_docker(ctx)
    _announce(ctx, "Docker installed", inventory.docker.installed)
    inventory.pm2 = probe_pm2(ctx)
    _announce(ctx, "PM2 installed", inventory.pm2.installed)
    inventory.nginx = probe_proxy(ctx, "nginx", ctx.paths.nginx)
    _announce(ctx, "Nginx running", inventory.nginx.running)
    inventory.apache = probe_proxy(ctx, "apache2", ctx.paths.apache)
    _announce(ctx, "Apache running", inventory.apache.running)

    inventory.databases = Databases(
        mysql=probe_mysql(ctx),
        postgres=probe_postgres(ctx),
        mongodb=probe_mongodb(ctx),
        redis=probe_redis(ctx),
    )
    for name, database in (
        ("MySQL/MariaDB", inventory.databases.mysql),
        ("PostgreSQL", inventory.databases.postgres),
        ("MongoDB", inventory.databases.mongodb),
        ("Redis", inventory.databases.redis),
    ):
        _announce(ctx, f"{name} running", database.running)

    console.step("Scanning custom systemd services, ports, users and cron jobs...")
    inventory.systemd_services = list_systemd_services(ctx.paths)
    inventory.ports = parse_listening_ports(ctx.probe(["ss", "-tlnp"]))
    inventory.users = list_users(ctx.paths)
    inventory.env_files = find_env_files(ctx.paths)
    inventory.crontabs = probe_crontabs(ctx, inventory.users)
    inventory.system = probe_system(ctx.paths)
    ctx.report.ok("scan", "inventory")
    return inventory


def _announce(ctx: ExecutionContext, label: str, present: bool) -> None:
    if present:
        ctx.console.info(f"[Found] {label}")
    else:
        ctx.console.info(f"[Skip] {label.split()[0]} not detected")


def summary_lines(inventory: Inventory) -> list[str]:
    return [
        f"Docker containers: {len(inventory.docker.containers)}",
        f"Docker volumes: {len(inventory.docker.volumes)}",
        f"PM2 processes: {len(inventory.pm2.processes)}",
        f"Nginx sites: {len(inventory.nginx.sites)}",
        f"Custom services: {len(inventory.systemd_services)}",
        f"Users: {len(inventory.users)}",
        f"Env files: {len(inventory.env_files)}",
        f"Listening ports: {len(inventory.ports)}",
    ]
