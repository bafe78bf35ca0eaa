"""systemd unit parsing, filtering and synthesis."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path

SYSTEM_UNIT_PREFIXES: tuple[str, ...] = (
    "snap",
    "cloud",
    "ssh",
    "systemd",
    "getty",
    "user@",
    "dbus",
)

# Provider agents and distro helpers that exist on fresh hosts and must not be
# restarted from a restored copy.
CLOUD_AGENT_UNITS: frozenset[str] = frozenset(
    {
        "do-agent",
        "droplet-agent",
        "vpc-peering",
        "iscsi",
        "syslog",
        "vmtoolsd",
        "apache-htcacheclean",
    }
)

RUNTIME_KEYWORDS: dict[str, re.Pattern[str]] = {
    "node": re.compile(r"node|npm|pm2"),
    "python": re.compile(r"python|gunicorn|uvicorn"),
}

_DIRECTIVE = re.compile(r"^\s*(?P<key>[A-Za-z]+)\s*=\s*(?P<value>.*?)\s*$")


def unit_name(filename: str) -> str:
    return filename[: -len(".service")] if filename.endswith(".service") else filename


def is_system_unit(name: str) -> bool:
    """Units matching the scan exclusion prefixes belong to the OS image."""

    return unit_name(name).startswith(SYSTEM_UNIT_PREFIXES)


def is_startable_unit(name: str) -> bool:
    base = unit_name(name)
    return not is_system_unit(base) and base not in CLOUD_AGENT_UNITS


@dataclass(slots=True)
class ServiceDescriptor:
    """A unit file together with what restore learned about it."""

    name: str
    path: Path
    text: str
    working_directory: str | None = None
    user: str | None = None
    exec_start: str | None = None
    runtimes: set[str] = field(default_factory=set)

    @property
    def unit(self) -> str:
        return unit_name(self.name)

    def infer_runtimes(self, manifests: set[str]) -> set[str]:
        """Refine keyword matches with the dependency manifests present on disk."""

        if "package.json" in manifests:
            self.runtimes.add("node")
        if "requirements.txt" in manifests or "manage.py" in manifests:
            self.runtimes.add("python")
        return self.runtimes


def parse_unit(path: Path) -> ServiceDescriptor:
    text = path.read_text(encoding="utf-8", errors="replace")
    descriptor = ServiceDescriptor(name=path.name, path=path, text=text)
    for line in text.splitlines():
        match = _DIRECTIVE.match(line)
        if not match:
            continue
        key, value = match.group("key"), match.group("value")
        if key == "WorkingDirectory" and descriptor.working_directory is None:
            # A leading "-" tells systemd to ignore a missing directory.
            descriptor.working_directory = value.lstrip("-") or None
        elif key == "User" and descriptor.user is None:
            descriptor.user = value or None
        elif key == "ExecStart" and descriptor.exec_start is None:
            descriptor.exec_start = value or None
    descriptor.runtimes = unit_runtimes(text)
    return descriptor


def unit_runtimes(text: str) -> set[str]:
    return {runtime for runtime, pattern in RUNTIME_KEYWORDS.items() if pattern.search(text)}


def render_unit(
    *,
    description: str,
    user: str,
    working_directory: str,
    exec_start: str,
) -> str:
    lines = [
        "[Unit]",
        f"Description={description}",
        "After=network.target",
        "",
        "[Service]",
        f"User={user}",
        f"Group={user}",
        f"WorkingDirectory={working_directory}",
        f"ExecStart={exec_start}",
        "Restart=always",
        "RestartSec=3",
        "",
        "[Install]",
        "WantedBy=multi-user.target",
        "",
    ]
    return "\n".join(lines)
