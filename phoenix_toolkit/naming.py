"""Artifact naming scheme and the manifest that makes it unambiguous.

Archive member names follow a flat, deterministic convention so a legacy
restore can still find its way around: ``home-<user>.tar.gz``,
``nginx-root_var_www_site.tar.gz``, ``mysql-<db>.sql`` and so on. Encoding a
path by turning ``/`` into ``_`` cannot be undone when the path already holds
an underscore, so every backup also writes ``manifest.json`` with the
original path of each artifact and restore consults it first.
"""

from __future__ import annotations

import json
import posixpath
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping

MANIFEST_NAME = "manifest.json"
MANIFEST_VERSION = 1


class ArtifactKind(str, Enum):
    HOME = "home"
    PM2_APP = "pm2-app"
    NGINX_ROOT = "nginx-root"
    APACHE_ROOT = "apache-root"
    SYSTEMD_APP = "systemd-app"
    MYSQL_DB = "mysql-db"
    POSTGRES_DB = "postgres-db"
    VOLUME = "volume"
    ENV_FILE = "env-file"
    COMPOSE_FILE = "compose-file"


# Directory of each kind inside the backup archive.
ARTIFACT_DIRS: dict[ArtifactKind, str] = {
    ArtifactKind.HOME: "apps",
    ArtifactKind.PM2_APP: "apps",
    ArtifactKind.NGINX_ROOT: "apps",
    ArtifactKind.APACHE_ROOT: "apps",
    ArtifactKind.SYSTEMD_APP: "apps",
    ArtifactKind.MYSQL_DB: "databases",
    ArtifactKind.POSTGRES_DB: "databases",
    ArtifactKind.VOLUME: "docker",
    ArtifactKind.ENV_FILE: "configs/env",
    ArtifactKind.COMPOSE_FILE: "docker",
}

_NAME_FORMS: dict[ArtifactKind, tuple[str, str]] = {
    ArtifactKind.HOME: ("home-", ".tar.gz"),
    ArtifactKind.PM2_APP: ("pm2-", ".tar.gz"),
    ArtifactKind.NGINX_ROOT: ("nginx-root", ".tar.gz"),
    ArtifactKind.APACHE_ROOT: ("apache-root", ".tar.gz"),
    ArtifactKind.SYSTEMD_APP: ("systemd-", ".tar.gz"),
    ArtifactKind.MYSQL_DB: ("mysql-", ".sql"),
    ArtifactKind.POSTGRES_DB: ("postgres-", ".sql"),
    ArtifactKind.VOLUME: ("volume-", ".tar.gz"),
    ArtifactKind.ENV_FILE: ("", ""),
    ArtifactKind.COMPOSE_FILE: ("", ""),
}

_BASENAME_KINDS = frozenset({ArtifactKind.PM2_APP, ArtifactKind.SYSTEMD_APP})
_SLASH_KINDS = frozenset({ArtifactKind.NGINX_ROOT, ArtifactKind.APACHE_ROOT})
_FLAT_PATH_KINDS = frozenset({ArtifactKind.ENV_FILE, ArtifactKind.COMPOSE_FILE})


class NamingError(ValueError):
    """Raised when a name does not belong to the requested artifact kind."""


def flatten_path(path: str) -> str:
    """``/home/a/app/.env`` -> ``home_a_app_.env``."""

    return path.lstrip("/").replace("/", "_")


def unflatten_path(name: str) -> str:
    return "/" + name.replace("_", "/")


def encode(kind: ArtifactKind, identity: str) -> str:
    """Return the archive member name of the artifact identified by ``identity``.

    ``identity`` is a user name for homes, a database or volume name for dumps
    and an absolute path for everything else.
    """

    prefix, suffix = _NAME_FORMS[kind]
    if kind in _BASENAME_KINDS:
        body = posixpath.basename(identity.rstrip("/"))
    elif kind in _SLASH_KINDS:
        body = identity.rstrip("/").replace("/", "_")
    elif kind in _FLAT_PATH_KINDS:
        body = flatten_path(identity)
    else:
        body = identity
    if not body:
        raise NamingError(f"cannot derive a {kind.value} name from {identity!r}")
    return f"{prefix}{body}{suffix}"


def decode(kind: ArtifactKind, name: str) -> str:
    """Best-effort inverse of :func:`encode`.

    Basename kinds only give back the directory name; their full path lives
    in the process list or unit file. Slash-encoded kinds turn every ``_``
    back into ``/``, which is wrong for paths that contained an underscore.
    """

    prefix, suffix = _NAME_FORMS[kind]
    if not name.startswith(prefix) or not name.endswith(suffix):
        raise NamingError(f"{name!r} is not a {kind.value} artifact name")
    body = name[len(prefix) : len(name) - len(suffix)] if suffix else name[len(prefix) :]
    if not body:
        raise NamingError(f"{name!r} has an empty {kind.value} identity")
    if kind in _SLASH_KINDS or kind in _FLAT_PATH_KINDS:
        return unflatten_path(body.lstrip("_"))
    return body


def matches(kind: ArtifactKind, name: str) -> bool:
    try:
        decode(kind, name)
    except NamingError:
        return False
    return True


def member_path(kind: ArtifactKind, identity: str) -> str:
    """Path of the artifact relative to the archive root."""

    return f"{ARTIFACT_DIRS[kind]}/{encode(kind, identity)}"


@dataclass(slots=True)
class ManifestEntry:
    encoded_name: str
    kind: ArtifactKind
    original_path: str
    owner: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        return data


@dataclass
class Manifest:
    """Ordered ``encoded name -> original location`` records for one backup."""

    entries: list[ManifestEntry] = field(default_factory=list)

    def add(
        self,
        kind: ArtifactKind,
        identity: str,
        original_path: str,
        owner: str | None = None,
    ) -> ManifestEntry:
        entry = ManifestEntry(encode(kind, identity), kind, original_path, owner)
        self.entries = [
            existing
            for existing in self.entries
            if not (existing.kind is kind and existing.encoded_name == entry.encoded_name)
        ]
        self.entries.append(entry)
        return entry

    def lookup(self, kind: ArtifactKind, encoded_name: str) -> ManifestEntry | None:
        for entry in self.entries:
            if entry.kind is kind and entry.encoded_name == encoded_name:
                return entry
        return None

    def of_kind(self, kind: ArtifactKind) -> list[ManifestEntry]:
        return [entry for entry in self.entries if entry.kind is kind]

    def original_path(self, kind: ArtifactKind, encoded_name: str) -> str:
        """Manifest path when recorded, otherwise the decoded name."""

        entry = self.lookup(kind, encoded_name)
        if entry is not None:
            return entry.original_path
        return decode(kind, encoded_name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": MANIFEST_VERSION,
            "artifacts": [entry.to_dict() for entry in self.entries],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Manifest":
        entries: list[ManifestEntry] = []
        for raw in data.get("artifacts") or []:
            try:
                kind = ArtifactKind(raw["kind"])
                entries.append(
                    ManifestEntry(
                        encoded_name=str(raw["encoded_name"]),
                        kind=kind,
                        original_path=str(raw["original_path"]),
                        owner=str(raw["owner"]) if raw.get("owner") else None,
                    )
                )
            except (KeyError, TypeError, ValueError):
                continue
        return cls(entries)

    def write(self, directory: Path) -> Path:
        path = directory / MANIFEST_NAME
        path.write_text(json.dumps(self.to_dict(), indent=2) + "\n", encoding="utf-8")
        return path

    @classmethod
    def read(cls, directory: Path) -> "Manifest":
        """Load ``manifest.json``; archives made without one yield an empty manifest."""

        path = directory / MANIFEST_NAME
        if not path.is_file():
            return cls()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return cls()
        return cls.from_dict(data) if isinstance(data, Mapping) else cls()


def pm2_cwd_for(app_name: str, processes: Iterable[Mapping[str, Any]]) -> str | None:
    """Original working directory of the PM2 app archived as ``pm2-<app_name>``."""

    for process in processes:
        env = process.get("pm2_env") or {}
        cwd = env.get("pm_cwd") if isinstance(env, Mapping) else None
        if cwd and posixpath.basename(str(cwd).rstrip("/")) == app_name:
            return str(cwd)
    return None
