"""Tarball helpers with the fixed exclusion lists used for app and home trees."""

from __future__ import annotations

import pwd
import tarfile
from collections.abc import Iterable, Sequence
from fnmatch import fnmatchcase
from pathlib import Path, PurePosixPath
from typing import Callable

# Regeneratable or bulky subtrees. Patterns without "/" match any single path
# component; patterns with "/" match that run of consecutive components.
APP_EXCLUDES: tuple[str, ...] = (
    "node_modules",
    ".git",
    "*.log",
    "logs",
    ".next",
    "dist",
    "build",
)
SYSTEMD_APP_EXCLUDES: tuple[str, ...] = ("node_modules", ".git", "venv/lib", "*.log")
HOME_EXCLUDES: tuple[str, ...] = (
    "node_modules",
    ".cache",
    ".npm",
    ".local/share/Trash",
    "venv/lib",
    ".git/objects",
    ".nvm",
    ".rustup",
    ".cargo",
    "go/pkg",
    ".next",
    "dist",
    "build",
    "*.log",
)


def path_owner(path: Path) -> str | None:
    """Name of the user owning ``path``, ``None`` when unknown."""

    try:
        return pwd.getpwuid(path.stat().st_uid).pw_name
    except (KeyError, OSError):
        return None


def is_excluded(relative: str | PurePosixPath, patterns: Sequence[str]) -> bool:
    parts = PurePosixPath(relative).parts
    for pattern in patterns:
        pattern_parts = pattern.split("/")
        width = len(pattern_parts)
        for start in range(len(parts) - width + 1):
            window = parts[start : start + width]
            if all(fnmatchcase(part, glob) for part, glob in zip(window, pattern_parts)):
                return True
    return False


def _exclusion_filter(
    arcname: str, patterns: Sequence[str]
) -> Callable[[tarfile.TarInfo], tarfile.TarInfo | None]:
    prefix = arcname.rstrip("/")

    def _filter(info: tarfile.TarInfo) -> tarfile.TarInfo | None:
        relative = info.name[len(prefix) :].lstrip("/") if info.name.startswith(prefix) else info.name
        if relative and is_excluded(relative, patterns):
            return None
        return info

    return _filter


def create_archive(
    output: Path,
    sources: Iterable[tuple[Path, str]],
    *,
    excludes: Sequence[str] = (),
) -> Path:
    """Write ``(local path, member name)`` pairs into a gzip tarball."""

    output.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(output, "w:gz") as bundle:
        for source, arcname in sources:
            bundle.add(source, arcname=arcname, filter=_exclusion_filter(arcname, excludes))
    return output


def archive_tree(output: Path, source: Path, arcname: str, excludes: Sequence[str] = ()) -> Path:
    return create_archive(output, [(source, arcname)], excludes=excludes)


def bundle_directory(output: Path, directory: Path) -> Path:
    """Archive the contents of ``directory`` with members at the top level."""

    return create_archive(output, [(item, item.name) for item in sorted(directory.iterdir())])


def list_members(archive: Path) -> list[str]:
    with tarfile.open(archive, "r:*") as bundle:
        return bundle.getnames()


def extract_archive(archive: Path, destination: Path) -> None:
    destination.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive, "r:*") as bundle:
        bundle.extractall(destination, filter="tar")
