"""Recognise Node.js and Python applications from the files they ship.

Detectors work on plain path listings (archive member names or a directory
walk) so they can be exercised without touching a real filesystem.
"""

from __future__ import annotations

import os
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from .config import SystemPaths
from .units import unit_runtimes

VENV_DIRS = frozenset({"venv", ".venv"})
OPAQUE_DIRS = frozenset({"node_modules", ".git"}) | VENV_DIRS


@dataclass(frozen=True, slots=True)
class Capability:
    """One application found on disk and what it needs to run."""

    runtime: str
    app_dir: str
    manifest: str | None = None
    entry_point: str | None = None
    default_port: int | None = None
    framework: str | None = None


def _normalise(paths: Iterable[str]) -> list[PurePosixPath]:
    return [PurePosixPath("/" + str(path).strip("/")) for path in paths if str(path).strip("/")]


def _inside(path: PurePosixPath, names: frozenset[str]) -> bool:
    return any(part in names for part in path.parent.parts)


class RuntimeDetector:
    runtime = ""

    def detect(self, paths: Iterable[str]) -> list[Capability]:
        raise NotImplementedError

    def needed(self, paths: Iterable[str]) -> bool:
        return bool(self.detect(paths))


class NodeDetector(RuntimeDetector):
    runtime = "node"
    manifest_name = "package.json"
    default_port = 3000

    def detect(self, paths: Iterable[str]) -> list[Capability]:
        found: list[Capability] = []
        for path in _normalise(paths):
            if path.name != self.manifest_name or _inside(path, frozenset({"node_modules"})):
                continue
            found.append(
                Capability(
                    runtime=self.runtime,
                    app_dir=str(path.parent),
                    manifest=str(path),
                    entry_point="npm start",
                    default_port=self.default_port,
                )
            )
        return found


class PythonDetector(RuntimeDetector):
    """``requirements.txt`` files, or a bare ``venv`` directory, mark a Python app."""

    runtime = "python"
    manifest_name = "requirements.txt"

    def detect(self, paths: Iterable[str]) -> list[Capability]:
        found: dict[str, Capability] = {}
        for path in _normalise(paths):
            if path.name == self.manifest_name and not _inside(path, VENV_DIRS):
                found[str(path.parent)] = Capability(
                    runtime=self.runtime, app_dir=str(path.parent), manifest=str(path)
                )
                continue
            for index, part in enumerate(path.parts):
                if part not in VENV_DIRS:
                    continue
                app_dir = str(PurePosixPath(*path.parts[:index]))
                found.setdefault(app_dir, Capability(runtime=self.runtime, app_dir=app_dir))
                break
        return sorted(found.values(), key=lambda capability: capability.app_dir)


class DjangoDetector(RuntimeDetector):
    """A ``manage.py`` with a ``wsgi.py`` below it is served through gunicorn."""

    runtime = "python"
    framework = "django"
    default_port = 8000

    def detect(self, paths: Iterable[str]) -> list[Capability]:
        normalised = [path for path in _normalise(paths) if not _inside(path, OPAQUE_DIRS)]
        wsgi_files = sorted(path for path in normalised if path.name == "wsgi.py")
        found: list[Capability] = []
        for manage in sorted(path for path in normalised if path.name == "manage.py"):
            app_dir = manage.parent
            wsgi = next((path for path in wsgi_files if app_dir in path.parents), None)
            if wsgi is None:
                continue
            requirements = app_dir / "requirements.txt"
            found.append(
                Capability(
                    runtime=self.runtime,
                    app_dir=str(app_dir),
                    manifest=str(requirements) if requirements in normalised else None,
                    entry_point=f"{wsgi.parent.name}.wsgi:application",
                    default_port=self.default_port,
                    framework=self.framework,
                )
            )
        return found


DETECTORS: tuple[RuntimeDetector, ...] = (NodeDetector(), PythonDetector())


def required_runtimes(
    paths: Iterable[str],
    unit_texts: Iterable[str] = (),
    detectors: Iterable[RuntimeDetector] = DETECTORS,
) -> set[str]:
    """Runtimes some file or unit actually calls for; nothing else is installed."""

    listing = list(paths)
    runtimes = {detector.runtime for detector in detectors if detector.needed(listing)}
    for text in unit_texts:
        runtimes |= unit_runtimes(text)
    return runtimes


def host_files(paths: SystemPaths, directory: Path, *, max_depth: int | None = None) -> list[str]:
    """Host paths of files and directories under ``directory``.

    Dependency and VCS directories are listed but never descended into.
    """

    listing: list[str] = []
    if not directory.is_dir():
        return listing
    base_depth = len(directory.parts)
    for dirpath, dirnames, filenames in os.walk(directory):
        current = Path(dirpath)
        depth = len(current.parts) - base_depth
        for name in sorted(dirnames):
            listing.append(paths.relative(current / name))
        dirnames[:] = sorted(
            name
            for name in dirnames
            if name not in OPAQUE_DIRS and (max_depth is None or depth + 1 < max_depth)
        )
        for name in sorted(filenames):
            listing.append(paths.relative(current / name))
    return listing
