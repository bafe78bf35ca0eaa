"""Execution context threaded through scan, backup and restore."""

from __future__ import annotations

import getpass
import os
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import Settings, SystemPaths
from .console import Console
from .report import RunReport
from .runner import CommandError, CommandRunner

APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


@dataclass
class ExecutionContext:
    """Who we act as, where the filesystem lives and what is already installed."""

    runner: CommandRunner
    console: Console
    report: RunReport
    paths: SystemPaths
    user: str
    use_sudo: bool = True
    capabilities: set[str] = field(default_factory=set)
    apt_updated: bool = False

    @property
    def dry_run(self) -> bool:
        return self.runner.dry_run

    def has(self, capability: str) -> bool:
        return capability in self.capabilities

    def provide(self, capability: str) -> None:
        self.capabilities.add(capability)

    def privileged(self, command: Sequence[str]) -> list[str]:
        if self.use_sudo and os.geteuid() != 0:
            return ["sudo", *command]
        return list(command)

    def as_user(self, user: str, command: Sequence[str]) -> list[str]:
        return ["sudo", "-u", user, *command]

    def attempt(self, phase: str, name: str, command: Sequence[str], **kwargs: Any) -> bool:
        """Run a side-effecting command; failures are recorded, never raised."""

        try:
            self.runner.run(command, **kwargs)
        except CommandError as exc:
            self.console.warn(f"{name} failed: {exc}")
            self.report.failed(phase, name, str(exc), list(exc.command))
            return False
        self.report.ok(phase, name)
        return True

    def probe(self, command: Sequence[str], **kwargs: Any) -> str | None:
        """Capture output of a read-only command, ``None`` when it fails."""

        try:
            return self.runner.capture(command, **kwargs)
        except CommandError:
            return None

    def probe_json(self, command: Sequence[str]) -> Any:
        try:
            return self.runner.json(command)
        except CommandError:
            return None

    def service_active(self, *units: str) -> bool:
        return any(
            self.runner.succeeds(["systemctl", "is-active", "--quiet", unit]) for unit in units
        )

    def apt_install(self, phase: str, packages: Sequence[str]) -> bool:
        if not self.apt_updated:
            self.attempt(
                phase, "apt-get update", self.privileged(["apt-get", "update", "-qq"]), env=APT_ENV
            )
            self.apt_updated = True
        return self.attempt(
            phase,
            "install " + " ".join(packages),
            self.privileged(["apt-get", "install", "-y", "-qq", *packages]),
            env=APT_ENV,
        )


def build_context(
    settings: Settings,
    operation: str,
    *,
    user: str | None = None,
    runner: CommandRunner | None = None,
) -> ExecutionContext:
    console = Console(settings.log_file)
    for warning in settings.warnings:
        console.warn(warning)
    if runner is None:
        runner = CommandRunner(
            dry_run=settings.dry_run, timeout=settings.command_timeout, echo=console.echo
        )
    return ExecutionContext(
        runner=runner,
        console=console,
        report=RunReport(operation),
        paths=SystemPaths(Path(settings.root)),
        user=user or getpass.getuser(),
        use_sudo=settings.use_sudo,
    )
